"""Configuration schema using Pydantic."""

import platform
import socket
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunnerConfig(BaseModel):
    """Identity of this runner instance."""
    runner_id: str = ""  # Generated on first launch, then persisted
    name: str = Field(default_factory=lambda: socket.gethostname() or "runner")
    platform: str = Field(default_factory=lambda: platform.system().lower() or "unknown")


class AgentConfig(BaseModel):
    """Agent runtime (JSON-RPC app-server) settings."""
    codex_bin: str = "codex"
    app_server_args: list[str] = Field(default_factory=lambda: ["app-server"])
    request_timeout_s: float = Field(default=60.0, gt=0)
    default_access_mode: Literal["current", "full-access", "read-only"] = "current"

    @field_validator("default_access_mode", mode="before")
    @classmethod
    def normalize_access_mode(cls, value: str) -> str:
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            if normalized in {"full-access", "read-only"}:
                return normalized
        return "current"


class WorktreeInfo(BaseModel):
    """Worktree metadata for a workspace."""
    branch: str


class WorkspaceSettings(BaseModel):
    """Per-workspace UI settings carried in snapshots."""
    sidebar_collapsed: bool = False
    sort_order: int | None = None


class WorkspaceEntry(BaseModel):
    """A local workspace the runner can drive."""
    id: str
    name: str
    path: str
    codex_bin: str | None = None
    kind: Literal["main", "worktree"] = "main"
    parent_id: str | None = None
    worktree: WorktreeInfo | None = None
    settings: WorkspaceSettings = Field(default_factory=WorkspaceSettings)


class RelayConfig(BaseModel):
    """Cadences, bounds and timeouts shared by every binding."""
    heartbeat_interval_s: float = Field(default=5.0, gt=0)
    global_snapshot_interval_s: float = Field(default=5.0, gt=0)
    maintenance_interval_s: float = Field(default=60.0, gt=0)
    transport_timeout_s: float = Field(default=15.0, gt=0)
    processed_max: int = Field(default=1000, ge=2)
    processed_keep: int = Field(default=500, ge=1)
    reply_poll_interval_s: float = Field(default=2.0, ge=0)
    reply_poll_attempts: int = Field(default=30, ge=0)
    thread_item_limit: int = Field(default=200, ge=1)
    thread_text_limit: int = Field(default=8000, ge=1)
    workspace_thread_limit: int = Field(default=20, ge=1)
    prefetch_threads: int = Field(default=3, ge=0)
    ledger_max_entries: int = Field(default=2000, ge=100)


class RecordsConfig(BaseModel):
    """Cloud-record binding (polled record store)."""
    enabled: bool = False
    root: str = "~/.agentrelay/records"
    container_id: str = ""
    poll_interval_s: float = Field(default=2.0, gt=0)
    dedup_window_s: float = Field(default=0.0, ge=0)

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()


class NatsConfig(BaseModel):
    """Pub/sub binding (NATS request/reply)."""
    enabled: bool = False
    url: str = ""  # e.g. "nats://token@127.0.0.1:4222"
    poll_interval_s: float = Field(default=0.5, gt=0)
    dedup_window_s: float = Field(default=0.0, ge=0)


class TelegramConfig(BaseModel):
    """Chat-bot binding (Telegram long polling)."""
    enabled: bool = False
    token: str = ""  # Bot token from @BotFather
    allowed_user_ids: list[int] = Field(default_factory=list)
    default_chat_id: int | None = None
    send_app_status: bool = False
    send_completed: bool = False
    pairing_secret: str = ""
    poll_interval_s: float = Field(default=0.75, gt=0)
    dedup_window_s: float = Field(default=30.0, ge=0)


class Config(BaseSettings):
    """Root configuration for agentrelay."""

    model_config = SettingsConfigDict(env_prefix="AGENTRELAY_", env_nested_delimiter="__")

    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    workspaces: list[WorkspaceEntry] = Field(default_factory=list)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    records: RecordsConfig = Field(default_factory=RecordsConfig)
    nats: NatsConfig = Field(default_factory=NatsConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)

    def binding_configured(self, binding: str) -> bool:
        """Whether a binding is enabled and has its endpoint set."""
        if binding == "records":
            return self.records.enabled and bool(self.records.container_id.strip())
        if binding == "nats":
            return self.nats.enabled and bool(self.nats.url.strip())
        if binding == "telegram":
            return self.telegram.enabled and bool(self.telegram.token.strip())
        return False
