"""Relay envelopes: commands, results, snapshots and presence rows."""

from dataclasses import dataclass, field
from typing import Any

from agentrelay.utils.helpers import now_ms

ENVELOPE_VERSION = 1
GLOBAL_SCOPE = "global"


def workspace_scope(workspace_id: str) -> str:
    return f"workspace:{workspace_id}"


def thread_scope(workspace_id: str, thread_id: str) -> str:
    return f"thread:{workspace_id}:{thread_id}"


@dataclass
class Command:
    """A client-issued action addressed to one runner."""
    command_id: str
    type: str
    args: dict[str, Any] = field(default_factory=dict)
    client_id: str | None = None
    created_at: int = field(default_factory=now_ms)
    # Binding-specific delivery handle (NATS reply subject, record name...).
    meta: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Command":
        args = data.get("args")
        if args is None:
            args = data.get("payload")
        client_id = data.get("clientId")
        return cls(
            command_id=str(data.get("commandId") or data.get("id") or ""),
            type=str(data.get("type") or ""),
            args=dict(args) if isinstance(args, dict) else {},
            client_id=str(client_id) if client_id else None,
            created_at=int(data.get("createdAt") or now_ms()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "commandId": self.command_id,
            "clientId": self.client_id,
            "type": self.type,
            "args": self.args,
            "createdAt": self.created_at,
        }


@dataclass
class CommandResult:
    """Outcome of executing one command. Written at most once per command id."""
    command_id: str
    ok: bool
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)

    @classmethod
    def success(cls, command_id: str, payload: dict[str, Any] | None = None) -> "CommandResult":
        return cls(command_id=command_id, ok=True, payload=dict(payload or {}))

    @classmethod
    def failure(cls, command_id: str, message: str) -> "CommandResult":
        return cls(command_id=command_id, ok=False, payload={"error": message})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CommandResult":
        payload = data.get("payload")
        return cls(
            command_id=str(data.get("commandId") or ""),
            ok=bool(data.get("ok")),
            payload=dict(payload) if isinstance(payload, dict) else {},
            created_at=int(data.get("createdAt") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "commandId": self.command_id,
            "ok": self.ok,
            "payload": self.payload,
            "createdAt": self.created_at,
        }


@dataclass
class Snapshot:
    """Versioned view of one scope. One current snapshot per (runner, scope)."""
    scope_key: str
    runner_id: str
    updated_at: int
    payload: dict[str, Any]
    version: int = ENVELOPE_VERSION

    def envelope(self) -> dict[str, Any]:
        return {
            "v": self.version,
            "ts": self.updated_at,
            "runnerId": self.runner_id,
            "scopeKey": self.scope_key,
            "payload": self.payload,
        }

    @classmethod
    def from_envelope(cls, data: dict[str, Any]) -> "Snapshot":
        payload = data.get("payload")
        return cls(
            scope_key=str(data.get("scopeKey") or ""),
            runner_id=str(data.get("runnerId") or ""),
            updated_at=int(data.get("ts") or 0),
            payload=dict(payload) if isinstance(payload, dict) else {},
            version=int(data.get("v") or ENVELOPE_VERSION),
        )


@dataclass
class RunnerPresence:
    """Liveness row for one runner. Last writer wins."""
    runner_id: str
    name: str
    platform: str
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runnerId": self.runner_id,
            "name": self.name,
            "platform": self.platform,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunnerPresence":
        return cls(
            runner_id=str(data.get("runnerId") or ""),
            name=str(data.get("name") or ""),
            platform=str(data.get("platform") or ""),
            updated_at=int(data.get("updatedAt") or 0),
        )
