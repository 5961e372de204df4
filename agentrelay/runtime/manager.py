"""Workspace registry and agent session map."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from agentrelay.config.schema import AgentConfig, WorkspaceEntry
from agentrelay.relay.errors import AgentRuntimeError
from agentrelay.runtime.base import AgentSession, RuntimeEvent
from agentrelay.runtime.session import AppServerSession

T = TypeVar("T")

SessionFactory = Callable[[WorkspaceEntry, Callable[[RuntimeEvent], Awaitable[None]]], Awaitable[AgentSession]]


@dataclass
class WorkspaceInfo:
    """Workspace metadata plus live connection state."""
    id: str
    name: str
    path: str
    connected: bool
    kind: str = "main"
    codex_bin: str | None = None
    parent_id: str | None = None
    worktree: dict[str, Any] | None = None
    settings: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "connected": self.connected,
            "kind": self.kind,
            "codexBin": self.codex_bin,
            "parentId": self.parent_id,
            "worktree": self.worktree,
            "settings": self.settings,
        }


def _default_factory(agent: AgentConfig) -> SessionFactory:
    async def factory(entry: WorkspaceEntry, on_event) -> AgentSession:
        session = AppServerSession(
            entry.id,
            entry.path,
            codex_bin=entry.codex_bin or agent.codex_bin,
            args=agent.app_server_args,
            request_timeout_s=agent.request_timeout_s,
            on_event=on_event,
        )
        await session.start()
        return session

    return factory


class SessionManager:
    """
    Own the `workspace_id -> session` map behind one exclusive lock.

    Connecting and calling into a session both take the lock, so the relay
    loop and any other command path never race on the same session.
    """

    def __init__(
        self,
        workspaces: list[WorkspaceEntry] | None = None,
        agent: AgentConfig | None = None,
        session_factory: SessionFactory | None = None,
    ):
        self.agent = agent or AgentConfig()
        self._factory = session_factory or _default_factory(self.agent)
        self._workspaces: dict[str, WorkspaceEntry] = {}
        self._sessions: dict[str, AgentSession] = {}
        self._lock = asyncio.Lock()
        self._event_listeners: list[asyncio.Queue[RuntimeEvent]] = []
        self.set_workspaces(workspaces or [])

    def set_workspaces(self, workspaces: list[WorkspaceEntry]) -> None:
        """Replace the registry. Live sessions of removed workspaces stay until close_all."""
        self._workspaces = {entry.id: entry for entry in workspaces}

    def get_entry(self, workspace_id: str) -> WorkspaceEntry | None:
        return self._workspaces.get(workspace_id)

    def is_connected(self, workspace_id: str) -> bool:
        session = self._sessions.get(workspace_id)
        return session is not None and session.is_alive()

    def list_workspaces(self) -> list[WorkspaceInfo]:
        result = []
        for entry in self._workspaces.values():
            result.append(
                WorkspaceInfo(
                    id=entry.id,
                    name=entry.name,
                    path=entry.path,
                    connected=self.is_connected(entry.id),
                    kind=entry.kind,
                    codex_bin=entry.codex_bin,
                    parent_id=entry.parent_id,
                    worktree=entry.worktree.model_dump() if entry.worktree else None,
                    settings={
                        "sidebarCollapsed": entry.settings.sidebar_collapsed,
                        "sortOrder": entry.settings.sort_order,
                    },
                )
            )
        result.sort(
            key=lambda w: (
                w.settings.get("sortOrder") if w.settings.get("sortOrder") is not None else float("inf"),
                w.name,
            )
        )
        return result

    async def _ensure_locked(self, workspace_id: str) -> tuple[AgentSession, WorkspaceEntry]:
        entry = self._workspaces.get(workspace_id)
        if entry is None:
            raise AgentRuntimeError("workspace not found")
        session = self._sessions.get(workspace_id)
        if session is not None and session.is_alive():
            return session, entry
        if session is not None:
            logger.warning(f"Agent session for {workspace_id} died, respawning")
            await session.close()
        session = await self._factory(entry, self._publish_event)
        self._sessions[workspace_id] = session
        logger.info(f"Workspace {entry.name} ({workspace_id}) connected")
        return session, entry

    async def ensure_connected(self, workspace_id: str) -> None:
        async with self._lock:
            await self._ensure_locked(workspace_id)

    async def call(
        self,
        workspace_id: str,
        fn: Callable[[AgentSession, WorkspaceEntry], Awaitable[T]],
    ) -> T:
        """Run fn against the workspace's session while holding the session lock."""
        async with self._lock:
            session, entry = await self._ensure_locked(workspace_id)
            return await fn(session, entry)

    def subscribe_events(self, maxsize: int = 500) -> asyncio.Queue[RuntimeEvent]:
        q: asyncio.Queue[RuntimeEvent] = asyncio.Queue(maxsize=maxsize)
        self._event_listeners.append(q)
        return q

    def unsubscribe_events(self, q: asyncio.Queue[RuntimeEvent]) -> None:
        if q in self._event_listeners:
            self._event_listeners.remove(q)

    async def _publish_event(self, event: RuntimeEvent) -> None:
        for q in list(self._event_listeners):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Drop the oldest event to make room.
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                q.put_nowait(event)

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.items())
            self._sessions.clear()
        for workspace_id, session in sessions:
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"Failed to close session for {workspace_id}: {e}")
