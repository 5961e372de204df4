"""Snapshot rendering and publishing for global, workspace and thread scopes."""

from __future__ import annotations

import os
from typing import Any, Awaitable, Callable

from loguru import logger

from agentrelay.config.schema import RelayConfig, WorkspaceEntry
from agentrelay.relay.types import GLOBAL_SCOPE, Snapshot, thread_scope, workspace_scope
from agentrelay.runtime.base import AgentSession
from agentrelay.runtime.manager import SessionManager
from agentrelay.utils.helpers import now_ms, truncate_text

THREAD_NAME_MAX = 38
THREAD_LIST_PAGE = 40
THREAD_LIST_MAX_PAGES = 10

SnapshotWriter = Callable[[Snapshot], Awaitable[None]]


def _as_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    return str(value) if value else ""


def render_user_inputs(inputs: list[Any]) -> str:
    """Render typed user input parts into one line of text."""
    parts = []
    for raw in inputs:
        if not isinstance(raw, dict):
            continue
        kind = _as_str(raw.get("type"))
        if kind == "text":
            text = _as_str(raw.get("text")).strip()
        elif kind == "skill":
            name = _as_str(raw.get("name"))
            text = f"${name}" if name else ""
        elif kind in ("image", "localImage"):
            text = "[image]"
        else:
            text = ""
        if text:
            parts.append(text)
    return " ".join(parts).strip()


def build_thread_items(thread: dict[str, Any], *, text_limit: int = 8000, item_limit: int = 200) -> list[dict[str, Any]]:
    """Flatten a thread's turns into message items, newest `item_limit` kept."""
    items: list[dict[str, Any]] = []
    for turn in thread.get("turns") or []:
        if not isinstance(turn, dict):
            continue
        for item in turn.get("items") or []:
            if not isinstance(item, dict):
                continue
            item_id = _as_str(item.get("id"))
            kind = _as_str(item.get("type"))
            if not item_id:
                continue
            if kind == "userMessage":
                content = item.get("content")
                text = render_user_inputs(content if isinstance(content, list) else []) or "[message]"
                role = "user"
            elif kind == "agentMessage":
                text = _as_str(item.get("text"))
                role = "assistant"
            else:
                continue
            items.append({
                "id": item_id,
                "kind": "message",
                "role": role,
                "text": truncate_text(text, text_limit),
            })
    if len(items) > item_limit:
        items = items[-item_limit:]
    return items


def thread_display_name(thread: dict[str, Any], position: int) -> str:
    """Preview text cut to 38 chars, or `Agent <position>` (1-based)."""
    preview = _as_str(thread.get("preview")).strip()
    if preview:
        return truncate_text(preview, THREAD_NAME_MAX)
    return f"Agent {position}"


def extract_thread(response: Any) -> dict[str, Any]:
    """Pull the thread object out of a thread/resume or thread/start response."""
    if isinstance(response, dict):
        thread = response.get("thread")
        if isinstance(thread, dict):
            return thread
        if isinstance(response.get("turns"), list):
            return response
    return {}


def assistant_text_for_turn(thread: dict[str, Any], turn_id: str | None) -> str:
    """Concatenated agent message text of one turn (the last turn when turn_id is unknown)."""
    turns = [t for t in thread.get("turns") or [] if isinstance(t, dict)]
    if not turns:
        return ""
    if turn_id:
        selected = [t for t in turns if _as_str(t.get("id")) == turn_id]
    else:
        selected = turns[-1:]
    texts = []
    for turn in selected:
        for item in turn.get("items") or []:
            if isinstance(item, dict) and item.get("type") == "agentMessage":
                text = _as_str(item.get("text")).strip()
                if text:
                    texts.append(text)
    return "\n\n".join(texts)


def _same_path(cwd: str, workspace_path: str, canonical_workspace: str) -> bool:
    if cwd == workspace_path:
        return True
    try:
        return os.path.realpath(cwd) == canonical_workspace
    except (OSError, ValueError):
        return False


async def list_workspace_threads(session: AgentSession, entry: WorkspaceEntry, limit: int = 20) -> list[dict[str, Any]]:
    """Page through thread/list keeping threads whose cwd is the workspace path."""
    canonical = os.path.realpath(entry.path)
    matched: list[dict[str, Any]] = []
    cursor: str | None = None
    for _ in range(THREAD_LIST_MAX_PAGES):
        page = await session.list_threads(cursor=cursor, limit=THREAD_LIST_PAGE)
        page = page if isinstance(page, dict) else {}
        for thread in page.get("data") or []:
            if not isinstance(thread, dict) or not _as_str(thread.get("id")):
                continue
            cwd = _as_str(thread.get("cwd"))
            if cwd and _same_path(cwd, entry.path, canonical):
                matched.append(thread)
                if len(matched) >= limit:
                    return matched
        cursor = page.get("nextCursor") or page.get("next_cursor")
        if not cursor:
            break
    return matched


class SnapshotPublisher:
    """Render scope views and write them as versioned envelopes."""

    def __init__(
        self,
        runner_id: str,
        sessions: SessionManager,
        writer: SnapshotWriter,
        relay: RelayConfig | None = None,
    ):
        self.runner_id = runner_id
        self.sessions = sessions
        self.writer = writer
        self.relay = relay or RelayConfig()
        self._last_ts: dict[str, int] = {}

    def _next_ts(self, scope_key: str) -> int:
        ts = max(now_ms(), self._last_ts.get(scope_key, 0))
        self._last_ts[scope_key] = ts
        return ts

    async def publish(self, scope_key: str, payload: dict[str, Any]) -> Snapshot:
        snapshot = Snapshot(
            scope_key=scope_key,
            runner_id=self.runner_id,
            updated_at=self._next_ts(scope_key),
            payload=payload,
        )
        await self.writer(snapshot)
        logger.debug(f"Published snapshot {scope_key}")
        return snapshot

    async def publish_global(self) -> Snapshot:
        workspaces = [w.to_dict() for w in self.sessions.list_workspaces()]
        return await self.publish(GLOBAL_SCOPE, {"workspaces": workspaces})

    async def publish_workspace(self, workspace_id: str, *, prefetch: bool = True) -> list[dict[str, Any]]:
        limit = self.relay.workspace_thread_limit

        async def _list(session: AgentSession, entry: WorkspaceEntry) -> list[dict[str, Any]]:
            return await list_workspace_threads(session, entry, limit)

        threads = await self.sessions.call(workspace_id, _list)
        summaries = [
            {"id": _as_str(thread.get("id")), "name": thread_display_name(thread, index)}
            for index, thread in enumerate(threads, start=1)
        ]
        await self.publish(workspace_scope(workspace_id), {"workspaceId": workspace_id, "threads": summaries})

        if prefetch:
            for summary in summaries[: self.relay.prefetch_threads]:
                try:
                    await self.publish_thread(workspace_id, summary["id"])
                except Exception as e:
                    logger.warning(f"Thread prefetch {workspace_id}/{summary['id']} failed: {e}")
        return summaries

    async def publish_thread(
        self,
        workspace_id: str,
        thread_id: str,
        resume_response: Any | None = None,
    ) -> dict[str, Any]:
        """Publish a thread snapshot, resuming the thread unless a response is supplied."""
        if resume_response is None:
            async def _resume(session: AgentSession, _entry: WorkspaceEntry) -> Any:
                return await session.resume_thread(thread_id)

            resume_response = await self.sessions.call(workspace_id, _resume)
        thread = extract_thread(resume_response)
        items = build_thread_items(
            thread,
            text_limit=self.relay.thread_text_limit,
            item_limit=self.relay.thread_item_limit,
        )
        await self.publish(
            thread_scope(workspace_id, thread_id),
            {"workspaceId": workspace_id, "threadId": thread_id, "items": items},
        )
        return thread
