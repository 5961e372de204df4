"""Command executor: one typed command in, one CommandResult out."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from agentrelay.config.schema import AgentConfig, RelayConfig, WorkspaceEntry
from agentrelay.relay.errors import AgentRuntimeError, RelayError
from agentrelay.relay.snapshots import SnapshotPublisher, assistant_text_for_turn
from agentrelay.relay.types import Command, CommandResult
from agentrelay.runtime.base import AgentSession
from agentrelay.runtime.manager import SessionManager

Sleep = Callable[[float], Awaitable[None]]


def _require(args: dict[str, Any], *names: str) -> str:
    """First non-empty string among names, else `missing <first name>`."""
    for name in names:
        value = args.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise AgentRuntimeError(f"missing {names[0]}")


def access_policies(access_mode: str | None, workspace_path: str) -> tuple[str, dict[str, Any]]:
    """Translate an access mode into (approval policy, sandbox policy)."""
    if access_mode == "full-access":
        return "never", {"type": "dangerFullAccess"}
    if access_mode == "read-only":
        return "on-request", {"type": "readOnly"}
    return "on-request", {
        "type": "workspaceWrite",
        "writableRoots": [workspace_path],
        "networkAccess": True,
    }


def build_turn_input(text: str, images: Any = None) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    if text.strip():
        items.append({"type": "text", "text": text.strip()})
    for image in images if isinstance(images, list) else []:
        if not isinstance(image, str) or not image.strip():
            continue
        ref = image.strip()
        if ref.startswith(("data:", "http://", "https://")):
            items.append({"type": "image", "url": ref})
        else:
            items.append({"type": "localImage", "path": ref})
    return items


def _nested_id(response: Any, key: str) -> str | None:
    if not isinstance(response, dict):
        return None
    inner = response.get(key)
    if isinstance(inner, dict) and inner.get("id"):
        return str(inner["id"])
    return None


class CommandExecutor:
    """Dispatch commands to the agent runtime and publish the affected scopes."""

    def __init__(
        self,
        sessions: SessionManager,
        publisher: SnapshotPublisher,
        *,
        relay: RelayConfig | None = None,
        agent: AgentConfig | None = None,
        sleep: Sleep | None = None,
    ):
        self.sessions = sessions
        self.publisher = publisher
        self.relay = relay or RelayConfig()
        self.agent = agent or AgentConfig()
        self._sleep = sleep or asyncio.sleep
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "ping": self._ping,
            "listWorkspaces": self._list_workspaces,
            "connectWorkspace": self._connect_workspace,
            "listThreads": self._list_threads,
            "startThread": self._start_thread,
            "resumeThread": self._resume_thread,
            "sendUserMessage": self._send_user_message,
            "interruptTurn": self._interrupt_turn,
            "archiveThread": self._archive_thread,
        }

    @property
    def supported_types(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, command: Command) -> CommandResult:
        """Run one command. Failures become ok=False results, never exceptions."""
        handler = self._handlers.get(command.type)
        if handler is None:
            return CommandResult.failure(command.command_id, f"Unsupported command type: {command.type}")
        try:
            payload = await handler(command.args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Command {command.command_id} ({command.type}) failed: {e}")
            return CommandResult.failure(command.command_id, str(e) or e.__class__.__name__)
        return CommandResult.success(command.command_id, payload)

    async def _call(self, workspace_id: str, fn: Callable[[AgentSession, WorkspaceEntry], Awaitable[Any]]) -> Any:
        return await self.sessions.call(workspace_id, fn)

    @staticmethod
    async def _publish_quietly(publish: Awaitable[Any]) -> None:
        try:
            await publish
        except RelayError as e:
            logger.warning(f"Snapshot publish skipped: {e}")

    async def _ping(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True}

    async def _list_workspaces(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"workspaces": [w.to_dict() for w in self.sessions.list_workspaces()]}

    async def _connect_workspace(self, args: dict[str, Any]) -> dict[str, Any]:
        workspace_id = _require(args, "workspaceId", "id")
        await self.sessions.ensure_connected(workspace_id)
        await self._publish_quietly(self.publisher.publish_global())
        await self._publish_quietly(self.publisher.publish_workspace(workspace_id))
        return {"connected": True}

    async def _list_threads(self, args: dict[str, Any]) -> dict[str, Any]:
        workspace_id = _require(args, "workspaceId")
        cursor = args.get("cursor")
        limit = args.get("limit")

        async def _list(session: AgentSession, _entry: WorkspaceEntry) -> Any:
            return await session.list_threads(cursor=cursor, limit=limit)

        page = await self._call(workspace_id, _list)
        return page if isinstance(page, dict) else {"data": page}

    async def _start_thread(self, args: dict[str, Any]) -> dict[str, Any]:
        workspace_id = _require(args, "workspaceId")

        async def _start(session: AgentSession, entry: WorkspaceEntry) -> Any:
            return await session.start_thread(entry.path, "on-request")

        response = await self._call(workspace_id, _start)
        thread_id = _nested_id(response, "thread")
        if not thread_id:
            raise AgentRuntimeError("thread/start did not return a thread id")
        await self._publish_quietly(self.publisher.publish_workspace(workspace_id, prefetch=False))
        return {"threadId": thread_id}

    async def _resume_thread(self, args: dict[str, Any]) -> dict[str, Any]:
        workspace_id = _require(args, "workspaceId")
        thread_id = _require(args, "threadId")
        thread = await self.publisher.publish_thread(workspace_id, thread_id)
        return {"threadId": thread_id, "resumed": True, "preview": thread.get("preview")}

    async def _send_user_message(self, args: dict[str, Any]) -> dict[str, Any]:
        workspace_id = _require(args, "workspaceId")
        thread_id = _require(args, "threadId")
        text = args.get("text") if isinstance(args.get("text"), str) else ""
        turn_input = build_turn_input(text, args.get("images"))
        if not turn_input:
            raise AgentRuntimeError("empty user message")
        access_mode = args.get("accessMode") or self.agent.default_access_mode
        model = args.get("model")
        effort = args.get("effort")

        async def _submit(session: AgentSession, entry: WorkspaceEntry) -> Any:
            approval, sandbox = access_policies(access_mode, entry.path)
            return await session.start_turn(
                thread_id,
                turn_input,
                cwd=entry.path,
                approval_policy=approval,
                sandbox_policy=sandbox,
                model=model,
                effort=effort,
            )

        response = await self._call(workspace_id, _submit)
        turn_id = _nested_id(response, "turn")
        logger.info(f"Turn submitted to {workspace_id}/{thread_id} (turn {turn_id or '?'})")

        assistant_text = ""
        for _attempt in range(self.relay.reply_poll_attempts):
            await self._sleep(self.relay.reply_poll_interval_s)
            try:
                thread = await self.publisher.publish_thread(workspace_id, thread_id)
            except RelayError as e:
                logger.warning(f"Reply poll for {thread_id} failed: {e}")
                continue
            assistant_text = assistant_text_for_turn(thread, turn_id)
            if assistant_text:
                break
        return {"submitted": True, "turnId": turn_id, "assistantText": assistant_text}

    async def _interrupt_turn(self, args: dict[str, Any]) -> dict[str, Any]:
        workspace_id = _require(args, "workspaceId")
        thread_id = _require(args, "threadId")
        turn_id = _require(args, "turnId")

        async def _interrupt(session: AgentSession, _entry: WorkspaceEntry) -> Any:
            return await session.interrupt_turn(thread_id, turn_id)

        await self._call(workspace_id, _interrupt)
        return {"interrupted": True}

    async def _archive_thread(self, args: dict[str, Any]) -> dict[str, Any]:
        workspace_id = _require(args, "workspaceId")
        thread_id = _require(args, "threadId")

        async def _archive(session: AgentSession, _entry: WorkspaceEntry) -> Any:
            return await session.archive_thread(thread_id)

        await self._call(workspace_id, _archive)
        await self._publish_quietly(self.publisher.publish_workspace(workspace_id, prefetch=False))
        return {"archived": True}
