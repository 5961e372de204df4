"""Chat correlator - map a chat message to its outstanding agent turn and reply once."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from loguru import logger

from agentrelay.chat.text import format_reply, pending_key, thread_key, working_text
from agentrelay.relay.types import CommandResult
from agentrelay.runtime.base import RuntimeEvent

PENDING_TTL_S = 15 * 60
ANIMATION_INTERVAL_S = 1.2
ANSWERED_MAX = 1000


class ChatApi(Protocol):
    """The chat operations the correlator needs. Best-effort calls return False on failure."""

    async def send_long(self, chat_id: int, text: str, reply_markup: Any = None) -> list[int]: ...

    async def edit_text(self, chat_id: int, message_id: int, text: str, reply_markup: Any = None) -> bool: ...

    async def edit_long(self, chat_id: int, message_id: int, text: str, reply_markup: Any = None) -> None: ...

    async def delete(self, chat_id: int, message_id: int) -> bool: ...


@dataclass
class PendingReply:
    """A working message waiting for its agent turn to finish."""
    chat_id: int
    message_id: int
    workspace_id: str
    thread_id: str
    label: str
    turn_id: str = ""
    created_at: float = field(default_factory=time.monotonic)


class _BoundedSet:
    def __init__(self, max_size: int = ANSWERED_MAX):
        self.max_size = max_size
        self._items: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def add(self, key: str) -> None:
        self._items[key] = None
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)


class ChatCorrelator:
    """
    Own working messages until their agent turn completes.

    An entry is registered under its command id when the message is
    submitted, then re-keyed by `workspace::thread::turn` once the command
    result names the turn. Completion arrives either in the command result
    (assistant text already observed) or later as an `item/completed`
    agent message event, matched by exact turn id first and by thread as a
    fallback. Answered item ids and turns are remembered so a reply is sent
    once; a thread answered from a result stays quiet until `turn/completed`.
    """

    def __init__(
        self,
        api: ChatApi,
        *,
        reply_markup: Any = None,
        completion_markup: Any = None,
        send_completed: bool = False,
        default_chat_id: int | None = None,
        label_for: Callable[[str, str], str] | None = None,
        animation_interval_s: float = ANIMATION_INTERVAL_S,
        ttl_s: float = PENDING_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.reply_markup = reply_markup
        self.completion_markup = completion_markup
        self.send_completed = send_completed
        self.default_chat_id = default_chat_id
        self.label_for = label_for or (lambda _ws, tid: f"Agent {tid}")
        self.animation_interval_s = animation_interval_s
        self.ttl_s = ttl_s
        self._clock = clock
        self.by_command: dict[str, PendingReply] = {}
        self.pending: dict[str, PendingReply] = {}
        self.by_thread: dict[str, str] = {}
        self._animations: dict[int, asyncio.Task] = {}
        self._answered_items = _BoundedSet()
        self._completed_turns = _BoundedSet()
        # Threads answered straight from a command result; their queued
        # agent message events are dropped until the turn completes.
        self._answered_threads: dict[str, float] = {}

    # -- registration -------------------------------------------------------

    def track(self, command_id: str, entry: PendingReply) -> None:
        entry.created_at = self._clock()
        self.by_command[command_id] = entry
        self._start_animation(entry)

    async def discard(self, command_id: str) -> None:
        """Drop a tracked command that will not run (already-handled duplicate)."""
        entry = self.by_command.pop(command_id, None)
        if entry is None:
            return
        self._stop_animation(entry)
        await self.api.delete(entry.chat_id, entry.message_id)

    async def on_result(self, command_id: str, result: CommandResult) -> None:
        entry = self.by_command.pop(command_id, None)
        if entry is None:
            return
        if not result.ok:
            self._stop_animation(entry)
            error = result.payload.get("error") or "failed"
            await self.api.edit_text(entry.chat_id, entry.message_id, f"❌ {error}")
            return
        if result.payload.get("skippedDuplicate"):
            self._stop_animation(entry)
            await self.api.edit_text(entry.chat_id, entry.message_id, "⏭️ Duplicate message skipped.")
            return

        turn_id = str(result.payload.get("turnId") or "")
        assistant_text = str(result.payload.get("assistantText") or "")
        if turn_id:
            entry.turn_id = turn_id
        if assistant_text.strip():
            if turn_id:
                self._completed_turns.add(pending_key(entry.workspace_id, entry.thread_id, turn_id))
            self._answered_threads[thread_key(entry.workspace_id, entry.thread_id)] = self._clock()
            await self._finalize(entry, assistant_text)
            return
        if not turn_id:
            self._stop_animation(entry)
            await self.api.edit_text(entry.chat_id, entry.message_id, "✅ Sent.")
            return

        key = pending_key(entry.workspace_id, entry.thread_id, turn_id)
        self.pending[key] = entry
        self.by_thread[thread_key(entry.workspace_id, entry.thread_id)] = key

    # -- completion ---------------------------------------------------------

    async def on_event(self, event: RuntimeEvent) -> bool:
        """Handle an agent event. Returns True when a chat message was sent."""
        params = event.params
        if event.ends_turn:
            turn = params.get("turn") if isinstance(params.get("turn"), dict) else {}
            thread_id = str(params.get("threadId") or turn.get("threadId") or "")
            self._answered_threads.pop(thread_key(event.workspace_id, thread_id), None)
            return False
        if event.method != "item/completed":
            return False
        item = params.get("item") if isinstance(params.get("item"), dict) else {}
        if item.get("type") != "agentMessage":
            return False

        workspace_id = event.workspace_id
        thread_id = str(params.get("threadId") or params.get("thread_id") or "")
        item_id = str(item.get("id") or "")
        text = str(item.get("text") or "")
        turn_id = str(item.get("turnId") or item.get("turn_id") or params.get("turnId") or "")

        if item_id:
            if item_id in self._answered_items:
                return False
            self._answered_items.add(item_id)

        if turn_id:
            key = pending_key(workspace_id, thread_id, turn_id)
            if key in self._completed_turns:
                return False
            entry = self.pending.pop(key, None)
            if entry is not None:
                self.by_thread.pop(thread_key(workspace_id, thread_id), None)
                self._completed_turns.add(key)
                await self._finalize(entry, text)
                return True

        tkey = thread_key(workspace_id, thread_id)
        key = self.by_thread.pop(tkey, None)
        entry = self.pending.pop(key, None) if key else None
        if entry is not None:
            self._completed_turns.add(key)
            await self._finalize(entry, text)
            return True

        if tkey in self._answered_threads:
            return False

        if self.send_completed and self.default_chat_id is not None:
            label = self.label_for(workspace_id, thread_id)
            body = format_reply(label, text) if text.strip() else (
                f"✅ Agent completed.\n\n➡️ Next messages will go to:\n{label}"
            )
            await self.api.send_long(self.default_chat_id, body, self.completion_markup)
            return True
        return False

    async def _finalize(self, entry: PendingReply, text: str) -> None:
        self._stop_animation(entry)
        reply = format_reply(entry.label, text)
        if await self.api.delete(entry.chat_id, entry.message_id):
            await self.api.send_long(entry.chat_id, reply, self.reply_markup)
        else:
            await self.api.edit_long(entry.chat_id, entry.message_id, reply, self.reply_markup)
        logger.info(f"Replied in chat {entry.chat_id} for {entry.workspace_id}/{entry.thread_id}")

    # -- animation ----------------------------------------------------------

    def _start_animation(self, entry: PendingReply) -> None:
        if self.animation_interval_s <= 0:
            return

        async def _animate() -> None:
            frame = 0
            while True:
                await asyncio.sleep(self.animation_interval_s)
                ok = await self.api.edit_text(entry.chat_id, entry.message_id, working_text(entry.label, frame))
                if not ok:
                    break
                frame += 1

        self._animations[entry.message_id] = asyncio.create_task(_animate())

    def _stop_animation(self, entry: PendingReply) -> None:
        task = self._animations.pop(entry.message_id, None)
        if task is not None:
            task.cancel()

    # -- housekeeping -------------------------------------------------------

    def expire(self) -> int:
        """Drop entries older than the TTL and stop their animations."""
        cutoff = self._clock() - self.ttl_s
        expired = 0
        for table in (self.by_command, self.pending):
            for key, entry in list(table.items()):
                if entry.created_at < cutoff:
                    table.pop(key, None)
                    self._stop_animation(entry)
                    expired += 1
        valid = set(self.pending)
        for tkey, key in list(self.by_thread.items()):
            if key not in valid:
                self.by_thread.pop(tkey, None)
        for tkey, answered_at in list(self._answered_threads.items()):
            if answered_at < cutoff:
                self._answered_threads.pop(tkey, None)
        return expired

    def close(self) -> None:
        for task in self._animations.values():
            task.cancel()
        self._animations.clear()
