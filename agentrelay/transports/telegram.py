"""Chat-bot binding: Telegram long polling via python-telegram-bot."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup
from telegram.constants import ChatAction
from telegram.error import TelegramError

from agentrelay.chat.correlator import ChatCorrelator, PendingReply
from agentrelay.chat.text import (
    compute_pairing_code,
    normalize_status_label,
    normalize_text_preview,
    split_text,
    thread_key,
    thread_token_for,
    workspace_token_for,
    working_text,
)
from agentrelay.config.loader import load_config, save_config
from agentrelay.relay.errors import RelayError, TransportError
from agentrelay.relay.ledger import LocalResultStore, ResultStore
from agentrelay.relay.snapshots import assistant_text_for_turn, extract_thread, list_workspace_threads
from agentrelay.relay.types import Command, CommandResult, RunnerPresence, Snapshot
from agentrelay.runtime.base import RuntimeEvent
from agentrelay.runtime.manager import SessionManager
from agentrelay.transports.base import RelayTransport
from agentrelay.utils.helpers import get_data_path, now_ms

APP_NAME = "agentrelay"
ALLOWED_UPDATES = ["message", "edited_message", "callback_query"]
TOKEN_TTL_S = 10 * 60
STATUS_MAX_THREADS = 7
STATUS_LIST_ATTEMPTS = 3
STATUS_RETRY_DELAY_S = 0.95
STATUS_THREAD_FETCH = 40
EDIT_FALLBACK_TEXT = "✅ Done. (see reply below)"

NOT_LINKED_HINT = (
    f"Not linked yet. Run `{APP_NAME} status` on the runner to see the pairing code "
    "and send the /link code to this bot."
)


def main_reply_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [[KeyboardButton("📊 Status"), KeyboardButton("🔌 Disconnect")]],
        resize_keyboard=True,
    )


def connected_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [[
            InlineKeyboardButton("📊 Status", callback_data="status:refresh"),
            InlineKeyboardButton("🔌 Disconnect", callback_data="disconnect"),
        ]]
    )


def status_keyboard(buttons: list[tuple[str, str]]) -> InlineKeyboardMarkup:
    rows = [[InlineKeyboardButton(label, callback_data=data)] for label, data in buttons]
    rows.append([
        InlineKeyboardButton("🔄 Refresh", callback_data="status:refresh"),
        InlineKeyboardButton("🔌 Disconnect", callback_data="disconnect"),
    ])
    return InlineKeyboardMarkup(rows)


def status_label(thread: dict[str, Any]) -> str:
    """Preview, then title or name, then `Agent <id>`, cut for a button."""
    preview = str(thread.get("preview") or "").strip()
    title = str(thread.get("title") or thread.get("name") or "").strip()
    return normalize_status_label(preview or title or f"Agent {thread.get('id')}")


@dataclass
class ThreadSelection:
    workspace_id: str
    thread_id: str
    label: str


class TelegramApi:
    """
    Thin best-effort wrapper over `telegram.Bot`.

    Message operations log and report failure instead of raising, because a
    rejected edit or delete must never abort the relay cycle.
    """

    def __init__(self, bot: Any, token: str = ""):
        self.bot = bot
        self.token = token

    async def send_message(self, chat_id: int, text: str, reply_markup: Any = None) -> int | None:
        try:
            message = await self.bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup)
        except TelegramError as e:
            logger.warning(f"Telegram send to {chat_id} failed: {e}")
            return None
        return message.message_id

    async def send_long(self, chat_id: int, text: str, reply_markup: Any = None) -> list[int]:
        """Send in chunks; the keyboard goes on the last chunk only."""
        chunks = split_text(text)
        sent: list[int] = []
        for index, chunk in enumerate(chunks):
            markup = reply_markup if index == len(chunks) - 1 else None
            message_id = await self.send_message(chat_id, chunk, markup)
            if message_id is not None:
                sent.append(message_id)
        return sent

    async def edit_text(self, chat_id: int, message_id: int, text: str, reply_markup: Any = None) -> bool:
        try:
            await self.bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=reply_markup,
            )
        except TelegramError as e:
            logger.debug(f"Telegram edit of {chat_id}/{message_id} rejected: {e}")
            return False
        return True

    async def edit_long(self, chat_id: int, message_id: int, text: str, reply_markup: Any = None) -> None:
        """Edit the first chunk in place and send the rest as new messages."""
        chunks = split_text(text)
        first_markup = reply_markup if len(chunks) == 1 else None
        if not await self.edit_text(chat_id, message_id, chunks[0], first_markup):
            await self.edit_text(chat_id, message_id, EDIT_FALLBACK_TEXT)
            await self.send_long(chat_id, text, reply_markup)
            return
        if len(chunks) > 1:
            await self.send_long(chat_id, "\n".join(chunks[1:]), reply_markup)

    async def delete(self, chat_id: int, message_id: int) -> bool:
        try:
            return bool(await self.bot.delete_message(chat_id=chat_id, message_id=message_id))
        except TelegramError as e:
            logger.debug(f"Telegram delete of {chat_id}/{message_id} failed: {e}")
            return False

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        try:
            await self.bot.answer_callback_query(callback_query_id=callback_id, text=text)
        except TelegramError as e:
            logger.debug(f"Answering callback {callback_id} failed: {e}")

    async def typing(self, chat_id: int) -> None:
        try:
            await self.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
        except TelegramError as e:
            logger.debug(f"Typing indicator for {chat_id} failed: {e}")

    async def file_url(self, file_id: str) -> str | None:
        try:
            tg_file = await self.bot.get_file(file_id)
        except TelegramError as e:
            logger.warning(f"Resolving Telegram file {file_id} failed: {e}")
            return None
        path = str(getattr(tg_file, "file_path", "") or "")
        if not path:
            return None
        if path.startswith("http"):
            return path
        return f"https://api.telegram.org/file/bot{self.token}/{path}"


def persist_link(config_path: Path | None, user_id: int, chat_id: int) -> None:
    """Add a linked user to the saved config; the first linked chat becomes the default."""
    config = load_config(config_path)
    if user_id not in config.telegram.allowed_user_ids:
        config.telegram.allowed_user_ids.append(user_id)
    if config.telegram.default_chat_id is None:
        config.telegram.default_chat_id = chat_id
    save_config(config, config_path)


class TelegramTransport(RelayTransport):
    """
    Turn chat messages into `sendUserMessage` commands for the selected agent.

    Control commands (/link, /status, /disconnect and button callbacks) are
    answered inline while polling and never reach the relay loop. A plain
    message gets a "Working…" reply that the chat correlator owns until the
    agent turn completes.
    """

    name = "telegram"
    supports_push_events = True

    def __init__(
        self,
        config: Any,
        sessions: SessionManager,
        *,
        bot: Any = None,
        results: ResultStore | None = None,
        on_link: Callable[[int, int], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        animation_interval_s: float | None = None,
    ):
        tg = config.telegram
        self.token = tg.token
        self.sessions = sessions
        self.bot = bot or Bot(tg.token)
        self.api = TelegramApi(self.bot, tg.token)
        self._results = results or LocalResultStore(get_data_path() / "ledger" / "telegram.json")
        self._on_link = on_link
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self.timeout_s = config.relay.transport_timeout_s
        self.runner_name = config.runner.name
        self.access_mode = config.agent.default_access_mode

        self.allowed_user_ids: set[int] = set(tg.allowed_user_ids)
        self.default_chat_id: int | None = tg.default_chat_id
        self.send_app_status = tg.send_app_status
        self.pairing_code = compute_pairing_code(tg.pairing_secret)

        self.offset: int | None = None
        self.selections: dict[int, ThreadSelection] = {}
        self.status_tokens: dict[str, tuple[ThreadSelection, float]] = {}
        self.known_labels: dict[str, str] = {}
        self.running_threads: set[str] = set()

        correlator_kwargs: dict[str, Any] = {}
        if animation_interval_s is not None:
            correlator_kwargs["animation_interval_s"] = animation_interval_s
        self.correlator = ChatCorrelator(
            self.api,
            reply_markup=main_reply_keyboard(),
            completion_markup=connected_keyboard(),
            send_completed=tg.send_completed,
            default_chat_id=tg.default_chat_id,
            label_for=self._label_for,
            clock=clock,
            **correlator_kwargs,
        )

    @property
    def results(self) -> ResultStore:
        return self._results

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        try:
            await asyncio.wait_for(self.bot.initialize(), timeout=self.timeout_s)
            me = await asyncio.wait_for(self.bot.get_me(), timeout=self.timeout_s)
        except (TelegramError, asyncio.TimeoutError) as e:
            raise TransportError(f"Telegram bot login failed: {e}") from e
        logger.info(f"Telegram bot @{getattr(me, 'username', '?')} connected")
        await self._app_status(f"✅ {APP_NAME} on {self.runner_name} started.")

    async def close(self) -> None:
        await self._app_status(f"🛑 {APP_NAME} on {self.runner_name} stopped.")
        self.correlator.close()
        try:
            await self.bot.shutdown()
        except TelegramError as e:
            logger.warning(f"Telegram shutdown failed: {e}")

    async def _app_status(self, text: str) -> None:
        if self.send_app_status and self.default_chat_id is not None:
            await self.api.send_message(self.default_chat_id, text, main_reply_keyboard())

    def reconfigure(self, config: Any) -> None:
        tg = config.telegram
        self.allowed_user_ids = set(tg.allowed_user_ids)
        self.default_chat_id = tg.default_chat_id
        self.send_app_status = tg.send_app_status
        self.pairing_code = compute_pairing_code(tg.pairing_secret)
        self.access_mode = config.agent.default_access_mode
        self.correlator.send_completed = tg.send_completed
        self.correlator.default_chat_id = tg.default_chat_id

    # -- polling ------------------------------------------------------------

    async def poll_commands(self) -> list[Command]:
        try:
            updates = await asyncio.wait_for(
                self.bot.get_updates(offset=self.offset, timeout=0, allowed_updates=ALLOWED_UPDATES),
                timeout=self.timeout_s,
            )
        except (TelegramError, asyncio.TimeoutError) as e:
            raise TransportError(f"Telegram getUpdates failed: {e}") from e

        commands: list[Command] = []
        for update in updates:
            self.offset = update.update_id + 1
            if update.callback_query is not None:
                await self._handle_callback(update.callback_query)
                continue
            message = update.message or update.edited_message
            if message is None:
                continue
            command = await self._handle_message(update.update_id, message)
            if command is not None:
                commands.append(command)
        return commands

    async def _handle_message(self, update_id: int, message: Any) -> Command | None:
        chat_id = message.chat_id
        user = message.from_user
        user_id = user.id if user is not None else None
        text = (message.text or message.caption or "").strip()

        # Pairing is accepted from anyone holding the code.
        if text.startswith("/link "):
            await self._link(user_id, chat_id, text[len("/link "):].strip())
            return None

        if user_id is None:
            return None
        if user_id not in self.allowed_user_ids:
            await self.api.send_message(chat_id, NOT_LINKED_HINT)
            return None

        if text in ("/start", "/help"):
            await self.api.send_message(chat_id, self._help_text(), main_reply_keyboard())
            return None
        if text == "/status" or text.lower() == "status" or text == "📊 Status":
            await self.send_status(chat_id)
            return None
        if text == "/disconnect" or text == "🔌 Disconnect":
            self.selections.pop(chat_id, None)
            await self.api.send_message(chat_id, "🔌 Disconnected. Use /status to pick an agent.", main_reply_keyboard())
            return None

        selection = self.selections.get(chat_id)
        if selection is None:
            await self.api.send_message(chat_id, "Pick an agent first: /status", main_reply_keyboard())
            return None

        await self.api.typing(chat_id)
        working_id = await self.api.send_message(chat_id, working_text(selection.label), main_reply_keyboard())

        images: list[str] = []
        if message.photo:
            best = max(message.photo, key=lambda p: p.file_size or 0)
            url = await self.api.file_url(best.file_id)
            if url:
                images.append(url)

        command = Command(
            command_id=f"telegram-{update_id}",
            type="sendUserMessage",
            args={
                "workspaceId": selection.workspace_id,
                "threadId": selection.thread_id,
                "text": text,
                "images": images,
                "accessMode": self.access_mode,
            },
            client_id=f"telegram:{chat_id}",
            created_at=now_ms(),
        )
        if working_id is not None:
            self.correlator.track(
                command.command_id,
                PendingReply(
                    chat_id=chat_id,
                    message_id=working_id,
                    workspace_id=selection.workspace_id,
                    thread_id=selection.thread_id,
                    label=selection.label,
                ),
            )
        logger.debug(f"Telegram message from chat {chat_id} queued as {command.command_id}")
        return command

    def _help_text(self) -> str:
        return (
            f"🤖 {APP_NAME} Telegram control\n\n"
            "Commands:\n/status - pick an agent\n/disconnect - detach\n\n"
            f"If you haven't linked yet, send:\n/link {self.pairing_code}"
        )

    async def _link(self, user_id: int | None, chat_id: int, code: str) -> None:
        if code != self.pairing_code:
            await self.api.send_message(chat_id, "Invalid link code.")
            return
        if user_id is None:
            await self.api.send_message(chat_id, "Failed to link: missing user id.")
            return
        self.allowed_user_ids.add(user_id)
        if self.default_chat_id is None:
            self.default_chat_id = chat_id
            self.correlator.default_chat_id = chat_id
        if self._on_link is not None:
            try:
                self._on_link(user_id, chat_id)
            except (OSError, ValueError) as e:
                logger.error(f"Saving Telegram link for user {user_id} failed: {e}")
        logger.info(f"Telegram user {user_id} linked from chat {chat_id}")
        await self.api.send_message(chat_id, "✅ Linked. Use /status to pick an agent.", main_reply_keyboard())

    # -- callbacks ----------------------------------------------------------

    async def _handle_callback(self, callback: Any) -> None:
        user = callback.from_user
        message = callback.message
        data = callback.data or ""
        if user is None or message is None:
            await self.api.answer_callback(callback.id)
            return
        chat_id = message.chat_id
        message_id = message.message_id
        if user.id not in self.allowed_user_ids:
            await self.api.answer_callback(callback.id, "Not authorized.")
            return

        if data == "disconnect":
            self.selections.pop(chat_id, None)
            await self.api.edit_text(chat_id, message_id, "🔌 Disconnected. Use /status to pick an agent.")
            await self.api.send_message(chat_id, "Use the buttons below to continue.", main_reply_keyboard())
            await self.api.answer_callback(callback.id, "Disconnected.")
            return

        if data == "status:refresh":
            await self.api.answer_callback(callback.id, "Refreshing…")
            await self.send_status(chat_id)
            return

        if data.startswith("select:"):
            selection = self._lookup_token(data[len("select:"):])
            if selection is None:
                await self.api.answer_callback(callback.id, "Selection expired. Use /status again.")
                return
            await self._select(chat_id, message_id, selection)
            await self.api.answer_callback(callback.id, "Connected.")
            return

        if data.startswith("new:"):
            selection = self._lookup_token(data[len("new:"):])
            if selection is None:
                await self.api.answer_callback(callback.id, "Selection expired. Use /status again.")
                return
            await self._start_new(chat_id, message_id, selection.workspace_id)
            await self.api.answer_callback(callback.id)
            return

        await self.api.answer_callback(callback.id)

    async def _select(self, chat_id: int, message_id: int, selection: ThreadSelection) -> None:
        self.known_labels[thread_key(selection.workspace_id, selection.thread_id)] = selection.label
        self.selections[chat_id] = selection
        await self.api.edit_text(
            chat_id,
            message_id,
            f"✅ Connected. Send messages now.\n\nAgent: {selection.label}",
            connected_keyboard(),
        )
        preview = await self._last_reply(selection)
        if preview:
            await self.api.send_message(
                chat_id,
                f"🧠 Last reply:\n{normalize_text_preview(preview)}",
                main_reply_keyboard(),
            )

    async def _last_reply(self, selection: ThreadSelection) -> str:
        try:
            response = await self.sessions.call(
                selection.workspace_id,
                lambda session, _entry: session.resume_thread(selection.thread_id),
            )
        except RelayError as e:
            logger.warning(f"Fetching last reply for {selection.thread_id} failed: {e}")
            return ""
        return assistant_text_for_turn(extract_thread(response), None)

    async def _start_new(self, chat_id: int, message_id: int, workspace_id: str) -> None:
        try:
            response = await self.sessions.call(
                workspace_id,
                lambda session, entry: session.start_thread(entry.path),
            )
        except RelayError as e:
            await self.api.edit_text(chat_id, message_id, f"Failed to start thread: {e}")
            return
        thread_id = str(extract_thread(response).get("id") or "")
        if not thread_id:
            await self.api.edit_text(chat_id, message_id, "Failed to start thread: no thread id returned")
            return

        selection = ThreadSelection(workspace_id, thread_id, "New agent")
        self.known_labels[thread_key(workspace_id, thread_id)] = selection.label
        self.selections[chat_id] = selection
        await self.api.edit_text(
            chat_id,
            message_id,
            f"🆕 New agent started.\n\nAgent: {selection.label}",
            connected_keyboard(),
        )
        await self.api.send_message(chat_id, "Send a message to start.", main_reply_keyboard())

    # -- status -------------------------------------------------------------

    def _issue_token(self, token: str, selection: ThreadSelection) -> str:
        self.status_tokens[token] = (selection, self._clock() + TOKEN_TTL_S)
        return token

    def _lookup_token(self, token: str) -> ThreadSelection | None:
        entry = self.status_tokens.get(token)
        if entry is None:
            return None
        selection, expires_at = entry
        if expires_at <= self._clock():
            self.status_tokens.pop(token, None)
            return None
        return selection

    async def _list_threads(self, workspace_id: str) -> tuple[list[dict[str, Any]], str | None]:
        """List threads, retrying briefly while a freshly spawned runtime reports none."""
        threads: list[dict[str, Any]] = []
        error: str | None = None
        for attempt in range(STATUS_LIST_ATTEMPTS):
            try:
                threads = await self.sessions.call(
                    workspace_id,
                    lambda session, entry: list_workspace_threads(session, entry, limit=STATUS_THREAD_FETCH),
                )
                error = None
            except RelayError as e:
                error = str(e)
            if threads:
                break
            if attempt < STATUS_LIST_ATTEMPTS - 1:
                await self._sleep(STATUS_RETRY_DELAY_S)
        return threads, error

    async def send_status(self, chat_id: int) -> None:
        workspaces = [w for w in self.sessions.list_workspaces() if w.kind == "main"]
        if not workspaces:
            await self.api.send_message(chat_id, "No workspaces yet.", main_reply_keyboard())
            return

        lines: list[str] = []
        buttons: list[tuple[str, str]] = []
        for workspace in workspaces:
            lines.append(f"#{workspace.name}")
            try:
                await self.sessions.ensure_connected(workspace.id)
            except RelayError as e:
                lines.append(f"  (failed to connect: {e})")
                continue

            threads, error = await self._list_threads(workspace.id)
            shown = threads[:STATUS_MAX_THREADS]
            if not threads:
                if error:
                    lines.append(f"  (failed to list threads: {error})")
                else:
                    lines.append("  (no threads yet, try /status again in a moment)")
            for thread in shown:
                icon = "🔵" if thread_key(workspace.id, str(thread["id"])) in self.running_threads else "🟢"
                lines.append(f"  {icon} {status_label(thread)}")
            if len(threads) > STATUS_MAX_THREADS:
                lines.append(f"  … {len(threads) - STATUS_MAX_THREADS} more")

            wtok = self._issue_token(workspace_token_for(workspace.id), ThreadSelection(workspace.id, "", workspace.name))
            buttons.append((f"➕ New agent · {workspace.name}", f"new:{wtok}"))
            for thread in shown:
                thread_id = str(thread["id"])
                label = status_label(thread)
                self.known_labels[thread_key(workspace.id, thread_id)] = label
                ttok = self._issue_token(thread_token_for(workspace.id, thread_id), ThreadSelection(workspace.id, thread_id, label))
                buttons.append((label, f"select:{ttok}"))

        header = f"📊 {APP_NAME} status"
        if self.default_chat_id == chat_id:
            header += " (notifications target)"
        body = "\n".join(lines) if lines else "No workspaces."
        await self.api.send_long(chat_id, f"{header}\n\n{body}", status_keyboard(buttons))

    def _label_for(self, workspace_id: str, thread_id: str) -> str:
        return self.known_labels.get(thread_key(workspace_id, thread_id)) or f"Agent {thread_id}"

    # -- relay contract -----------------------------------------------------

    async def finish_command(self, command: Command, result: CommandResult | None, duplicate: bool = False) -> None:
        if duplicate or result is None:
            await self.correlator.discard(command.command_id)
            return
        await self.correlator.on_result(command.command_id, result)

    async def write_snapshot(self, snapshot: Snapshot) -> None:
        # Chat clients read state through /status, not snapshots.
        return None

    async def write_presence(self, presence: RunnerPresence) -> None:
        return None

    async def handle_event(self, event: RuntimeEvent) -> None:
        params = event.params
        turn = params.get("turn") if isinstance(params.get("turn"), dict) else {}
        thread_id = str(params.get("threadId") or turn.get("threadId") or "")
        if thread_id and event.method == "turn/started":
            self.running_threads.add(thread_key(event.workspace_id, thread_id))
        elif thread_id and event.ends_turn:
            self.running_threads.discard(thread_key(event.workspace_id, thread_id))
        await self.correlator.on_event(event)

    async def housekeeping(self, now_ms: int) -> None:
        now = self._clock()
        for token, (_selection, expires_at) in list(self.status_tokens.items()):
            if expires_at <= now:
                self.status_tokens.pop(token, None)
        expired = self.correlator.expire()
        if expired:
            logger.debug(f"Dropped {expired} stale pending Telegram replies")


def create_telegram_transport(
    config: Any,
    sessions: SessionManager,
    config_path: Path | None = None,
) -> TelegramTransport:
    return TelegramTransport(
        config,
        sessions,
        results=LocalResultStore(
            get_data_path() / "ledger" / "telegram.json",
            max_entries=config.relay.ledger_max_entries,
            timeout_s=config.relay.transport_timeout_s,
        ),
        on_link=lambda user_id, chat_id: persist_link(config_path, user_id, chat_id),
    )
