from pathlib import Path
from types import SimpleNamespace

import pytest
from telegram.error import NetworkError

from agentrelay.chat.text import compute_pairing_code, thread_token_for
from agentrelay.config.schema import Config, RunnerConfig, TelegramConfig, WorkspaceEntry
from agentrelay.relay.errors import TransportError
from agentrelay.relay.ledger import LocalResultStore
from agentrelay.relay.types import CommandResult
from agentrelay.runtime.base import AgentSession, RuntimeEvent
from agentrelay.runtime.manager import SessionManager
from agentrelay.transports.telegram import NOT_LINKED_HINT, TelegramApi, TelegramTransport

SECRET = "pairing-secret"


class _FakeBot:
    def __init__(self) -> None:
        self.updates: list[SimpleNamespace] = []
        self.sent: list[dict] = []
        self.edits: list[dict] = []
        self.deleted: list[int] = []
        self.answers: list[tuple[str, str | None]] = []
        self.get_updates_calls: list[dict] = []
        self.fail_edits = False
        self.fail_updates = False
        self._next_id = 100

    async def initialize(self):
        return None

    async def get_me(self):
        return SimpleNamespace(username="relay_bot")

    async def shutdown(self):
        return None

    async def get_updates(self, **kwargs):
        self.get_updates_calls.append(kwargs)
        if self.fail_updates:
            raise NetworkError("offline")
        updates, self.updates = self.updates, []
        return updates

    async def send_message(self, chat_id, text, reply_markup=None):
        self._next_id += 1
        self.sent.append({"chat_id": chat_id, "text": text, "message_id": self._next_id})
        return SimpleNamespace(message_id=self._next_id)

    async def edit_message_text(self, text, chat_id, message_id, reply_markup=None):
        if self.fail_edits:
            raise NetworkError("message is not modified")
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text})

    async def delete_message(self, chat_id, message_id):
        self.deleted.append(message_id)
        return True

    async def answer_callback_query(self, callback_query_id, text=None):
        self.answers.append((callback_query_id, text))

    async def send_chat_action(self, chat_id, action):
        return True

    async def get_file(self, file_id):
        return SimpleNamespace(file_path=f"photos/{file_id}.jpg")

    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent]


class _FakeSession(AgentSession):
    def __init__(self, cwd: str) -> None:
        self.threads = [
            {"id": "t1", "cwd": cwd, "preview": "Fix the build"},
            {"id": "t2", "cwd": cwd, "preview": ""},
            {"id": "elsewhere", "cwd": "/other/repo", "preview": "Not ours"},
        ]

    async def request(self, method, params=None):
        if method == "thread/list":
            return {"data": self.threads, "nextCursor": None}
        if method == "thread/resume":
            return {"thread": {"id": params["threadId"], "turns": [
                {"id": "u1", "items": [{"type": "agentMessage", "text": "All tests pass."}]},
            ]}}
        if method == "thread/start":
            return {"thread": {"id": "t-new"}}
        return {}

    def is_alive(self) -> bool:
        return True

    async def close(self) -> None:
        pass


def _message(update_id: int, text: str, user_id: int = 7, chat_id: int = 70, photo=None) -> SimpleNamespace:
    message = SimpleNamespace(
        chat_id=chat_id,
        from_user=SimpleNamespace(id=user_id),
        text=text,
        caption=None,
        photo=photo or [],
    )
    return SimpleNamespace(update_id=update_id, message=message, edited_message=None, callback_query=None)


def _callback(update_id: int, data: str, user_id: int = 7, chat_id: int = 70, message_id: int = 5) -> SimpleNamespace:
    callback = SimpleNamespace(
        id=f"cb{update_id}",
        from_user=SimpleNamespace(id=user_id),
        message=SimpleNamespace(chat_id=chat_id, message_id=message_id),
        data=data,
    )
    return SimpleNamespace(update_id=update_id, message=None, edited_message=None, callback_query=callback)


class _Harness:
    def __init__(self, tmp_path: Path, allowed: list[int] | None = None) -> None:
        self.config = Config(
            runner=RunnerConfig(runner_id="runner-1", name="laptop", platform="linux"),
            workspaces=[WorkspaceEntry(id="ws1", name="Repo", path=str(tmp_path))],
            telegram=TelegramConfig(
                enabled=True,
                token="123:abc",
                allowed_user_ids=allowed if allowed is not None else [7],
                pairing_secret=SECRET,
            ),
        )
        self.bot = _FakeBot()
        self.session = _FakeSession(str(tmp_path))
        self.links: list[tuple[int, int]] = []
        self.sleeps: list[float] = []

        async def factory(_entry, _on_event):
            return self.session

        async def no_sleep(delay):
            self.sleeps.append(delay)

        self.sessions = SessionManager(self.config.workspaces, session_factory=factory)
        self.transport = TelegramTransport(
            self.config,
            self.sessions,
            bot=self.bot,
            results=LocalResultStore(tmp_path / "ledger.json"),
            on_link=lambda user_id, chat_id: self.links.append((user_id, chat_id)),
            sleep=no_sleep,
            animation_interval_s=0,
        )

    async def poll(self, *updates):
        self.bot.updates = list(updates)
        return await self.transport.poll_commands()


async def test_link_with_pairing_code(tmp_path: Path) -> None:
    h = _Harness(tmp_path, allowed=[])

    assert await h.poll(_message(1, "/status", user_id=9, chat_id=90)) == []
    assert h.bot.texts() == [NOT_LINKED_HINT]

    await h.poll(_message(2, "/link wrong", user_id=9, chat_id=90))
    await h.poll(_message(3, f"/link {compute_pairing_code(SECRET)}", user_id=9, chat_id=90))

    assert h.bot.texts()[1:] == ["Invalid link code.", "✅ Linked. Use /status to pick an agent."]
    assert 9 in h.transport.allowed_user_ids
    assert h.transport.default_chat_id == 90
    assert h.links == [(9, 90)]
    assert h.transport.offset == 4
    assert h.bot.get_updates_calls[-1]["offset"] == 3


async def test_status_lists_workspace_threads_with_buttons(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.transport.running_threads.add("ws1::t1")

    await h.poll(_message(1, "/status"))

    body = h.bot.texts()[-1]
    assert body.startswith("📊 agentrelay status\n\n#Repo")
    assert "🔵 Fix the build" in body
    assert "🟢 Agent t2" in body
    assert "Not ours" not in body
    assert f"{thread_token_for('ws1', 't1')}" in h.transport.status_tokens


async def test_status_retries_empty_thread_list(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.session.threads = []

    await h.poll(_message(1, "status"))

    assert h.sleeps == [0.95, 0.95]
    assert "(no threads yet, try /status again in a moment)" in h.bot.texts()[-1]


async def test_select_then_message_becomes_command(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.poll(_message(1, "/status"))
    token = thread_token_for("ws1", "t1")

    await h.poll(_callback(2, f"select:{token}"))

    assert h.bot.edits[-1]["text"] == "✅ Connected. Send messages now.\n\nAgent: Fix the build"
    assert h.bot.texts()[-1] == "🧠 Last reply:\nAll tests pass."
    assert h.bot.answers[-1] == ("cb2", "Connected.")

    photo = [SimpleNamespace(file_id="small", file_size=10), SimpleNamespace(file_id="big", file_size=99)]
    commands = await h.poll(_message(3, "run the tests", photo=photo))

    assert len(commands) == 1
    command = commands[0]
    assert command.command_id == "telegram-3"
    assert command.type == "sendUserMessage"
    assert command.client_id == "telegram:70"
    assert command.args["workspaceId"] == "ws1"
    assert command.args["threadId"] == "t1"
    assert command.args["text"] == "run the tests"
    assert command.args["images"] == ["https://api.telegram.org/file/bot123:abc/photos/big.jpg"]
    assert h.bot.texts()[-1].startswith("⏳ Working…")
    assert "telegram-3" in h.transport.correlator.by_command

    working_id = h.bot.sent[-1]["message_id"]
    await h.transport.finish_command(command, CommandResult.success("telegram-3", {"turnId": "u2", "assistantText": "Done, 12 passed."}))

    assert working_id in h.bot.deleted
    assert h.bot.texts()[-1] == "✅ Fix the build\n\nDone, 12 passed.\n\n➡️ Next messages will go to:\nFix the build"


async def test_message_without_selection_prompts_for_status(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    assert await h.poll(_message(1, "hello")) == []
    assert h.bot.texts() == ["Pick an agent first: /status"]


async def test_duplicate_delivery_drops_working_message(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.poll(_message(1, "/status"))
    await h.poll(_callback(2, f"select:{thread_token_for('ws1', 't1')}"))
    [command] = await h.poll(_message(3, "again"))
    working_id = h.bot.sent[-1]["message_id"]

    await h.transport.finish_command(command, CommandResult.success("telegram-3"), duplicate=True)

    assert h.bot.deleted == [working_id]
    assert h.transport.correlator.by_command == {}


async def test_expired_and_unauthorized_callbacks(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    await h.poll(_callback(1, "select:tdeadbeef"))
    await h.poll(_callback(2, "disconnect", user_id=99))

    assert h.bot.answers == [("cb1", "Selection expired. Use /status again."), ("cb2", "Not authorized.")]


async def test_new_agent_button_starts_thread(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.poll(_message(1, "/status"))
    wtok = next(t for t in h.transport.status_tokens if t.startswith("w"))

    await h.poll(_callback(2, f"new:{wtok}"))

    assert h.transport.selections[70].thread_id == "t-new"
    assert h.bot.edits[-1]["text"] == "🆕 New agent started.\n\nAgent: New agent"
    assert h.bot.texts()[-1] == "Send a message to start."


async def test_completion_event_marks_thread_idle(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    await h.transport.handle_event(RuntimeEvent("ws1", {"method": "turn/started", "params": {"threadId": "t1"}}))
    assert h.transport.running_threads == {"ws1::t1"}
    await h.transport.handle_event(RuntimeEvent("ws1", {"method": "turn/completed", "params": {"threadId": "t1"}}))
    assert h.transport.running_threads == set()


async def test_get_updates_failure_is_transport_error(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.bot.fail_updates = True

    with pytest.raises(TransportError, match="getUpdates"):
        await h.transport.poll_commands()


async def test_edit_long_falls_back_to_new_message() -> None:
    bot = _FakeBot()
    bot.fail_edits = True
    api = TelegramApi(bot, "123:abc")

    await api.edit_long(70, 5, "final reply")

    assert bot.texts() == ["final reply"]
    assert bot.edits == []


async def test_error_event_marks_thread_idle(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.transport.running_threads.add("ws1::t1")

    await h.transport.handle_event(RuntimeEvent("ws1", {"method": "error", "params": {"threadId": "t1", "message": "boom"}}))

    assert h.transport.running_threads == set()
