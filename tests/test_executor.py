from pathlib import Path

from agentrelay.config.schema import AgentConfig, RelayConfig, WorkspaceEntry
from agentrelay.relay.executor import CommandExecutor, access_policies, build_turn_input
from agentrelay.relay.snapshots import SnapshotPublisher
from agentrelay.relay.types import Command
from agentrelay.runtime.base import AgentSession
from agentrelay.runtime.manager import SessionManager


class _FakeSession(AgentSession):
    def __init__(self, cwd: str, reply: str = "Done: hi") -> None:
        self.cwd = cwd
        self.reply = reply
        self.requests: list[tuple[str, dict]] = []
        self.threads: dict[str, dict] = {}
        self.alive = True

    def add_thread(self, thread_id: str, preview: str = "") -> None:
        self.threads[thread_id] = {"id": thread_id, "cwd": self.cwd, "preview": preview, "turns": []}

    async def request(self, method, params=None):
        params = params or {}
        self.requests.append((method, params))
        if method == "thread/list":
            return {"data": list(self.threads.values()), "nextCursor": None}
        if method == "thread/start":
            thread_id = f"thread-{len(self.threads) + 1}"
            self.add_thread(thread_id)
            return {"thread": {"id": thread_id}}
        if method == "thread/resume":
            return {"thread": self.threads[params["threadId"]]}
        if method == "turn/start":
            thread = self.threads[params["threadId"]]
            turn_id = f"turn-{len(thread['turns']) + 1}"
            thread["turns"].append({
                "id": turn_id,
                "items": [
                    {"id": f"{turn_id}-u", "type": "userMessage", "content": params["input"]},
                    {"id": f"{turn_id}-a", "type": "agentMessage", "text": self.reply},
                ],
            })
            return {"turn": {"id": turn_id}}
        return {}

    def is_alive(self) -> bool:
        return self.alive

    async def close(self) -> None:
        self.alive = False


class _Harness:
    def __init__(self, tmp_path: Path, relay: RelayConfig | None = None) -> None:
        self.session = _FakeSession(str(tmp_path))

        async def factory(_entry, _on_event):
            return self.session

        self.sessions = SessionManager(
            [WorkspaceEntry(id="ws1", name="Repo", path=str(tmp_path))],
            session_factory=factory,
        )
        self.snapshots = []
        self.sleeps: list[float] = []

        async def writer(snapshot):
            self.snapshots.append(snapshot)

        async def sleep(delay: float) -> None:
            self.sleeps.append(delay)

        self.relay = relay or RelayConfig(reply_poll_interval_s=2.0, reply_poll_attempts=5)
        self.publisher = SnapshotPublisher("runner-1", self.sessions, writer, self.relay)
        self.executor = CommandExecutor(
            self.sessions,
            self.publisher,
            relay=self.relay,
            agent=AgentConfig(),
            sleep=sleep,
        )

    def scopes(self) -> list[str]:
        return [s.scope_key for s in self.snapshots]


async def test_ping_and_unsupported_type(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    pong = await h.executor.execute(Command("c1", "ping"))
    unknown = await h.executor.execute(Command("c2", "frobnicate"))

    assert pong.ok is True
    assert pong.payload == {"pong": True}
    assert unknown.ok is False
    assert unknown.payload == {"error": "Unsupported command type: frobnicate"}
    assert h.session.requests == []
    assert h.snapshots == []


async def test_connect_unknown_workspace_fails(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    result = await h.executor.execute(Command("c1", "connectWorkspace", {"workspaceId": "nope"}))

    assert result.ok is False
    assert result.payload["error"] == "workspace not found"


async def test_connect_workspace_publishes_global_and_workspace(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.session.add_thread("t1", preview="Fix the build")

    result = await h.executor.execute(Command("c1", "connectWorkspace", {"workspaceId": "ws1"}))

    assert result.ok is True
    assert result.payload == {"connected": True}
    assert h.scopes()[:2] == ["global", "workspace:ws1"]
    assert "thread:ws1:t1" in h.scopes()
    assert h.sessions.is_connected("ws1")


async def test_missing_arguments_name_the_field(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    result = await h.executor.execute(Command("c1", "sendUserMessage", {"workspaceId": "ws1", "text": "hi"}))

    assert result.ok is False
    assert result.payload["error"] == "missing threadId"


async def test_start_thread_returns_thread_id(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    result = await h.executor.execute(Command("c1", "startThread", {"workspaceId": "ws1"}))

    assert result.ok is True
    assert result.payload == {"threadId": "thread-1"}
    assert ("thread/start", {"cwd": str(tmp_path), "approvalPolicy": "on-request"}) in h.session.requests
    assert "workspace:ws1" in h.scopes()


async def test_send_user_message_polls_until_reply(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.session.add_thread("t1")

    result = await h.executor.execute(
        Command("c1", "sendUserMessage", {"workspaceId": "ws1", "threadId": "t1", "text": "  hi  "})
    )

    assert result.ok is True
    assert result.payload == {"submitted": True, "turnId": "turn-1", "assistantText": "Done: hi"}
    assert h.sleeps == [2.0]

    turn_params = next(p for m, p in h.session.requests if m == "turn/start")
    assert turn_params["input"] == [{"type": "text", "text": "hi"}]
    assert turn_params["approvalPolicy"] == "on-request"
    assert turn_params["sandboxPolicy"]["writableRoots"] == [str(tmp_path)]

    thread_snapshot = [s for s in h.snapshots if s.scope_key == "thread:ws1:t1"][-1]
    assert [i["role"] for i in thread_snapshot.payload["items"]] == ["user", "assistant"]


async def test_send_user_message_without_reply_returns_empty_text(tmp_path: Path) -> None:
    h = _Harness(tmp_path, RelayConfig(reply_poll_interval_s=0.5, reply_poll_attempts=3))
    h.session.reply = ""
    h.session.add_thread("t1")

    result = await h.executor.execute(
        Command("c1", "sendUserMessage", {"workspaceId": "ws1", "threadId": "t1", "text": "hi"})
    )

    assert result.ok is True
    assert result.payload["assistantText"] == ""
    assert h.sleeps == [0.5, 0.5, 0.5]


async def test_send_user_message_rejects_empty_input(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.session.add_thread("t1")

    result = await h.executor.execute(
        Command("c1", "sendUserMessage", {"workspaceId": "ws1", "threadId": "t1", "text": "   "})
    )

    assert result.ok is False
    assert result.payload["error"] == "empty user message"


async def test_archive_thread_republishes_workspace(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.session.add_thread("t1")

    result = await h.executor.execute(Command("c1", "archiveThread", {"workspaceId": "ws1", "threadId": "t1"}))

    assert result.ok is True
    assert ("thread/archive", {"threadId": "t1"}) in h.session.requests
    assert h.scopes() == ["workspace:ws1"]


def test_build_turn_input_classifies_images() -> None:
    items = build_turn_input("look", ["https://x/y.png", "data:image/png;base64,AA", "/tmp/a.png", "", 3])

    assert items == [
        {"type": "text", "text": "look"},
        {"type": "image", "url": "https://x/y.png"},
        {"type": "image", "url": "data:image/png;base64,AA"},
        {"type": "localImage", "path": "/tmp/a.png"},
    ]


def test_access_policies() -> None:
    assert access_policies("full-access", "/w") == ("never", {"type": "dangerFullAccess"})
    assert access_policies("read-only", "/w") == ("on-request", {"type": "readOnly"})
    approval, sandbox = access_policies("current", "/w")
    assert approval == "on-request"
    assert sandbox["type"] == "workspaceWrite"
    assert sandbox["networkAccess"] is True
