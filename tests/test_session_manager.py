import sys
from pathlib import Path

import pytest

from agentrelay.config.schema import WorkspaceEntry, WorkspaceSettings
from agentrelay.relay.errors import AgentRuntimeError
from agentrelay.runtime.base import AgentSession, RuntimeEvent
from agentrelay.runtime.manager import SessionManager
from agentrelay.runtime.session import AppServerSession

# Minimal app-server: answers every request with its params and emits one notification.
_FAKE_APP_SERVER = r"""
import json, sys
for line in sys.stdin:
    msg = json.loads(line)
    if "id" not in msg:
        continue
    if msg["method"] == "boom":
        print(json.dumps({"id": msg["id"], "error": {"message": "bad request"}}), flush=True)
        continue
    if msg["method"] == "turn/start":
        print(json.dumps({"method": "turn/started", "params": {"threadId": msg["params"]["threadId"]}}), flush=True)
    print(json.dumps({"id": msg["id"], "result": {"echo": msg["method"], "params": msg["params"]}}), flush=True)
"""


class _FakeSession(AgentSession):
    def __init__(self) -> None:
        self.alive = True
        self.closed = False

    async def request(self, method, params=None):
        return {"method": method}

    def is_alive(self) -> bool:
        return self.alive

    async def close(self) -> None:
        self.closed = True


def _entries(tmp_path: Path) -> list[WorkspaceEntry]:
    return [
        WorkspaceEntry(id="b", name="Beta", path=str(tmp_path)),
        WorkspaceEntry(id="a", name="Alpha", path=str(tmp_path)),
        WorkspaceEntry(id="c", name="Gamma", path=str(tmp_path), settings=WorkspaceSettings(sort_order=0)),
    ]


async def test_list_workspaces_sorted_by_order_then_name(tmp_path: Path) -> None:
    manager = SessionManager(_entries(tmp_path))

    names = [w.name for w in manager.list_workspaces()]

    assert names == ["Gamma", "Alpha", "Beta"]
    assert manager.list_workspaces()[0].to_dict()["settings"] == {"sidebarCollapsed": False, "sortOrder": 0}


async def test_call_spawns_once_and_respawns_dead_sessions(tmp_path: Path) -> None:
    spawned: list[_FakeSession] = []

    async def factory(_entry, _on_event):
        session = _FakeSession()
        spawned.append(session)
        return session

    manager = SessionManager(_entries(tmp_path), session_factory=factory)

    result = await manager.call("a", lambda session, entry: session.request("ping"))
    await manager.ensure_connected("a")
    assert result == {"method": "ping"}
    assert len(spawned) == 1
    assert manager.is_connected("a")

    spawned[0].alive = False
    await manager.ensure_connected("a")
    assert len(spawned) == 2
    assert spawned[0].closed is True

    await manager.close_all()
    assert spawned[1].closed is True
    assert not manager.is_connected("a")


async def test_unknown_workspace_is_not_found(tmp_path: Path) -> None:
    manager = SessionManager(_entries(tmp_path), session_factory=None)

    with pytest.raises(AgentRuntimeError, match="workspace not found"):
        await manager.ensure_connected("missing")


async def test_event_queue_drops_oldest_when_full(tmp_path: Path) -> None:
    manager = SessionManager(_entries(tmp_path))
    queue = manager.subscribe_events(maxsize=2)

    for i in range(3):
        await manager._publish_event(RuntimeEvent("a", {"method": f"m{i}"}))

    assert [queue.get_nowait().method for _ in range(2)] == ["m1", "m2"]
    manager.unsubscribe_events(queue)
    await manager._publish_event(RuntimeEvent("a", {"method": "late"}))
    assert queue.empty()


async def test_app_server_session_round_trip(tmp_path: Path) -> None:
    events: list[RuntimeEvent] = []

    async def on_event(event: RuntimeEvent) -> None:
        events.append(event)

    session = AppServerSession(
        "ws1",
        str(tmp_path),
        codex_bin=sys.executable,
        args=["-c", _FAKE_APP_SERVER],
        request_timeout_s=10,
        on_event=on_event,
    )
    await session.start()
    try:
        listed = await session.list_threads(limit=5)
        assert listed == {"echo": "thread/list", "params": {"cursor": None, "limit": 5}}

        await session.start_turn(
            "t1",
            [{"type": "text", "text": "hi"}],
            cwd=str(tmp_path),
            approval_policy="on-request",
            sandbox_policy={"type": "readOnly"},
        )
        assert events and events[0].method == "turn/started"
        assert events[0].params == {"threadId": "t1"}

        with pytest.raises(AgentRuntimeError, match="bad request"):
            await session.request("boom")
    finally:
        await session.close()

    assert session.is_alive() is False
    with pytest.raises(AgentRuntimeError, match="workspace not connected"):
        await session.resume_thread("t1")


async def test_failed_handshake_stops_the_child(tmp_path: Path) -> None:
    session = AppServerSession(
        "ws1",
        str(tmp_path),
        codex_bin=sys.executable,
        args=["-c", "import sys\nfor _ in sys.stdin:\n    pass\n"],
        request_timeout_s=0.3,
    )

    with pytest.raises(AgentRuntimeError, match="initialize timed out"):
        await session.start()

    assert session.is_alive() is False
    assert session._process.returncode is not None
    assert session._reader_task.done()
    assert session._stderr_task.done()
