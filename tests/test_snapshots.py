from pathlib import Path

from agentrelay.config.schema import RelayConfig, WorkspaceEntry
from agentrelay.relay.errors import AgentRuntimeError
from agentrelay.relay.snapshots import (
    SnapshotPublisher,
    assistant_text_for_turn,
    build_thread_items,
    list_workspace_threads,
    render_user_inputs,
    thread_display_name,
)
from agentrelay.runtime.base import AgentSession
from agentrelay.runtime.manager import SessionManager


class _PagedSession(AgentSession):
    """thread/list in fixed pages; thread/resume fails for ids listed in `broken`."""

    def __init__(self, pages: list[list[dict]], broken: set[str] | None = None) -> None:
        self.pages = pages
        self.broken = broken or set()
        self.list_calls: list[dict] = []

    async def request(self, method, params=None):
        params = params or {}
        if method == "thread/list":
            self.list_calls.append(params)
            index = int(params.get("cursor") or 0)
            next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
            return {"data": self.pages[index], "nextCursor": next_cursor}
        if method == "thread/resume":
            if params["threadId"] in self.broken:
                raise AgentRuntimeError("resume failed")
            return {"thread": {"id": params["threadId"], "turns": []}}
        return {}

    def is_alive(self) -> bool:
        return True

    async def close(self) -> None:
        pass


def _manager(tmp_path: Path, session: AgentSession) -> SessionManager:
    async def factory(_entry, _on_event):
        return session

    return SessionManager([WorkspaceEntry(id="ws1", name="Repo", path=str(tmp_path))], session_factory=factory)


def test_render_user_inputs() -> None:
    rendered = render_user_inputs([
        {"type": "text", "text": " fix it "},
        {"type": "skill", "name": "review"},
        {"type": "image", "url": "https://x"},
        {"type": "mention"},
        "junk",
    ])
    assert rendered == "fix it $review [image]"


def test_build_thread_items_keeps_messages_and_placeholder() -> None:
    thread = {
        "turns": [
            {
                "id": "turn-1",
                "items": [
                    {"id": "u1", "type": "userMessage", "content": [{"type": "mention"}]},
                    {"id": "r1", "type": "reasoning", "text": "thinking"},
                    {"id": "a1", "type": "agentMessage", "text": "x" * 50},
                    {"type": "agentMessage", "text": "no id"},
                ],
            }
        ]
    }

    items = build_thread_items(thread, text_limit=10)

    assert [i["id"] for i in items] == ["u1", "a1"]
    assert items[0] == {"id": "u1", "kind": "message", "role": "user", "text": "[message]"}
    assert items[1]["text"] == "x" * 10 + "…"


def test_build_thread_items_keeps_newest_items() -> None:
    thread = {"turns": [{"items": [{"id": str(i), "type": "agentMessage", "text": str(i)} for i in range(5)]}]}
    items = build_thread_items(thread, item_limit=2)
    assert [i["id"] for i in items] == ["3", "4"]


def test_thread_display_name() -> None:
    assert thread_display_name({"preview": "short"}, 1) == "short"
    long_name = thread_display_name({"preview": "y" * 60}, 1)
    assert long_name == "y" * 38 + "…"
    assert thread_display_name({"preview": "  "}, 3) == "Agent 3"


def test_assistant_text_for_turn_matches_turn_or_last() -> None:
    thread = {
        "turns": [
            {"id": "turn-1", "items": [{"type": "agentMessage", "text": "first"}]},
            {"id": "turn-2", "items": [{"type": "agentMessage", "text": "a"}, {"type": "agentMessage", "text": "b"}]},
        ]
    }
    assert assistant_text_for_turn(thread, "turn-1") == "first"
    assert assistant_text_for_turn(thread, None) == "a\n\nb"
    assert assistant_text_for_turn(thread, "turn-9") == ""
    assert assistant_text_for_turn({}, None) == ""


async def test_list_workspace_threads_filters_cwd_across_pages(tmp_path: Path) -> None:
    other = tmp_path / "other"
    other.mkdir()
    link = tmp_path / "link"
    link.symlink_to(tmp_path, target_is_directory=True)
    session = _PagedSession([
        [{"id": "a", "cwd": str(tmp_path)}, {"id": "b", "cwd": str(other)}],
        [{"id": "c", "cwd": str(link)}, {"id": "", "cwd": str(tmp_path)}],
    ])
    entry = WorkspaceEntry(id="ws1", name="Repo", path=str(tmp_path))

    threads = await list_workspace_threads(session, entry, limit=20)

    assert [t["id"] for t in threads] == ["a", "c"]
    assert len(session.list_calls) == 2
    assert session.list_calls[0] == {"cursor": None, "limit": 40}


async def test_publisher_timestamps_never_decrease(tmp_path: Path, monkeypatch) -> None:
    from agentrelay.relay import snapshots as snapshots_mod

    written = []

    async def writer(snapshot):
        written.append(snapshot)

    clock = iter([5_000, 4_000, 6_000])
    monkeypatch.setattr(snapshots_mod, "now_ms", lambda: next(clock))
    publisher = SnapshotPublisher("runner-1", _manager(tmp_path, _PagedSession([[]])), writer)

    for _ in range(3):
        await publisher.publish("global", {})

    assert [s.updated_at for s in written] == [5_000, 5_000, 6_000]
    envelope = written[0].envelope()
    assert envelope["v"] == 1
    assert envelope["runnerId"] == "runner-1"
    assert envelope["scopeKey"] == "global"


async def test_workspace_prefetch_failure_is_tolerated(tmp_path: Path) -> None:
    written = []

    async def writer(snapshot):
        written.append(snapshot)

    session = _PagedSession(
        [[{"id": "a", "cwd": str(tmp_path), "preview": "A"}, {"id": "b", "cwd": str(tmp_path)}]],
        broken={"a"},
    )
    publisher = SnapshotPublisher("runner-1", _manager(tmp_path, session), writer, RelayConfig(prefetch_threads=2))

    summaries = await publisher.publish_workspace("ws1")

    assert summaries == [{"id": "a", "name": "A"}, {"id": "b", "name": "Agent 2"}]
    assert [s.scope_key for s in written] == ["workspace:ws1", "thread:ws1:b"]
