from agentrelay.chat.text import (
    MAX_TEXT_CHARS,
    compute_pairing_code,
    format_reply,
    normalize_status_label,
    normalize_text_preview,
    split_text,
    thread_token_for,
    working_text,
    workspace_token_for,
)


def test_split_text_keeps_lines_and_limits() -> None:
    assert split_text("") == [""]
    assert split_text("one\ntwo", limit=100) == ["one\ntwo"]
    assert split_text("aaa\nbbb\nccc", limit=8) == ["aaa\nbbb", "ccc"]


def test_split_text_breaks_long_lines() -> None:
    chunks = split_text("x" * 25, limit=10)

    assert chunks == ["x" * 10, "x" * 10, "x" * 5]
    assert all(len(c) <= MAX_TEXT_CHARS for c in split_text("y" * 9000))


def test_labels_are_single_line_and_clipped() -> None:
    assert normalize_status_label("  ") == "(untitled)"
    assert normalize_status_label("fix\nthe build") == "fix the build"
    label = normalize_status_label("z" * 100)
    assert len(label) == 44
    assert label.endswith("…")
    assert len(normalize_text_preview("p" * 200)) == 78
    assert normalize_text_preview("short") == "short"


def test_pairing_code_and_tokens_are_stable() -> None:
    code = compute_pairing_code("secret")

    assert code == compute_pairing_code("secret")
    assert code != compute_pairing_code("other")
    assert len(code) == 32
    assert int(code, 16) >= 0

    token = thread_token_for("ws1", "t1")
    assert token.startswith("t") and len(token) == 17
    assert token != thread_token_for("ws1", "t2")
    assert workspace_token_for("ws1").startswith("w")


def test_reply_and_working_text() -> None:
    assert format_reply("Agent t1", "hello") == "✅ Agent t1\n\nhello\n\n➡️ Next messages will go to:\nAgent t1"
    assert "Done." in format_reply("Agent t1", "  ")
    assert working_text("Repo").startswith("⏳ Working…")
    assert working_text("Repo", 5).startswith("⏳ Working.\n")
