"""Chat text helpers: message splitting, labels, pairing codes and button tokens."""

import hashlib

MAX_TEXT_CHARS = 4096
# Headroom under the hard limit for formatting.
SAFE_TEXT_CHARS = 3800

STATUS_LABEL_MAX = 46
PREVIEW_MAX = 80

WORKING_FRAMES = ("⏳ Working", "⏳ Working.", "⏳ Working..", "⏳ Working...")


def _hard_split(value: str, limit: int) -> list[str]:
    return [value[i:i + limit] for i in range(0, len(value), limit)] or [""]


def split_text(value: str, limit: int = SAFE_TEXT_CHARS) -> list[str]:
    """Split text on line boundaries into chunks of at most `limit` characters."""
    if not value:
        return [""]

    chunks: list[str] = []
    current = ""
    for part in value.splitlines(keepends=True):
        if current and len(current) + len(part) > limit:
            chunks.append(current.rstrip("\n"))
            current = ""
        if len(part) > limit:
            buf = ""
            for ch in part:
                if len(buf) + 1 > limit:
                    chunks.append(buf.rstrip("\n"))
                    buf = ""
                buf += ch
            current += buf
        else:
            current += part
    if current:
        chunks.append(current.rstrip("\n"))

    out: list[str] = []
    for chunk in chunks:
        out.extend([chunk] if len(chunk) <= MAX_TEXT_CHARS else _hard_split(chunk, MAX_TEXT_CHARS))
    return out


def _clip(value: str, max_chars: int) -> str:
    if len(value) > max_chars:
        return value[: max_chars - 3] + "…"
    return value


def normalize_status_label(value: str) -> str:
    """One-line thread label for status listings."""
    trimmed = (value or "").strip().replace("\n", " ")
    if not trimmed:
        return "(untitled)"
    return _clip(trimmed, STATUS_LABEL_MAX)


def normalize_text_preview(value: str) -> str:
    return _clip((value or "").strip().replace("\n", " "), PREVIEW_MAX)


def compute_pairing_code(secret: str) -> str:
    """First 16 bytes of SHA-256(secret), hex encoded."""
    return hashlib.sha256((secret or "").encode("utf-8")).digest()[:16].hex()


def _short_digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).digest()[:8].hex()


def thread_token_for(workspace_id: str, thread_id: str) -> str:
    return f"t{_short_digest(f'{workspace_id}:{thread_id}')}"


def workspace_token_for(workspace_id: str) -> str:
    return f"w{_short_digest(workspace_id)}"


def thread_key(workspace_id: str, thread_id: str) -> str:
    return f"{workspace_id}::{thread_id}"


def pending_key(workspace_id: str, thread_id: str, turn_id: str) -> str:
    return f"{workspace_id}::{thread_id}::{turn_id}"


def format_reply(label: str, text: str) -> str:
    body = text if text.strip() else "Done."
    return f"✅ {label}\n\n{body}\n\n➡️ Next messages will go to:\n{label}"


def working_text(label: str, frame: int | None = None) -> str:
    head = "⏳ Working…" if frame is None else WORKING_FRAMES[frame % len(WORKING_FRAMES)]
    return f"{head}\n\n➡️ Sending to:\n{label}"
