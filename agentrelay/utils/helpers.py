"""Utility functions for agentrelay."""

import time
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the agentrelay data directory (~/.agentrelay)."""
    return ensure_dir(Path.home() / ".agentrelay")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def truncate_text(value: str, max_chars: int, ellipsis: str = "…") -> str:
    """Cut text to max_chars, appending an ellipsis when something was dropped."""
    if not value or len(value) <= max_chars:
        return value or ""
    return value[:max_chars] + ellipsis
