"""Idempotency ledger: durable results plus in-memory duplicate guards."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, TypeVar

from loguru import logger

from agentrelay.relay.errors import TransportError
from agentrelay.relay.types import Command, CommandResult

try:
    import fcntl
except ImportError:  # pragma: no cover - unavailable on Windows.
    fcntl = None

T = TypeVar("T")


class ProcessedSet:
    """
    Bounded, insertion-ordered set of command ids executed by this process.

    A best-effort accelerator in front of the durable result store. It may be
    empty after a restart without affecting correctness.
    """

    def __init__(self, max_size: int = 1000, keep: int = 500):
        self.max_size = max(2, int(max_size))
        self.keep = max(1, min(int(keep), self.max_size))
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, command_id: str) -> None:
        self._ids[command_id] = None
        self._ids.move_to_end(command_id)
        if len(self._ids) > self.max_size:
            self.trim()

    def trim(self) -> int:
        """Drop the oldest ids once above the bound. Returns how many were dropped."""
        if len(self._ids) <= self.max_size:
            return 0
        dropped = 0
        while len(self._ids) > self.keep:
            self._ids.popitem(last=False)
            dropped += 1
        return dropped


def dedup_key(client_id: str | None, workspace_id: str, thread_id: str, text: str) -> str:
    """Hash identifying "the same message sent to the same thread by the same client"."""
    raw = "\x1f".join([client_id or "", workspace_id or "", thread_id or "", text or ""])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DedupWindow:
    """Collapse near-simultaneous duplicate submissions of the same message."""

    def __init__(self, window_s: float = 30.0):
        self.window_ms = int(max(0.0, float(window_s)) * 1000)
        self._seen: dict[str, int] = {}

    @property
    def enabled(self) -> bool:
        return self.window_ms > 0

    def __len__(self) -> int:
        return len(self._seen)

    def check_and_mark(self, key: str, now: int) -> bool:
        """Return True when key was seen within the window; always records now."""
        if not self.enabled:
            return False
        last = self._seen.get(key)
        self._seen[key] = now
        return last is not None and (now - last) <= self.window_ms

    def purge(self, now: int) -> int:
        stale = [k for k, ts in self._seen.items() if (now - ts) > self.window_ms]
        for key in stale:
            self._seen.pop(key, None)
        return len(stale)


def command_dedup_key(command: Command) -> str | None:
    """Dedup key for sendUserMessage commands; None for everything else."""
    if command.type != "sendUserMessage":
        return None
    args = command.args
    return dedup_key(
        command.client_id,
        str(args.get("workspaceId") or ""),
        str(args.get("threadId") or ""),
        str(args.get("text") or "").strip(),
    )


class ResultStore(ABC):
    """Durable source of truth for command results."""

    @abstractmethod
    async def get_result(self, command_id: str) -> CommandResult | None:
        """Return the stored result, or None when the command has none yet."""

    @abstractmethod
    async def put_result(self, result: CommandResult) -> None:
        """Store a result. Rewriting the same command id must be idempotent."""


class LocalResultStore(ResultStore):
    """
    JSON-file result ledger for bindings without a durable remote store.

    File access runs in a worker thread under `timeout_s` and is serialized
    across processes by an advisory lock next to the file. Timeouts and OS
    failures surface as TransportError so the relay loop keeps the command.
    """

    LOCK_POLL_S = 0.05

    def __init__(self, store_path: Path, *, max_entries: int = 2000, timeout_s: float = 15.0):
        self.store_path = Path(store_path)
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.store_path.with_suffix(f"{self.store_path.suffix}.lock")
        self.max_entries = max(100, int(max_entries))
        self.timeout_s = timeout_s
        self._mutex = threading.Lock()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError(f"result ledger {self.store_path.name} timed out after {self.timeout_s:g}s") from e
        except OSError as e:
            raise TransportError(f"result ledger {self.store_path} I/O failed: {e}") from e

    @contextmanager
    def _exclusive(self):
        # Non-blocking attempts so an abandoned worker thread gives up too.
        deadline = time.monotonic() + self.timeout_s
        with self._mutex, open(self.lock_path, "a+", encoding="utf-8") as handle:
            while fcntl is not None:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise TimeoutError(f"lock {self.lock_path} held by another process")
                    time.sleep(self.LOCK_POLL_S)
            yield

    def _read_rows(self) -> dict[str, dict[str, Any]]:
        try:
            text = self.store_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            doc = json.loads(text)
        except ValueError as e:
            logger.warning(f"Result ledger {self.store_path} is corrupt, starting empty: {e}")
            return {}
        rows = doc.get("results") if isinstance(doc, dict) else None
        if not isinstance(rows, dict):
            return {}
        return {cid: row for cid, row in rows.items() if isinstance(row, dict)}

    def _write_rows(self, rows: dict[str, dict[str, Any]]) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.store_path.parent, prefix=f"{self.store_path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"results": rows}, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.store_path)
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def _lookup(self, command_id: str) -> dict[str, Any] | None:
        with self._exclusive():
            return self._read_rows().get(command_id)

    def _store(self, command_id: str, row: dict[str, Any]) -> None:
        with self._exclusive():
            rows = self._read_rows()
            rows[command_id] = row
            excess = len(rows) - self.max_entries
            if excess > 0:
                oldest = sorted(rows, key=lambda cid: int(rows[cid].get("createdAt") or 0))
                for cid in oldest[:excess]:
                    del rows[cid]
            self._write_rows(rows)

    def _size(self) -> int:
        with self._exclusive():
            return len(self._read_rows())

    async def get_result(self, command_id: str) -> CommandResult | None:
        row = await self._run(self._lookup, command_id)
        return CommandResult.from_dict(row) if row is not None else None

    async def put_result(self, result: CommandResult) -> None:
        await self._run(self._store, result.command_id, result.to_dict())

    async def count(self) -> int:
        return await self._run(self._size)


class IdempotencyLedger:
    """Gate command execution on durable results first, then the processed set."""

    RESULT = "result"
    PROCESSED = "processed"

    def __init__(self, store: ResultStore, processed: ProcessedSet | None = None):
        self.store = store
        self.processed = processed or ProcessedSet()

    async def check(self, command: Command) -> tuple[str | None, CommandResult | None]:
        """
        Classify an inbound command.

        Returns ("result", existing) when a durable result exists,
        ("processed", None) when this process already started it,
        and (None, None) when it is new.
        """
        existing = await self.store.get_result(command.command_id)
        if existing is not None:
            return self.RESULT, existing
        if command.command_id in self.processed:
            return self.PROCESSED, None
        return None, None

    def mark_processing(self, command_id: str) -> None:
        self.processed.add(command_id)

    async def record(self, result: CommandResult) -> None:
        await self.store.put_result(result)
