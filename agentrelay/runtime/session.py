"""Agent runtime session over a spawned app-server process (JSON-RPC on stdio)."""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Awaitable, Callable

from loguru import logger

from agentrelay import __version__
from agentrelay.relay.errors import AgentRuntimeError
from agentrelay.runtime.base import AgentSession, RuntimeEvent

EventSink = Callable[[RuntimeEvent], Awaitable[None]]


class AppServerSession(AgentSession):
    """
    Speak newline-delimited JSON-RPC with `<codex_bin> app-server`.

    Responses are matched to requests by id. Messages carrying a `method`
    (notifications and server-initiated requests) are forwarded to the
    event sink. When the process exits every pending request fails.
    """

    def __init__(
        self,
        workspace_id: str,
        cwd: str,
        *,
        codex_bin: str = "codex",
        args: list[str] | None = None,
        request_timeout_s: float = 60.0,
        on_event: EventSink | None = None,
    ):
        self.workspace_id = workspace_id
        self.cwd = cwd
        self.codex_bin = codex_bin
        self.args = list(args if args is not None else ["app-server"])
        self.request_timeout_s = request_timeout_s
        self.on_event = on_event
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._write_lock = asyncio.Lock()

    async def start(self) -> None:
        """Spawn the process and perform the initialize handshake."""
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.codex_bin,
                *self.args,
                cwd=self.cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AgentRuntimeError(f"failed to spawn {self.codex_bin}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info(f"Agent session started for workspace {self.workspace_id} (pid {self._process.pid})")

        try:
            await self.request(
                "initialize",
                {"clientInfo": {"name": "agentrelay", "title": "agentrelay", "version": __version__}},
            )
            await self._send({"method": "initialized", "params": {}})
        except BaseException:
            logger.warning(f"Agent handshake failed for workspace {self.workspace_id}, stopping pid {self._process.pid}")
            await self.close()
            raise

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if not self.is_alive():
            raise AgentRuntimeError("workspace not connected")

        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"id": request_id, "method": method, "params": params or {}})
            return await asyncio.wait_for(future, timeout=self.request_timeout_s)
        except asyncio.TimeoutError as e:
            raise AgentRuntimeError(f"{method} timed out after {self.request_timeout_s:g}s") from e
        finally:
            self._pending.pop(request_id, None)

    async def _send(self, message: dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None:
            raise AgentRuntimeError("workspace not connected")
        line = json.dumps(message, ensure_ascii=False) + "\n"
        async with self._write_lock:
            try:
                self._process.stdin.write(line.encode("utf-8"))
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise AgentRuntimeError(f"agent runtime pipe closed: {e}") from e

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                try:
                    message = json.loads(raw.decode("utf-8", errors="replace"))
                except ValueError:
                    logger.debug(f"Agent session {self.workspace_id}: non-JSON line ignored")
                    continue
                if isinstance(message, dict):
                    await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        finally:
            self._fail_pending("agent runtime exited")
            logger.info(f"Agent session for workspace {self.workspace_id} ended")

    async def _dispatch(self, message: dict[str, Any]) -> None:
        if "method" not in message and "id" in message:
            future = self._pending.get(message.get("id"))
            if future is None or future.done():
                return
            error = message.get("error")
            if error:
                text = error.get("message") if isinstance(error, dict) else str(error)
                future.set_exception(AgentRuntimeError(str(text or "agent runtime error")))
            else:
                future.set_result(message.get("result"))
            return

        if self.on_event is None:
            return
        try:
            await self.on_event(RuntimeEvent(workspace_id=self.workspace_id, message=message))
        except Exception as e:
            logger.error(f"Agent event handler failed: {e}")

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        while True:
            raw = await self._process.stderr.readline()
            if not raw:
                return
            logger.debug(f"[{self.workspace_id}] {raw.decode('utf-8', errors='replace').rstrip()}")

    def _fail_pending(self, reason: str) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(AgentRuntimeError(reason))
        self._pending.clear()

    async def close(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        for task in (self._reader_task, self._stderr_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._fail_pending("session closed")
