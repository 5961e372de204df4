"""Presence heartbeat - periodic liveness announcement for this runner."""

import time
from typing import Any, Awaitable, Callable

from loguru import logger

from agentrelay.relay.types import RunnerPresence

# Default interval: 5 seconds
DEFAULT_PRESENCE_INTERVAL_S = 5.0

PresenceWriter = Callable[[RunnerPresence], Awaitable[None]]


class PresenceHeartbeat:
    """
    Write this runner's presence row on a fixed period.

    Driven by the relay loop's `tick()` rather than its own task, so a
    heartbeat never overlaps command processing. Failures are logged and
    retried on the next due tick.
    """

    def __init__(
        self,
        runner_id: str,
        name: str,
        platform: str,
        writer: PresenceWriter,
        interval_s: float = DEFAULT_PRESENCE_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner_id = runner_id
        self.name = name
        self.platform = platform
        self.writer = writer
        self.interval_s = interval_s
        self._clock = clock
        self._last_run_at: float | None = None
        self._last_ok: bool | None = None
        self._failures = 0

    def due(self) -> bool:
        if self._last_run_at is None:
            return True
        return (self._clock() - self._last_run_at) >= self.interval_s

    async def tick(self) -> bool:
        """Heartbeat if the interval elapsed. Returns True when a write was attempted."""
        if not self.due():
            return False
        await self.beat()
        return True

    async def beat(self) -> bool:
        """Write presence now. Never raises."""
        self._last_run_at = self._clock()
        presence = RunnerPresence(runner_id=self.runner_id, name=self.name, platform=self.platform)
        try:
            await self.writer(presence)
        except Exception as e:
            self._failures += 1
            self._last_ok = False
            logger.warning(f"Presence heartbeat failed: {e}")
            return False
        self._last_ok = True
        logger.debug(f"Presence heartbeat for {self.runner_id}")
        return True

    def status(self) -> dict[str, Any]:
        return {
            "runner_id": self.runner_id,
            "interval_s": self.interval_s,
            "last_ok": self._last_ok,
            "failures": self._failures,
        }
