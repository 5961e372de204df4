"""Relay loop - one cooperative driver per enabled transport binding."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

from loguru import logger

from agentrelay.config.schema import Config
from agentrelay.relay.errors import RelayError, TransportError
from agentrelay.relay.executor import CommandExecutor
from agentrelay.relay.ledger import DedupWindow, IdempotencyLedger, ProcessedSet, command_dedup_key
from agentrelay.relay.presence import PresenceHeartbeat
from agentrelay.relay.snapshots import SnapshotPublisher
from agentrelay.relay.types import Command, CommandResult
from agentrelay.runtime.base import RuntimeEvent
from agentrelay.runtime.manager import SessionManager
from agentrelay.transports.base import RelayTransport
from agentrelay.utils.helpers import now_ms

TransportFactory = Callable[[Config, SessionManager], RelayTransport]

IDLE_INTERVAL_S = 2.0

# Fields whose change requires reconnecting a binding; the rest apply live.
ENDPOINT_FIELDS = {
    "records": ("root", "container_id"),
    "nats": ("url",),
    "telegram": ("token",),
}


def _binding_section(config: Config, binding: str) -> Any:
    return getattr(config, binding, None)


class RelayLoop:
    """
    Poll one transport, execute its commands exactly once, publish state.

    Commands are processed strictly one at a time in creation order; a
    `sendUserMessage` finishes its reply polling before the next command
    starts. Heartbeat, global snapshot and maintenance share the same loop.
    """

    def __init__(
        self,
        binding: str,
        transport_factory: TransportFactory,
        sessions: SessionManager,
        config_source: Callable[[], Config],
        *,
        clock: Callable[[], float] = time.monotonic,
        executor_sleep: Callable[[float], Any] | None = None,
    ):
        self.binding = binding
        self.transport_factory = transport_factory
        self.sessions = sessions
        self.config_source = config_source
        self._clock = clock
        self._executor_sleep = executor_sleep

        self.transport: RelayTransport | None = None
        self.ledger: IdempotencyLedger | None = None
        self.dedup = DedupWindow(0)
        self.executor: CommandExecutor | None = None
        self.publisher: SnapshotPublisher | None = None
        self.presence: PresenceHeartbeat | None = None

        self._fingerprint: str | None = None
        self._unsaved: dict[str, CommandResult] = {}
        self._retry: dict[str, Command] = {}
        self._last_global_at: float | None = None
        self._last_maintenance_at: float | None = None
        self._events: asyncio.Queue[RuntimeEvent] | None = None
        self._running = False
        self._task: asyncio.Task | None = None
        self._processed_count = 0
        self._last_error: str | None = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        self._running = True
        self._events = self.sessions.subscribe_events()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Relay loop started for binding '{self.binding}'")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._events is not None:
            self.sessions.unsubscribe_events(self._events)
            self._events = None
        await self._teardown()
        logger.info(f"Relay loop stopped for binding '{self.binding}'")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                delay = await self.run_cycle()
                await self._wait(delay)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._last_error = str(e)
                logger.error(f"Relay loop error ({self.binding}): {e}")
                await asyncio.sleep(IDLE_INTERVAL_S)

    # -- one cycle ---------------------------------------------------------

    async def run_cycle(self) -> float:
        """Run one poll cycle and return how long to wait before the next."""
        config = self.config_source()
        self.sessions.set_workspaces(config.workspaces)
        if not config.binding_configured(self.binding) or not config.runner.runner_id:
            if self.transport is not None:
                logger.info(f"Binding '{self.binding}' disabled or unconfigured, closing transport")
                await self._teardown()
            return IDLE_INTERVAL_S

        section = _binding_section(config, self.binding)
        poll_interval = float(getattr(section, "poll_interval_s", IDLE_INTERVAL_S))

        try:
            await self._ensure_transport(config)
        except TransportError as e:
            self._last_error = str(e)
            logger.error(f"Binding '{self.binding}' could not connect: {e}")
            return poll_interval

        self.dedup.window_ms = int(float(getattr(section, "dedup_window_s", 0.0)) * 1000)
        self.transport.reconfigure(config)

        now = self._clock()
        await self.presence.tick()
        if self._last_global_at is None or (now - self._last_global_at) >= config.relay.global_snapshot_interval_s:
            self._last_global_at = now
            try:
                await self.publisher.publish_global()
            except RelayError as e:
                logger.warning(f"Global snapshot failed: {e}")

        try:
            polled = await self.transport.poll_commands()
        except TransportError as e:
            polled = []
            self._last_error = str(e)
            logger.error(f"Transport error on '{self.binding}', retrying next cycle: {e}")
        await self._process_batch(polled)

        if self._last_maintenance_at is None:
            self._last_maintenance_at = now
        elif (now - self._last_maintenance_at) >= config.relay.maintenance_interval_s:
            self._last_maintenance_at = now
            await self.maintenance()

        return poll_interval

    async def _process_batch(self, polled: list[Command]) -> None:
        """
        Process polled commands plus any held back from earlier cycles.

        Bindings that drain their inbox on poll never redeliver, so on a
        transport failure the failed command and everything after it are
        held here and retried first on the next cycle, in creation order.
        """
        batch = dict(self._retry)
        batch.update((command.command_id, command) for command in polled)
        ordered = sorted(batch.values(), key=lambda c: c.created_at)
        for index, command in enumerate(ordered):
            try:
                await self.process_command(command)
            except TransportError as e:
                self._retry = {c.command_id: c for c in ordered[index:]}
                self._last_error = str(e)
                logger.error(
                    f"Transport error on '{self.binding}' at {command.command_id}, "
                    f"holding {len(self._retry)} command(s) for next cycle: {e}"
                )
                return
        self._retry = {}

    async def process_command(self, command: Command) -> CommandResult | None:
        """Gate one command through the ledger, execute it, record and acknowledge."""
        pending = self._unsaved.get(command.command_id)
        if pending is not None:
            await self._record(pending)
            await self._finish(command, pending)
            return pending

        state, existing = await self.ledger.check(command)
        if state == IdempotencyLedger.RESULT:
            logger.debug(f"Command {command.command_id} already has a result, acknowledging")
            await self._finish(command, existing, duplicate=True)
            return existing
        if state == IdempotencyLedger.PROCESSED:
            logger.debug(f"Command {command.command_id} already processed in this run, dropping")
            await self._finish(command, None, duplicate=True)
            return None

        self.ledger.mark_processing(command.command_id)
        key = command_dedup_key(command)
        if key is not None and self.dedup.check_and_mark(key, now_ms()):
            logger.info(f"Skipping duplicate message {command.command_id}")
            result = CommandResult.success(command.command_id, {"skippedDuplicate": True})
        else:
            logger.info(f"Executing {command.type} ({command.command_id}) via {self.binding}")
            result = await self.executor.execute(command)
        self._processed_count += 1

        await self._record(result)
        await self._finish(command, result)
        return result

    async def _record(self, result: CommandResult) -> None:
        try:
            await self.ledger.record(result)
        except TransportError:
            # Keep it so the next delivery retries the write instead of re-executing.
            self._unsaved[result.command_id] = result
            raise
        self._unsaved.pop(result.command_id, None)

    async def _finish(self, command: Command, result: CommandResult | None, duplicate: bool = False) -> None:
        try:
            await self.transport.finish_command(command, result, duplicate=duplicate)
        except RelayError as e:
            logger.warning(f"Acknowledging {command.command_id} failed (will be reconsidered): {e}")

    async def maintenance(self) -> None:
        now = now_ms()
        dropped = self.ledger.processed.trim()
        purged = self.dedup.purge(now)
        if dropped or purged:
            logger.debug(f"Maintenance: trimmed {dropped} processed ids, purged {purged} dedup keys")
        try:
            await self.transport.housekeeping(now)
        except RelayError as e:
            logger.warning(f"Housekeeping failed on '{self.binding}': {e}")

    # -- wiring ------------------------------------------------------------

    def _config_fingerprint(self, config: Config) -> str:
        section = _binding_section(config, self.binding)
        fields = ENDPOINT_FIELDS.get(self.binding, ())
        endpoint = "|".join(str(getattr(section, name, "")) for name in fields)
        return f"{config.runner.runner_id}|{endpoint}"

    async def _ensure_transport(self, config: Config) -> None:
        fingerprint = self._config_fingerprint(config)
        if self.transport is not None and fingerprint == self._fingerprint:
            return
        if self.transport is not None:
            logger.info(f"Binding '{self.binding}' configuration changed, reconnecting")
            await self._teardown()

        transport = self.transport_factory(config, self.sessions)
        await transport.open()
        section = _binding_section(config, self.binding)
        relay = config.relay

        self.transport = transport
        self._fingerprint = fingerprint
        self.ledger = IdempotencyLedger(
            transport.results,
            ProcessedSet(relay.processed_max, relay.processed_keep),
        )
        self.dedup = DedupWindow(float(getattr(section, "dedup_window_s", 0.0)))
        self.publisher = SnapshotPublisher(config.runner.runner_id, self.sessions, transport.write_snapshot, relay)
        self.executor = CommandExecutor(
            self.sessions,
            self.publisher,
            relay=relay,
            agent=config.agent,
            sleep=self._executor_sleep,
        )
        self.presence = PresenceHeartbeat(
            config.runner.runner_id,
            config.runner.name,
            config.runner.platform,
            transport.write_presence,
            interval_s=relay.heartbeat_interval_s,
            clock=self._clock,
        )
        self._last_global_at = None
        self._last_maintenance_at = None
        logger.info(f"Binding '{self.binding}' connected as runner {config.runner.runner_id}")

    async def _teardown(self) -> None:
        transport = self.transport
        self.transport = None
        self._fingerprint = None
        if transport is None:
            return
        try:
            await transport.close()
        except RelayError as e:
            logger.warning(f"Closing '{self.binding}' transport failed: {e}")

    async def _wait(self, delay: float) -> None:
        """Sleep for delay, waking early to handle pushed runtime events."""
        transport = self.transport
        if self._events is None or transport is None or not transport.supports_push_events:
            await asyncio.sleep(delay)
            return
        try:
            event = await asyncio.wait_for(self._events.get(), timeout=delay)
        except asyncio.TimeoutError:
            return
        await self._dispatch_event(transport, event)
        while not self._events.empty():
            await self._dispatch_event(transport, self._events.get_nowait())

    async def _dispatch_event(self, transport: RelayTransport, event: RuntimeEvent) -> None:
        try:
            await transport.handle_event(event)
        except RelayError as e:
            logger.warning(f"Event handling failed on '{self.binding}': {e}")

    def status(self) -> dict[str, Any]:
        return {
            "binding": self.binding,
            "running": self._running,
            "connected": self.transport is not None,
            "processed": self._processed_count,
            "processed_ids": len(self.ledger.processed) if self.ledger else 0,
            "last_error": self._last_error,
            "presence": self.presence.status() if self.presence else None,
        }
