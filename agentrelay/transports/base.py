"""Relay transport contract shared by every binding."""

from abc import ABC, abstractmethod
from typing import Any

from agentrelay.relay.ledger import ResultStore
from agentrelay.relay.types import Command, CommandResult, RunnerPresence, Snapshot
from agentrelay.runtime.base import RuntimeEvent


class RelayTransport(ABC):
    """
    One binding between the relay loop and a remote medium.

    Each binding delivers inbound commands oldest-first, accepts result,
    snapshot and presence writes, and names the ResultStore that holds the
    durable result ledger for its commands.
    """

    name: str = "base"
    supports_push_events: bool = False

    @property
    @abstractmethod
    def results(self) -> ResultStore:
        """Durable result store backing the idempotency ledger."""

    @abstractmethod
    async def open(self) -> None:
        """Connect to the medium. Raises TransportError."""

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def poll_commands(self) -> list[Command]:
        """Pending commands for this runner, ordered by creation time ascending."""

    @abstractmethod
    async def finish_command(self, command: Command, result: CommandResult | None, duplicate: bool = False) -> None:
        """
        Acknowledge a command after its result is durable.

        `result` is None when the command was dropped as an in-process
        duplicate. Removal of the inbound entry is best-effort.
        """

    @abstractmethod
    async def write_snapshot(self, snapshot: Snapshot) -> None:
        pass

    @abstractmethod
    async def write_presence(self, presence: RunnerPresence) -> None:
        pass

    def reconfigure(self, config: Any) -> None:
        """Apply settings that do not need a reconnect. Called every cycle."""

    async def handle_event(self, event: RuntimeEvent) -> None:
        """React to a pushed agent-runtime event. Ignored by default."""

    async def housekeeping(self, now_ms: int) -> None:
        """Periodic cleanup of binding-owned caches."""
