"""Relay core: envelopes, idempotency ledger, executor, publishing and the loop."""

from agentrelay.relay.errors import AgentRuntimeError, ConfigurationError, RelayError, TransportError
from agentrelay.relay.types import Command, CommandResult, RunnerPresence, Snapshot

__all__ = [
    "AgentRuntimeError",
    "Command",
    "CommandResult",
    "ConfigurationError",
    "RelayError",
    "RunnerPresence",
    "Snapshot",
    "TransportError",
]
