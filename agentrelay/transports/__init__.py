"""Transport bindings for agentrelay."""

from pathlib import Path
from typing import Any

from agentrelay.relay.errors import ConfigurationError
from agentrelay.transports.base import RelayTransport

BINDINGS = ("records", "nats", "telegram")


def create_transport(binding: str, config: Any, sessions: Any, config_path: Path | None = None) -> RelayTransport:
    """Build the transport for a binding name from the current config."""
    if binding == "records":
        from agentrelay.transports.records import create_records_transport
        return create_records_transport(config, sessions)
    if binding == "nats":
        from agentrelay.transports.nats import create_nats_transport
        return create_nats_transport(config, sessions)
    if binding == "telegram":
        from agentrelay.transports.telegram import create_telegram_transport
        return create_telegram_transport(config, sessions, config_path)
    raise ConfigurationError(f"Unknown binding: {binding}")


__all__ = ["BINDINGS", "RelayTransport", "create_transport"]
