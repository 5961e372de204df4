"""Relay error taxonomy."""


class RelayError(Exception):
    """Base class for relay failures."""


class TransportError(RelayError):
    """A transport connect/save/fetch/query failed or timed out.

    The relay loop logs it and retries on the next cycle.
    """


class AgentRuntimeError(RelayError):
    """The agent runtime rejected a request, timed out, or is unreachable."""


class ConfigurationError(RelayError):
    """A binding is missing its endpoint, container or token."""
