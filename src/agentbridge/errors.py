"""Exception taxonomy for the agent bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by agentbridge."""


class SpawnError(BridgeError):
    """A process (agent or terminal) could not be started."""


class ProtocolError(BridgeError):
    """Malformed frame, handshake mismatch or unexpected response shape."""


class ConnectionClosed(BridgeError):
    """The connection closed before a pending request got its response."""


class NotFound(BridgeError):
    """Unknown terminal id."""

    def __init__(self, terminal_id: str) -> None:
        super().__init__(f"Unknown terminal: {terminal_id}")
        self.terminal_id = terminal_id


class SessionError(BridgeError):
    """Operation attempted without an active connection or session."""


class AlreadyConnecting(BridgeError):
    """connect() called while a connection attempt is in progress."""


class ConfigError(BridgeError):
    """Configuration file could not be read or parsed."""
