"""Bridge a UI to an ACP agent subprocess."""

from agentbridge.config import BridgeConfig, ProcessConfig, load_config  # noqa: F401
from agentbridge.coordinator import CLIENT_VERSION as __version__  # noqa: F401
from agentbridge.coordinator import ConnectionState, SessionCoordinator  # noqa: F401
from agentbridge.errors import (  # noqa: F401
    AlreadyConnecting,
    BridgeError,
    ConfigError,
    ConnectionClosed,
    NotFound,
    ProtocolError,
    SessionError,
    SpawnError,
)
from agentbridge.fs import FileAccessProxy  # noqa: F401
from agentbridge.permissions import PermissionMediator  # noqa: F401
from agentbridge.protocol import ProtocolBridge  # noqa: F401
from agentbridge.session_state import SessionMetadata  # noqa: F401
from agentbridge.supervisor import ProcessSupervisor  # noqa: F401
from agentbridge.terminals import TerminalRegistry  # noqa: F401

__all__ = [
    "AlreadyConnecting",
    "BridgeConfig",
    "BridgeError",
    "ConfigError",
    "ConnectionClosed",
    "ConnectionState",
    "FileAccessProxy",
    "NotFound",
    "PermissionMediator",
    "ProcessConfig",
    "ProcessSupervisor",
    "ProtocolBridge",
    "ProtocolError",
    "SessionCoordinator",
    "SessionError",
    "SessionMetadata",
    "SpawnError",
    "TerminalRegistry",
    "load_config",
]
