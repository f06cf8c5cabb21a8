"""Session lifecycle and version negotiation engine."""
from .models import (
    CommandResult,
    ErrorKind,
    IdleConfig,
    LogCategory,
    LogEntry,
    Provenance,
    SessionConfig,
    SessionRecord,
    SessionStatus,
    VersionResolution,
)
from .config import ManagerConfig
from .errors import (
    AuthError,
    BotholderError,
    ClientBackendError,
    ConfigError,
    LifecycleError,
    NotConnectedError,
    ProbeTimeoutError,
    ProtocolError,
    SessionNotFoundError,
    TransportError,
)
from .client import (
    ClientFactory,
    ClientOptions,
    ClientSignal,
    GameClient,
    SignalChannel,
    SignalKind,
)

__all__ = [
    # Manager (lazy import)
    "SessionManager",
    # Models
    "CommandResult",
    "ErrorKind",
    "IdleConfig",
    "LogCategory",
    "LogEntry",
    "Provenance",
    "SessionConfig",
    "SessionRecord",
    "SessionStatus",
    "VersionResolution",
    # Config
    "ManagerConfig",
    "load_yaml_config",
    # Client backend seam
    "ClientFactory",
    "ClientOptions",
    "ClientSignal",
    "GameClient",
    "SignalChannel",
    "SignalKind",
    # Errors
    "AuthError",
    "BotholderError",
    "ClientBackendError",
    "ConfigError",
    "LifecycleError",
    "NotConnectedError",
    "ProbeTimeoutError",
    "ProtocolError",
    "SessionNotFoundError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "SessionManager":
        from .manager import SessionManager
        return SessionManager
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
