"""Core data models for the session engine.

All dataclasses and enums live here to keep the supervisor, registry
and gateway free of circular imports.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ConfigError

AUTO_VERSION = "auto"
EXPLICIT_PREFIX = "explicit:"
DEFAULT_RECONNECT_INTERVAL = 5.0


class SessionStatus(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    DETECTING_VERSION = "detecting_version"
    CONNECTED = "connected"
    ERROR = "error"
    KICKED = "kicked"
    STOPPED = "stopped"


class Provenance(str, Enum):
    """How a resolved protocol version was obtained."""
    PING = "ping"
    HANDSHAKE = "handshake"
    DEFAULT = "default"
    FALLBACK = "fallback"


class ErrorKind(str, Enum):
    """Diagnostic classification of client errors. Does not affect retries."""
    ADDRESS_RESOLUTION = "address_resolution"
    CONNECTION_REFUSED = "connection_refused"
    INVALID_IDENTITY = "invalid_identity"
    UNSUPPORTED_VERSION = "unsupported_version"
    OTHER = "other"


class LogCategory(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CHAT = "chat"
    CHAT_OUT = "chat_out"
    COMMAND = "command"
    SERVER = "server"


def _make_id() -> str:
    return str(uuid.uuid4())


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class IdleConfig:
    """Which persistent control states to hold while connected."""
    crouch: bool = False
    jump: bool = False

    @property
    def enabled(self) -> bool:
        return self.crouch or self.jump

    def to_dict(self) -> dict[str, bool]:
        return {"crouch": self.crouch, "jump": self.jump}


@dataclass(frozen=True)
class SessionConfig:
    """User-supplied configuration for one managed session."""
    host: str
    port: int
    display_name: str
    secret: str
    version: str = AUTO_VERSION
    idle: IdleConfig = field(default_factory=IdleConfig)
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL

    @property
    def is_auto(self) -> bool:
        return self.version == AUTO_VERSION

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        """Build a config from a dashboard payload.

        Accepts both the dashboard's camelCase keys (``username``,
        ``password``, ``antiAfk``, ``reconnectInterval``) and snake_case.
        Raises ConfigError for missing or malformed fields.
        """
        if not isinstance(data, dict):
            raise ConfigError("Session config must be an object")

        host = str(_pick(data, "host", default="")).strip()
        if not host:
            raise ConfigError("host is required")

        try:
            port = int(_pick(data, "port", default=25565))
        except (TypeError, ValueError):
            raise ConfigError(f"port must be an integer, got {data.get('port')!r}")
        if not 1 <= port <= 65535:
            raise ConfigError(f"port out of range: {port}")

        display_name = str(
            _pick(data, "display_name", "username", "name", default="")
        ).strip()
        if not display_name:
            raise ConfigError("display name (username) is required")

        secret = _pick(data, "secret", "password", default="")
        if not isinstance(secret, str):
            raise ConfigError("password must be a string")

        version = parse_version_selector(
            _pick(data, "version", default=AUTO_VERSION)
        )

        idle_raw = _pick(data, "idle", "antiAfk", "anti_afk", default={}) or {}
        if not isinstance(idle_raw, dict):
            raise ConfigError("idle config must be an object")
        idle = IdleConfig(
            crouch=bool(idle_raw.get("crouch", False)),
            jump=bool(idle_raw.get("jump", False)),
        )

        try:
            interval = float(_pick(
                data, "reconnect_interval", "reconnectInterval",
                default=DEFAULT_RECONNECT_INTERVAL,
            ))
        except (TypeError, ValueError):
            raise ConfigError("reconnect interval must be a number")
        if interval <= 0:
            raise ConfigError(f"reconnect interval must be positive, got {interval}")

        return cls(
            host=host,
            port=port,
            display_name=display_name,
            secret=secret,
            version=version,
            idle=idle,
            reconnect_interval=interval,
        )


def parse_version_selector(value: Any) -> str:
    """Normalize ``auto`` / ``explicit:<v>`` / ``<v>`` to a selector string."""
    if value is None or value is False:
        return AUTO_VERSION
    text = str(value).strip()
    if not text or text.lower() == AUTO_VERSION:
        return AUTO_VERSION
    if text.startswith(EXPLICIT_PREFIX):
        text = text[len(EXPLICIT_PREFIX):].strip()
        if not text:
            raise ConfigError("explicit version selector is empty")
    return text


@dataclass(frozen=True)
class VersionResolution:
    version: str
    provenance: Provenance


@dataclass(frozen=True)
class LogEntry:
    timestamp: float
    category: LogCategory
    message: str

    @classmethod
    def now(cls, category: LogCategory, message: str) -> LogEntry:
        return cls(timestamp=time.time(), category=category, message=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": int(self.timestamp * 1000),
            "type": self.category.value,
            "message": self.message,
        }


@dataclass
class SessionRecord:
    """Observable state of one managed session.

    Mutated only by the session's supervisor and idle loop. The live
    client handle, timers and loop tasks belong to the supervisor.
    """
    config: SessionConfig
    session_id: str = field(default_factory=_make_id)
    status: SessionStatus = SessionStatus.DISCONNECTED
    detected_version: str | None = None
    provenance: Provenance | None = None
    actual_version: str | None = None
    reconnect_attempts: int = 0
    should_reconnect: bool = False
    # Set after an unsupported-version error; consumed by the next attempt.
    pending_fallback_version: str | None = None

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "displayName": self.config.display_name,
            "host": self.config.host,
            "port": self.config.port,
            "requestedVersion": self.config.version,
            "detectedVersion": self.detected_version,
            "versionSource": self.provenance.value if self.provenance else None,
            "actualVersion": self.actual_version,
            "status": self.status.value,
            "idleConfig": self.config.idle.to_dict(),
            "reconnectIntervalSeconds": self.config.reconnect_interval,
            "reconnectAttempts": self.reconnect_attempts,
        }


@dataclass(frozen=True)
class CommandResult:
    success: bool
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message}
