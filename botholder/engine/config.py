"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BOTHOLDER_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Synchronous observer for engine-level events.
# Signature: def observer(event_type: str, data: dict[str, Any]) -> None
# event_type is "sessions" (full snapshot list) or "log_entry".
Observer = Callable[[str, dict[str, Any]], None]


def notify_observers(
    observers: list[Observer],
    event_type: str,
    data: dict[str, Any],
) -> None:
    """Deliver an event to every observer; observer errors are logged only."""
    for observer in list(observers):
        try:
            observer(event_type, data)
        except Exception:
            logger.exception("Observer %r failed on %s event", observer, event_type)


DEFAULT_VERSION = "1.20.1"
COMMON_VERSIONS = ["1.20.1", "1.19.4", "1.18.2", "1.16.5", "1.12.2"]
FALLBACK_VERSIONS = ["1.19.4", "1.18.2", "1.16.5"]


@dataclass
class ManagerConfig:
    """Session engine and gateway configuration."""

    # Gateway
    host: str = "0.0.0.0"
    port: int = 80

    # Version negotiation
    default_version: str = DEFAULT_VERSION
    common_versions: list[str] = field(default_factory=lambda: list(COMMON_VERSIONS))
    fallback_versions: list[str] = field(default_factory=lambda: list(FALLBACK_VERSIONS))
    probe_timeout_seconds: float = 5.0
    handshake_timeout_seconds: float = 10.0

    # Reconnection
    max_reconnect_attempts: int = 10

    # Idle prevention and death handling
    idle_activation_delay_seconds: float = 2.0
    idle_check_interval_seconds: float = 5.0
    respawn_delay_seconds: float = 2.0

    # Per-session log buffer
    log_capacity: int = 500

    # Game client backend, as "package.module:callable".
    client_factory: str | None = None

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> ManagerConfig:
        """Load configuration from BOTHOLDER_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("BOTHOLDER_")
        }
        if env_vars:
            logger.info(
                "ManagerConfig.from_env: BOTHOLDER_* env overrides: %s",
                ", ".join(sorted(env_vars)),
            )
        else:
            logger.debug("ManagerConfig.from_env: no BOTHOLDER_* env vars set, using defaults")

        config = cls(
            host=os.getenv("BOTHOLDER_HOST", cls.host),
            port=int(os.getenv("BOTHOLDER_PORT", os.getenv("PORT", str(cls.port)))),
            default_version=os.getenv(
                "BOTHOLDER_DEFAULT_VERSION", cls.default_version
            ),
            probe_timeout_seconds=float(os.getenv(
                "BOTHOLDER_PROBE_TIMEOUT", str(cls.probe_timeout_seconds)
            )),
            handshake_timeout_seconds=float(os.getenv(
                "BOTHOLDER_HANDSHAKE_TIMEOUT",
                str(cls.handshake_timeout_seconds),
            )),
            max_reconnect_attempts=int(os.getenv(
                "BOTHOLDER_MAX_RECONNECTS", str(cls.max_reconnect_attempts)
            )),
            idle_activation_delay_seconds=float(os.getenv(
                "BOTHOLDER_IDLE_DELAY", str(cls.idle_activation_delay_seconds)
            )),
            idle_check_interval_seconds=float(os.getenv(
                "BOTHOLDER_IDLE_INTERVAL", str(cls.idle_check_interval_seconds)
            )),
            respawn_delay_seconds=float(os.getenv(
                "BOTHOLDER_RESPAWN_DELAY", str(cls.respawn_delay_seconds)
            )),
            log_capacity=int(os.getenv(
                "BOTHOLDER_LOG_CAPACITY", str(cls.log_capacity)
            )),
            client_factory=os.getenv("BOTHOLDER_CLIENT_FACTORY") or None,
            log_level=os.getenv("BOTHOLDER_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "ManagerConfig.from_env: listen=%s:%d default_version=%s client=%s",
            config.host, config.port, config.default_version,
            config.client_factory or "<none>",
        )
        return config
