"""Game client backend seam.

The engine never talks the game protocol itself. A backend supplies a
factory that builds a GameClient for given ClientOptions and reports the
client's lifecycle through the SignalChannel it was handed. Backends are
configured as ``"package.module:callable"`` and loaded with
load_client_factory().
"""
from __future__ import annotations

import abc
import asyncio
import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ClientBackendError

logger = logging.getLogger(__name__)

SNEAK = "sneak"
JUMP = "jump"


class SignalKind(str, Enum):
    """Lifecycle signals a backend may deliver."""
    CONNECT = "connect"          # transport established
    LOGIN = "login"              # logged in; version is known
    SPAWN = "spawn"              # data: position=(x, y, z)
    CHAT = "chat"                # data: username, message
    MESSAGE = "message"          # data: text
    SERVER_DISCONNECT = "server_disconnect"  # data: reason
    KICKED = "kicked"            # data: reason, logged_in
    END = "end"                  # clean close
    ERROR = "error"              # data: error (exception or str)
    DEATH = "death"
    RESPAWN = "respawn"


@dataclass(frozen=True)
class ClientSignal:
    kind: SignalKind
    generation: int
    data: dict[str, Any] = field(default_factory=dict)


class SignalChannel:
    """Write end handed to a backend for one client handle.

    Signals are stamped with the handle's generation so the supervisor can
    drop anything a released handle still emits. Once closed, emit() is a
    no-op.
    """

    def __init__(self, queue: asyncio.Queue[ClientSignal], generation: int) -> None:
        self._queue = queue
        self._generation = generation
        self._closed = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, kind: SignalKind, **data: Any) -> None:
        if self._closed:
            return
        self._queue.put_nowait(ClientSignal(kind, self._generation, data))

    def close(self) -> None:
        self._closed = True


@dataclass(frozen=True)
class ClientOptions:
    host: str
    port: int
    username: str
    # None lets the backend negotiate the version itself.
    version: str | None = None
    auth: str = "offline"
    hide_errors: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "version": self.version,
            "auth": self.auth,
        }


class GameClient(abc.ABC):
    """Live handle to one game client connection."""

    @property
    @abc.abstractmethod
    def version(self) -> str | None:
        """Protocol version in use, once known."""

    @property
    @abc.abstractmethod
    def ended(self) -> bool:
        """True once the underlying connection is closed."""

    @abc.abstractmethod
    def chat(self, text: str) -> None:
        """Send chat text; text starting with '/' is a server command."""

    @abc.abstractmethod
    def respawn(self) -> None:
        ...

    @abc.abstractmethod
    def set_control_state(self, control: str, active: bool) -> None:
        ...

    @abc.abstractmethod
    def get_control_state(self, control: str) -> bool:
        ...

    @abc.abstractmethod
    def quit(self, reason: str = "") -> None:
        ...


ClientFactory = Callable[[ClientOptions, SignalChannel], GameClient]


def unavailable_factory(options: ClientOptions, channel: SignalChannel) -> GameClient:
    """Factory used when no backend is configured."""
    raise ClientBackendError(
        "No game client backend configured "
        "(set BOTHOLDER_CLIENT_FACTORY or client.factory in the YAML config)"
    )


def load_client_factory(spec: str | None) -> ClientFactory:
    """Resolve ``"package.module:callable"`` to a client factory."""
    if not spec:
        logger.warning("No client backend configured; sessions cannot connect")
        return unavailable_factory
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ClientBackendError(
            f"Client factory must look like 'package.module:callable', got {spec!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ClientBackendError(f"Cannot import client backend {module_name}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ClientBackendError(f"{spec} is not a callable client factory")
    logger.info("Loaded client backend %s", spec)
    return factory
