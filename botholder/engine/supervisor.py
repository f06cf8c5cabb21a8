"""Per-session connection supervisor.

Drives one session through its lifecycle (see lifecycle.py): version
negotiation, client creation, reaction to client signals, bounded
reconnection, death/respawn handling and idle-prevention activation.

Every client handle gets a fresh generation number. Its signals arrive on
the session's queue stamped with that number and are consumed by a single
task, so handlers for one session never interleave. Signals from a handle
that has since been released are dropped.
"""
from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import Any

from .client import (
    ClientFactory,
    ClientOptions,
    ClientSignal,
    GameClient,
    SignalChannel,
    SignalKind,
)
from .config import ManagerConfig
from .errors import ClientBackendError, LifecycleError, NotConnectedError
from .event_sink import EventSink
from .idle_loop import IdlePreventionLoop
from .lifecycle import ACTIVE, STARTABLE, validate_transition
from .models import ErrorKind, LogCategory, Provenance, SessionRecord, SessionStatus
from .negotiator import VersionNegotiator
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

COMMAND_MARKER = "/"

# Server chat lines that are noise in the session log.
_SERVER_NOISE_MARKERS = ("§", "[Server]")
_SERVER_NOISE_PREFIXES = ("Teleported",)


def classify_error(error: Any) -> ErrorKind:
    """Map a client error (exception or message) to a diagnostic kind."""
    message = str(error)
    lowered = message.lower()
    if isinstance(error, socket.gaierror) or "enotfound" in lowered or "getaddrinfo" in lowered:
        return ErrorKind.ADDRESS_RESOLUTION
    if isinstance(error, ConnectionRefusedError) or "econnrefused" in lowered or "connection refused" in lowered:
        return ErrorKind.CONNECTION_REFUSED
    if "invalid username" in lowered:
        return ErrorKind.INVALID_IDENTITY
    if "unsupported protocol version" in lowered:
        return ErrorKind.UNSUPPORTED_VERSION
    return ErrorKind.OTHER


def is_loggable_server_message(text: str) -> bool:
    if not text.strip():
        return False
    if any(marker in text for marker in _SERVER_NOISE_MARKERS):
        return False
    return not text.startswith(_SERVER_NOISE_PREFIXES)


class ConnectionSupervisor:
    """Owns the client handle, timers and idle loop of one session."""

    def __init__(
        self,
        record: SessionRecord,
        registry: SessionRegistry,
        sink: EventSink,
        negotiator: VersionNegotiator,
        client_factory: ClientFactory,
        config: ManagerConfig,
    ) -> None:
        self._record = record
        self._registry = registry
        self._sink = sink
        self._negotiator = negotiator
        self._client_factory = client_factory
        self._config = config

        self._queue: asyncio.Queue[ClientSignal] = asyncio.Queue()
        self._generation = 0
        self._client: GameClient | None = None
        self._channel: SignalChannel | None = None

        self._consumer_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._idle_activation_task: asyncio.Task | None = None
        self._respawn_task: asyncio.Task | None = None

        self._idle = IdlePreventionLoop(
            record, self._log, config.idle_check_interval_seconds,
        )

    # ── Introspection ──

    @property
    def record(self) -> SessionRecord:
        return self._record

    @property
    def status(self) -> SessionStatus:
        return self._record.status

    @property
    def client(self) -> GameClient | None:
        return self._client

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def reconnect_pending(self) -> bool:
        return _pending(self._reconnect_task)

    @property
    def idle_active(self) -> bool:
        return self._idle.active

    @property
    def idle_activation_pending(self) -> bool:
        return _pending(self._idle_activation_task)

    # ── Helpers ──

    @property
    def _name(self) -> str:
        return self._record.config.display_name

    def _log(self, category: LogCategory, message: str) -> None:
        self._sink.append(self._record.session_id, category, message)

    def _set_status(self, target: SessionStatus) -> None:
        current = self._record.status
        validate_transition(current, target)
        self._record.status = target
        logger.debug(
            "Session %s: %s -> %s",
            self._record.session_id[:8], current.value, target.value,
        )
        self._registry.publish()

    # ── Commands ──

    def start(self) -> bool:
        """Begin a connection attempt. Returns False if already active."""
        if self._record.status in ACTIVE:
            logger.debug("Session %s already active", self._record.session_id[:8])
            return False
        if self._record.status is SessionStatus.KICKED:
            self.stop()
        if self._record.status not in STARTABLE:
            raise LifecycleError(f"Cannot start from {self._record.status.value}")

        self._cancel_reconnect()
        # Signals the previous handle already queued must not reach this attempt.
        self._release_client()
        self._record.should_reconnect = True
        self._set_status(SessionStatus.CONNECTING)
        self._log(LogCategory.INFO, f"Starting {self._name}")
        self._ensure_consumer()
        self._connect_task = asyncio.create_task(self._connect())
        return True

    def stop(self) -> None:
        """Stop the session. Never raises on client release failure."""
        self._log(LogCategory.INFO, f"Stopping {self._name}")
        self._record.should_reconnect = False

        self._cancel_reconnect()
        _cancel(self._connect_task)
        self._connect_task = None
        _cancel(self._idle_activation_task)
        self._idle_activation_task = None
        _cancel(self._respawn_task)
        self._respawn_task = None
        if self._idle.cancel():
            self._log(LogCategory.INFO, f"Idle prevention stopped for {self._name}")

        client, self._client = self._client, None
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        if client is not None:
            try:
                self._idle.clear_controls(client)
                client.quit("Stopped by user")
            except Exception as exc:
                error = LifecycleError(f"Error while stopping {self._name}: {exc}")
                self._log(LogCategory.ERROR, str(error))

        self._record.reconnect_attempts = 0
        self._record.pending_fallback_version = None
        self._set_status(SessionStatus.STOPPED)
        self._log(LogCategory.INFO, f"{self._name} stopped")

    def close(self) -> None:
        """Stop and tear down the signal consumer (session deletion)."""
        self.stop()
        _cancel(self._consumer_task)
        self._consumer_task = None

    def send(self, text: str) -> None:
        """Send chat text, or a server command when it starts with '/'."""
        client = self._client
        if client is None or self._record.status is not SessionStatus.CONNECTED:
            self._log(LogCategory.ERROR, "Cannot send message - not connected")
            raise NotConnectedError(self._record.session_id, self._record.status.value)
        try:
            client.chat(text)
        except Exception as exc:
            self._log(LogCategory.ERROR, f"Failed to send message: {exc}")
            raise ClientBackendError(str(exc)) from exc
        if text.startswith(COMMAND_MARKER):
            self._log(LogCategory.COMMAND, f"[{self._name}] Executed command: {text}")
        else:
            self._log(LogCategory.CHAT_OUT, f"[{self._name}] Sent: {text}")

    # ── Connection ──

    async def _connect(self) -> None:
        record = self._record
        config = record.config
        try:
            if record.pending_fallback_version:
                version = record.pending_fallback_version
                record.pending_fallback_version = None
                record.detected_version = version
                record.provenance = Provenance.FALLBACK
                self._log(LogCategory.INFO, f"Trying fallback version {version}")
            elif config.is_auto:
                self._set_status(SessionStatus.DETECTING_VERSION)
                self._log(
                    LogCategory.INFO,
                    f"Detecting server version {config.host}:{config.port}...",
                )
                resolution = await self._negotiator.resolve(
                    config.host, config.port, self._log,
                )
                if record.status is not SessionStatus.DETECTING_VERSION:
                    return
                record.detected_version = resolution.version
                record.provenance = resolution.provenance
                self._set_status(SessionStatus.CONNECTING)
                version = resolution.version
            else:
                version = config.version
            if record.status is not SessionStatus.CONNECTING:
                return
            self._open_client(version)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Client creation failed for %s", self._name, exc_info=True)
            self._fail(f"Failed to create client for {self._name}: {exc}")
        finally:
            if self._connect_task is asyncio.current_task():
                self._connect_task = None

    def _open_client(self, version: str) -> None:
        self._release_client()
        self._generation += 1
        channel = SignalChannel(self._queue, self._generation)
        config = self._record.config
        options = ClientOptions(
            host=config.host,
            port=config.port,
            username=config.display_name,
            version=version,
        )
        details = dict(options.to_dict(), detectedVersion=self._record.detected_version)
        self._log(LogCategory.INFO, f"Creating client with options: {json.dumps(details)}")
        self._channel = channel
        self._client = self._client_factory(options, channel)

    def _release_client(self) -> None:
        self._idle.cancel()
        client, self._client = self._client, None
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        if client is None or client.ended:
            return
        try:
            client.quit("Reconnecting")
        except Exception as exc:
            self._log(LogCategory.ERROR, str(LifecycleError(f"Error releasing previous client: {exc}")))

    def _fail(self, message: str) -> None:
        self._log(LogCategory.ERROR, message)
        if self._record.status is SessionStatus.DETECTING_VERSION:
            self._set_status(SessionStatus.CONNECTING)
        if self._record.status not in (SessionStatus.CONNECTING, SessionStatus.CONNECTED):
            return
        self._idle.cancel()
        self._set_status(SessionStatus.ERROR)
        self._schedule_reconnect()

    # ── Reconnection ──

    def _cancel_reconnect(self) -> None:
        _cancel(self._reconnect_task)
        self._reconnect_task = None

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        record = self._record
        if not record.should_reconnect:
            return
        limit = self._config.max_reconnect_attempts
        if record.reconnect_attempts >= limit:
            self._log(
                LogCategory.WARNING,
                f"Giving up on {self._name} after {limit} reconnect attempts",
            )
            return
        delay = record.config.reconnect_interval
        self._log(
            LogCategory.INFO,
            f"Reconnecting in {delay:g}s (attempt {record.reconnect_attempts + 1}/{limit})",
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None
        record = self._record
        if not record.should_reconnect or record.status not in STARTABLE:
            return
        record.reconnect_attempts += 1
        self.start()

    # ── Idle prevention / death ──

    def _schedule_idle_activation(self) -> None:
        _cancel(self._idle_activation_task)
        self._idle_activation_task = asyncio.create_task(
            self._activate_idle_after(self._config.idle_activation_delay_seconds)
        )

    async def _activate_idle_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._idle_activation_task is asyncio.current_task():
            self._idle_activation_task = None
        client = self._client
        if client is None or client.ended or self._record.status is not SessionStatus.CONNECTED:
            return
        self._idle.activate(client)

    async def _respawn_after(self, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        if self._respawn_task is asyncio.current_task():
            self._respawn_task = None
        client = self._client
        if client is None or client.ended or generation != self._generation:
            return
        try:
            client.respawn()
        except Exception as exc:
            self._log(LogCategory.ERROR, f"Respawn failed for {self._name}: {exc}")
            return
        self._schedule_idle_activation()

    # ── Signal consumption ──

    def _ensure_consumer(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            signal = await self._queue.get()
            try:
                self.handle_signal(signal)
            except Exception:
                logger.exception(
                    "Error handling %s for session %s (consumer continues)",
                    signal.kind.value, self._record.session_id,
                )

    def handle_signal(self, signal: ClientSignal) -> None:
        if signal.generation != self._generation or self._client is None:
            logger.debug(
                "Dropping stale %s signal (generation %d, current %d)",
                signal.kind.value, signal.generation, self._generation,
            )
            return
        handler = getattr(self, f"_on_{signal.kind.value}")
        handler(signal.data)

    def _on_connect(self, data: dict[str, Any]) -> None:
        self._log(LogCategory.INFO, f"{self._name} established a TCP connection")

    def _on_login(self, data: dict[str, Any]) -> None:
        record = self._record
        if record.status is not SessionStatus.CONNECTING:
            return
        config = record.config
        actual = self._client.version or record.detected_version or config.version
        record.actual_version = actual
        record.reconnect_attempts = 0
        self._set_status(SessionStatus.CONNECTED)
        self._log(
            LogCategory.SUCCESS,
            f"{self._name} logged in to {config.host}:{config.port}",
        )
        detected = f" (detected: {record.detected_version})" if record.detected_version else ""
        self._log(LogCategory.INFO, f"Version: {actual}{detected}")
        self._schedule_idle_activation()

    def _on_spawn(self, data: dict[str, Any]) -> None:
        position = data.get("position")
        if position:
            x, y, z = position
            self._log(LogCategory.INFO, f"Position: x={x:.2f}, y={y:.2f}, z={z:.2f}")

    def _on_chat(self, data: dict[str, Any]) -> None:
        username = data.get("username", "")
        if username == self._name:
            return
        self._log(LogCategory.CHAT, f"[CHAT] {username}: {data.get('message', '')}")

    def _on_message(self, data: dict[str, Any]) -> None:
        text = str(data.get("text", ""))
        if is_loggable_server_message(text):
            self._log(LogCategory.SERVER, f"[SERVER] {text}")

    def _on_server_disconnect(self, data: dict[str, Any]) -> None:
        self._log(
            LogCategory.ERROR,
            f"{self._name} was disconnected by the server: {data.get('reason', '')}",
        )

    def _on_kicked(self, data: dict[str, Any]) -> None:
        reason = data.get("reason", "")
        if self._record.status is SessionStatus.CONNECTING:
            self._fail(f"{self._name} was kicked before login: {reason}")
            return
        if self._record.status is not SessionStatus.CONNECTED:
            return
        self._log(
            LogCategory.WARNING,
            f"{self._name} was kicked: {reason} (logged in: {data.get('logged_in', True)})",
        )
        self._cancel_reconnect()
        self._idle.cancel()
        self._set_status(SessionStatus.KICKED)

    def _on_end(self, data: dict[str, Any]) -> None:
        status = self._record.status
        if status is SessionStatus.CONNECTING:
            self._fail(f"{self._name} connection closed before login")
            return
        if status is not SessionStatus.CONNECTED:
            return
        self._log(LogCategory.INFO, f"{self._name} disconnected")
        self._idle.cancel()
        self._set_status(SessionStatus.DISCONNECTED)
        self._schedule_reconnect()

    def _on_error(self, data: dict[str, Any]) -> None:
        error = data.get("error", "unknown error")
        record = self._record
        config = record.config
        self._log(LogCategory.ERROR, f"{self._name} error: {error}")

        kind = classify_error(error)
        if kind is ErrorKind.ADDRESS_RESOLUTION:
            self._log(LogCategory.ERROR, f"Cannot resolve address: {config.host}")
        elif kind is ErrorKind.CONNECTION_REFUSED:
            self._log(LogCategory.ERROR, f"Connection refused on port {config.port}")
        elif kind is ErrorKind.INVALID_IDENTITY:
            self._log(LogCategory.ERROR, f"Invalid username: {config.display_name}")
        elif kind is ErrorKind.UNSUPPORTED_VERSION:
            self._log(LogCategory.ERROR, "Unsupported protocol version. Try another version.")
            fallbacks = self._config.fallback_versions
            if config.is_auto and record.reconnect_attempts < len(fallbacks):
                fallback = fallbacks[record.reconnect_attempts]
                record.pending_fallback_version = fallback
                self._log(LogCategory.INFO, f"Next attempt will use fallback version {fallback}")

        if record.status not in (SessionStatus.CONNECTING, SessionStatus.CONNECTED):
            return
        self._idle.cancel()
        self._set_status(SessionStatus.ERROR)
        self._schedule_reconnect()

    def _on_death(self, data: dict[str, Any]) -> None:
        delay = self._config.respawn_delay_seconds
        self._log(LogCategory.WARNING, f"{self._name} died - respawning in {delay:g}s")
        _cancel(self._respawn_task)
        self._respawn_task = asyncio.create_task(
            self._respawn_after(delay, self._generation)
        )

    def _on_respawn(self, data: dict[str, Any]) -> None:
        self._log(LogCategory.INFO, f"{self._name} respawned")
        self._schedule_idle_activation()


def _pending(task: asyncio.Task | None) -> bool:
    return task is not None and not task.done()


def _cancel(task: asyncio.Task | None) -> None:
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()
