"""Session manager: single owner of the registry, event sink and supervisors.

This is the Python-level command surface the HTTP gateway wraps. Auth and
not-connected failures are raised as typed errors (or, for
issue_command, returned as a failed CommandResult); they never change
session state.
"""
from __future__ import annotations

import hmac
import logging
from typing import Any

from .client import ClientFactory, load_client_factory
from .config import ManagerConfig, Observer
from .errors import AuthError, SessionNotFoundError
from .event_sink import EventSink
from .models import CommandResult, LogCategory, LogEntry, SessionConfig, SessionRecord
from .negotiator import VersionNegotiator
from .registry import SessionRegistry
from .supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

ACTIONS = ("start", "stop", "delete")


class SessionManager:
    """Creates, drives and deletes managed sessions."""

    def __init__(
        self,
        config: ManagerConfig | None = None,
        client_factory: ClientFactory | None = None,
        negotiator: VersionNegotiator | None = None,
    ) -> None:
        self._config = config or ManagerConfig()
        self._client_factory = client_factory or load_client_factory(
            self._config.client_factory
        )
        self._negotiator = negotiator or VersionNegotiator(
            self._config, self._client_factory,
        )
        self._registry = SessionRegistry()
        self._sink = EventSink(self._config.log_capacity)
        self._supervisors: dict[str, ConnectionSupervisor] = {}

    @property
    def config(self) -> ManagerConfig:
        return self._config

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def sink(self) -> EventSink:
        return self._sink

    def subscribe(self, observer: Observer) -> None:
        """Receive ``sessions`` snapshots and ``log_entry`` events."""
        self._registry.subscribe(observer)
        self._sink.subscribe(observer)

    def unsubscribe(self, observer: Observer) -> None:
        self._registry.unsubscribe(observer)
        self._sink.unsubscribe(observer)

    # ── Queries ──

    def get(self, session_id: str) -> SessionRecord:
        return self._registry.get(session_id)

    def supervisor(self, session_id: str) -> ConnectionSupervisor:
        supervisor = self._supervisors.get(session_id)
        if supervisor is None:
            raise SessionNotFoundError(session_id)
        return supervisor

    def snapshot(self) -> list[dict[str, Any]]:
        return self._registry.snapshot()

    # ── Commands ──

    def create_session(self, config: SessionConfig | dict[str, Any]) -> str:
        if not isinstance(config, SessionConfig):
            config = SessionConfig.from_dict(config)
        session_id = self._registry.create(config)
        self._supervisors[session_id] = ConnectionSupervisor(
            record=self._registry.get(session_id),
            registry=self._registry,
            sink=self._sink,
            negotiator=self._negotiator,
            client_factory=self._client_factory,
            config=self._config,
        )
        self._sink.append(session_id, LogCategory.INFO, f"Session {config.display_name} created")
        return session_id

    def issue_command(
        self,
        session_id: str,
        action: str,
        credential: str | None,
    ) -> CommandResult:
        try:
            record = self._registry.get(session_id)
            self._authorize(record, credential)
        except (SessionNotFoundError, AuthError) as exc:
            logger.info("Rejected %s on %s: %s", action, session_id, exc)
            return CommandResult(False, str(exc))

        supervisor = self._supervisors[session_id]
        if action == "start":
            if not supervisor.start():
                return CommandResult(True, "Session is already running")
            return CommandResult(True)
        if action == "stop":
            supervisor.stop()
            return CommandResult(True)
        if action == "delete":
            self._delete(session_id)
            return CommandResult(True)
        return CommandResult(False, f"Unknown action: {action}")

    def fetch_logs(self, session_id: str, credential: str | None) -> list[LogEntry]:
        record = self._registry.get(session_id)
        self._authorize(record, credential)
        return self._sink.entries(session_id)

    def send_message(self, session_id: str, text: str) -> None:
        self.supervisor(session_id).send(text)

    def clear_logs(self, session_id: str) -> None:
        # Matches the dashboard's behaviour: no credential required.
        self._registry.get(session_id)
        self._sink.clear(session_id)

    def shutdown(self) -> None:
        """Stop every session; used on server exit."""
        for session_id, supervisor in list(self._supervisors.items()):
            try:
                supervisor.close()
            except Exception:
                logger.exception("Failed to close session %s during shutdown", session_id)

    # ── Internals ──

    def _authorize(self, record: SessionRecord, credential: str | None) -> None:
        expected = record.config.secret.encode("utf-8")
        given = (credential or "").encode("utf-8")
        if not hmac.compare_digest(expected, given):
            raise AuthError(record.session_id)

    def _delete(self, session_id: str) -> None:
        supervisor = self._supervisors.pop(session_id)
        supervisor.close()
        self._registry.remove(session_id)
        self._sink.dispose(session_id)
