"""Session registry: id -> SessionRecord, with snapshot broadcast."""
from __future__ import annotations

import logging
from typing import Any

from .config import Observer, notify_observers
from .errors import SessionNotFoundError
from .models import SessionConfig, SessionRecord

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owns every SessionRecord. Ids are uuid4.

    Observers receive a ``sessions`` event carrying a fresh snapshot after
    every mutation (create, remove, and status changes reported through
    publish()).
    """

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def create(self, config: SessionConfig) -> str:
        record = SessionRecord(config=config)
        self._records[record.session_id] = record
        logger.info(
            "Registered session %s (%s @ %s:%d)",
            record.session_id, config.display_name, config.host, config.port,
        )
        self.publish()
        return record.session_id

    def get(self, session_id: str) -> SessionRecord:
        record = self._records.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def list(self) -> list[SessionRecord]:
        return list(self._records.values())

    def remove(self, session_id: str) -> SessionRecord:
        record = self._records.pop(session_id, None)
        if record is None:
            raise SessionNotFoundError(session_id)
        logger.info("Removed session %s", session_id)
        self.publish()
        return record

    def snapshot(self) -> list[dict[str, Any]]:
        """Copy of every record's observable fields, in creation order."""
        return [record.to_snapshot() for record in self._records.values()]

    def publish(self) -> None:
        notify_observers(self._observers, "sessions", {"sessions": self.snapshot()})

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._records

    def __len__(self) -> int:
        return len(self._records)
