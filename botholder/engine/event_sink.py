"""Bounded per-session log buffers with fan-out to observers."""
from __future__ import annotations

import logging
from collections import deque

from .config import Observer, notify_observers
from .models import LogCategory, LogEntry

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 500

_LOG_LEVELS = {
    LogCategory.ERROR: logging.WARNING,
    LogCategory.WARNING: logging.INFO,
}


class EventSink:
    """Per-session FIFO of LogEntry objects, oldest dropped on overflow.

    Every appended entry is also pushed to subscribed observers as a
    ``log_entry`` event and mirrored to this module's logger.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._buffers: dict[str, deque[LogEntry]] = {}
        self._observers: list[Observer] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def append(
        self,
        session_id: str,
        category: LogCategory,
        message: str,
    ) -> LogEntry:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            buffer = deque(maxlen=self._capacity)
            self._buffers[session_id] = buffer
        entry = LogEntry.now(category, message)
        buffer.append(entry)

        logger.log(
            _LOG_LEVELS.get(category, logging.DEBUG),
            "[%s] %s: %s", session_id[:8], category.value, message,
        )
        notify_observers(
            self._observers,
            "log_entry",
            {"session_id": session_id, "entry": entry.to_dict()},
        )
        return entry

    def entries(self, session_id: str) -> list[LogEntry]:
        """Return a copy of the session's log in insertion order."""
        return list(self._buffers.get(session_id, ()))

    def clear(self, session_id: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is not None:
            buffer.clear()

    def dispose(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._buffers
