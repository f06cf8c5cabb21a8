"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise LifecycleError rather than silently proceeding.

State Diagram:

    DISCONNECTED ─┐
    ERROR ────────┼──> CONNECTING ──┬──> CONNECTED ──┬──> DISCONNECTED
    STOPPED ──────┘        ▲        │                ├──> ERROR
                           │        │                └──> KICKED
                           │        ├──> ERROR
                           │        └──> DETECTING_VERSION
                           └─────────────────┘

    Any state ──> STOPPED  (manual stop)
"""
from __future__ import annotations

from .errors import LifecycleError
from .models import SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.DISCONNECTED: {
        SessionStatus.CONNECTING,
        SessionStatus.STOPPED,
    },
    SessionStatus.CONNECTING: {
        SessionStatus.DETECTING_VERSION,
        SessionStatus.CONNECTED,
        SessionStatus.ERROR,
        SessionStatus.STOPPED,
    },
    SessionStatus.DETECTING_VERSION: {
        SessionStatus.CONNECTING,
        SessionStatus.STOPPED,
    },
    SessionStatus.CONNECTED: {
        SessionStatus.DISCONNECTED,
        SessionStatus.ERROR,
        SessionStatus.KICKED,
        SessionStatus.STOPPED,
    },
    SessionStatus.ERROR: {
        SessionStatus.CONNECTING,
        SessionStatus.STOPPED,
    },
    SessionStatus.KICKED: {
        SessionStatus.STOPPED,
    },
    SessionStatus.STOPPED: {
        SessionStatus.CONNECTING,
        SessionStatus.STOPPED,
    },
}

# States from which a start command may begin a new connection attempt.
STARTABLE = frozenset({
    SessionStatus.DISCONNECTED,
    SessionStatus.ERROR,
    SessionStatus.STOPPED,
})

# States in which a start command is ignored.
ACTIVE = frozenset({
    SessionStatus.CONNECTING,
    SessionStatus.DETECTING_VERSION,
    SessionStatus.CONNECTED,
})


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a state transition. Raises LifecycleError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise LifecycleError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
