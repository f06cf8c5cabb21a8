"""Exception hierarchy for the session engine.

Negotiation errors (transport, timeout, protocol) are recovered inside the
version negotiator. Auth and not-connected errors surface to the caller as
structured failures. Nothing here is meant to reach the event loop.
"""
from __future__ import annotations


class BotholderError(Exception):
    """Base exception for all engine errors."""


class ConfigError(BotholderError, ValueError):
    """Invalid session or engine configuration."""


class SessionNotFoundError(BotholderError):
    """No session is registered under the given id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} does not exist")


class TransportError(BotholderError):
    """Address resolution failed, connection refused or reset."""
    def __init__(self, host: str, port: int, reason: str):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Transport error talking to {host}:{port}: {reason}")


class ProbeTimeoutError(BotholderError, TimeoutError):
    """A negotiation probe exceeded its time bound."""
    def __init__(self, host: str, port: int, timeout_seconds: float):
        self.host = host
        self.port = port
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Probe of {host}:{port} timed out after {timeout_seconds}s"
        )


class ProtocolError(BotholderError):
    """Malformed frame or JSON, or unsupported protocol version."""


class AuthError(BotholderError):
    """Credential did not match the session's stored secret."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Invalid password")


class NotConnectedError(BotholderError):
    """Action requires a connected session."""
    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is not connected (status: {status})")


class LifecycleError(BotholderError):
    """Invalid state transition or failure releasing a client handle."""


class ClientBackendError(BotholderError):
    """The game client backend is missing or could not create a client."""
