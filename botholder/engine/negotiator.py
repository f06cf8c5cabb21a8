"""Protocol version negotiation for sessions with the ``auto`` selector.

Three strategies are tried in order and the first success wins:

    A. raw status ping    (status_probe.ping_server, bounded)
    B. full handshake     (throwaway client through the backend, bounded)
    C. static default

Failures of A and B are logged and never leave resolve().
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .client import ClientFactory, ClientOptions, SignalChannel, SignalKind
from .config import ManagerConfig
from .errors import ProbeTimeoutError, ProtocolError, TransportError
from .models import LogCategory, Provenance, VersionResolution
from .status_probe import ping_server

logger = logging.getLogger(__name__)

PROBE_USERNAME = "temp_ping_bot"

LogFn = Callable[[LogCategory, str], None]


def _no_log(category: LogCategory, message: str) -> None:
    logger.debug("%s: %s", category.value, message)


class VersionNegotiator:
    """Resolves the protocol version a server speaks."""

    def __init__(
        self,
        config: ManagerConfig,
        client_factory: ClientFactory,
        ping: Callable[..., Awaitable[str]] = ping_server,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._ping = ping

    async def resolve(
        self,
        host: str,
        port: int,
        log: LogFn | None = None,
    ) -> VersionResolution:
        log = log or _no_log

        try:
            version = await self._ping(
                host, port, timeout=self._config.probe_timeout_seconds,
            )
            log(LogCategory.SUCCESS, f"Detected version via status ping: {version}")
            return VersionResolution(version, Provenance.PING)
        except (TransportError, ProbeTimeoutError, ProtocolError) as exc:
            log(LogCategory.WARNING, f"Status ping failed: {exc}")

        try:
            version = await self.handshake_probe(host, port, log)
            return VersionResolution(version, Provenance.HANDSHAKE)
        except Exception as exc:
            log(LogCategory.WARNING, f"Automatic version detection failed: {exc}")

        version = self._config.default_version
        log(LogCategory.INFO, f"Using default version: {version}")
        return VersionResolution(version, Provenance.DEFAULT)

    async def handshake_probe(
        self,
        host: str,
        port: int,
        log: LogFn | None = None,
    ) -> str:
        """Log in with a throwaway client and read the negotiated version.

        An error reported by the probe client resolves to the first common
        version. Raises ProbeTimeoutError if no answer arrives in time and
        TransportError if the client closes before logging in.
        """
        log = log or _no_log
        queue: asyncio.Queue = asyncio.Queue()
        channel = SignalChannel(queue, generation=0)
        options = ClientOptions(
            host=host,
            port=port,
            username=PROBE_USERNAME,
            version=None,
            hide_errors=True,
        )
        client = self._client_factory(options, channel)
        timeout = self._config.handshake_timeout_seconds

        async def _await_outcome() -> str:
            while True:
                signal = await queue.get()
                if signal.kind is SignalKind.LOGIN:
                    if not client.version:
                        raise ProtocolError("Probe client logged in without a version")
                    log(
                        LogCategory.SUCCESS,
                        f"Detected version via handshake: {client.version}",
                    )
                    return client.version
                if signal.kind is SignalKind.ERROR:
                    guess = self._config.common_versions[0]
                    log(
                        LogCategory.WARNING,
                        f"Handshake probe error: {signal.data.get('error')}; "
                        f"assuming common version {guess}",
                    )
                    return guess
                if signal.kind is SignalKind.END:
                    raise TransportError(host, port, "closed before login")

        try:
            return await asyncio.wait_for(_await_outcome(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ProbeTimeoutError(host, port, timeout) from exc
        finally:
            channel.close()
            try:
                client.quit("version probe finished")
            except Exception:
                logger.debug("Ignoring error while closing probe client", exc_info=True)
