"""Version negotiation: ping, then handshake, then the static default."""

from __future__ import annotations

import pytest

from botholder.engine.client import SignalKind
from botholder.engine.errors import ProbeTimeoutError, ProtocolError, TransportError
from botholder.engine.models import LogCategory, Provenance
from botholder.engine.negotiator import PROBE_USERNAME, VersionNegotiator


def _ping_returning(version):
    calls = []

    async def ping(host, port, timeout):
        calls.append((host, port, timeout))
        return version

    ping.calls = calls
    return ping


def _ping_raising(exc):
    async def ping(host, port, timeout):
        raise exc

    return ping


class _Log:
    def __init__(self):
        self.entries: list[tuple[LogCategory, str]] = []

    def __call__(self, category, message):
        self.entries.append((category, message))

    def messages(self, category):
        return [m for c, m in self.entries if c is category]


@pytest.mark.asyncio
async def test_ping_success_wins(fast_config, factory):
    ping = _ping_returning("1.20.1")
    negotiator = VersionNegotiator(fast_config, factory, ping=ping)
    log = _Log()

    resolution = await negotiator.resolve("play.example.net", 25565, log)

    assert resolution.version == "1.20.1"
    assert resolution.provenance is Provenance.PING
    assert ping.calls == [("play.example.net", 25565, fast_config.probe_timeout_seconds)]
    # The handshake probe is never attempted.
    assert factory.clients == []
    assert log.messages(LogCategory.SUCCESS) == ["Detected version via status ping: 1.20.1"]


@pytest.mark.asyncio
async def test_handshake_used_when_ping_fails(fast_config, factory):
    factory.on_create = lambda client: client.emit(SignalKind.LOGIN)
    ping = _ping_raising(TransportError("play.example.net", 25565, "refused"))
    negotiator = VersionNegotiator(fast_config, factory, ping=ping)
    log = _Log()

    resolution = await negotiator.resolve("play.example.net", 25565, log)

    assert resolution.version == "1.20.1"
    assert resolution.provenance is Provenance.HANDSHAKE
    probe = factory.last
    assert probe.options.username == PROBE_USERNAME
    assert probe.options.version is None
    assert probe.quit_reasons == ["version probe finished"]
    assert probe.channel.closed
    assert any("Status ping failed" in m for m in log.messages(LogCategory.WARNING))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc",
    [
        ProbeTimeoutError("play.example.net", 25565, 0.2),
        ProtocolError("Status JSON has no version.name"),
    ],
)
async def test_every_ping_failure_kind_falls_through(fast_config, factory, exc):
    factory.on_create = lambda client: client.emit(SignalKind.LOGIN)
    negotiator = VersionNegotiator(fast_config, factory, ping=_ping_raising(exc))

    resolution = await negotiator.resolve("play.example.net", 25565)

    assert resolution.provenance is Provenance.HANDSHAKE


@pytest.mark.asyncio
async def test_handshake_error_assumes_first_common_version(fast_config, factory):
    fast_config.common_versions = ["1.19.4", "1.12.2"]
    factory.on_create = lambda client: client.emit(SignalKind.ERROR, error="ECONNRESET")
    negotiator = VersionNegotiator(
        fast_config, factory,
        ping=_ping_raising(TransportError("h", 1, "refused")),
    )

    resolution = await negotiator.resolve("h", 1)

    assert resolution.version == "1.19.4"
    assert resolution.provenance is Provenance.HANDSHAKE


@pytest.mark.asyncio
async def test_handshake_timeout_uses_default(fast_config, factory):
    negotiator = VersionNegotiator(
        fast_config, factory,
        ping=_ping_raising(TransportError("h", 1, "refused")),
    )
    log = _Log()

    resolution = await negotiator.resolve("h", 1, log)

    assert resolution.version == fast_config.default_version
    assert resolution.provenance is Provenance.DEFAULT
    assert factory.last.quit_reasons == ["version probe finished"]
    assert log.messages(LogCategory.INFO) == [f"Using default version: {fast_config.default_version}"]


@pytest.mark.asyncio
async def test_handshake_closed_before_login_uses_default(fast_config, factory):
    factory.on_create = lambda client: client.emit(SignalKind.END)
    negotiator = VersionNegotiator(
        fast_config, factory,
        ping=_ping_raising(TransportError("h", 1, "refused")),
    )

    resolution = await negotiator.resolve("h", 1)

    assert resolution.provenance is Provenance.DEFAULT


@pytest.mark.asyncio
async def test_backend_failure_uses_default(fast_config, factory):
    factory.fail_with = RuntimeError("no backend")
    negotiator = VersionNegotiator(
        fast_config, factory,
        ping=_ping_raising(TransportError("h", 1, "refused")),
    )
    log = _Log()

    resolution = await negotiator.resolve("h", 1, log)

    assert resolution.provenance is Provenance.DEFAULT
    assert any("no backend" in m for m in log.messages(LogCategory.WARNING))


@pytest.mark.asyncio
async def test_handshake_probe_timeout_raises(fast_config, factory):
    negotiator = VersionNegotiator(fast_config, factory)

    with pytest.raises(ProbeTimeoutError):
        await negotiator.handshake_probe("h", 1)
