from __future__ import annotations

import asyncio
from typing import Any

import pytest

from botholder.engine.client import (
    ClientOptions,
    GameClient,
    SignalChannel,
    SignalKind,
)
from botholder.engine.config import ManagerConfig
from botholder.engine.models import Provenance, VersionResolution


class FakeClient(GameClient):
    """In-memory game client; tests drive it by emitting signals."""

    def __init__(
        self,
        options: ClientOptions,
        channel: SignalChannel,
        negotiated_version: str = "1.20.1",
    ) -> None:
        self.options = options
        self.channel = channel
        self._version = options.version or negotiated_version
        self._ended = False
        self.controls: dict[str, bool] = {}
        self.chats: list[str] = []
        self.respawns = 0
        self.quit_reasons: list[str] = []
        self.quit_error: Exception | None = None

    @property
    def version(self) -> str | None:
        return self._version

    @property
    def ended(self) -> bool:
        return self._ended

    def chat(self, text: str) -> None:
        self.chats.append(text)

    def respawn(self) -> None:
        self.respawns += 1

    def set_control_state(self, control: str, active: bool) -> None:
        self.controls[control] = active

    def get_control_state(self, control: str) -> bool:
        return self.controls.get(control, False)

    def quit(self, reason: str = "") -> None:
        self.quit_reasons.append(reason)
        if self.quit_error is not None:
            raise self.quit_error
        self._ended = True

    def emit(self, kind: SignalKind, **data: Any) -> None:
        self.channel.emit(kind, **data)


class FakeFactory:
    """Client factory recording every client it builds.

    ``on_create`` runs against each new client, e.g. to emit a signal
    right away; ``fail_with`` makes creation raise.
    """

    def __init__(self, on_create=None, fail_with: Exception | None = None) -> None:
        self.clients: list[FakeClient] = []
        self.on_create = on_create
        self.fail_with = fail_with

    def __call__(self, options: ClientOptions, channel: SignalChannel) -> FakeClient:
        if self.fail_with is not None:
            raise self.fail_with
        client = FakeClient(options, channel)
        self.clients.append(client)
        if self.on_create is not None:
            self.on_create(client)
        return client

    @property
    def last(self) -> FakeClient:
        return self.clients[-1]


class StubNegotiator:
    """Negotiator returning a fixed resolution without any I/O."""

    def __init__(self, version: str = "1.20.1", provenance: Provenance = Provenance.PING) -> None:
        self.resolution = VersionResolution(version, provenance)
        self.calls: list[tuple[str, int]] = []

    async def resolve(self, host, port, log=None) -> VersionResolution:
        self.calls.append((host, port))
        return self.resolution


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def fast_config() -> ManagerConfig:
    return ManagerConfig(
        idle_activation_delay_seconds=0.02,
        idle_check_interval_seconds=0.02,
        respawn_delay_seconds=0.02,
        probe_timeout_seconds=0.2,
        handshake_timeout_seconds=0.2,
    )


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def negotiator() -> StubNegotiator:
    return StubNegotiator()


def session_dict(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "host": "play.example.net",
        "port": 25565,
        "username": "Keeper",
        "password": "hunter2",
        "version": "1.20.1",
        "antiAfk": {"crouch": True, "jump": False},
        "reconnectInterval": 60,
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_session_dict():
    return session_dict


def build_client(version: str | None = "1.20.1") -> FakeClient:
    queue: asyncio.Queue = asyncio.Queue()
    options = ClientOptions(host="play.example.net", port=25565, username="Keeper", version=version)
    return FakeClient(options, SignalChannel(queue, generation=1))


@pytest.fixture
def make_client():
    return build_client
