"""Connection supervisor: state machine, reconnection, death handling, stop."""

from __future__ import annotations

import asyncio

import pytest

from botholder.engine.client import JUMP, SNEAK, ClientSignal, SignalKind
from botholder.engine.errors import NotConnectedError
from botholder.engine.event_sink import EventSink
from botholder.engine.models import (
    IdleConfig,
    LogCategory,
    ErrorKind,
    Provenance,
    SessionConfig,
    SessionStatus,
    VersionResolution,
)
from botholder.engine.registry import SessionRegistry
from botholder.engine.supervisor import (
    ConnectionSupervisor,
    classify_error,
    is_loggable_server_message,
)


def _build(
    fast_config,
    factory,
    negotiator,
    *,
    version: str = "1.20.1",
    crouch: bool = True,
    jump: bool = False,
    interval: float = 60.0,
):
    registry = SessionRegistry()
    sink = EventSink(fast_config.log_capacity)
    config = SessionConfig(
        host="play.example.net",
        port=25565,
        display_name="Keeper",
        secret="hunter2",
        version=version,
        idle=IdleConfig(crouch=crouch, jump=jump),
        reconnect_interval=interval,
    )
    session_id = registry.create(config)
    supervisor = ConnectionSupervisor(
        record=registry.get(session_id),
        registry=registry,
        sink=sink,
        negotiator=negotiator,
        client_factory=factory,
        config=fast_config,
    )
    return supervisor, sink


def _messages(sink: EventSink, supervisor: ConnectionSupervisor) -> list[str]:
    return [e.message for e in sink.entries(supervisor.record.session_id)]


async def _connect(supervisor, factory, wait_until):
    supervisor.start()
    await wait_until(lambda: factory.clients)
    factory.last.emit(SignalKind.LOGIN)
    await wait_until(lambda: supervisor.status is SessionStatus.CONNECTED)
    return factory.last


# ── Connecting ──


@pytest.mark.asyncio
async def test_explicit_version_connects_without_negotiation(fast_config, factory, negotiator, wait_until):
    supervisor, sink = _build(fast_config, factory, negotiator, version="1.19.4")

    assert supervisor.start() is True
    assert supervisor.status is SessionStatus.CONNECTING
    assert supervisor.record.should_reconnect is True

    await wait_until(lambda: factory.clients)
    assert factory.last.options.version == "1.19.4"
    assert negotiator.calls == []

    factory.last.emit(SignalKind.LOGIN)
    await wait_until(lambda: supervisor.status is SessionStatus.CONNECTED)
    assert supervisor.record.actual_version == "1.19.4"
    assert supervisor.record.reconnect_attempts == 0
    supervisor.close()


@pytest.mark.asyncio
async def test_auto_selector_records_detected_version(fast_config, factory, negotiator, wait_until):
    negotiator.resolution = VersionResolution("1.18.2", Provenance.HANDSHAKE)
    supervisor, _ = _build(fast_config, factory, negotiator, version="auto")

    supervisor.start()
    await wait_until(lambda: factory.clients)

    assert negotiator.calls == [("play.example.net", 25565)]
    assert supervisor.record.detected_version == "1.18.2"
    assert supervisor.record.provenance is Provenance.HANDSHAKE
    assert factory.last.options.version == "1.18.2"
    assert supervisor.status is SessionStatus.CONNECTING
    supervisor.close()


@pytest.mark.asyncio
async def test_start_is_noop_while_active(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    await _connect(supervisor, factory, wait_until)

    assert supervisor.start() is False
    assert len(factory.clients) == 1
    supervisor.close()


@pytest.mark.asyncio
async def test_login_schedules_idle_prevention(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator, crouch=True, jump=True)
    client = await _connect(supervisor, factory, wait_until)

    assert supervisor.idle_activation_pending
    await wait_until(lambda: supervisor.idle_active)
    assert client.controls == {SNEAK: True, JUMP: True}
    supervisor.close()


@pytest.mark.asyncio
async def test_factory_failure_enters_error(fast_config, factory, negotiator, wait_until):
    factory.fail_with = RuntimeError("backend exploded")
    supervisor, sink = _build(fast_config, factory, negotiator)

    supervisor.start()
    await wait_until(lambda: supervisor.status is SessionStatus.ERROR)

    assert any("backend exploded" in m for m in _messages(sink, supervisor))
    assert supervisor.reconnect_pending
    supervisor.close()


# ── Failures and reconnection ──


@pytest.mark.asyncio
async def test_error_signal_schedules_single_reconnect(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)

    client.emit(SignalKind.ERROR, error="connection reset")
    await wait_until(lambda: supervisor.status is SessionStatus.ERROR)
    assert supervisor.reconnect_pending
    first_timer = supervisor._reconnect_task

    # A second error on the same handle does not stack another timer.
    client.emit(SignalKind.ERROR, error="again")
    await wait_until(lambda: supervisor._queue.empty())
    assert supervisor._reconnect_task is first_timer
    assert supervisor.record.reconnect_attempts == 0
    supervisor.close()


@pytest.mark.asyncio
async def test_clean_end_while_connected_disconnects_and_retries(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)
    await wait_until(lambda: supervisor.idle_active)

    client.emit(SignalKind.END)
    await wait_until(lambda: supervisor.status is SessionStatus.DISCONNECTED)

    assert supervisor.reconnect_pending
    assert not supervisor.idle_active
    supervisor.close()


@pytest.mark.asyncio
async def test_end_before_login_is_an_error(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    supervisor.start()
    await wait_until(lambda: factory.clients)

    factory.last.emit(SignalKind.END)
    await wait_until(lambda: supervisor.status is SessionStatus.ERROR)
    supervisor.close()


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_ten_attempts(fast_config, factory, negotiator, wait_until):
    factory.on_create = lambda client: client.emit(SignalKind.ERROR, error="ECONNREFUSED")
    supervisor, sink = _build(fast_config, factory, negotiator, interval=0.005)

    supervisor.start()
    await wait_until(
        lambda: supervisor.record.reconnect_attempts == 10
        and supervisor.status is SessionStatus.ERROR
        and not supervisor.reconnect_pending
        and supervisor._connect_task is None,
        timeout=5.0,
    )

    # Initial attempt plus ten retries, then the session stays in error.
    assert len(factory.clients) == 11
    assert supervisor.status is SessionStatus.ERROR
    assert not supervisor.reconnect_pending
    assert any("Giving up" in m for m in _messages(sink, supervisor))
    supervisor.close()


@pytest.mark.asyncio
async def test_attempt_counter_resets_on_connect(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator, interval=0.005)
    client = await _connect(supervisor, factory, wait_until)

    client.emit(SignalKind.ERROR, error="reset")
    await wait_until(lambda: len(factory.clients) == 2)
    assert supervisor.record.reconnect_attempts == 1

    factory.last.emit(SignalKind.LOGIN)
    await wait_until(lambda: supervisor.status is SessionStatus.CONNECTED)
    assert supervisor.record.reconnect_attempts == 0
    supervisor.close()


@pytest.mark.asyncio
async def test_new_handle_releases_previous_one(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator, interval=0.005)
    first = await _connect(supervisor, factory, wait_until)

    first.emit(SignalKind.ERROR, error="reset")
    await wait_until(lambda: len(factory.clients) == 2)

    assert first.ended
    assert supervisor.client is factory.last
    supervisor.close()


@pytest.mark.asyncio
async def test_unsupported_version_uses_fallback_on_next_attempt(fast_config, factory, negotiator, wait_until):
    supervisor, sink = _build(fast_config, factory, negotiator, version="auto", interval=0.005)
    supervisor.start()
    await wait_until(lambda: factory.clients)

    factory.last.emit(SignalKind.ERROR, error="Unsupported protocol version 763")
    await wait_until(lambda: len(factory.clients) == 2)

    assert factory.last.options.version == "1.19.4"
    assert supervisor.record.provenance is Provenance.FALLBACK
    assert len(negotiator.calls) == 1
    supervisor.close()


@pytest.mark.asyncio
async def test_kicked_session_does_not_reconnect(fast_config, factory, negotiator, wait_until):
    supervisor, sink = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)

    client.emit(SignalKind.KICKED, reason="idle too long", logged_in=True)
    client.emit(SignalKind.END)
    await wait_until(lambda: supervisor._queue.empty())

    assert supervisor.status is SessionStatus.KICKED
    assert not supervisor.reconnect_pending
    assert any("idle too long" in m for m in _messages(sink, supervisor))
    supervisor.close()


@pytest.mark.asyncio
async def test_start_after_kick_stops_then_connects(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)
    client.emit(SignalKind.KICKED, reason="bye")
    await wait_until(lambda: supervisor.status is SessionStatus.KICKED)

    assert supervisor.start() is True
    assert client.ended
    assert supervisor.status is SessionStatus.CONNECTING
    await wait_until(lambda: len(factory.clients) == 2)
    supervisor.close()


@pytest.mark.asyncio
async def test_signals_from_released_handle_are_ignored(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator, interval=0.005)
    first = await _connect(supervisor, factory, wait_until)
    first.emit(SignalKind.ERROR, error="reset")
    await wait_until(lambda: len(factory.clients) == 2)
    # Channel of the old handle is closed; inject a stale signal directly.
    supervisor.handle_signal(ClientSignal(SignalKind.LOGIN, first.channel.generation))

    assert supervisor.status is SessionStatus.CONNECTING
    assert first.channel.closed
    supervisor.close()


@pytest.mark.asyncio
async def test_queued_end_from_old_handle_does_not_fail_new_attempt(fast_config, factory, negotiator, wait_until):
    supervisor, sink = _build(fast_config, factory, negotiator)
    old = await _connect(supervisor, factory, wait_until)
    old.emit(SignalKind.ERROR, error="reset")
    await wait_until(lambda: supervisor.status is SessionStatus.ERROR)

    # The old handle closes, and the user restarts before that end is consumed.
    old.emit(SignalKind.END)
    assert supervisor.start() is True
    assert old.channel.closed
    await wait_until(lambda: len(factory.clients) == 2)

    factory.last.emit(SignalKind.LOGIN)
    await wait_until(lambda: supervisor.status is SessionStatus.CONNECTED)

    assert supervisor.client is factory.last
    assert not any("closed before login" in m for m in _messages(sink, supervisor))
    supervisor.close()


# ── Death and respawn ──


@pytest.mark.asyncio
async def test_death_respawns_then_rearms_idle_loop(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)
    await wait_until(lambda: supervisor.idle_active)

    client.controls[SNEAK] = False
    client.emit(SignalKind.DEATH)
    await wait_until(lambda: client.respawns == 1)
    assert supervisor.idle_activation_pending

    await wait_until(lambda: supervisor.idle_active and client.controls[SNEAK])
    supervisor.close()


@pytest.mark.asyncio
async def test_death_skips_respawn_when_handle_gone(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)

    client.emit(SignalKind.DEATH)
    await wait_until(lambda: supervisor._respawn_task is not None)
    supervisor.stop()
    await wait_until(lambda: supervisor._respawn_task is None)

    assert client.respawns == 0
    supervisor.close()


@pytest.mark.asyncio
async def test_respawn_signal_rearms_idle_loop(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)
    await wait_until(lambda: supervisor.idle_active)
    first_loop = supervisor._idle._task

    client.emit(SignalKind.RESPAWN)
    await wait_until(lambda: supervisor.idle_active and supervisor._idle._task is not first_loop)
    await asyncio.sleep(0.01)
    assert first_loop.done()
    supervisor.close()


# ── Stop ──


@pytest.mark.asyncio
async def test_stop_clears_controls_and_releases_handle(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator, interval=0.005)
    client = await _connect(supervisor, factory, wait_until)
    await wait_until(lambda: supervisor.idle_active)
    supervisor.record.reconnect_attempts = 4

    supervisor.stop()

    assert supervisor.status is SessionStatus.STOPPED
    assert supervisor.record.should_reconnect is False
    assert supervisor.record.reconnect_attempts == 0
    assert client.controls == {SNEAK: False, JUMP: False}
    assert client.quit_reasons == ["Stopped by user"]
    assert supervisor.client is None
    assert not supervisor.reconnect_pending
    assert not supervisor.idle_active
    supervisor.close()


@pytest.mark.asyncio
async def test_stop_cancels_pending_reconnect(fast_config, factory, negotiator, wait_until):
    supervisor, _ = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)
    client.emit(SignalKind.ERROR, error="reset")
    await wait_until(lambda: supervisor.reconnect_pending)

    supervisor.stop()

    assert not supervisor.reconnect_pending
    assert supervisor.status is SessionStatus.STOPPED
    supervisor.close()


@pytest.mark.asyncio
async def test_stop_swallows_release_error_into_log(fast_config, factory, negotiator, wait_until):
    supervisor, sink = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)
    client.quit_error = RuntimeError("socket already closed")

    supervisor.stop()

    assert supervisor.status is SessionStatus.STOPPED
    errors = [
        e.message for e in sink.entries(supervisor.record.session_id)
        if e.category is LogCategory.ERROR
    ]
    assert any("socket already closed" in m for m in errors)
    supervisor.close()


@pytest.mark.asyncio
async def test_stop_during_negotiation_cancels_connect(fast_config, factory, wait_until):
    class _SlowNegotiator:
        async def resolve(self, host, port, log=None):
            await asyncio.sleep(10)

    supervisor, _ = _build(fast_config, factory, _SlowNegotiator(), version="auto")
    supervisor.start()
    await wait_until(lambda: supervisor.status is SessionStatus.DETECTING_VERSION)

    supervisor.stop()
    await asyncio.sleep(0.01)

    assert supervisor.status is SessionStatus.STOPPED
    assert factory.clients == []
    supervisor.close()


# ── Messages ──


@pytest.mark.asyncio
async def test_send_requires_connection(fast_config, factory, negotiator):
    supervisor, _ = _build(fast_config, factory, negotiator)
    with pytest.raises(NotConnectedError):
        supervisor.send("hello")


@pytest.mark.asyncio
async def test_send_routes_commands_and_chat(fast_config, factory, negotiator, wait_until):
    supervisor, sink = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)

    supervisor.send("/spawn")
    supervisor.send("hello there")

    assert client.chats == ["/spawn", "hello there"]
    categories = [e.category for e in sink.entries(supervisor.record.session_id)[-2:]]
    assert categories == [LogCategory.COMMAND, LogCategory.CHAT_OUT]
    supervisor.close()


@pytest.mark.asyncio
async def test_chat_and_server_messages_are_filtered(fast_config, factory, negotiator, wait_until):
    supervisor, sink = _build(fast_config, factory, negotiator)
    client = await _connect(supervisor, factory, wait_until)

    client.emit(SignalKind.CHAT, username="Keeper", message="my own line")
    client.emit(SignalKind.CHAT, username="Alex", message="hi keeper")
    client.emit(SignalKind.MESSAGE, text="§aColoured noise")
    client.emit(SignalKind.MESSAGE, text="Server restarting in 5 minutes")
    await wait_until(lambda: supervisor._queue.empty())

    messages = _messages(sink, supervisor)
    assert "[CHAT] Alex: hi keeper" in messages
    assert not any("my own line" in m for m in messages)
    assert "[SERVER] Server restarting in 5 minutes" in messages
    assert not any("Coloured noise" in m for m in messages)
    supervisor.close()


def test_classify_error():
    assert classify_error("getaddrinfo ENOTFOUND nowhere") is ErrorKind.ADDRESS_RESOLUTION
    assert classify_error(ConnectionRefusedError("refused")) is ErrorKind.CONNECTION_REFUSED
    assert classify_error("Invalid username") is ErrorKind.INVALID_IDENTITY
    assert classify_error("Unsupported protocol version '999'") is ErrorKind.UNSUPPORTED_VERSION
    assert classify_error("something else") is ErrorKind.OTHER


def test_server_message_filter():
    assert is_loggable_server_message("Welcome!")
    assert not is_loggable_server_message("   ")
    assert not is_loggable_server_message("[Server] broadcast")
    assert not is_loggable_server_message("Teleported Keeper to spawn")
