"""Tests for the producer's relay link state machine."""

from __future__ import annotations

import asyncio

import pytest

from presence_relay.lib.connection import Backoff, ConnectionManager, LinkState
from presence_relay.lib.track import EventKind, WireEvent
from tests.helpers import event_names, make_metadata, make_snapshot, settle, wait_for


def _run(coro):
    """Run async link scenario from sync tests."""
    return asyncio.run(coro)


class FakeSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.close_code: int | None = None
        self._done = asyncio.Event()
        self._error: Exception | None = None

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self._done.set()

    def finish(self, code: int) -> None:
        """Peer closed the link with *code*."""
        self.close_code = code
        self.closed = True
        self._done.set()

    def fail(self, exc: Exception) -> None:
        self._error = exc
        self.closed = True
        self._done.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._done.wait()
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration


class FakeConnector:
    """Hands out queued outcomes: a FakeSocket or an exception to raise."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else FakeSocket()
        if isinstance(outcome, Exception):
            raise outcome
        self.sockets.append(outcome)
        return outcome


def _manager(connector, **kwargs) -> ConnectionManager:
    kwargs.setdefault("initial_delay", 0)
    kwargs.setdefault("keepalive_interval", 3600)
    kwargs.setdefault("keepalive_send", lambda msg: None)
    kwargs.setdefault("backoff", Backoff(base=0.01, factor=1.5, cap=0.05))
    return ConnectionManager("ws://relay.test:8765", connector=connector, **kwargs)


def test_backoff_sequence_cycles_after_reaching_cap() -> None:
    backoff = Backoff(base=5.0, factor=1.5, cap=60.0)
    delays = [backoff.next_delay() for _ in range(9)]
    assert delays[:3] == [5.0, 7.5, 11.25]
    assert delays[6] == pytest.approx(56.953125)
    assert delays[7] == 60.0
    assert delays[8] == 5.0
    assert all(d <= 60.0 for d in delays)


def test_default_backoff_comes_from_config_defaults() -> None:
    manager = ConnectionManager("ws://x", connector=FakeConnector())
    assert (manager.backoff.base, manager.backoff.factor, manager.backoff.cap) == (5.0, 1.5, 60.0)
    assert manager.initial_delay == 2.0
    assert manager.keepalive_interval == 30.0


def test_url_override_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("PRESENCE_RELAY_URL", "ws://elsewhere:9000")
    assert ConnectionManager(connector=FakeConnector()).url == "ws://elsewhere:9000"


def test_initial_state_is_disconnected_and_send_is_dropped() -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector)
        sent = await manager.send(WireEvent(EventKind.TRACK, make_metadata()))
        return manager.get_state(), sent, connector.calls

    state, sent, calls = _run(scenario())
    assert state is LinkState.DISCONNECTED
    assert sent is False
    assert calls == []


def test_open_reseeds_presence_then_track_then_play_state() -> None:
    async def scenario():
        connector = FakeConnector()
        snapshot = make_snapshot(is_playing=False)
        manager = _manager(connector, snapshot_provider=lambda: snapshot,
                           presence_provider=lambda: True)
        statuses: list[LinkState] = []
        manager.add_status_listener(statuses.append)
        await manager.connect()
        result = (manager.state, statuses, event_names(connector.sockets[0].sent))
        await manager.close()
        return result

    state, statuses, events = _run(scenario())
    assert state is LinkState.CONNECTED
    assert statuses == [LinkState.CONNECTED]
    assert events == ["TURN_ON", "track", "pause"]


def test_open_without_snapshot_sends_nothing() -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector, snapshot_provider=lambda: None)
        await manager.connect()
        sent = list(connector.sockets[0].sent)
        await manager.close()
        return sent

    assert _run(scenario()) == []


def test_send_writes_only_while_connected() -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector)
        await manager.connect()
        ok = await manager.send(WireEvent(EventKind.RESUME, make_metadata()))
        sock = connector.sockets[0]
        sock.finish(1000)
        await settle()
        dropped = await manager.send(WireEvent(EventKind.PAUSE, make_metadata()))
        await manager.close()
        return ok, dropped, event_names(sock.sent)

    ok, dropped, events = _run(scenario())
    assert ok is True
    assert dropped is False
    assert events == ["resume"]


def test_send_failure_is_swallowed() -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector)
        await manager.connect()
        connector.sockets[0].closed = True  # writes now raise
        result = await manager.send(WireEvent(EventKind.TRACK, make_metadata()))
        await manager.close()
        return result

    assert _run(scenario()) is False


def test_connect_failure_disconnects_and_schedules_retry() -> None:
    async def scenario():
        connector = FakeConnector(ConnectionRefusedError("no relay"))
        manager = _manager(connector, backoff=Backoff(base=60, factor=1.5, cap=120))
        statuses: list[LinkState] = []
        manager.add_status_listener(statuses.append)
        await manager.connect()
        result = (manager.state, statuses, manager.retry_pending, manager.backoff.attempt)
        await manager.close()
        return result

    state, statuses, pending, attempt = _run(scenario())
    assert state is LinkState.DISCONNECTED
    assert statuses == [LinkState.DISCONNECTED]
    assert pending is True
    assert attempt == 1


def test_schedule_reconnect_is_idempotent_while_pending() -> None:
    async def scenario():
        manager = _manager(FakeConnector(), backoff=Backoff(base=60, factor=1.5, cap=120))
        manager.schedule_reconnect()
        first = manager._retry_task
        manager.schedule_reconnect()
        second = manager._retry_task
        attempt = manager.backoff.attempt
        await manager.close()
        return first is second, attempt

    same, attempt = _run(scenario())
    assert same is True
    assert attempt == 1


def test_retry_timer_reconnects_and_resets_backoff() -> None:
    async def scenario():
        connector = FakeConnector(OSError("refused"), OSError("refused"))
        manager = _manager(connector)
        statuses: list[LinkState] = []
        manager.add_status_listener(statuses.append)
        await manager.connect()
        await wait_for(lambda: manager.state is LinkState.CONNECTED)
        result = (statuses, len(connector.calls), manager.backoff.attempt, manager.retry_pending)
        await manager.close()
        return result

    statuses, calls, attempt, pending = _run(scenario())
    assert statuses == [
        LinkState.DISCONNECTED,
        LinkState.RECONNECTING,
        LinkState.DISCONNECTED,
        LinkState.RECONNECTING,
        LinkState.CONNECTED,
    ]
    assert calls == 3
    assert attempt == 0
    assert pending is False


def test_clean_close_does_not_reconnect() -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector)
        statuses: list[LinkState] = []
        manager.add_status_listener(statuses.append)
        await manager.connect()
        connector.sockets[0].finish(1000)
        await settle()
        result = (manager.state, statuses, manager.retry_pending)
        await manager.close()
        return result

    state, statuses, pending = _run(scenario())
    assert state is LinkState.DISCONNECTED
    assert statuses == [LinkState.CONNECTED, LinkState.DISCONNECTED]
    assert pending is False


@pytest.mark.parametrize("code", [1001, 1006, 1011])
def test_unclean_close_schedules_reconnect(code) -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector, backoff=Backoff(base=60, factor=1.5, cap=120))
        await manager.connect()
        connector.sockets[0].finish(code)
        await settle()
        result = (manager.state, manager.retry_pending)
        await manager.close()
        return result

    state, pending = _run(scenario())
    assert state is LinkState.DISCONNECTED
    assert pending is True


def test_read_error_disconnects_and_schedules_reconnect() -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector, backoff=Backoff(base=60, factor=1.5, cap=120))
        await manager.connect()
        connector.sockets[0].fail(ConnectionResetError("reset by peer"))
        await settle()
        result = (manager.state, manager.retry_pending)
        await manager.close()
        return result

    state, pending = _run(scenario())
    assert state is LinkState.DISCONNECTED
    assert pending is True


def test_connect_is_noop_while_connecting_or_connected() -> None:
    async def scenario():
        gate = asyncio.Event()
        calls = []

        async def slow_connector(url, **kwargs):
            calls.append(url)
            await gate.wait()
            return FakeSocket()

        manager = _manager(slow_connector)
        first = asyncio.create_task(manager.connect())
        await settle()
        connecting = manager.state
        await manager.connect()
        gate.set()
        await first
        await manager.connect()
        result = (connecting, manager.state, len(calls))
        await manager.close()
        return result

    connecting, state, calls = _run(scenario())
    assert connecting is LinkState.CONNECTING
    assert state is LinkState.CONNECTED
    assert calls == 1


def test_force_reconnect_skips_pending_backoff() -> None:
    async def scenario():
        connector = FakeConnector(OSError("refused"))
        manager = _manager(connector, backoff=Backoff(base=60, factor=1.5, cap=120))
        await manager.connect()
        assert manager.retry_pending
        await manager.force_reconnect()
        result = (manager.state, manager.retry_pending, len(connector.calls))
        await manager.close()
        return result

    state, pending, calls = _run(scenario())
    assert state is LinkState.CONNECTED
    assert pending is False
    assert calls == 2


def test_start_connects_after_initial_delay() -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector, initial_delay=0.05)
        await manager.start()
        await settle()
        before = len(connector.calls)
        await wait_for(lambda: manager.state is LinkState.CONNECTED)
        await manager.close()
        return before, len(connector.calls)

    before, after = _run(scenario())
    assert before == 0
    assert after == 1


def test_close_is_idempotent_and_final() -> None:
    async def scenario():
        connector = FakeConnector()
        manager = _manager(connector)
        await manager.start()
        await wait_for(lambda: manager.state is LinkState.CONNECTED)
        sock = connector.sockets[0]
        await manager.close()
        await manager.close()
        await manager.connect()
        manager.schedule_reconnect()
        return sock.closed, manager.state, len(connector.calls), manager.retry_pending

    closed, state, calls, pending = _run(scenario())
    assert closed is True
    assert state is LinkState.DISCONNECTED
    assert calls == 1
    assert pending is False


def test_keepalive_runs_independent_of_link_and_ignores_failures() -> None:
    async def scenario():
        signals: list[str] = []

        def flaky_send(msg: str) -> None:
            signals.append(msg)
            raise OSError("no notify socket")

        manager = _manager(FakeConnector(OSError("refused")), keepalive_interval=0.01,
                           keepalive_send=flaky_send,
                           backoff=Backoff(base=60, factor=1.5, cap=120))
        await manager.start()
        await wait_for(lambda: len(signals) >= 3)
        state = manager.state
        await manager.close()
        return state, set(signals)

    state, signals = _run(scenario())
    assert state is LinkState.DISCONNECTED
    assert signals == {"WATCHDOG=1"}


def test_listener_errors_do_not_break_transitions() -> None:
    async def scenario():
        manager = _manager(FakeConnector())

        def broken(state):
            raise RuntimeError("ui gone")

        manager.add_status_listener(broken)
        await manager.connect()
        state = manager.state
        await manager.close()
        return state

    assert _run(scenario()) is LinkState.CONNECTED
