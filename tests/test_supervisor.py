from __future__ import annotations

import asyncio

import pytest

from mailwatch.mail_connection import ConnectionEvent, ConnectionState
from mailwatch.status import StatusStore
from mailwatch.supervisor import (
    DEGRADED_NOTICE,
    ReconnectSupervisor,
    SupervisorPhase,
    TerminalDegraded,
    compute_backoff_seconds,
)


class FakeConnection:
    def __init__(self, outcome: str) -> None:
        self.outcome = outcome
        self.state = ConnectionState.DISCONNECTED
        self.listeners: list = []
        self.ended = False

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    def add_listener(self, listener) -> None:
        self.listeners.append(listener)

    def _emit(self, event, error=None) -> None:
        for listener in self.listeners:
            listener(self, event, error)

    def connect(self) -> None:
        self.state = ConnectionState.CONNECTING
        asyncio.get_running_loop().call_soon(self._finish)

    def _finish(self) -> None:
        if self.outcome == "ready":
            self.state = ConnectionState.READY
            self._emit(ConnectionEvent.READY)
        else:
            self.fail(OSError("connection refused"))

    def fail(self, error: BaseException) -> None:
        self.state = ConnectionState.DISCONNECTED
        self._emit(ConnectionEvent.ERROR, error)

    def mark_degraded(self) -> None:
        self.state = ConnectionState.DEGRADED

    async def end(self) -> None:
        self.ended = True
        if self.state is not ConnectionState.DEGRADED:
            self.state = ConnectionState.DISCONNECTED
        self._emit(ConnectionEvent.CLOSED)


class FakeDispatcher:
    def __init__(self) -> None:
        self.notices: list[str] = []

    async def notify_status(self, text: str) -> None:
        self.notices.append(text)


class Harness:
    def __init__(self, outcomes: list[str], **kwargs) -> None:
        self.outcomes = list(outcomes)
        self.connections: list[FakeConnection] = []
        self.delays: list[float] = []
        self.dispatcher = FakeDispatcher()
        self.status = StatusStore()
        self.supervisor = ReconnectSupervisor(
            self._factory,
            dispatcher=self.dispatcher,
            status=self.status,
            sleep=self._sleep,
            **kwargs,
        )

    def _factory(self) -> FakeConnection:
        outcome = self.outcomes.pop(0) if self.outcomes else "error"
        connection = FakeConnection(outcome)
        self.connections.append(connection)
        return connection

    async def _sleep(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def _drain() -> None:
    for _ in range(200):
        await asyncio.sleep(0)


@pytest.mark.parametrize(
    ("attempt", "base", "expected"),
    [(0, 1.0, 0.0), (1, 1.0, 1.0), (2, 1.0, 2.0), (5, 1.0, 16.0), (3, 0.5, 2.0)],
)
def test_compute_backoff_seconds(attempt: int, base: float, expected: float) -> None:
    assert compute_backoff_seconds(attempt, base) == expected


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts_with_exponential_delays() -> None:
    harness = Harness([], max_attempts=5, base_delay=1.0)

    harness.supervisor.start()
    await _drain()

    supervisor = harness.supervisor
    assert harness.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert len(harness.connections) == 6
    assert supervisor.given_up
    assert supervisor.phase is SupervisorPhase.GIVEN_UP
    assert supervisor.connection_state() is ConnectionState.DEGRADED
    assert isinstance(supervisor.last_error, TerminalDegraded)
    assert harness.dispatcher.notices == [DEGRADED_NOTICE]
    snapshot = harness.status.snapshot()
    assert snapshot.degraded is True
    assert snapshot.connection_state == "degraded"

    await _drain()
    assert len(harness.connections) == 6
    assert harness.dispatcher.notices == [DEGRADED_NOTICE]


@pytest.mark.asyncio
async def test_ready_resets_attempt_counter() -> None:
    harness = Harness(["error", "error", "ready", "ready"], max_attempts=5, base_delay=1.0)

    harness.supervisor.start()
    await _drain()
    assert harness.supervisor.is_ready()
    assert harness.supervisor.state.attempt_count == 0
    assert harness.status.snapshot().reconnect_attempts == 0

    harness.connections[-1].fail(ConnectionResetError("lost"))
    await _drain()

    assert harness.delays == [1.0, 2.0, 1.0]
    assert harness.supervisor.is_ready()
    assert len(harness.connections) == 4
    assert harness.dispatcher.notices == []


@pytest.mark.asyncio
async def test_each_retry_uses_a_fresh_connection() -> None:
    harness = Harness(["error", "ready"])

    harness.supervisor.start()
    await _drain()

    first, second = harness.connections
    assert first is not second
    assert harness.supervisor.connection is second


@pytest.mark.asyncio
async def test_events_from_replaced_connection_are_ignored() -> None:
    harness = Harness(["ready", "ready"])
    harness.supervisor.start()
    await _drain()

    old = harness.connections[0]
    old.fail(ConnectionResetError("lost"))
    await _drain()
    old.fail(ConnectionResetError("late duplicate"))
    await _drain()

    assert harness.delays == [1.0]
    assert len(harness.connections) == 2


@pytest.mark.asyncio
async def test_stop_ignores_closed_event() -> None:
    harness = Harness(["ready"])
    harness.supervisor.start()
    await _drain()

    await harness.supervisor.stop()
    await _drain()

    assert harness.connections[0].ended
    assert harness.delays == []
    assert len(harness.connections) == 1
    assert harness.status.snapshot().connection_state == "disconnected"


@pytest.mark.asyncio
async def test_stop_cancels_pending_reconnect() -> None:
    harness = Harness([])
    gate = asyncio.Event()

    async def blocked_sleep(delay: float) -> None:
        harness.delays.append(delay)
        await gate.wait()

    harness.supervisor._sleep = blocked_sleep
    harness.supervisor.start()
    await _drain()
    assert harness.delays == [1.0]

    await harness.supervisor.stop()

    assert len(harness.connections) == 1


@pytest.mark.asyncio
async def test_reset_after_give_up_starts_over() -> None:
    harness = Harness(["error", "error", "ready"], max_attempts=1, base_delay=1.0)
    harness.supervisor.start()
    await _drain()
    assert harness.supervisor.given_up

    degraded = harness.connections[-1]

    await harness.supervisor.reset()
    await _drain()

    assert degraded.ended is True
    assert len(harness.connections) == 3
    assert harness.supervisor.connection is harness.connections[-1]
    assert not harness.supervisor.given_up
    assert harness.supervisor.is_ready()
    assert harness.status.snapshot().degraded is False
