from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from .mail_connection import ConnectionEvent, ConnectionState, MailConnection
from .status import StatusStore

if TYPE_CHECKING:
    from .dispatcher import NotificationDispatcher

LOGGER = logging.getLogger(__name__)

DEGRADED_NOTICE = "⚠️ Mail server unreachable: reconnect attempts exhausted. Monitoring is paused."


class TerminalDegraded(RuntimeError):
    """Reconnect attempts exhausted; the process keeps running without a mail session."""


class SupervisorPhase(enum.Enum):
    IDLE = "idle"
    BACKOFF = "backoff"
    RECONNECTING = "reconnecting"
    GIVEN_UP = "given_up"


@dataclass
class ReconnectState:
    max_attempts: int = 5
    base_delay: float = 1.0
    attempt_count: int = 0


def compute_backoff_seconds(attempt: int, base_delay: float) -> float:
    if attempt <= 0:
        return 0.0
    return base_delay * (2 ** (attempt - 1))


class ReconnectSupervisor:
    """Drives MailConnection through connect, backoff and give-up.

    Each retry builds a new connection from ``connection_factory``; a failed
    session is never reused. Only one reconnect is pending at any time.
    """

    def __init__(
        self,
        connection_factory: Callable[[], MailConnection],
        *,
        dispatcher: NotificationDispatcher | None = None,
        status: StatusStore | None = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._connection_factory = connection_factory
        self._dispatcher = dispatcher
        self._status = status or StatusStore()
        self._sleep = sleep
        self.state = ReconnectState(max_attempts=max_attempts, base_delay=base_delay)
        self.phase = SupervisorPhase.IDLE
        self._connection: MailConnection | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._stopping = False
        self.last_error: BaseException | None = None

    @property
    def connection(self) -> MailConnection | None:
        return self._connection

    @property
    def given_up(self) -> bool:
        return self.phase is SupervisorPhase.GIVEN_UP

    def connection_state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState.DISCONNECTED
        return self._connection.state

    def is_ready(self) -> bool:
        return self._connection is not None and self._connection.is_ready

    def start(self) -> None:
        self._stopping = False
        self._open_new_connection()

    async def reset(self) -> None:
        """Leave GIVEN_UP and start over with a fresh attempt budget.

        The previous connection is ended first, so only one session is ever open.
        """
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        previous = self._connection
        self._connection = None
        if previous is not None:
            await previous.end()
        LOGGER.info("Reconnect requested; attempt budget reset", extra={"category": "reconnect"})
        self.state.attempt_count = 0
        self._status.set_reconnect_attempts(0)
        self._status.set_degraded(False)
        self.phase = SupervisorPhase.IDLE
        self.start()

    def _open_new_connection(self) -> None:
        connection = self._connection_factory()
        connection.add_listener(self._on_event)
        self._connection = connection
        self._status.set_connection_state(ConnectionState.CONNECTING.value)
        connection.connect()

    def _on_event(
        self,
        connection: MailConnection,
        event: ConnectionEvent,
        error: BaseException | None,
    ) -> None:
        if connection is not self._connection:
            return
        if event is ConnectionEvent.READY:
            if self.state.attempt_count:
                LOGGER.info(
                    "IMAP reconnected after %s attempt(s)",
                    self.state.attempt_count,
                    extra={"category": "reconnect"},
                )
            self.state.attempt_count = 0
            self.phase = SupervisorPhase.IDLE
            self._status.set_connection_state(ConnectionState.READY.value)
            self._status.set_reconnect_attempts(0)
            return
        self._status.set_connection_state(connection.state.value)
        if self._stopping:
            return
        if error is not None:
            self.last_error = error
            self._status.set_last_error(f"imap: {type(error).__name__}")
            self._status.increment_error_count()
        self._handle_failure()

    def _handle_failure(self) -> None:
        if self.phase is SupervisorPhase.GIVEN_UP:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self.state.attempt_count >= self.state.max_attempts:
            self._give_up()
            return
        self.state.attempt_count += 1
        self._status.set_reconnect_attempts(self.state.attempt_count)
        delay = compute_backoff_seconds(self.state.attempt_count, self.state.base_delay)
        LOGGER.warning(
            "Attempting to reconnect to IMAP (attempt %s/%s) in %.1fs",
            self.state.attempt_count,
            self.state.max_attempts,
            delay,
            extra={"category": "reconnect"},
        )
        self.phase = SupervisorPhase.BACKOFF
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay)
        )

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._stopping:
            return
        self.phase = SupervisorPhase.RECONNECTING
        LOGGER.info("Reconnecting to IMAP", extra={"category": "reconnect"})
        self._open_new_connection()

    def _give_up(self) -> None:
        self.phase = SupervisorPhase.GIVEN_UP
        if self._connection is not None:
            self._connection.mark_degraded()
        self._status.set_connection_state(ConnectionState.DEGRADED.value)
        self._status.set_degraded(True)
        terminal = TerminalDegraded(
            f"Max reconnection attempts ({self.state.max_attempts}) reached"
        )
        self.last_error = terminal
        self._status.set_last_error(str(terminal))
        LOGGER.error(
            "Max reconnection attempts (%s) reached. Giving up.",
            self.state.max_attempts,
            extra={"category": "reconnect"},
        )
        if self._dispatcher is None:
            return
        task = asyncio.get_running_loop().create_task(self._notify_degraded(self._dispatcher))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify_degraded(self, dispatcher: NotificationDispatcher) -> None:
        try:
            await dispatcher.notify_status(DEGRADED_NOTICE)
        except Exception as exc:
            LOGGER.exception(
                "Failed to send degraded notification: %s",
                exc,
                extra={"category": "reconnect"},
            )

    async def stop(self) -> None:
        self._stopping = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._connection is not None:
            await self._connection.end()
        self._status.set_connection_state(self.connection_state().value)
