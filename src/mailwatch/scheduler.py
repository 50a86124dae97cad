from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4

from .logging_setup import cycle_context
from .mail_connection import ProtocolError
from .status import StatusStore, now_iso

LOGGER = logging.getLogger(__name__)


class PollScheduler:
    """Fires one poll cycle per interval and never runs two at once.

    A tick that arrives while a cycle is in progress is dropped rather than
    queued. Failures inside a cycle are logged and never stop later ticks.
    """

    def __init__(
        self,
        cycle: Callable[[], Awaitable[Any]],
        *,
        interval_seconds: float,
        is_connected: Callable[[], bool],
        on_not_connected: Callable[[], Awaitable[None]] | None = None,
        status: StatusStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._cycle = cycle
        self._interval = interval_seconds
        self._is_connected = is_connected
        self._on_not_connected = on_not_connected
        self._status = status or StatusStore()
        self._sleep = sleep
        self._in_progress = False
        self._stopping = False
        self._ticks: set[asyncio.Task[bool]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self.dropped_ticks = 0

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def tick(self) -> bool:
        """Run one cycle; return False when the tick was dropped."""
        if self._stopping:
            return False
        if self._in_progress:
            self.dropped_ticks += 1
            self._status.increment_dropped_ticks()
            LOGGER.info(
                "Skipping poll; previous cycle still running",
                extra={"category": "scan"},
            )
            return False
        self._in_progress = True
        started = time.perf_counter()
        try:
            with cycle_context(uuid4().hex[:12]):
                await self._run_cycle()
        finally:
            self._in_progress = False
            LOGGER.debug(
                "Poll cycle duration %.2fms",
                (time.perf_counter() - started) * 1000,
                extra={"category": "perf"},
            )
        return True

    async def _run_cycle(self) -> None:
        self._status.set_last_poll(now_iso())
        if not self._is_connected():
            LOGGER.info("IMAP not connected, skipping email check", extra={"category": "scan"})
            self._status.set_last_poll_result("not connected")
            if self._on_not_connected is not None:
                try:
                    await self._on_not_connected()
                except Exception as exc:
                    LOGGER.exception(
                        "Not-connected handler failed: %s",
                        exc,
                        extra={"category": "error"},
                    )
            return
        try:
            result = await self._cycle()
        except ProtocolError as exc:
            self._status.set_last_poll_result("protocol error")
            self._status.increment_error_count()
            LOGGER.warning("Poll cycle aborted: %s", exc, extra={"category": "scan"})
            return
        except Exception as exc:
            self._status.set_last_poll_result("error")
            self._status.increment_error_count()
            LOGGER.exception("Poll cycle error: %s", exc, extra={"category": "error"})
            return
        summary = getattr(result, "summary", None)
        self._status.set_last_poll_result(summary() if callable(summary) else "ok")

    def _fire(self) -> None:
        task = asyncio.get_running_loop().create_task(self.tick())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def run(self) -> None:
        LOGGER.info(
            "Polling every %ss",
            self._interval,
            extra={"category": "startup"},
        )
        while not self._stopping:
            await self._sleep(self._interval)
            if self._stopping:
                break
            self._fire()

    def start(self) -> asyncio.Task[None]:
        self._stopping = False
        self._loop_task = asyncio.get_running_loop().create_task(self.run())
        return self._loop_task

    async def stop(self) -> None:
        """Stop firing ticks and wait for an in-flight cycle to finish."""
        self._stopping = True
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)
