from __future__ import annotations

import asyncio
import importlib.metadata
import logging
import signal
import time
from typing import Callable

from .commands import CommandHandler, TelegramCommandPoller
from .config import AppConfig
from .dispatcher import NotificationDispatcher
from .logging_setup import setup_logging
from .mail_connection import MailConnection
from .scanner import AlertScanner
from .scheduler import PollScheduler
from .status import StatusStore
from .subscribers import build_registry
from .supervisor import ReconnectSupervisor
from .telegram_sender import TelegramClient
from . import __release_date__, __version_label__

LOGGER = logging.getLogger(__name__)

NOT_CONNECTED_NOTICE = "⚠️ Mail server not connected; skipping mail check."


def _get_version() -> str:
    try:
        return importlib.metadata.version("mailwatch")
    except importlib.metadata.PackageNotFoundError:
        return __version_label__


class MailWatchApp:
    """Wires the monitoring engine together and owns its lifecycle."""

    def __init__(
        self,
        config: AppConfig,
        *,
        status: StatusStore | None = None,
        client: TelegramClient | None = None,
        connection_factory: Callable[[], MailConnection] | None = None,
    ) -> None:
        self.config = config
        self.status = status or StatusStore()
        self.client = client or TelegramClient(config.telegram)
        self.registry = build_registry(config.subscribers)
        self.dispatcher = NotificationDispatcher(
            self.client,
            self.registry,
            status=self.status,
            timezone_name=config.display_timezone,
        )
        self.supervisor = ReconnectSupervisor(
            connection_factory or (lambda: MailConnection(config.imap)),
            dispatcher=self.dispatcher,
            status=self.status,
            max_attempts=config.reconnect_max_attempts,
            base_delay=config.reconnect_base_delay_seconds,
        )
        self.scanner = AlertScanner(
            lambda: self.supervisor.connection,
            self.dispatcher,
            status=self.status,
            mailbox=config.mailbox,
            lookback_minutes=config.lookback_minutes,
            max_body_length=config.max_body_length,
        )
        self.scheduler = PollScheduler(
            self.scanner.scan,
            interval_seconds=config.poll_interval_seconds,
            is_connected=self.supervisor.is_ready,
            on_not_connected=self.notify_not_connected,
            status=self.status,
        )
        self.commands = CommandHandler(
            self.registry,
            self.status,
            self.supervisor.connection_state,
            mailbox=config.mailbox,
            poll_interval_seconds=config.poll_interval_seconds,
            reconnect=self.request_reconnect,
        )
        self.poller: TelegramCommandPoller | None = None
        if config.telegram.poll_commands:
            self.poller = TelegramCommandPoller(
                self.client,
                self.commands,
                poll_timeout_seconds=config.telegram.poll_timeout_seconds,
            )
        self._last_not_connected_notice: float | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._stopping = False

    def request_reconnect(self) -> bool:
        """Schedule a supervisor reset; False when the connection is not degraded."""
        if self._stopping or not self.supervisor.given_up:
            return False
        task = asyncio.get_running_loop().create_task(self.supervisor.reset())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def notify_not_connected(self) -> None:
        if not self.config.notify_when_disconnected:
            return
        now = time.monotonic()
        cooldown = self.config.disconnected_notice_cooldown_seconds
        if (
            self._last_not_connected_notice is not None
            and (now - self._last_not_connected_notice) < cooldown
        ):
            return
        self._last_not_connected_notice = now
        await self.dispatcher.notify_status(NOT_CONNECTED_NOTICE)

    def start(self) -> None:
        self.status.set_running(True)
        self.supervisor.start()
        self.scheduler.start()
        if self.poller is not None:
            self.poller.start()

    async def run(self, stop_event: asyncio.Event) -> None:
        self.start()
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        LOGGER.info("Shutting down", extra={"category": "shutdown"})
        self._stopping = True
        await self.scheduler.stop()
        if self.poller is not None:
            await self.poller.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.supervisor.stop()
        await self.client.close()
        self.status.set_running(False)
        LOGGER.info("MailWatch stopped", extra={"category": "shutdown"})


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            signal.signal(signum, lambda *_args: loop.call_soon_threadsafe(stop_event.set))


async def _run_async(config: AppConfig) -> None:
    app = MailWatchApp(config)
    stop_event = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop_event)
    await app.run(stop_event)


def run(config: AppConfig) -> None:
    setup_logging(
        config.log_file,
        log_level=config.log_level,
        log_console_level=config.log_console_level,
        log_console_enabled=config.log_console_enabled,
        log_max_bytes=config.log_max_bytes,
        log_backup_count=config.log_backup_count,
        app_version=_get_version(),
        release_date=__release_date__,
    )
    LOGGER.info(
        "MailWatch started (%s, %s)",
        _get_version(),
        __release_date__,
        extra={"category": "startup"},
    )
    asyncio.run(_run_async(config))
