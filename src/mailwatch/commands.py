from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .mail_connection import ConnectionState
from .status import StatusStore, format_status
from .subscribers import SubscriberRegistry
from .telegram_sender import DeliveryError, TelegramClient

LOGGER = logging.getLogger(__name__)

START_OK = "✅ Subscribed to mail alerts."
START_ALREADY = "✅ Already subscribed to mail alerts."
START_DENIED = "⛔ This chat is not allowed to subscribe."
STOP_OK = "👋 Unsubscribed from mail alerts."
FIXED_TARGET_NOTICE = "ℹ️ Alerts go to a fixed chat; subscriptions are not available."
RECONNECT_OK = "🔄 Reconnecting to the mail server."
RECONNECT_NOT_NEEDED = "ℹ️ Mail connection is not degraded; no reconnect needed."
RECONNECT_DENIED = "⛔ This chat is not allowed to control monitoring."


def parse_command(text: str) -> str | None:
    """Return the bare command name of ``/name@bot args``, or None."""
    stripped = (text or "").strip()
    if not stripped.startswith("/"):
        return None
    head = stripped.split(maxsplit=1)[0][1:]
    name = head.split("@", 1)[0].lower()
    return name or None


class CommandHandler:
    def __init__(
        self,
        registry: SubscriberRegistry,
        status: StatusStore,
        connection_state: Callable[[], ConnectionState],
        *,
        mailbox: str = "INBOX",
        poll_interval_seconds: int | None = None,
        reconnect: Callable[[], bool] | None = None,
    ) -> None:
        self._registry = registry
        self._reconnect = reconnect
        self._status = status
        self._connection_state = connection_state
        self._mailbox = mailbox
        self._poll_interval_seconds = poll_interval_seconds

    def handle(self, chat_id: str, text: str) -> str | None:
        command = parse_command(text)
        if command == "status":
            return self.status()
        if command == "start":
            return self.start(chat_id)
        if command == "stop":
            return self.stop(chat_id)
        if command == "reconnect" and self._reconnect is not None:
            return self.reconnect(chat_id)
        return None

    def status(self) -> str:
        self._status.set_connection_state(self._connection_state().value)
        return format_status(
            self._status.snapshot(),
            subscriber_count=self._registry.size(),
            mailbox=self._mailbox,
            poll_interval_seconds=self._poll_interval_seconds,
        )

    def start(self, chat_id: str) -> str:
        if not self._registry.supports_membership:
            return FIXED_TARGET_NOTICE
        if self._registry.contains(chat_id):
            return START_ALREADY
        if self._registry.add(chat_id):
            return START_OK
        return START_DENIED

    def stop(self, chat_id: str) -> str:
        if not self._registry.supports_membership:
            return FIXED_TARGET_NOTICE
        self._registry.remove(chat_id)
        return STOP_OK

    def reconnect(self, chat_id: str) -> str:
        """Restart the mail session after reconnect attempts were exhausted."""
        if not self._registry.is_allowed(chat_id):
            return RECONNECT_DENIED
        if self._reconnect is None or not self._reconnect():
            return RECONNECT_NOT_NEEDED
        return RECONNECT_OK


class TelegramCommandPoller:
    """Long-polls getUpdates and answers commands through CommandHandler."""

    def __init__(
        self,
        client: TelegramClient,
        handler: CommandHandler,
        *,
        poll_timeout_seconds: int = 30,
        error_backoff_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._handler = handler
        self._poll_timeout = poll_timeout_seconds
        self._error_backoff = error_backoff_seconds
        self._sleep = sleep
        self._offset: int | None = None
        self._stopping = False
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self) -> int:
        updates = await self._client.get_updates(self._offset, self._poll_timeout)
        for update in updates:
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                self._offset = update_id + 1
            await self._handle_update(update)
        return len(updates)

    async def _handle_update(self, update: dict[str, Any]) -> None:
        message = update.get("message")
        if not isinstance(message, dict):
            return
        chat = message.get("chat")
        text = message.get("text")
        if not isinstance(chat, dict) or not isinstance(text, str):
            return
        chat_id = str(chat.get("id", ""))
        if not chat_id:
            return
        reply = self._handler.handle(chat_id, text)
        if reply is None:
            return
        LOGGER.info("Command handled: %s", parse_command(text), extra={"category": "command"})
        try:
            await self._client.send_message(chat_id, reply)
        except DeliveryError as exc:
            LOGGER.warning("Failed to send command reply: %s", exc, extra={"category": "command"})

    async def run(self) -> None:
        LOGGER.info("Command polling started", extra={"category": "startup"})
        while not self._stopping:
            try:
                await self.poll_once()
            except DeliveryError as exc:
                LOGGER.warning("getUpdates failed: %s", exc, extra={"category": "command"})
                await self._sleep(self._error_backoff)
            except Exception as exc:
                LOGGER.exception("Command polling error: %s", exc, extra={"category": "command"})
                await self._sleep(self._error_backoff)

    def start(self) -> asyncio.Task[None]:
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
