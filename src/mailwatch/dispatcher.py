from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol
from zoneinfo import ZoneInfo

from .scanner import AlertEvent
from .status import StatusStore, now_iso
from .subscribers import SubscriberRegistry
from .telegram_sender import DeliveryError, PermanentDeliveryError

LOGGER = logging.getLogger(__name__)

NO_SUBJECT = "(no subject)"
NO_TEXT = "(no text)"
DATE_FORMAT = "%d.%m.%Y, %H:%M:%S"
MAX_SUBJECT_LENGTH = 512
# Telegram rejects sendMessage text longer than this.
MESSAGE_LIMIT = 4096


class MessageSender(Protocol):
    async def send_message(self, chat_id: str, text: str) -> None: ...


@dataclass
class DispatchResult:
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


def format_alert_message(event: AlertEvent, *, tz: ZoneInfo, now: datetime) -> str:
    subject = (event.subject or NO_SUBJECT)[:MAX_SUBJECT_LENGTH]
    when = event.date or now
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    date_text = when.astimezone(tz).strftime(DATE_FORMAT)
    text = event.body_text or NO_TEXT
    rendered = f"🚨 {subject}\n\n" f"🕒 {date_text}\n\n" f"📝 {text}"
    return rendered[:MESSAGE_LIMIT]


class NotificationDispatcher:
    """Delivers alerts and status notices to every current subscriber.

    Each target is attempted independently on a snapshot of the registry.
    Transient failures are logged; a permanent failure (the chat revoked
    access) removes that target from the registry.
    """

    def __init__(
        self,
        sender: MessageSender,
        registry: SubscriberRegistry,
        *,
        status: StatusStore | None = None,
        timezone_name: str = "Europe/Moscow",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sender = sender
        self._registry = registry
        self._status = status or StatusStore()
        self._tz = ZoneInfo(timezone_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def registry(self) -> SubscriberRegistry:
        return self._registry

    def format_alert(self, event: AlertEvent) -> str:
        return format_alert_message(event, tz=self._tz, now=self._clock())

    async def notify(self, event: AlertEvent) -> DispatchResult:
        return await self._deliver(self.format_alert(event), category="send")

    async def notify_status(self, text: str) -> DispatchResult:
        return await self._deliver(text, category="error")

    async def _deliver(self, text: str, *, category: str) -> DispatchResult:
        result = DispatchResult()
        targets = self._registry.snapshot()
        if not targets:
            LOGGER.info("No subscribers; notification dropped", extra={"category": category})
            return result
        for target in targets:
            try:
                await self._sender.send_message(target, text)
                result.delivered.append(target)
            except PermanentDeliveryError as exc:
                result.failed.append(target)
                LOGGER.warning(
                    "Permanent delivery failure, removing subscriber: %s",
                    exc,
                    extra={"category": category},
                )
                if self._registry.remove(target):
                    result.removed.append(target)
            except DeliveryError as exc:
                result.failed.append(target)
                LOGGER.warning(
                    "Failed to send notification: %s",
                    exc,
                    extra={"category": category},
                )
            except Exception as exc:
                result.failed.append(target)
                LOGGER.exception(
                    "Unexpected notification failure: %s",
                    exc,
                    extra={"category": category},
                )
        if result.delivered:
            self._status.set_last_send(now_iso())
        return result
