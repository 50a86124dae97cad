from __future__ import annotations

import email
import email.policy
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage, Message
from email.utils import parsedate_to_datetime
from html import unescape
from typing import TYPE_CHECKING, Callable

from .mail_connection import MailConnection, ProtocolError
from .status import StatusStore, now_iso

if TYPE_CHECKING:
    from .dispatcher import NotificationDispatcher

LOGGER = logging.getLogger(__name__)

ALERT_TOKEN = "alert"

# SINCE matches the server-local internal date; one day of slack covers any server offset.
SERVER_DATE_SLACK = timedelta(days=1)

_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


class ParseError(ValueError):
    """Raised when one fetched message cannot be parsed."""


@dataclass(frozen=True)
class MailMessage:
    subject: str | None = None
    date: datetime | None = None
    body_text: str | None = None
    sender: str | None = None


@dataclass(frozen=True)
class AlertEvent:
    subject: str
    date: datetime | None
    body_text: str | None


@dataclass(frozen=True)
class ScanResult:
    found: int = 0
    parsed: int = 0
    alerts: int = 0
    parse_errors: int = 0

    def summary(self) -> str:
        return (
            f"found={self.found} parsed={self.parsed} "
            f"alerts={self.alerts} parse_errors={self.parse_errors}"
        )


def is_alert(subject: str | None) -> bool:
    if not subject:
        return False
    return ALERT_TOKEN in subject.casefold()


def truncate_text(text: str | None, max_length: int) -> str | None:
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    return text[:max_length]


def _html_to_text(html: str) -> str:
    text = re.sub(r"(?i)<br\s*/?>|</p>", "\n", html)
    text = _TAG_RE.sub("", text)
    text = unescape(text)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


def _header(message: Message, name: str) -> str | None:
    try:
        value = message.get(name)
    except Exception:
        return None
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def _parse_date(message: Message) -> datetime | None:
    raw = _header(message, "Date")
    if not raw:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        LOGGER.debug("Unparseable Date header", extra={"category": "scan"})
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decode_part(part: Message) -> str | None:
    try:
        if isinstance(part, EmailMessage):
            content = part.get_content()
        else:
            content = part.get_payload(decode=True)
    except (LookupError, ValueError, AssertionError, KeyError):
        payload = part.get_payload(decode=True)
        content = payload if isinstance(payload, bytes) else None
    if isinstance(content, bytes):
        charset = part.get_content_charset() or "utf-8"
        try:
            content = content.decode(charset, errors="replace")
        except LookupError:
            content = content.decode("utf-8", errors="replace")
    if not isinstance(content, str):
        return None
    return content


def _extract_body(message: Message) -> str | None:
    body_part: Message | None = None
    if isinstance(message, EmailMessage):
        try:
            body_part = message.get_body(preferencelist=("plain", "html"))
        except Exception:
            body_part = None
    if body_part is None and not message.is_multipart():
        body_part = message
    if body_part is None or body_part.get_content_maintype() != "text":
        return None
    text = _decode_part(body_part)
    if text is None:
        return None
    if body_part.get_content_type() == "text/html":
        text = _html_to_text(text)
    text = text.strip()
    return text or None


def parse_message(raw: bytes) -> MailMessage:
    """Parse raw RFC 822 bytes; missing or malformed headers become None."""
    if not isinstance(raw, (bytes, bytearray)):
        raise ParseError(f"Expected raw message bytes, got {type(raw).__name__}")
    if not raw.strip():
        raise ParseError("Empty message")
    try:
        message = email.message_from_bytes(bytes(raw), policy=email.policy.default)
        return MailMessage(
            subject=_header(message, "Subject"),
            date=_parse_date(message),
            body_text=_extract_body(message),
            sender=_header(message, "From"),
        )
    except ParseError:
        raise
    except Exception as exc:
        raise ParseError(f"Failed to parse message: {exc}") from exc


def build_alert_event(message: MailMessage, max_body_length: int) -> AlertEvent:
    return AlertEvent(
        subject=message.subject or "",
        date=message.date,
        body_text=truncate_text(message.body_text, max_body_length),
    )


class AlertScanner:
    """Runs the open, search, fetch and classify sequence of one poll cycle."""

    def __init__(
        self,
        connection_provider: Callable[[], MailConnection | None],
        dispatcher: NotificationDispatcher,
        *,
        status: StatusStore | None = None,
        mailbox: str = "INBOX",
        lookback_minutes: int = 30,
        max_body_length: int = 1024,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._connection_provider = connection_provider
        self._dispatcher = dispatcher
        self._status = status or StatusStore()
        self._mailbox = mailbox
        self._lookback = timedelta(minutes=lookback_minutes)
        self._max_body_length = max_body_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def scan(self) -> ScanResult:
        connection = self._connection_provider()
        if connection is None:
            raise ProtocolError("No IMAP session")
        await connection.open_mailbox(self._mailbox)
        since = self._clock() - self._lookback - SERVER_DATE_SLACK
        ids = await connection.search(since)
        if not ids:
            LOGGER.debug("No unseen messages", extra={"category": "scan"})
            return ScanResult()

        LOGGER.info("Found %s unseen message(s)", len(ids), extra={"category": "scan"})
        parsed = 0
        alerts = 0
        parse_errors = 0
        async for message_id, raw in connection.fetch(ids, mark_seen=True):
            try:
                message = parse_message(raw)
            except ParseError as exc:
                parse_errors += 1
                LOGGER.warning(
                    "Skipping message %s: %s",
                    message_id,
                    exc,
                    extra={"category": "scan"},
                )
                continue
            parsed += 1
            if not is_alert(message.subject):
                continue
            alerts += 1
            LOGGER.info("ALERT: %r", message.subject, extra={"category": "scan"})
            self._status.set_last_alert(message.subject or "", now_iso())
            await self._dispatcher.notify(build_alert_event(message, self._max_body_length))

        return ScanResult(found=len(ids), parsed=parsed, alerts=alerts, parse_errors=parse_errors)
