from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


def now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class StatusSnapshot:
    running: bool
    connection_state: str
    last_poll: str
    last_poll_result: str
    last_alert: str
    last_alert_at: str
    last_send: str
    last_error: str
    error_count: int
    dropped_ticks: int
    reconnect_attempts: int
    degraded: bool


class StatusStore:
    """Last-known runtime status, written by the engine and read by /status.

    All writers and readers share one event loop, so no locking is needed.
    """

    def __init__(self) -> None:
        self._running = False
        self._connection_state = "disconnected"
        self._last_poll = ""
        self._last_poll_result = ""
        self._last_alert = ""
        self._last_alert_at = ""
        self._last_send = ""
        self._last_error = ""
        self._error_count = 0
        self._dropped_ticks = 0
        self._reconnect_attempts = 0
        self._degraded = False

    def set_running(self, value: bool) -> None:
        self._running = value

    def set_connection_state(self, value: str) -> None:
        self._connection_state = value

    def set_last_poll(self, value: str) -> None:
        self._last_poll = value

    def set_last_poll_result(self, value: str) -> None:
        self._last_poll_result = value

    def set_last_alert(self, subject: str, at: str) -> None:
        self._last_alert = subject
        self._last_alert_at = at

    def set_last_send(self, value: str) -> None:
        self._last_send = value

    def set_last_error(self, value: str) -> None:
        self._last_error = value

    def increment_error_count(self) -> None:
        self._error_count += 1

    def increment_dropped_ticks(self) -> None:
        self._dropped_ticks += 1

    def set_reconnect_attempts(self, value: int) -> None:
        self._reconnect_attempts = max(0, int(value))

    def set_degraded(self, value: bool) -> None:
        self._degraded = value

    def snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(
            running=self._running,
            connection_state=self._connection_state,
            last_poll=self._last_poll,
            last_poll_result=self._last_poll_result,
            last_alert=self._last_alert,
            last_alert_at=self._last_alert_at,
            last_send=self._last_send,
            last_error=self._last_error,
            error_count=self._error_count,
            dropped_ticks=self._dropped_ticks,
            reconnect_attempts=self._reconnect_attempts,
            degraded=self._degraded,
        )


def _format_timestamp(value: str) -> str:
    if not value:
        return ""
    try:
        timestamp = datetime.fromisoformat(value)
        return timestamp.strftime("%d-%m-%Y - %H:%M")
    except ValueError:
        return value


def _format_next_check(last_poll: str, poll_interval_seconds: int | None) -> str:
    if not last_poll or not poll_interval_seconds:
        return ""
    try:
        timestamp = datetime.fromisoformat(last_poll)
        next_timestamp = timestamp + timedelta(seconds=int(poll_interval_seconds))
        return next_timestamp.strftime("%d-%m-%Y - %H:%M")
    except ValueError:
        return ""


def format_status(
    snapshot: StatusSnapshot,
    *,
    subscriber_count: int,
    mailbox: str = "",
    poll_interval_seconds: int | None = None,
) -> str:
    running = "yes" if snapshot.running else "no"
    mailbox_label = mailbox or "<configured mailbox>"
    connection = snapshot.connection_state
    if snapshot.degraded:
        connection = f"{connection} (reconnect attempts exhausted)"
    lines = [
        f"Running: {running}",
        f"Mail connection: {connection}",
        f"Monitored mailbox: {mailbox_label}",
        f"Subscribers: {subscriber_count}",
        f"Last check: {_format_timestamp(snapshot.last_poll)}",
        f"Last check result: {snapshot.last_poll_result or 'none'}",
        f"Next check: {_format_next_check(snapshot.last_poll, poll_interval_seconds)}",
        f"Last alert: {snapshot.last_alert or 'none'}",
        f"Last alert at: {_format_timestamp(snapshot.last_alert_at)}",
        f"Last notification sent: {_format_timestamp(snapshot.last_send)}",
        f"Reconnect attempts: {snapshot.reconnect_attempts}",
        f"Skipped checks (busy): {snapshot.dropped_ticks}",
        f"Total errors: {snapshot.error_count}",
    ]
    return "\n".join(lines)
