from __future__ import annotations

import asyncio
import enum
import logging
import re
import ssl
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, TypeVar

import aioimaplib

from .config import ImapConfig

LOGGER = logging.getLogger(__name__)

_IMAP_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)

_FETCH_LITERAL_RE = re.compile(rb"^(\d+) FETCH \(.*\{(\d+)\}$")

T = TypeVar("T")


class ProtocolError(RuntimeError):
    """Raised on connection-level IMAP failures; handled by the reconnect supervisor."""


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"


class ConnectionEvent(enum.Enum):
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


LifecycleListener = Callable[["MailConnection", ConnectionEvent, "BaseException | None"], None]


def format_imap_date(value: datetime) -> str:
    # strftime("%b") follows the process locale; IMAP requires English month names.
    return f"{value.day:02d}-{_IMAP_MONTHS[value.month - 1]}-{value.year:04d}"


def _build_ssl_context(config: ImapConfig) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not config.tls_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def default_client_factory(config: ImapConfig) -> Any:
    if config.use_tls:
        return aioimaplib.IMAP4_SSL(
            host=config.host,
            port=config.port,
            timeout=config.timeout_seconds,
            ssl_context=_build_ssl_context(config),
        )
    return aioimaplib.IMAP4(host=config.host, port=config.port, timeout=config.timeout_seconds)


def _abort_transport(client: Any) -> None:
    protocol = getattr(client, "protocol", None)
    transport = getattr(protocol, "transport", None)
    if transport is not None:
        transport.close()


def _parse_search_ids(lines: Iterable[Any]) -> list[str]:
    for line in lines:
        if not isinstance(line, (bytes, bytearray)):
            continue
        text = bytes(line).decode("ascii", errors="ignore").strip()
        if text.upper().startswith("SEARCH"):
            text = text[len("SEARCH"):].strip()
        tokens = text.split()
        if tokens and all(token.isdigit() for token in tokens):
            return tokens
    return []


def _parse_fetch_literals(lines: list[Any]) -> list[tuple[str, bytes]]:
    results: list[tuple[str, bytes]] = []
    for index, line in enumerate(lines):
        if not isinstance(line, (bytes, bytearray)):
            continue
        match = _FETCH_LITERAL_RE.match(bytes(line))
        if not match or index + 1 >= len(lines):
            continue
        literal = lines[index + 1]
        if isinstance(literal, str):
            literal = literal.encode("utf-8", errors="replace")
        results.append((match.group(1).decode("ascii"), bytes(literal)))
    return results


class MailConnection:
    """One IMAP session and its lifecycle events.

    ``connect`` never raises: it starts the session in a background task and
    reports the outcome through listeners (``READY`` or ``ERROR``). At most
    one terminal event (``ERROR`` or ``CLOSED``) is emitted per ``connect``.
    A fresh instance is expected for every reconnect attempt.
    """

    def __init__(
        self,
        config: ImapConfig,
        *,
        client_factory: Callable[[ImapConfig], Any] = default_client_factory,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._client: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[LifecycleListener] = []
        self._connect_task: asyncio.Task[None] | None = None
        self._closing: set[asyncio.Task[None]] = set()
        self._terminal_emitted = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    def add_listener(self, listener: LifecycleListener) -> None:
        self._listeners.append(listener)

    def mark_degraded(self) -> None:
        self._state = ConnectionState.DEGRADED

    def _emit(self, event: ConnectionEvent, error: BaseException | None = None) -> None:
        if event is not ConnectionEvent.READY:
            if self._terminal_emitted:
                return
            self._terminal_emitted = True
        for listener in list(self._listeners):
            try:
                listener(self, event, error)
            except Exception as exc:
                LOGGER.exception(
                    "Lifecycle listener failed: %s",
                    exc,
                    extra={"category": "imap"},
                )

    async def _close_client(self, client: Any) -> None:
        try:
            await asyncio.wait_for(client.logout(), timeout=self._config.timeout_seconds)
        except Exception as exc:
            LOGGER.info("IMAP logout failed: %s", exc, extra={"category": "imap"})
            _abort_transport(client)

    def _discard_client(self, client: Any) -> None:
        """Log out a dropped client in the background; end() awaits it."""
        if client is None:
            return
        task = asyncio.get_running_loop().create_task(self._close_client(client))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _fail(self, error: BaseException) -> None:
        client = self._client
        self._client = None
        self._discard_client(client)
        if self._state is not ConnectionState.DEGRADED:
            self._state = ConnectionState.DISCONNECTED
        self._emit(ConnectionEvent.ERROR, error)

    def connect(self) -> None:
        if self._state in (ConnectionState.CONNECTING, ConnectionState.READY):
            return
        self._terminal_emitted = False
        self._state = ConnectionState.CONNECTING
        LOGGER.info(
            "Connecting to IMAP %s:%s (tls=%s)",
            self._config.host,
            self._config.port,
            self._config.use_tls,
            extra={"category": "imap"},
        )
        self._connect_task = asyncio.get_running_loop().create_task(self._open_session())

    async def _open_session(self) -> None:
        client: Any = None
        try:
            client = self._client_factory(self._config)
            await asyncio.wait_for(
                client.wait_hello_from_server(), timeout=self._config.timeout_seconds
            )
            response = await client.login(self._config.user, self._config.password)
            if response.result != "OK":
                raise ProtocolError(f"IMAP login rejected: {response.result}")
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            self._discard_client(client)
            raise
        except Exception as exc:
            LOGGER.warning("IMAP connect failed: %s", exc, extra={"category": "imap"})
            self._discard_client(client)
            self._fail(exc)
            return
        self._client = client
        self._state = ConnectionState.READY
        LOGGER.info("IMAP connection ready", extra={"category": "imap"})
        self._emit(ConnectionEvent.READY)

    def _require_ready(self) -> Any:
        if self._state is not ConnectionState.READY or self._client is None:
            raise ProtocolError(f"IMAP session not ready (state={self._state.value})")
        get_state = getattr(self._client, "get_state", None)
        if get_state is not None and get_state() == "LOGOUT":
            error = ProtocolError("IMAP session closed by server")
            self._fail(error)
            raise error
        return self._client

    async def _command(self, call: Awaitable[T], label: str) -> T:
        try:
            return await call
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("IMAP %s failed: %s", label, exc, extra={"category": "imap"})
            self._fail(exc)
            raise ProtocolError(f"IMAP {label} failed: {exc}") from exc

    async def open_mailbox(self, name: str = "INBOX") -> str:
        client = self._require_ready()
        response = await self._command(client.select(name), "select")
        if response.result != "OK":
            raise ProtocolError(f"IMAP select {name} refused: {response.result}")
        return name

    async def search(self, since: datetime) -> list[str]:
        client = self._require_ready()
        criteria = ("UNSEEN", "SINCE", format_imap_date(since))
        response = await self._command(client.search(*criteria), "search")
        if response.result != "OK":
            raise ProtocolError(f"IMAP search refused: {response.result}")
        return _parse_search_ids(response.lines)

    async def fetch(
        self, ids: Iterable[str], *, mark_seen: bool = True
    ) -> AsyncIterator[tuple[str, bytes]]:
        """Fetch full messages in one batch.

        ``BODY[]`` sets ``\\Seen`` on the server as part of the fetch itself;
        ``BODY.PEEK[]`` leaves flags untouched.
        """
        client = self._require_ready()
        id_list = [str(item) for item in ids]
        if not id_list:
            return
        part = "(BODY[])" if mark_seen else "(BODY.PEEK[])"
        response = await self._command(client.fetch(",".join(id_list), part), "fetch")
        if response.result != "OK":
            raise ProtocolError(f"IMAP fetch refused: {response.result}")
        for message_id, raw in _parse_fetch_literals(list(response.lines)):
            yield message_id, raw

    async def end(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass
        client = self._client
        self._client = None
        if client is not None:
            await self._close_client(client)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        if self._state is not ConnectionState.DEGRADED:
            self._state = ConnectionState.DISCONNECTED
        LOGGER.info("IMAP connection ended", extra={"category": "imap"})
        self._emit(ConnectionEvent.CLOSED)
