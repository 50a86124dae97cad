from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from mailwatch.app import NOT_CONNECTED_NOTICE, MailWatchApp
from mailwatch.config import AppConfig, ImapConfig, SubscribersConfig, TelegramConfig
from mailwatch.mail_connection import ConnectionEvent, ConnectionState
from mailwatch.subscribers import AllowListSubscriberRegistry, FixedSubscriberRegistry


def _config(**overrides) -> AppConfig:
    config = AppConfig(
        imap=ImapConfig(host="imap.local", port=993, user="alerts@example.com", password="secret"),
        telegram=TelegramConfig(token="123:ABC", poll_commands=False),
        subscribers=SubscribersConfig(mode="fixed", target="-100"),
    )
    return replace(config, **overrides)


class FakeClient:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.closed = False

    async def send_message(self, chat_id: str, text: str) -> None:
        self.sent.append((chat_id, text))

    async def get_updates(self, offset, timeout_seconds):
        await asyncio.sleep(3600)
        return []

    async def close(self) -> None:
        self.closed = True


class ReadyConnection:
    def __init__(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.listeners: list = []
        self.ended = False

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    def add_listener(self, listener) -> None:
        self.listeners.append(listener)

    def connect(self) -> None:
        self.state = ConnectionState.READY
        loop = asyncio.get_running_loop()
        for listener in self.listeners:
            loop.call_soon(listener, self, ConnectionEvent.READY, None)

    def mark_degraded(self) -> None:
        self.state = ConnectionState.DEGRADED

    async def end(self) -> None:
        self.ended = True
        self.state = ConnectionState.DISCONNECTED
        for listener in self.listeners:
            listener(self, ConnectionEvent.CLOSED, None)


def test_registry_follows_subscriber_mode() -> None:
    fixed = MailWatchApp(_config(), client=FakeClient())
    allow = MailWatchApp(
        _config(subscribers=SubscribersConfig(mode="allow_list", allow_list=["1", "2"])),
        client=FakeClient(),
    )

    assert isinstance(fixed.registry, FixedSubscriberRegistry)
    assert isinstance(allow.registry, AllowListSubscriberRegistry)
    assert fixed.dispatcher.registry is fixed.registry


def test_command_poller_is_optional() -> None:
    without = MailWatchApp(_config(), client=FakeClient())
    with_poller = MailWatchApp(
        _config(telegram=TelegramConfig(token="123:ABC", poll_commands=True)),
        client=FakeClient(),
    )

    assert without.poller is None
    assert with_poller.poller is not None


@pytest.mark.asyncio
async def test_not_connected_notice_respects_cooldown() -> None:
    client = FakeClient()
    app = MailWatchApp(
        _config(notify_when_disconnected=True, disconnected_notice_cooldown_seconds=300),
        client=client,
    )

    await app.notify_not_connected()
    await app.notify_not_connected()

    assert client.sent == [("-100", NOT_CONNECTED_NOTICE)]


@pytest.mark.asyncio
async def test_not_connected_notice_disabled_by_default() -> None:
    client = FakeClient()
    app = MailWatchApp(_config(), client=client)

    await app.notify_not_connected()

    assert client.sent == []


@pytest.mark.asyncio
async def test_run_starts_and_shuts_down_cleanly() -> None:
    client = FakeClient()
    connections: list[ReadyConnection] = []

    def factory() -> ReadyConnection:
        connection = ReadyConnection()
        connections.append(connection)
        return connection

    app = MailWatchApp(
        _config(telegram=TelegramConfig(token="123:ABC", poll_commands=True)),
        client=client,
        connection_factory=factory,
    )
    stop_event = asyncio.Event()

    runner = asyncio.create_task(app.run(stop_event))
    for _ in range(20):
        await asyncio.sleep(0)
    assert app.status.snapshot().running is True
    assert app.supervisor.is_ready()
    assert app.commands.handle("-100", "/status") is not None

    stop_event.set()
    await runner

    assert app.status.snapshot().running is False
    assert client.closed is True
    assert len(connections) == 1
    assert connections[0].ended is True


class FailingConnection(ReadyConnection):
    def connect(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        loop = asyncio.get_running_loop()
        for listener in self.listeners:
            loop.call_soon(listener, self, ConnectionEvent.ERROR, OSError("refused"))


@pytest.mark.asyncio
async def test_reconnect_command_restarts_degraded_connection() -> None:
    client = FakeClient()
    connections: list[ReadyConnection] = []
    kinds = [FailingConnection, FailingConnection, ReadyConnection]

    def factory() -> ReadyConnection:
        connection = kinds.pop(0)()
        connections.append(connection)
        return connection

    app = MailWatchApp(
        _config(reconnect_max_attempts=1, reconnect_base_delay_seconds=0.001),
        client=client,
        connection_factory=factory,
    )

    async def no_wait(_delay: float) -> None:
        await asyncio.sleep(0)

    app.supervisor._sleep = no_wait
    assert app.request_reconnect() is False

    app.supervisor.start()
    for _ in range(50):
        await asyncio.sleep(0)
    assert app.supervisor.given_up

    assert app.commands.handle("-100", "/reconnect") == "🔄 Reconnecting to the mail server."
    for _ in range(50):
        await asyncio.sleep(0)

    assert app.supervisor.is_ready()
    assert connections[1].ended is True
    await app.shutdown()
