from __future__ import annotations

import asyncio

import pytest

from mailwatch.commands import (
    FIXED_TARGET_NOTICE,
    RECONNECT_DENIED,
    RECONNECT_NOT_NEEDED,
    RECONNECT_OK,
    START_ALREADY,
    START_DENIED,
    START_OK,
    STOP_OK,
    CommandHandler,
    TelegramCommandPoller,
    parse_command,
)
from mailwatch.mail_connection import ConnectionState
from mailwatch.status import StatusStore
from mailwatch.subscribers import AllowListSubscriberRegistry, FixedSubscriberRegistry
from mailwatch.telegram_sender import DeliveryError


def _handler(registry) -> CommandHandler:
    return CommandHandler(
        registry,
        StatusStore(),
        lambda: ConnectionState.READY,
        mailbox="INBOX",
        poll_interval_seconds=60,
    )


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("/status", "status"),
        ("/START@MailWatchBot now", "start"),
        ("  /stop  ", "stop"),
        ("/", None),
        ("status", None),
        ("", None),
    ],
)
def test_parse_command(text: str, expected) -> None:
    assert parse_command(text) == expected


def test_status_reports_state_without_mutation() -> None:
    registry = AllowListSubscriberRegistry(["111"])
    registry.add("111")
    handler = _handler(registry)

    reply = handler.handle("999", "/status")

    assert reply is not None
    assert "Mail connection: ready" in reply
    assert "Subscribers: 1" in reply
    assert registry.snapshot() == ("111",)


def test_start_is_gated_by_allow_list() -> None:
    registry = AllowListSubscriberRegistry(["111"])
    handler = _handler(registry)

    assert handler.handle("111", "/start") == START_OK
    assert handler.handle("111", "/start") == START_ALREADY
    assert handler.handle("999", "/start") == START_DENIED
    assert registry.snapshot() == ("111",)


def test_stop_always_removes() -> None:
    registry = AllowListSubscriberRegistry(["111"])
    handler = _handler(registry)
    handler.handle("111", "/start")

    assert handler.handle("111", "/stop") == STOP_OK
    assert handler.handle("111", "/stop") == STOP_OK
    assert registry.size() == 0


def test_fixed_target_rejects_membership_commands() -> None:
    registry = FixedSubscriberRegistry("-100")
    handler = _handler(registry)

    assert handler.handle("-100", "/start") == FIXED_TARGET_NOTICE
    assert handler.handle("-100", "/stop") == FIXED_TARGET_NOTICE
    assert registry.snapshot() == ("-100",)


def test_unknown_command_is_ignored() -> None:
    assert _handler(FixedSubscriberRegistry("-100")).handle("-100", "/help") is None


def test_reconnect_is_limited_to_known_chats() -> None:
    requests = {"count": 0, "degraded": True}

    def reconnect() -> bool:
        requests["count"] += 1
        return requests["degraded"]

    handler = CommandHandler(
        FixedSubscriberRegistry("-100"),
        StatusStore(),
        lambda: ConnectionState.DEGRADED,
        reconnect=reconnect,
    )

    assert handler.handle("555", "/reconnect") == RECONNECT_DENIED
    assert requests["count"] == 0
    assert handler.handle("-100", "/reconnect") == RECONNECT_OK
    requests["degraded"] = False
    assert handler.handle("-100", "/reconnect") == RECONNECT_NOT_NEEDED
    assert requests["count"] == 2


def test_reconnect_without_callback_is_unknown() -> None:
    assert _handler(FixedSubscriberRegistry("-100")).handle("-100", "/reconnect") is None


class FakeClient:
    def __init__(self, batches: list) -> None:
        self.batches = list(batches)
        self.offsets: list = []
        self.sent: list[tuple[str, str]] = []
        self.fail_send = False

    async def get_updates(self, offset, timeout_seconds):
        self.offsets.append(offset)
        batch = self.batches.pop(0) if self.batches else []
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def send_message(self, chat_id: str, text: str) -> None:
        if self.fail_send:
            raise DeliveryError("network")
        self.sent.append((chat_id, text))


def _update(update_id: int, chat_id: int, text: str) -> dict:
    return {"update_id": update_id, "message": {"chat": {"id": chat_id}, "text": text}}


@pytest.mark.asyncio
async def test_poll_once_answers_commands_and_advances_offset() -> None:
    registry = AllowListSubscriberRegistry(["111"])
    client = FakeClient(
        [
            [
                _update(10, 111, "/start"),
                {"update_id": 11, "edited_message": {}},
                _update(12, 111, "just chatting"),
            ],
            [],
        ]
    )
    poller = TelegramCommandPoller(client, _handler(registry))

    assert await poller.poll_once() == 3
    await poller.poll_once()

    assert client.offsets == [None, 13]
    assert client.sent == [("111", START_OK)]
    assert registry.contains("111")


@pytest.mark.asyncio
async def test_reply_failure_is_contained() -> None:
    registry = AllowListSubscriberRegistry(["111"])
    client = FakeClient([[_update(1, 111, "/start")]])
    client.fail_send = True
    poller = TelegramCommandPoller(client, _handler(registry))

    assert await poller.poll_once() == 1
    assert registry.contains("111")


@pytest.mark.asyncio
async def test_run_backs_off_after_polling_error() -> None:
    client = FakeClient([DeliveryError("timeout")])
    sleeps: list[float] = []
    block = asyncio.Event()

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        await block.wait()

    poller = TelegramCommandPoller(
        client, _handler(FixedSubscriberRegistry("-100")), error_backoff_seconds=5.0, sleep=fake_sleep
    )
    poller.start()
    for _ in range(20):
        await asyncio.sleep(0)
    await poller.stop()

    assert sleeps == [5.0]
    assert client.offsets == [None]
