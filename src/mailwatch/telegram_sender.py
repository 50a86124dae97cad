from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import aiohttp

from .config import TelegramConfig

LOGGER = logging.getLogger(__name__)

PERMANENT_DESCRIPTIONS = (
    "bot was blocked by the user",
    "user is deactivated",
    "chat not found",
    "bot was kicked",
    "bot is not a member",
    "have no rights to send",
)


class DeliveryError(RuntimeError):
    """Raised when a message could not be delivered to one chat."""

    def __init__(
        self,
        message: str,
        *,
        error_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.retry_after = retry_after


class PermanentDeliveryError(DeliveryError):
    """Raised when the chat revoked access (blocked bot, deleted chat)."""


def _is_permanent(error_code: int | None, description: str) -> bool:
    lowered = description.lower()
    if any(marker in lowered for marker in PERMANENT_DESCRIPTIONS):
        return True
    return error_code == 403


class TelegramClient:
    """Minimal Telegram Bot API client over aiohttp."""

    def __init__(
        self,
        config: TelegramConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    def _url(self, method: str) -> str:
        return f"{self._config.api_url}/bot{self._config.token}/{method}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def call(
        self,
        method: str,
        payload: dict[str, Any],
        *,
        timeout_seconds: float | None = None,
    ) -> Any:
        session = self._get_session()
        total = timeout_seconds if timeout_seconds is not None else self._config.timeout_seconds
        try:
            async with session.post(
                self._url(method),
                json=payload,
                timeout=aiohttp.ClientTimeout(total=total),
            ) as response:
                status = response.status
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryError(f"Telegram {method} request failed: {exc}") from exc

        if not isinstance(data, dict):
            data = {}
        if status == 200 and data.get("ok"):
            return data.get("result")

        description = str(data.get("description") or f"HTTP {status}")
        error_code = data.get("error_code", status)
        parameters = data.get("parameters")
        retry_after = None
        if isinstance(parameters, dict) and parameters.get("retry_after") is not None:
            retry_after = float(parameters["retry_after"])
        if _is_permanent(error_code, description):
            raise PermanentDeliveryError(description, error_code=error_code)
        raise DeliveryError(description, error_code=error_code, retry_after=retry_after)

    async def send_message(self, chat_id: str, text: str) -> None:
        if not text:
            raise ValueError("Telegram message is empty")

        attempts = max(0, self._config.retry_attempts)
        backoff = max(0.0, self._config.retry_backoff_seconds)

        for attempt in range(attempts + 1):
            try:
                await self.call("sendMessage", {"chat_id": chat_id, "text": text})
                LOGGER.info("Telegram message sent", extra={"category": "send"})
                return
            except PermanentDeliveryError as exc:
                LOGGER.warning(
                    "Telegram chat rejected delivery permanently: %s",
                    exc,
                    extra={"category": "send"},
                )
                raise
            except DeliveryError as exc:
                if attempt >= attempts:
                    LOGGER.error(
                        "Telegram failure after %s attempts: %s",
                        attempts + 1,
                        exc,
                        extra={"category": "send"},
                    )
                    raise
                delay = exc.retry_after if exc.retry_after is not None else backoff * (2**attempt)
                LOGGER.warning(
                    "Telegram failure, retrying in %.1fs: %s",
                    delay,
                    exc,
                    extra={"category": "send"},
                )
                if delay:
                    await self._sleep(delay)

    async def get_updates(self, offset: int | None, timeout_seconds: int) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"timeout": timeout_seconds, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        result = await self.call(
            "getUpdates",
            payload,
            timeout_seconds=timeout_seconds + self._config.timeout_seconds,
        )
        if not isinstance(result, list):
            return []
        return [item for item in result if isinstance(item, dict)]

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
