from __future__ import annotations

import logging
from typing import Iterable, Protocol

from .config import SubscribersConfig

LOGGER = logging.getLogger(__name__)


class SubscriberRegistry(Protocol):
    supports_membership: bool

    def snapshot(self) -> tuple[str, ...]: ...

    def contains(self, subscriber_id: str) -> bool: ...

    def size(self) -> int: ...

    def is_allowed(self, subscriber_id: str) -> bool: ...

    def add(self, subscriber_id: str) -> bool: ...

    def remove(self, subscriber_id: str) -> bool: ...


class FixedSubscriberRegistry:
    """A single configured target; membership never changes."""

    supports_membership = False

    def __init__(self, target: str) -> None:
        if not str(target).strip():
            raise ValueError("target is required")
        self._target = str(target).strip()

    def snapshot(self) -> tuple[str, ...]:
        return (self._target,)

    def contains(self, subscriber_id: str) -> bool:
        return str(subscriber_id) == self._target

    def size(self) -> int:
        return 1

    def is_allowed(self, subscriber_id: str) -> bool:
        return self.contains(subscriber_id)

    def add(self, subscriber_id: str) -> bool:
        return False

    def remove(self, subscriber_id: str) -> bool:
        if self.contains(subscriber_id):
            LOGGER.warning(
                "Fixed notification target cannot be removed; keeping it",
                extra={"category": "subscribers"},
            )
        return False


class AllowListSubscriberRegistry:
    """Opt-in subscribers, restricted to an allow-list. In-memory only."""

    supports_membership = True

    def __init__(self, allow_list: Iterable[str]) -> None:
        self._allow_list = frozenset(str(item).strip() for item in allow_list if str(item).strip())
        self._members: set[str] = set()

    def snapshot(self) -> tuple[str, ...]:
        return tuple(self._members)

    def contains(self, subscriber_id: str) -> bool:
        return str(subscriber_id) in self._members

    def size(self) -> int:
        return len(self._members)

    def is_allowed(self, subscriber_id: str) -> bool:
        return str(subscriber_id) in self._allow_list

    def add(self, subscriber_id: str) -> bool:
        key = str(subscriber_id)
        if key not in self._allow_list:
            LOGGER.info(
                "Subscription rejected for id outside allow-list",
                extra={"category": "subscribers"},
            )
            return False
        self._members.add(key)
        LOGGER.info(
            "Subscriber added (total %s)",
            len(self._members),
            extra={"category": "subscribers"},
        )
        return True

    def remove(self, subscriber_id: str) -> bool:
        key = str(subscriber_id)
        if key in self._members:
            self._members.discard(key)
            LOGGER.info(
                "Subscriber removed (total %s)",
                len(self._members),
                extra={"category": "subscribers"},
            )
        return True


def build_registry(config: SubscribersConfig) -> SubscriberRegistry:
    if config.mode == "allow_list":
        return AllowListSubscriberRegistry(config.allow_list)
    return FixedSubscriberRegistry(config.target)
