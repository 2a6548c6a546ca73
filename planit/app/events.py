from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .schemas import BehavioralFingerprint, RecommendationFeed

logger = logging.getLogger(__name__)

E = TypeVar("E")
Handler = Callable[[E], Awaitable[Any] | Any]


@dataclass(frozen=True, slots=True)
class FingerprintChanged:
    user_id: str
    fingerprint: BehavioralFingerprint
    previous: BehavioralFingerprint


@dataclass(frozen=True, slots=True)
class RecommendationsUpdated:
    user_id: str
    feed: RecommendationFeed


class EventChannel(Generic[E]):
    """In-process publish/subscribe channel with explicit publisher and subscribers."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Handler] = []

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: E) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler on channel '%s' failed", self.name)


__all__ = ["EventChannel", "FingerprintChanged", "RecommendationsUpdated"]
