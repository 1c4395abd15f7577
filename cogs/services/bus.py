"""In-process publish/subscribe relay between telemetry and state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

logger = logging.getLogger("cogs.bus")

Subscriber = Callable[[Any], Awaitable[None]]


class Topic(StrEnum):
    DEVICE_UPDATED = "dmon:update"
    CLAIM_OBSERVED = "pmon:claim"


class EventBus:
    """Typed topics with subscribers awaited in registration order.

    ``publish`` returns once every subscriber has handled the event, so two
    events published on one topic are always delivered in publish order. The
    bus holds no locks of its own; subscribers take whatever locks they need.
    """

    def __init__(self) -> None:
        self._subscribers: dict[Topic, list[Subscriber]] = {topic: [] for topic in Topic}

    def subscribe(self, topic: Topic, handler: Subscriber) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: Topic, handler: Subscriber) -> None:
        try:
            self._subscribers[topic].remove(handler)
        except ValueError:
            logger.debug("Handler %r was not subscribed to %s", handler, topic)

    def subscribers(self, topic: Topic) -> int:
        return len(self._subscribers[topic])

    async def publish(self, topic: Topic, event: Any) -> None:
        for handler in tuple(self._subscribers[topic]):
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Subscriber %r failed handling %s", handler, topic)
