"""In-process event bus delivering every usage event to every subscriber.

Backpressure policy: each subscriber owns a bounded queue. When a queue is
full, `publish` waits for room, so slow consumers throttle the tail readers
instead of losing events. Events published while nobody is subscribed are
dropped, counted and logged; startup wires subscribers before any reader runs.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ccarbon import config
from ccarbon.models import UsageEvent

logger = logging.getLogger("ccarbon.events")


class Subscription:
    """A subscriber's view of the bus: an ordered, bounded event queue."""

    def __init__(self, bus: "EventBus", name: str, maxsize: int):
        self.bus = bus
        self.name = name
        self.queue: asyncio.Queue[UsageEvent] = asyncio.Queue(maxsize=max(0, maxsize))
        self.closed = False

    async def get(self) -> UsageEvent:
        return await self.queue.get()

    def task_done(self) -> None:
        self.queue.task_done()

    async def join(self) -> None:
        """Wait until every event delivered so far has been handled."""
        await self.queue.join()

    def pending(self) -> int:
        return self.queue.qsize()

    def close(self) -> None:
        self.bus.unsubscribe(self)


class EventBus:
    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = config.EVENT_QUEUE_SIZE if queue_size is None else queue_size
        self._subscriptions: list[Subscription] = []
        self.published_count = 0
        self.dropped_count = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, name: str) -> Subscription:
        subscription = Subscription(self, name, self.queue_size)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscriber {name!r} attached")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        subscription.closed = True

    async def publish(self, event: UsageEvent) -> int:
        """Deliver `event` to all subscribers; returns the number reached."""
        targets = list(self._subscriptions)
        if not targets:
            self.dropped_count += 1
            logger.warning(f"Dropped {event.kind} event with no subscribers (total dropped: {self.dropped_count})")
            return 0
        for subscription in targets:
            await subscription.queue.put(event)
        self.published_count += 1
        return len(targets)
