"""In-process event stream for task, objective, and insight events.

Every event is a member of the ``SimulationEvent`` tagged union. Subscribers
receive every event published while they are registered, in publish order.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from shared.schemas import SimulationEvent

logger = logging.getLogger(__name__)


class Subscription:
    """Unbounded per-subscriber queue consumed by async iteration."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[SimulationEvent] = asyncio.Queue()

    def put(self, event: SimulationEvent) -> None:
        self._queue.put_nowait(event)

    def drain(self) -> list[SimulationEvent]:
        """Return every queued event without waiting."""
        events: list[SimulationEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> SimulationEvent:
        return await self._queue.get()


class EventBus:
    def __init__(self, history_size: int = 500) -> None:
        self._subscribers: list[Subscription] = []
        self.history: deque[SimulationEvent] = deque(maxlen=history_size)

    def publish(self, event: SimulationEvent) -> None:
        self.history.append(event)
        for subscriber in list(self._subscribers):
            subscriber.put(event)
        logger.debug("Published %s", event.type)

    def open(self) -> Subscription:
        subscription = Subscription()
        self._subscribers.append(subscription)
        return subscription

    def close(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[Subscription]:
        subscription = self.open()
        try:
            yield subscription
        finally:
            self.close(subscription)
