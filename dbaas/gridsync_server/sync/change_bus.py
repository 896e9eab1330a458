"""
In-process change fan-out.

The ChangeBus is the single broadcast primitive behind every push-style
consumer. Each subscriber owns a bounded asyncio.Queue; publish() offers
the event to every matching queue. Streaming consumers iterate their
subscription, and long-poll waiters are just short-lived subscriptions
that stop at the first event past their cursor.

Invariants:
    - publish() is only called after the write transaction committed
    - Each subscriber receives events in publish order
    - No history is replayed on subscribe; callers catch up with a since-read
    - A subscription is deregistered when closed, including on timeout,
      cancellation or client disconnect
    - A full queue drops its oldest event (delivery is best-effort)

How to change safely:
    - Call publish() from the event loop thread only
    - Keep wait_for() wrapped in try/finally so waiters never leak

Example:
    >>> bus = ChangeBus()
    >>> async with bus.subscribe(["orders"]) as sub:
    ...     event = await sub.wait_for(since=10, timeout=2.0)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from .models import ChangeEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """A registered consumer of change events.

    Attributes:
        tables: Lower-cased table names of interest (None = all tables)
        dropped: Events discarded because the queue was full
    """

    def __init__(
        self,
        bus: ChangeBus,
        tables: Iterable[str] | None = None,
        maxsize: int = 1000,
    ) -> None:
        self._bus = bus
        self.tables = frozenset(t.lower() for t in tables) if tables else None
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        return self.tables is None or event.table.lower() in self.tables

    def _offer(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            if item is not _CLOSED:
                logger.warning(
                    "Subscriber queue full, dropping oldest change event",
                    extra={"dropped": self.dropped},
                )
        self._queue.put_nowait(item)

    async def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Next event, or None on timeout or once closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    async def wait_for(self, since: int, timeout: float) -> ChangeEvent | None:
        """Wait for an event with max_row_version > since.

        Returns:
            The first such event, or None when the timeout elapses
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            event = await self.get(timeout=remaining)
            if event is None:
                return None
            if event.max_row_version > since:
                return event

    def close(self) -> None:
        """Deregister from the bus and wake any pending reader."""
        if self.closed:
            return
        self.closed = True
        self._bus._unregister(self)
        self._offer(_CLOSED)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class ChangeBus:
    """Broadcast of committed change events to subscribers and waiters."""

    def __init__(self, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscribers: set[Subscription] = set()
        self._published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, tables: Iterable[str] | None = None) -> Subscription:
        """Register for all future events (optionally limited to tables)."""
        sub = Subscription(self, tables, maxsize=self.queue_size)
        self._subscribers.add(sub)
        logger.debug(
            "Subscriber registered",
            extra={
                "tables": sorted(sub.tables) if sub.tables else None,
                "subscribers": len(self._subscribers),
            },
        )
        return sub

    def _unregister(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        logger.debug("Subscriber removed", extra={"subscribers": len(self._subscribers)})

    def publish(self, event: ChangeEvent) -> int:
        """Offer a committed change to every matching subscriber.

        Returns:
            Number of subscribers the event was delivered to
        """
        delivered = 0
        for sub in list(self._subscribers):
            if sub.matches(event):
                sub._offer(event)
                delivered += 1
        self._published += 1
        logger.debug(
            "Published change",
            extra={
                "table": event.table,
                "max_row_version": event.max_row_version,
                "patches": len(event.patches),
                "delivered": delivered,
            },
        )
        return delivered

    async def wait_for(self, table: str, since: int, timeout: float) -> ChangeEvent | None:
        """Block until a change to table past since is published, or timeout."""
        sub = self.subscribe([table])
        try:
            return await sub.wait_for(since, timeout)
        finally:
            sub.close()

    def close_all(self) -> None:
        """Close every subscription (used on shutdown)."""
        for sub in list(self._subscribers):
            sub.close()

    def get_stats(self) -> dict[str, int]:
        return {"subscribers": len(self._subscribers), "published": self._published}
