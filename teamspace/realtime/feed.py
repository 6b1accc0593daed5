"""In-process change feed.

Writers publish one :class:`ChangeEvent` per committed row change; readers
subscribe to a table with equality filters and consume events as an async
iterator. Delivery is at-least-once and unordered from the reader's point of
view: consumers must key what they store by identity and tolerate repeats.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..observability.metrics import CHANGE_EVENTS


logger = logging.getLogger(__name__)

TABLES = frozenset(
    {
        "audit_records",
        "audit_memberships",
        "project_events",
        "event_notifications",
        "chat_messages",
        "chat_mentions",
    }
)

_CLOSED = object()


@dataclass(frozen=True)
class ChangeEvent:
    seq: int
    table: str
    op: str
    row: Mapping[str, Any]
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "table": self.table,
            "op": self.op,
            "row": dict(self.row),
            "published_at": self.published_at,
        }


class Subscription:
    """A filtered view of the feed bound to the event loop that created it."""

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        filters: Mapping[str, Any],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.table = table
        self.filters = dict(filters)
        self._feed = feed
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        return all(event.row.get(key) == value for key, value in self.filters.items())

    def _deliver(self, item: Any) -> None:
        if self._loop.is_closed():
            self.closed = True
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(item)
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # loop shut down between the check and the call
            self.closed = True

    async def get(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel for any other waiter.
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)
        self._deliver(_CLOSED)


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self._seq = itertools.count(1)

    def subscribe(self, table: str, **filters: Any) -> Subscription:
        """Subscribe to ``table`` changes whose rows equal every filter value.

        Must be called from inside the event loop that will consume the
        subscription.
        """
        if table not in TABLES:
            raise ValueError(f"Unknown change feed table: {table}")
        filters = {key: value for key, value in filters.items() if value is not None}
        subscription = Subscription(self, table, filters, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Subscribed to %s with %s", table, filters)
        return subscription

    def publish(self, table: str, op: str, row: Mapping[str, Any]) -> ChangeEvent:
        event = ChangeEvent(seq=next(self._seq), table=table, op=op, row=dict(row))
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.matches(event)]
        for subscription in targets:
            subscription._deliver(event)
        stale = [sub for sub in targets if sub.closed]
        for subscription in stale:
            self._remove(subscription)
        CHANGE_EVENTS.labels(table, op).inc()
        return event

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is None:
                return len(self._subscriptions)
            return sum(1 for sub in self._subscriptions if sub.table == table)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)


_default_feed: Optional[ChangeFeed] = None


def get_change_feed() -> ChangeFeed:
    """Return the process-wide feed, creating it on first use."""
    global _default_feed
    if _default_feed is None:
        _default_feed = ChangeFeed()
    return _default_feed


def reset_change_feed() -> ChangeFeed:
    global _default_feed
    _default_feed = ChangeFeed()
    return _default_feed
