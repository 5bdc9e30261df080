"""In-process realtime adapter.

Stands in for a hosted change feed: the SQLite store hands every message
insert/update to ``publish`` and each live subscription receives the events
matching its table and equality filters. Publishing is thread-safe so the
store can be used from worker threads.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import List, Mapping, Optional

from core.errors import UpstreamUnavailable
from core.models import RealtimeEvent

LOGGER = logging.getLogger(__name__)

_DROPPED = object()
_CLOSED = object()


class Subscription:
    """Async iterator over the events of one subscription.

    Registration happens on construction, so events published between
    ``subscribe()`` and the first ``__anext__`` are not lost.
    """

    def __init__(self, hub: "InProcessRealtime", table: str, filters: Mapping[str, str]) -> None:
        self._hub = hub
        self.table = table
        self.filters = dict(filters)
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        hub._register(self)

    def matches(self, event: RealtimeEvent) -> bool:
        if event.table != self.table:
            return False
        return all(str(event.row.get(key)) == str(value) for key, value in self.filters.items())

    def _deliver(self, item: object) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RealtimeEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        if item is _DROPPED:
            self._closed = True
            self._hub._unregister(self)
            raise UpstreamUnavailable("Realtime connection dropped.")
        return item

    async def aclose(self) -> None:
        self._closed = True
        self._hub._unregister(self)


class InProcessRealtime:
    """Fan-out hub implementing the RealtimePort contract."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []

    def _register(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.append(subscription)

    def _unregister(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscribe(self, table: str, filters: Optional[Mapping[str, str]] = None) -> Subscription:
        return Subscription(self, table, filters or {})

    def publish(self, event: RealtimeEvent) -> None:
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.matches(event)]
        for subscription in targets:
            try:
                subscription._deliver(event)
            except RuntimeError:
                # The subscriber's loop is gone; treat it as closed.
                LOGGER.debug("Dropping event for closed subscriber on %s", event.table)
                self._unregister(subscription)

    def drop_all(self) -> None:
        """Simulate a connection loss on every live subscription."""

        with self._lock:
            targets = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in targets:
            subscription._deliver(_DROPPED)

    def close(self) -> None:
        with self._lock:
            targets = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in targets:
            subscription._deliver(_CLOSED)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
