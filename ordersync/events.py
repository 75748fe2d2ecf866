"""Sync event broadcasting for connected viewers.

Provides:
- SyncBroadcaster: fans SyncEvents out to every subscribed viewer
- Subscription: per-viewer handle holding a bounded queue and an unsubscribe

Delivery is best effort. A full subscriber queue drops its oldest event,
so a slow viewer never back-pressures the publisher. Publishing is safe
from worker threads: each event is handed to the subscriber's own event
loop in publish order.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid

from ordersync.orders.models import SyncEvent

logger = logging.getLogger(__name__)


class Subscription:
    """A viewer's subscription to sync events."""

    def __init__(self, broadcaster: SyncBroadcaster, maxsize: int) -> None:
        self.sub_id = str(uuid.uuid4())[:8]
        self.queue: asyncio.Queue[SyncEvent] = asyncio.Queue(maxsize=maxsize)
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._broadcaster = broadcaster
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self.active:
            self.active = False
            self._broadcaster._remove(self.sub_id)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()

    def drain(self) -> list[SyncEvent]:
        """Pop everything currently queued without waiting."""
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def _offer(self, event: SyncEvent) -> None:
        if not self.active:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # Drop oldest event to make room
            try:
                self.queue.get_nowait()
                self.queue.put_nowait(event)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass

    def deliver(self, event: SyncEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self._offer(event)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._offer(event)
        else:
            loop.call_soon_threadsafe(self._offer, event)


class SyncBroadcaster:
    """Typed publish/subscribe channel for SyncEvents."""

    def __init__(self, queue_size: int = 500) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Register a new subscriber. Call from the viewer's event loop."""
        sub = Subscription(self, self._queue_size)
        with self._lock:
            self._subscribers[sub.sub_id] = sub
        logger.info("Sync subscriber connected: %s (total: %d)", sub.sub_id, len(self._subscribers))
        return sub

    def _remove(self, sub_id: str) -> None:
        with self._lock:
            self._subscribers.pop(sub_id, None)
        logger.info("Sync subscriber disconnected: %s (total: %d)", sub_id, len(self._subscribers))

    def publish(self, event: SyncEvent) -> None:
        """Send an event to all subscribers (non-blocking)."""
        with self._lock:
            subscribers = list(self._subscribers.values())
        for sub in subscribers:
            try:
                sub.deliver(event)
            except RuntimeError:
                # Subscriber loop shut down between the snapshot and delivery
                logger.debug("Dropping event for closed subscriber %s", sub.sub_id)

    def close(self) -> None:
        """Detach every subscriber. Used on shutdown."""
        with self._lock:
            subscribers = list(self._subscribers.values())
        for sub in subscribers:
            sub.unsubscribe()
