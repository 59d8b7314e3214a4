"""Observer registry and event fan-out.

Observers are dashboard connections that only receive events. Each one gets a
bounded queue; publishing never waits on an observer. An observer whose queue
is full is evicted instead of slowing down the call that published.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from callbridge.core.events import BridgeEvent
from callbridge.logging_config import get_logger
from callbridge.observability.metrics import ACTIVE_OBSERVERS, OBSERVER_EVICTIONS

logger: Any = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 64


class ObserverConnection:
    """Outbound frame queue for one observer."""

    def __init__(self, observer_id: str, max_queue: int = DEFAULT_QUEUE_SIZE) -> None:
        self.id = observer_id
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, frame: str) -> bool:
        """Queue a frame without waiting.

        Returns:
            False if the observer is closed or its queue is full.
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    async def next_frame(self) -> str | None:
        """Wait for the next frame. Returns None once the observer is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        """Discard queued frames and wake the writer with an end marker."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


class ObserverRegistry:
    """Live set of observer connections.

    The lock guards membership changes only and is never held across a send.
    """

    def __init__(self, max_queue: int = DEFAULT_QUEUE_SIZE) -> None:
        self._observers: dict[str, ObserverConnection] = {}
        self._lock = asyncio.Lock()
        self._max_queue = max_queue

    async def register(self) -> ObserverConnection:
        """Admit a new observer and return its connection."""
        observer = ObserverConnection(uuid.uuid4().hex[:12], max_queue=self._max_queue)
        async with self._lock:
            self._observers[observer.id] = observer
            count = len(self._observers)
        ACTIVE_OBSERVERS.set(count)
        logger.info(f"Observer {observer.id} registered ({count} connected)")
        return observer

    async def unregister(self, observer_id: str) -> bool:
        """Remove an observer and close its queue.

        Returns:
            True if the observer was registered.
        """
        async with self._lock:
            observer = self._observers.pop(observer_id, None)
            count = len(self._observers)
        if observer is None:
            return False
        observer.close()
        ACTIVE_OBSERVERS.set(count)
        logger.info(f"Observer {observer_id} unregistered ({count} connected)")
        return True

    async def snapshot(self) -> list[ObserverConnection]:
        """Copy of the current membership."""
        async with self._lock:
            return list(self._observers.values())

    async def close_all(self) -> None:
        """Close every observer (for shutdown)."""
        async with self._lock:
            observers = list(self._observers.values())
            self._observers.clear()
        for observer in observers:
            observer.close()
        ACTIVE_OBSERVERS.set(0)

    @property
    def count(self) -> int:
        """Number of connected observers."""
        return len(self._observers)


class EventBroadcaster:
    """Publishes call events to every registered observer."""

    def __init__(self, registry: ObserverRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ObserverRegistry:
        return self._registry

    async def publish(self, event: BridgeEvent) -> int:
        """Deliver an event to all observers, best effort.

        Observers that cannot take the frame are evicted; the rest still
        receive it. Never raises for observer failures.

        Returns:
            Number of observers the frame was queued for.
        """
        frame = event.to_json()
        delivered = 0
        evicted: list[ObserverConnection] = []

        for observer in await self._registry.snapshot():
            if observer.offer(frame):
                delivered += 1
            else:
                evicted.append(observer)

        for observer in evicted:
            if await self._registry.unregister(observer.id):
                OBSERVER_EVICTIONS.inc()
                logger.warning(f"Evicted observer {observer.id}: send queue full or closed")

        return delivered
