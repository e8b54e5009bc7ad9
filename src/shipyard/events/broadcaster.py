"""Fan-out of service state changes to connected observers.

Provides:
- Non-blocking publish (never awaits an observer)
- Bounded queue per observer with drop-oldest backpressure
- SSE framing and heartbeats for the HTTP observer stream
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUEUE_SIZE = 1000
DEFAULT_HEARTBEAT_INTERVAL = 15.0  # seconds

EventType = Literal["status", "env", "release", "initial"]


@dataclass(frozen=True)
class Event:
    """State-change event delivered to observers.

    Attributes:
        type: One of status, env, release, initial.
        service: Service the event concerns (None for ``initial``).
        data: Event payload.

    """

    type: EventType
    service: str | None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Wire form ``{type, service, data}``."""
        return {"type": self.type, "service": self.service, "data": self.data}


def format_sse(event: str, data: dict[str, Any], event_id: str | None = None, retry: int | None = None) -> str:
    """Format one server-sent-event frame.

    Returns:
        SSE-formatted string terminated by a blank line.

    """
    lines = []
    if event_id:
        lines.append(f"id: {event_id}")
    if retry:
        lines.append(f"retry: {retry}")
    lines.append(f"event: {event}")
    for line in json.dumps(data).split("\n"):
        lines.append(f"data: {line}")
    lines.append("")
    return "\n".join(lines) + "\n"


class Subscription:
    """One observer's bounded event queue."""

    def __init__(self, max_queue_size: int) -> None:
        self.queue: asyncio.Queue[tuple[int, Event] | None] = asyncio.Queue(maxsize=max_queue_size)
        self.dropped = 0

    def offer(self, item: tuple[int, Event]) -> bool:
        """Enqueue without waiting; drops the oldest entry when full."""
        try:
            self.queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            try:
                self.queue.get_nowait()
                self.queue.put_nowait(item)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                return False
            self.dropped += 1
            return True

    async def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or None on shutdown.

        Raises:
            TimeoutError: If no event arrives within timeout.

        """
        if timeout is None:
            item = await self.queue.get()
        else:
            item = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        if item is None:
            return None
        return item[1]

    async def get_with_id(self, timeout: float) -> tuple[int, Event] | None:
        """Next (sequence, event) pair, or None on shutdown."""
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class EventBroadcaster:
    """Delivers events to every subscribed observer.

    Attributes:
        max_queue_size: Pending events kept per observer.
        heartbeat_interval: Idle seconds before an SSE heartbeat.

    """

    def __init__(
        self,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        """Initialize broadcaster.

        Args:
            max_queue_size: Pending events kept per observer.
            heartbeat_interval: Idle seconds before an SSE heartbeat.

        """
        self.max_queue_size = max_queue_size
        self.heartbeat_interval = heartbeat_interval
        self._subscriptions: set[Subscription] = set()
        self._message_counter = 0

    @property
    def subscriber_count(self) -> int:
        """Number of connected observers."""
        return len(self._subscriptions)

    def publish(self, event: Event) -> int:
        """Queue an event for every observer without blocking.

        Returns:
            Number of observers the event was queued for.

        """
        self._message_counter += 1
        item = (self._message_counter, event)

        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.offer(item):
                delivered += 1
            else:
                logger.warning("Observer queue full, dropping %s event", event.type)
        logger.debug(
            "Published %s event for %s to %d observers",
            event.type,
            event.service,
            delivered,
        )
        return delivered

    @asynccontextmanager
    async def subscribe(self) -> AsyncGenerator[Subscription, None]:
        """Register an observer for the duration of the context."""
        subscription = Subscription(self.max_queue_size)
        self._subscriptions.add(subscription)
        logger.info("Observer connected (total: %d)", len(self._subscriptions))
        try:
            yield subscription
        finally:
            self._subscriptions.discard(subscription)
            logger.info("Observer disconnected (remaining: %d)", len(self._subscriptions))

    async def stream(self, initial: Callable[[], Event] | None = None) -> AsyncGenerator[str, None]:
        """SSE stream for one observer.

        Args:
            initial: Builds the snapshot event sent first (after subscribing,
                so no change between snapshot and stream is lost).

        Yields:
            SSE-formatted frames.

        """
        async with self.subscribe() as subscription:
            if initial is not None:
                snapshot = initial()
                yield format_sse(snapshot.type, snapshot.to_dict(), retry=3000)

            while True:
                try:
                    item = await subscription.get_with_id(self.heartbeat_interval)
                except TimeoutError:
                    yield format_sse("heartbeat", {"timestamp": time.time()})
                    continue

                if item is None:
                    break
                sequence, event = item
                yield format_sse(event.type, event.to_dict(), event_id=str(sequence))

    async def shutdown(self) -> None:
        """Disconnect all observers."""
        for subscription in list(self._subscriptions):
            try:
                subscription.queue.put_nowait(None)
            except asyncio.QueueFull:
                subscription.queue.get_nowait()
                subscription.queue.put_nowait(None)
        logger.info("Event broadcaster shutdown, disconnected %d observers", len(self._subscriptions))
        self._subscriptions.clear()
