"""
Aggregates several event hubs into one filtered live feed per subscriber.

The HTTP layer turns each subscription into a server-sent-events response. Filtering
happens when an event is published, against the verbosity flag in force at that
moment.
"""

import asyncio
import logging
from typing import AsyncIterator, Iterable, List, Optional

from agentbridge.config.constants import LOGGER_NAME
from agentbridge.config.verbosity import VerbositySettings
from agentbridge.models.events import BroadcastEvent
from agentbridge.services.event_hub import EventHub, Unsubscribe

logger = logging.getLogger(LOGGER_NAME)

DEFAULT_QUEUE_SIZE = 1000
KEEPALIVE_INTERVAL = 15.0


class EventSubscription:
    """A single subscriber's queue of filtered events from several hubs."""

    def __init__(
        self,
        hubs: Iterable[EventHub],
        verbosity: VerbositySettings,
        max_queue: int = DEFAULT_QUEUE_SIZE,
    ):
        self._verbosity = verbosity
        self._queue: "asyncio.Queue[BroadcastEvent]" = asyncio.Queue(maxsize=max_queue)
        self._unsubscribers: List[Unsubscribe] = [hub.subscribe(self._enqueue) for hub in hubs]
        self.dropped = 0
        self.closed = False

    def _enqueue(self, event: BroadcastEvent) -> None:
        if self.closed or not self._verbosity.allows(event.type):
            return
        if self._queue.full():
            # Slow consumer: the live feed keeps the newest events
            self._queue.get_nowait()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Event subscriber is lagging, dropped {self.dropped} event(s)")
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[BroadcastEvent]:
        """Return the next event, or None when ``timeout`` elapses first."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def __enter__(self) -> "EventSubscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class EventStream:
    """Factory for subscriptions over a fixed set of hubs."""

    def __init__(self, hubs: Iterable[EventHub], verbosity: VerbositySettings):
        self.hubs = list(hubs)
        self.verbosity = verbosity

    def subscribe(self, max_queue: int = DEFAULT_QUEUE_SIZE) -> EventSubscription:
        return EventSubscription(self.hubs, self.verbosity, max_queue=max_queue)

    async def sse_records(self, keepalive: float = KEEPALIVE_INTERVAL) -> AsyncIterator[str]:
        """
        Yield server-sent-event frames until the consumer goes away.

        The first frame is always ``{"type":"connected"}``; idle periods produce SSE
        comment lines so dead connections are noticed.
        """
        subscription = self.subscribe()
        logger.info("Event stream subscriber connected")
        try:
            yield f"data: {BroadcastEvent(type='connected').to_record()}\n\n"
            while True:
                event = await subscription.get(timeout=keepalive)
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {event.to_record()}\n\n"
        finally:
            subscription.close()
            logger.info("Event stream subscriber disconnected")
