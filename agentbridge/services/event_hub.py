"""
In-process publish/subscribe hub.

Each producer (an agent, the transcript relay, the connection registry) owns one hub.
Delivery is synchronous over a snapshot of the subscriber set, so a handler added while
an event is being delivered only sees later events. A failing handler is logged and
skipped. Events published from inside a handler are queued and delivered after the
current event, which keeps every subscriber's view of a producer in publish order.
"""

import logging
from collections import deque
from itertools import count
from typing import Any, Callable, Deque, Dict

from agentbridge.config.constants import LOGGER_NAME
from agentbridge.models.events import BroadcastEvent

logger = logging.getLogger(LOGGER_NAME)

EventHandler = Callable[[BroadcastEvent], None]
Unsubscribe = Callable[[], None]


class EventHub:
    """Publish/subscribe bus with isolated, non-replayed delivery."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: Dict[int, EventHandler] = {}
        self._ids = count(1)
        self._pending: Deque[BroadcastEvent] = deque()
        self._delivering = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, handler: EventHandler) -> Unsubscribe:
        """
        Register a handler for events published from now on.

        Args:
            handler: Called with each ``BroadcastEvent``

        Returns:
            A callable that removes the handler; calling it more than once is harmless
        """
        subscription_id = next(self._ids)
        self._subscribers[subscription_id] = handler

        def unsubscribe() -> None:
            self._subscribers.pop(subscription_id, None)

        return unsubscribe

    def publish(self, event_type: str, payload: Any = None) -> BroadcastEvent:
        """
        Publish an event to every current subscriber.

        Args:
            event_type: The event ``type``
            payload: Any JSON-serialisable payload

        Returns:
            The published event
        """
        event = BroadcastEvent(type=event_type, payload=payload, source=self.name)
        self._pending.append(event)
        if self._delivering:
            return event

        self._delivering = True
        try:
            while self._pending:
                self._deliver(self._pending.popleft())
        finally:
            self._delivering = False
        return event

    def _deliver(self, event: BroadcastEvent) -> None:
        for handler in list(self._subscribers.values()):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"[{self.name}] Event handler failed for {event.type}: {e}",
                    exc_info=True,
                )
