"""
Visibility filter for the outbound event stream.

Every event type is classified as *essential* (always forwarded) or *detailed*
(forwarded only while "inner thoughts" are shown). Types missing from both sets get
the detailed policy, so new event types stay hidden until verbosity is turned on.
"""

import logging
from typing import Dict, FrozenSet

from agentbridge.config.constants import LOGGER_NAME
from agentbridge.services.event_hub import EventHub

logger = logging.getLogger(LOGGER_NAME)

ESSENTIAL_EVENT_TYPES: FrozenSet[str] = frozenset(
    {
        # Session lifecycle
        "session_started",
        "turn_completed",
        "turn_error",
        # Control events
        "reset",
        "paused",
        "compact_completed",
        "compact_error",
        # Transcript events (the user should always see what was said)
        "transcript_delta",
        "transcript_done",
        "user_transcript_done",
        # Connection status
        "connected",
        "session_opened",
        "session_closed",
        "leg_connected",
        "leg_disconnected",
        "verbosity_changed",
    }
)

DETAILED_EVENT_TYPES: FrozenSet[str] = frozenset(
    {
        "turn_started",
        "turn_paused",
        "turn_aborted",
        "thread_event",
        "message",
        "compact_started",
    }
)


def should_send_event(event_type: str, show_inner_thoughts: bool) -> bool:
    """
    Decide whether an event of the given type reaches stream subscribers.

    Args:
        event_type: The ``type`` of the event
        show_inner_thoughts: Current value of the global verbose flag

    Returns:
        bool: True if the event should be forwarded
    """
    if event_type in ESSENTIAL_EVENT_TYPES:
        return True
    if event_type in DETAILED_EVENT_TYPES:
        return show_inner_thoughts
    return show_inner_thoughts


class VerbositySettings:
    """Holds the global "show inner thoughts" flag and announces changes."""

    def __init__(self, show_inner_thoughts: bool = False):
        self._show_inner_thoughts = show_inner_thoughts
        self.changes = EventHub("verbosity")

    @property
    def show_inner_thoughts(self) -> bool:
        return self._show_inner_thoughts

    def set(self, show: bool) -> Dict[str, object]:
        was_showing = self._show_inner_thoughts
        self._show_inner_thoughts = show
        if was_showing != show:
            logger.info(f"Inner thoughts mode changed: {'showing' if show else 'hidden'}")
            self.changes.publish("verbosity_changed", {"showInnerThoughts": show})
        return {"status": "ok", "showInnerThoughts": show}

    def toggle(self) -> Dict[str, object]:
        return self.set(not self._show_inner_thoughts)

    def allows(self, event_type: str) -> bool:
        return should_send_event(event_type, self._show_inner_thoughts)
