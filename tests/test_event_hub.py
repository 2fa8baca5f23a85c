"""
Unit tests for the EventHub publish/subscribe bus.
"""

import json

from agentbridge.models.events import BroadcastEvent
from agentbridge.services.event_hub import EventHub


def test_publish_delivers_to_all_subscribers():
    hub = EventHub("codex")
    first, second = [], []
    hub.subscribe(first.append)
    hub.subscribe(second.append)

    event = hub.publish("turn_started", {"agent": "codex"})

    assert first == [event]
    assert second == [event]
    assert event.source == "codex"
    assert event.payload == {"agent": "codex"}


def test_no_replay_for_late_subscribers():
    hub = EventHub("codex")
    hub.publish("turn_started")
    received = []
    hub.subscribe(received.append)
    assert received == []


def test_failing_handler_does_not_stop_delivery():
    hub = EventHub("claude")
    received = []

    def broken(event):
        raise RuntimeError("subscriber failed")

    hub.subscribe(broken)
    hub.subscribe(received.append)

    hub.publish("message", {"text": "hi"})

    assert [event.type for event in received] == ["message"]


def test_subscriber_added_during_delivery_misses_current_event():
    hub = EventHub("transcript")
    late = []

    def subscribe_late(event):
        hub.subscribe(late.append)

    hub.subscribe(subscribe_late)
    hub.publish("transcript_delta")
    assert late == []

    hub.publish("transcript_done")
    assert [event.type for event in late] == ["transcript_done"]


def test_unsubscribe_is_idempotent():
    hub = EventHub("connection")
    received = []
    unsubscribe = hub.subscribe(received.append)

    unsubscribe()
    unsubscribe()
    hub.publish("leg_connected")

    assert received == []
    assert hub.subscriber_count == 0


def test_reentrant_publish_keeps_order_for_every_subscriber():
    """An event published from inside a handler is delivered after the current one."""
    hub = EventHub("codex")
    first_seen, second_seen = [], []

    def first(event):
        first_seen.append(event.type)
        if event.type == "turn_started":
            hub.publish("message")

    hub.subscribe(first)
    hub.subscribe(lambda event: second_seen.append(event.type))

    hub.publish("turn_started")

    assert first_seen == ["turn_started", "message"]
    assert second_seen == ["turn_started", "message"]


def test_broadcast_event_record():
    event = BroadcastEvent(type="reset", payload={"agent": "claude"}, source="claude")
    record = json.loads(event.to_record())
    assert record["type"] == "reset"
    assert record["payload"] == {"agent": "claude"}
    assert record["source"] == "claude"
    assert isinstance(record["timestamp"], float)
