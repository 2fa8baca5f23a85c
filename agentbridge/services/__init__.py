"""
Services module for the long-lived components behind the HTTP surface.

Key components:
- event_hub: the synchronous publish/subscribe ``EventHub`` used side by side for each
  agent, transcripts and connection status.
- event_stream: multiplexes several hubs into one filtered feed for server-sent events.
- client_registry: admits client legs against the open upstream session and tears them
  down idempotently.
- webrtc_leg: the aiortc peer connection for one client.
- storage: JSON conversation files and the context memory markdown file.

Usage examples:
```python
from agentbridge.services.event_hub import EventHub

hub = EventHub("codex")
unsubscribe = hub.subscribe(lambda event: print(event.type, event.payload))
hub.publish("turn_started", {"agent": "codex", "turn": 1})
unsubscribe()
```
"""

# Services module initialization
