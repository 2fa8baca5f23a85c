"""
Bot module for the single OpenAI Realtime session shared by every client.

Key components:
- UpstreamSessionManager: lazily opens the session (one handshake at a time), fans
  upstream audio out to client legs, forwards client audio upstream and routes control
  events to transcripts and agent tool calls.
- transports: WebRTC (aiortc peer connection with an ``oai-events`` data channel, SDP
  exchanged over HTTP with aiohttp) and WebSocket (websockets, base64 PCM16 events)
  implementations of ``UpstreamTransport``.
- media: conversion between aiortc tracks and the bridge's 48 kHz ``AudioFrame``.

Usage examples:
```python
from agentbridge.bot.realtime_session import UpstreamSessionManager
from agentbridge.config.settings import Settings
from agentbridge.services.event_hub import EventHub

manager = UpstreamSessionManager(Settings.from_env(), EventHub("transcript"), EventHub("connection"))
await manager.get_or_create_session()
unsubscribe = manager.add_audio_listener("leg-1", lambda frame: print(frame.duration))
```
"""

# Bot module initialization
