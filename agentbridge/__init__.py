"""
Agent Voice Bridge - OpenAI Realtime voice sessions driving coding agents

This application lets one or more browser clients talk to a single shared OpenAI
Realtime voice session. The voice model can hand coding work to two command-line
agents, Codex and Claude Code, through function calls; their progress is streamed to
clients as server-sent events alongside live transcripts.

Architecture Overview:
- FastAPI server exposing WebRTC signaling, agent controls and an event feed
- One upstream Realtime session, shared by every client leg (audio fan-out/fan-in)
- One turn controller per agent, serializing prompts by cancelling the previous turn
- Event hubs per producer, filtered by the "inner thoughts" verbosity flag

Key Components:
- agents: turn controllers, cancellation tokens and the CLI agent backends
- bot: the upstream session manager, its transports and audio plumbing
- config: constants, settings, logging setup and the verbosity filter
- handlers: control-channel event handlers for the upstream session
- models: pydantic models for events, agent results and conversations
- services: event hubs and streams, the client leg registry and file storage
- runtime: wires the components together with a single owner for each

Getting Started:
1. Set up environment variables:
   - OPENAI_API_KEY: Your OpenAI API key
   - PORT: Port to run the server on (default 8765)
   - HOST: Host to bind the server to (default 0.0.0.0)
   - UPSTREAM_TRANSPORT: webrtc (default) or websocket
   - LOG_LEVEL: Logging level (default INFO)
2. Run the server: ``python -m agentbridge``
"""
