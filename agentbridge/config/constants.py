"""
Fixed values shared across the bridge: upstream endpoints and timeouts, tool and agent
names, audio format and the hub names that tag server-sent events.
"""

# Logger name used throughout the application
LOGGER_NAME = "agent_bridge"

# Default OpenAI model and voice for the Realtime API
DEFAULT_REALTIME_MODEL = "gpt-realtime"
DEFAULT_REALTIME_VOICE = "alloy"
REALTIME_BASE_URL = "https://api.openai.com/v1/realtime"
REALTIME_WS_URL = "wss://api.openai.com/v1/realtime"

# Upstream handshake limits (seconds)
CONTROL_READY_TIMEOUT = 10.0
SDP_EXCHANGE_TIMEOUT = 15.0
TEXT_RESPONSE_TIMEOUT = 10.0

# Control channel
DATA_CHANNEL_LABEL = "oai-events"
UPSTREAM_TRANSPORT_WEBRTC = "webrtc"
UPSTREAM_TRANSPORT_WEBSOCKET = "websocket"

# Agent tool names exposed to the voice model
TOOL_RUN_CODEX = "run_codex"
TOOL_RUN_CLAUDE = "run_claude"
AGENT_CODEX = "codex"
AGENT_CLAUDE = "claude"

# Agentic turns Claude may take per prompt before it must answer
CLAUDE_MAX_TURNS = 10

# Audio format constants
WEBRTC_SAMPLE_RATE = 48000
REALTIME_PCM_SAMPLE_RATE = 24000
FRAME_DURATION = 0.02  # 20ms
OUTBOUND_QUEUE_SIZE = 25  # ~500ms of audio before the oldest frames are dropped

# Event hub names, also used as the SSE "source" tag
HUB_CODEX = "codex"
HUB_CLAUDE = "claude"
HUB_TRANSCRIPT = "transcript"
HUB_CONNECTION = "connection"
