"""
Models module for the data structures exchanged inside the bridge.

Key components:
- events: the immutable ``BroadcastEvent`` delivered by every event hub.
- realtime_events: typed variants for OpenAI Realtime control-channel messages,
  inbound and outbound.
- agent_events: normalized agent stream chunks and the status records returned by
  prompt, pause, compact and reset.
- conversation: persisted transcript records.
- audio: the opaque ``AudioFrame`` relayed between legs and the upstream session.
"""

from agentbridge.models.agent_events import (
    AgentEvent,
    AgentEventKind,
    AgentStatus,
    CompactResult,
    PauseResult,
    ResetResult,
    TurnResult,
)
from agentbridge.models.audio import AudioFrame
from agentbridge.models.conversation import Conversation, ConversationSummary, TranscriptEntry
from agentbridge.models.events import BroadcastEvent
from agentbridge.models.realtime_events import RealtimeEvent, parse_realtime_event
