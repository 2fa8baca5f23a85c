"""
Pydantic models for OpenAI Realtime API control-channel messages.

Inbound events are parsed into a closed set of variants keyed by their ``type`` field,
with ``UnknownRealtimeEvent`` as the explicit default arm. Outbound messages are built
from the models at the bottom of the module and sent as JSON.
"""

import json
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class RealtimeBaseEvent(BaseModel):
    """Base model for inbound Realtime API events."""

    model_config = ConfigDict(extra="allow")

    type: str
    event_id: Optional[str] = None


class RealtimeOutputItem(BaseModel):
    """Item announced by ``response.output_item.added``."""

    model_config = ConfigDict(extra="allow")

    type: str = "unknown"
    name: Optional[str] = None
    call_id: Optional[str] = None


class OutputItemAddedEvent(RealtimeBaseEvent):
    response_id: Optional[str] = None
    item: RealtimeOutputItem = Field(default_factory=RealtimeOutputItem)


class FunctionCallArgumentsDoneEvent(RealtimeBaseEvent):
    """The model finished streaming the arguments of a tool call."""

    name: Optional[str] = None
    call_id: Optional[str] = None
    response_id: Optional[str] = None
    arguments: Any = None


class OutputTextDeltaEvent(RealtimeBaseEvent):
    response_id: Optional[str] = None
    delta: str = ""


class AssistantTranscriptDeltaEvent(RealtimeBaseEvent):
    response_id: Optional[str] = None
    delta: str = ""


class AssistantTranscriptDoneEvent(RealtimeBaseEvent):
    response_id: Optional[str] = None
    transcript: str = ""


class UserTranscriptCompletedEvent(RealtimeBaseEvent):
    item_id: Optional[str] = None
    transcript: str = ""


class ResponseDoneEvent(RealtimeBaseEvent):
    """``response.done`` (current API) or ``response.completed`` (older builds)."""

    response: Dict[str, Any] = Field(default_factory=dict)

    @property
    def response_id(self) -> Optional[str]:
        return self.response.get("id")


class RealtimeErrorEvent(RealtimeBaseEvent):
    """``error`` and ``response.error`` events."""

    error: Optional[Dict[str, Any]] = None
    response_id: Optional[str] = None

    @property
    def message(self) -> str:
        if self.error and self.error.get("message"):
            return str(self.error["message"])
        return "Realtime response error"


class SessionCreatedEvent(RealtimeBaseEvent):
    session: Dict[str, Any] = Field(default_factory=dict)


class UnknownRealtimeEvent(RealtimeBaseEvent):
    """Any event type the bridge does not act on."""


RealtimeEvent = Union[
    OutputItemAddedEvent,
    FunctionCallArgumentsDoneEvent,
    OutputTextDeltaEvent,
    AssistantTranscriptDeltaEvent,
    AssistantTranscriptDoneEvent,
    UserTranscriptCompletedEvent,
    ResponseDoneEvent,
    RealtimeErrorEvent,
    SessionCreatedEvent,
    UnknownRealtimeEvent,
]

# Map event types to their classes for deserialization
REALTIME_EVENT_TYPE_MAP: Dict[str, Type[RealtimeBaseEvent]] = {
    "response.output_item.added": OutputItemAddedEvent,
    "response.function_call_arguments.done": FunctionCallArgumentsDoneEvent,
    "response.output_text.delta": OutputTextDeltaEvent,
    "response.text.delta": OutputTextDeltaEvent,
    "response.audio_transcript.delta": AssistantTranscriptDeltaEvent,
    "response.output_audio_transcript.delta": AssistantTranscriptDeltaEvent,
    "response.audio_transcript.done": AssistantTranscriptDoneEvent,
    "response.output_audio_transcript.done": AssistantTranscriptDoneEvent,
    "conversation.item.input_audio_transcription.completed": UserTranscriptCompletedEvent,
    "response.done": ResponseDoneEvent,
    "response.completed": ResponseDoneEvent,
    "response.error": RealtimeErrorEvent,
    "error": RealtimeErrorEvent,
    "session.created": SessionCreatedEvent,
}


def parse_realtime_event(payload: Dict[str, Any]) -> RealtimeEvent:
    """
    Parse a decoded control-channel message into its event variant.

    Args:
        payload: The decoded JSON object; must carry a string ``type``

    Returns:
        The matching event model, or ``UnknownRealtimeEvent`` for unmapped types or
        payloads that fail validation against their variant

    Raises:
        ValueError: If the payload has no ``type`` field
    """
    event_type = payload.get("type") if isinstance(payload, dict) else None
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("Realtime event without type field")

    model = REALTIME_EVENT_TYPE_MAP.get(event_type, UnknownRealtimeEvent)
    try:
        return model(**payload)
    except ValidationError:
        return UnknownRealtimeEvent(**payload)


def extract_prompt(arguments: Any) -> Optional[str]:
    """
    Pull the prompt out of tool-call arguments.

    Accepts a JSON object with a ``prompt`` key, a JSON-encoded string, a dict, or raw
    text that is not JSON at all.
    """
    if isinstance(arguments, str):
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            return arguments or None
        if isinstance(parsed, str):
            return parsed or None
        if isinstance(parsed, dict) and isinstance(parsed.get("prompt"), str):
            return parsed["prompt"] or None
        return None
    if isinstance(arguments, dict) and isinstance(arguments.get("prompt"), str):
        return arguments["prompt"] or None
    return None


# Outbound messages


class FunctionTool(BaseModel):
    type: str = "function"
    name: str
    description: str
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {
            "type": "object",
            "properties": {"prompt": {"type": "string"}},
            "required": ["prompt"],
        }
    )


class SessionConfig(BaseModel):
    instructions: str
    voice: str
    modalities: List[str] = Field(default_factory=lambda: ["audio", "text"])
    turn_detection: Dict[str, Any] = Field(default_factory=lambda: {"type": "server_vad"})
    input_audio_transcription: Dict[str, Any] = Field(
        default_factory=lambda: {"model": "whisper-1"}
    )
    tools: List[FunctionTool] = Field(default_factory=list)


class SessionUpdateMessage(BaseModel):
    type: str = "session.update"
    session: SessionConfig


class ResponseCreateMessage(BaseModel):
    type: str = "response.create"
    response: Optional[Dict[str, Any]] = None


class FunctionCallOutputItem(BaseModel):
    type: str = "function_call_output"
    call_id: Optional[str] = None
    output: str


class ConversationItemCreateMessage(BaseModel):
    type: str = "conversation.item.create"
    item: FunctionCallOutputItem

    @classmethod
    def function_output(cls, call_id: Optional[str], **output: Any) -> "ConversationItemCreateMessage":
        return cls(item=FunctionCallOutputItem(call_id=call_id, output=json.dumps(output)))


def outbound_payload(message: BaseModel) -> Dict[str, Any]:
    """Dump an outbound message model to the dict sent over the control channel."""
    return message.model_dump(exclude_none=True)
