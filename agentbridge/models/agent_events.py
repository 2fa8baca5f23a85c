"""
Models for agent turns: normalized stream chunks and the status records returned by
every agent operation.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class AgentEventKind(str, Enum):
    """Closed set of chunk kinds produced by an agent backend."""

    CONTEXT_STARTED = "context_started"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    RESULT = "result"
    ERROR = "error"
    UNKNOWN = "unknown"


class AgentEvent(BaseModel):
    """One chunk of an agent's streamed turn."""

    kind: AgentEventKind = AgentEventKind.UNKNOWN
    text: Optional[str] = Field(None, description="Complete textual response carried by this chunk")
    context_id: Optional[str] = Field(None, description="Context identifier announced by the agent")
    raw: Dict[str, Any] = Field(default_factory=dict)


class TurnResult(BaseModel):
    """Outcome of one prompt."""

    status: Literal["ok", "error", "aborted"]
    agent: str
    context_id: Optional[str] = None
    turn: int = 0
    final_response: Optional[str] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None


class PauseResult(BaseModel):
    status: Literal["paused", "idle"]
    agent: str
    context_id: Optional[str] = None


class CompactResult(BaseModel):
    status: Literal["ok", "error", "aborted"]
    agent: str
    old_context_id: Optional[str] = None
    new_context_id: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None


class ResetResult(BaseModel):
    status: Literal["reset"] = "reset"
    agent: str
    context_id: Optional[str] = None


class AgentStatus(BaseModel):
    agent: str
    context_id: Optional[str] = None
    has_context: bool = False
    is_busy: bool = False
    turn_count: int = 0
    summary: Optional[str] = None
