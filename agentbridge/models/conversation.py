"""
Persisted conversation records.

Transcripts are kept per conversation; the store writes each conversation as one JSON
document and the summaries drive the conversation list.
"""

import time
from typing import List, Literal

from pydantic import BaseModel, Field


class TranscriptEntry(BaseModel):
    role: Literal["user", "assistant"]
    text: str
    timestamp: float = Field(default_factory=time.time)


class Conversation(BaseModel):
    id: str
    title: str = "New Conversation"
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    transcript: List[TranscriptEntry] = Field(default_factory=list)


class ConversationSummary(BaseModel):
    id: str
    title: str
    created_at: float
    updated_at: float
    message_count: int
