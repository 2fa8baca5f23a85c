"""
Broadcast event model shared by every event hub.

Events are immutable once published and serialise to the JSON records pushed to
stream subscribers.
"""

import time
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class BroadcastEvent(BaseModel):
    """One event delivered to hub subscribers."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="Event type used for routing and filtering")
    payload: Any = None
    timestamp: float = Field(default_factory=time.time)
    source: Optional[str] = Field(None, description="Name of the hub that produced the event")

    def to_record(self) -> str:
        """Serialise to the compact JSON record used on the event stream."""
        return self.model_dump_json(exclude_none=True)
