"""
File-backed persistence for conversations and the assistant's context memory.

Both stores are last-write-wins with no locking across processes. Blocking file I/O
runs in a worker thread through the ``*_async`` wrappers so the event loop is never
stalled by disk access.
"""

import asyncio
import json
import logging
import re
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from agentbridge.config.constants import LOGGER_NAME
from agentbridge.models.conversation import Conversation, ConversationSummary, TranscriptEntry

logger = logging.getLogger(LOGGER_NAME)

DEFAULT_TITLE = "New Conversation"
MAX_TITLE_LENGTH = 50
RUN_LOG_HEADING = "## Run Log"

DEFAULT_MEMORY = """# Context Memory

Persistent notes the assistant reads on startup so context survives across runs.

## Purpose
- Keep debugging notes, user preferences, agreements and project facts available to the assistant.
- Update this file instead of relying on transient conversation memory.

## User Preferences
- (add preferences here)

## Debugging Notes
- (record fixes, workarounds, test commands)

## Important Agreements
- (log decisions or agreements to honor later)

## Run Log
- Initialized context memory; entries are appended automatically on each session start.
"""

_CONVERSATION_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def generate_title(transcript: List[TranscriptEntry]) -> str:
    """Title from the first user utterance: its first sentence, capped at 50 characters."""
    for entry in transcript:
        if entry.role != "user":
            continue
        text = entry.text.strip()
        first_sentence = re.split(r"[.!?]", text)[0]
        if len(first_sentence) <= MAX_TITLE_LENGTH:
            title = first_sentence
        else:
            title = text[: MAX_TITLE_LENGTH - 3] + "..."
        return title or DEFAULT_TITLE
    return DEFAULT_TITLE


class ConversationStore:
    """
    Conversations stored as one JSON document each under ``<data_dir>/conversations``.

    The store also tracks the current conversation, which receives transcript entries.
    """

    def __init__(self, data_dir: Path):
        self.directory = Path(data_dir) / "conversations"
        self.current_id: Optional[str] = None

    def _ensure_dir(self) -> None:
        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created conversations directory: {self.directory}")

    def _path(self, conversation_id: str) -> Path:
        if not _CONVERSATION_ID.match(conversation_id or ""):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self.directory / f"{conversation_id}.json"

    def save(self, conversation: Conversation) -> None:
        self._ensure_dir()
        self._path(conversation.id).write_text(
            conversation.model_dump_json(indent=2), encoding="utf-8"
        )

    def create(self) -> Conversation:
        conversation = Conversation(id=secrets.token_hex(8))
        self.save(conversation)
        self.current_id = conversation.id
        logger.info(f"Created new conversation: {conversation.id}")
        return conversation

    def load(self, conversation_id: str) -> Optional[Conversation]:
        """Load a conversation, or None if it does not exist or cannot be parsed."""
        try:
            path = self._path(conversation_id)
        except ValueError:
            return None
        if not path.exists():
            return None
        try:
            return Conversation.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error(f"Failed to load conversation {conversation_id}: {e}")
            return None

    def select(self, conversation_id: str) -> Optional[Conversation]:
        """Make an existing conversation the current one."""
        conversation = self.load(conversation_id)
        if conversation is not None:
            self.current_id = conversation.id
            logger.info(f"Selected conversation: {conversation.id}")
        return conversation

    def current(self) -> Conversation:
        """The current conversation, created on demand."""
        if self.current_id:
            conversation = self.load(self.current_id)
            if conversation is not None:
                return conversation
        return self.create()

    def append(self, role: str, text: str, timestamp: Optional[float] = None) -> Conversation:
        conversation = self.current()
        entry = TranscriptEntry(role=role, text=text, timestamp=timestamp or time.time())
        conversation.transcript.append(entry)
        conversation.updated_at = time.time()
        if conversation.title == DEFAULT_TITLE and entry.role == "user":
            conversation.title = generate_title(conversation.transcript)
        self.save(conversation)
        return conversation

    def list(self) -> List[ConversationSummary]:
        """Summaries of every stored conversation, most recently updated first."""
        if not self.directory.exists():
            return []
        summaries = []
        for path in self.directory.glob("*.json"):
            try:
                conversation = Conversation.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                logger.error(f"Failed to read conversation file {path.name}: {e}")
                continue
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    title=conversation.title,
                    created_at=conversation.created_at,
                    updated_at=conversation.updated_at,
                    message_count=len(conversation.transcript),
                )
            )
        summaries.sort(key=lambda summary: summary.updated_at, reverse=True)
        return summaries

    def delete(self, conversation_id: str) -> bool:
        try:
            path = self._path(conversation_id)
        except ValueError:
            return False
        if not path.exists():
            return False
        path.unlink()
        if self.current_id == conversation_id:
            self.current_id = None
        logger.info(f"Deleted conversation: {conversation_id}")
        return True

    async def append_async(self, role: str, text: str) -> Conversation:
        return await asyncio.to_thread(self.append, role, text)

    async def list_async(self) -> List[ConversationSummary]:
        return await asyncio.to_thread(self.list)


def format_history(conversation: Conversation) -> str:
    """Render a transcript for inclusion in the session instructions."""
    if not conversation.transcript:
        return ""
    lines = []
    for entry in conversation.transcript:
        role = "User" if entry.role == "user" else "Assistant"
        stamp = datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S")
        lines.append(f"[{stamp}] {role}: {entry.text}")
    return f"Previous conversation ({conversation.title}):\n" + "\n".join(lines)


class ContextMemory:
    """Markdown notes file read into the assistant's instructions on every session start."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def ensure(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(DEFAULT_MEMORY, encoding="utf-8")

    def load(self) -> str:
        try:
            self.ensure()
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to read context memory file: {e}")
            return DEFAULT_MEMORY

    def record_run(self, note: str) -> None:
        """Append a timestamped line under the run log heading."""
        safe_note = " ".join(note.split())
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        entry = f"- {timestamp} UTC - {safe_note}"
        try:
            self.ensure()
            current = self.path.read_text(encoding="utf-8").rstrip()
            if RUN_LOG_HEADING not in current:
                current = f"{current}\n\n{RUN_LOG_HEADING}"
            self.path.write_text(f"{current}\n{entry}\n", encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to append run entry to context memory: {e}")

    async def load_async(self) -> str:
        return await asyncio.to_thread(self.load)

    async def record_run_async(self, note: str) -> None:
        await asyncio.to_thread(self.record_run, note)
