"""
Unit tests for conversation persistence and the context memory file.
"""

import pytest

from agentbridge.models.conversation import Conversation, TranscriptEntry
from agentbridge.services.storage import (
    DEFAULT_MEMORY,
    DEFAULT_TITLE,
    RUN_LOG_HEADING,
    ContextMemory,
    ConversationStore,
    format_history,
    generate_title,
)


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path)


class TestGenerateTitle:
    def test_first_sentence_of_first_user_entry(self):
        transcript = [
            TranscriptEntry(role="assistant", text="Hello! How can I help?"),
            TranscriptEntry(role="user", text="Run the tests. Then report back."),
        ]
        assert generate_title(transcript) == "Run the tests"

    def test_long_sentence_is_truncated(self):
        text = "word " * 30
        title = generate_title([TranscriptEntry(role="user", text=text)])
        assert len(title) == 50
        assert title.endswith("...")

    def test_no_user_entry(self):
        assert generate_title([TranscriptEntry(role="assistant", text="Hi")]) == DEFAULT_TITLE
        assert generate_title([TranscriptEntry(role="user", text="?")]) == DEFAULT_TITLE


class TestConversationStore:
    def test_create_becomes_current(self, store):
        conversation = store.create()

        assert store.current_id == conversation.id
        assert (store.directory / f"{conversation.id}.json").exists()
        assert store.load(conversation.id) == conversation

    def test_current_creates_on_demand(self, store):
        assert store.current_id is None
        conversation = store.current()
        assert store.current_id == conversation.id
        assert store.current().id == conversation.id

    def test_append_sets_title_from_first_user_entry(self, store):
        store.append("assistant", "Hi there.")
        store.append("user", "Check the build. It is red.")
        conversation = store.append("user", "Something else entirely.")

        assert conversation.title == "Check the build"
        assert [entry.role for entry in conversation.transcript] == ["assistant", "user", "user"]
        assert store.load(conversation.id).transcript[1].text == "Check the build. It is red."

    def test_select(self, store):
        first = store.create()
        store.create()

        assert store.select(first.id).id == first.id
        assert store.current_id == first.id
        assert store.select("missing") is None
        assert store.current_id == first.id

    def test_list_most_recent_first(self, store):
        store.save(Conversation(id="older", updated_at=100.0))
        store.save(Conversation(id="newer", updated_at=200.0))
        (store.directory / "broken.json").write_text("{not json", encoding="utf-8")

        summaries = store.list()

        assert [summary.id for summary in summaries] == ["newer", "older"]
        assert summaries[0].message_count == 0

    def test_list_without_directory(self, store):
        assert store.list() == []

    def test_delete(self, store):
        conversation = store.create()

        assert store.delete(conversation.id) is True
        assert store.current_id is None
        assert store.load(conversation.id) is None
        assert store.delete(conversation.id) is False

    @pytest.mark.parametrize("conversation_id", ["../escape", "a/b", ""])
    def test_invalid_ids_are_rejected(self, store, conversation_id):
        assert store.load(conversation_id) is None
        assert store.delete(conversation_id) is False
        with pytest.raises(ValueError):
            store.save(Conversation(id=conversation_id))

    @pytest.mark.asyncio
    async def test_async_wrappers(self, store):
        conversation = await store.append_async("user", "Hello.")
        summaries = await store.list_async()
        assert [summary.id for summary in summaries] == [conversation.id]


def test_format_history():
    conversation = Conversation(
        id="c1",
        title="Build",
        transcript=[
            TranscriptEntry(role="user", text="Is it green?", timestamp=0),
            TranscriptEntry(role="assistant", text="Yes.", timestamp=0),
        ],
    )
    history = format_history(conversation)

    assert history.startswith("Previous conversation (Build):")
    assert "User: Is it green?" in history
    assert "Assistant: Yes." in history
    assert format_history(Conversation(id="empty")) == ""


class TestContextMemory:
    def test_load_creates_default(self, tmp_path):
        memory = ContextMemory(tmp_path / "notes" / "CONTEXT_MEMORY.md")
        assert memory.load() == DEFAULT_MEMORY
        assert memory.path.exists()

    def test_record_run_appends_entry(self, tmp_path):
        memory = ContextMemory(tmp_path / "CONTEXT_MEMORY.md")
        memory.record_run("Session   started\nwith newline")

        lines = memory.path.read_text(encoding="utf-8").splitlines()
        assert lines[-1].startswith("- ")
        assert lines[-1].endswith(" UTC - Session started with newline")

    def test_record_run_adds_missing_heading(self, tmp_path):
        path = tmp_path / "CONTEXT_MEMORY.md"
        path.write_text("# Notes\n", encoding="utf-8")

        ContextMemory(path).record_run("hello")

        text = path.read_text(encoding="utf-8")
        assert text.index(RUN_LOG_HEADING) < text.index("hello")
