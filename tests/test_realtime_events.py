"""
Unit tests for the Realtime control-channel models.
"""

import json

import pytest

from agentbridge.models.realtime_events import (
    AssistantTranscriptDeltaEvent,
    ConversationItemCreateMessage,
    FunctionCallArgumentsDoneEvent,
    OutputTextDeltaEvent,
    RealtimeErrorEvent,
    ResponseCreateMessage,
    ResponseDoneEvent,
    SessionConfig,
    SessionUpdateMessage,
    UnknownRealtimeEvent,
    extract_prompt,
    outbound_payload,
    parse_realtime_event,
)


class TestParseRealtimeEvent:
    """Tests for inbound event parsing."""

    def test_function_call_done(self):
        event = parse_realtime_event({
            "type": "response.function_call_arguments.done",
            "name": "run_codex",
            "call_id": "call-1",
            "arguments": '{"prompt": "list files"}',
        })
        assert isinstance(event, FunctionCallArgumentsDoneEvent)
        assert event.name == "run_codex"
        assert event.call_id == "call-1"

    def test_text_delta_aliases(self):
        for event_type in ("response.output_text.delta", "response.text.delta"):
            event = parse_realtime_event({"type": event_type, "response_id": "r1", "delta": "hi"})
            assert isinstance(event, OutputTextDeltaEvent)
            assert event.delta == "hi"

    def test_transcript_delta_aliases(self):
        for event_type in ("response.audio_transcript.delta", "response.output_audio_transcript.delta"):
            event = parse_realtime_event({"type": event_type, "delta": "he"})
            assert isinstance(event, AssistantTranscriptDeltaEvent)

    def test_response_done_exposes_id(self):
        event = parse_realtime_event({"type": "response.done", "response": {"id": "resp_1"}})
        assert isinstance(event, ResponseDoneEvent)
        assert event.response_id == "resp_1"

    def test_error_message(self):
        event = parse_realtime_event({"type": "error", "error": {"message": "bad request"}})
        assert isinstance(event, RealtimeErrorEvent)
        assert event.message == "bad request"

        bare = parse_realtime_event({"type": "response.error"})
        assert bare.message == "Realtime response error"

    def test_unknown_type_keeps_fields(self):
        event = parse_realtime_event({"type": "rate_limits.updated", "rate_limits": []})
        assert isinstance(event, UnknownRealtimeEvent)
        assert event.type == "rate_limits.updated"

    def test_invalid_variant_falls_back_to_unknown(self):
        event = parse_realtime_event({"type": "response.done", "response": "not-a-dict"})
        assert isinstance(event, UnknownRealtimeEvent)

    @pytest.mark.parametrize("payload", [{}, {"type": ""}, {"type": 3}, ["type"]])
    def test_missing_type_raises(self, payload):
        with pytest.raises(ValueError):
            parse_realtime_event(payload)


class TestExtractPrompt:
    """Tests for tool-call argument handling."""

    def test_json_object(self):
        assert extract_prompt('{"prompt": "run tests"}') == "run tests"

    def test_dict(self):
        assert extract_prompt({"prompt": "run tests"}) == "run tests"

    def test_json_string(self):
        assert extract_prompt('"run tests"') == "run tests"

    def test_plain_text(self):
        assert extract_prompt("run tests") == "run tests"

    def test_missing_or_empty(self):
        assert extract_prompt('{"other": 1}') is None
        assert extract_prompt({"prompt": ""}) is None
        assert extract_prompt("") is None
        assert extract_prompt(None) is None
        assert extract_prompt("[1, 2]") is None


class TestOutboundMessages:
    """Tests for messages sent upstream."""

    def test_function_output_encodes_json(self):
        message = ConversationItemCreateMessage.function_output("call-1", result="done")
        payload = outbound_payload(message)

        assert payload["type"] == "conversation.item.create"
        assert payload["item"]["type"] == "function_call_output"
        assert payload["item"]["call_id"] == "call-1"
        assert json.loads(payload["item"]["output"]) == {"result": "done"}

    def test_response_create_omits_empty_response(self):
        assert outbound_payload(ResponseCreateMessage()) == {"type": "response.create"}

    def test_session_update_defaults(self):
        message = SessionUpdateMessage(session=SessionConfig(instructions="be brief", voice="alloy"))
        payload = outbound_payload(message)

        assert payload["type"] == "session.update"
        assert payload["session"]["modalities"] == ["audio", "text"]
        assert payload["session"]["turn_detection"] == {"type": "server_vad"}
        assert payload["session"]["tools"] == []
