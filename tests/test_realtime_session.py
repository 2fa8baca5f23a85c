"""
Unit tests for the UpstreamSessionManager.

A fake transport stands in for the OpenAI Realtime connection so the tests can check
handshake coalescing, audio fan-out and fan-in, and control-event routing.
"""

import asyncio
import json

import pytest

from agentbridge.agents.turn_controller import TurnController
from agentbridge.bot.realtime_session import UpstreamSessionManager
from agentbridge.exceptions import ControlChannelError, SessionSetupError
from agentbridge.services.event_hub import EventHub
from agentbridge.services.storage import ContextMemory, ConversationStore
from conftest import EventCollector, FakeBackend, assistant, make_frame


@pytest.fixture
def hubs():
    return EventHub("transcript"), EventHub("connection")


@pytest.fixture
def manager(settings, hubs, transport_factory):
    transcript_hub, connection_hub = hubs
    return UpstreamSessionManager(
        settings,
        transcript_hub,
        connection_hub,
        conversations=ConversationStore(settings.data_dir),
        memory=ContextMemory(settings.data_dir / "CONTEXT_MEMORY.md"),
        transport_factory=transport_factory,
    )


async def drain(manager):
    while manager._tasks:
        await asyncio.gather(*list(manager._tasks))


@pytest.mark.asyncio
async def test_concurrent_creation_performs_one_handshake(manager, transport_factory, hubs):
    """N callers racing the first creation all receive the same session."""
    events = EventCollector(hubs[1])

    results = await asyncio.gather(*(manager.get_or_create_session() for _ in range(5)))

    assert len(transport_factory.created) == 1
    assert manager.handshakes == 1
    assert all(result is transport_factory.created[0] for result in results)
    assert transport_factory.created[0].open_calls == 1
    assert manager.is_open is True
    assert events.types == ["session_opened"]


@pytest.mark.asyncio
async def test_open_session_is_reused(manager, transport_factory):
    first = await manager.get_or_create_session()
    second = await manager.get_or_create_session()
    assert first is second
    assert manager.handshakes == 1


@pytest.mark.asyncio
async def test_session_configured_after_ready(manager, transport_factory, settings):
    controller = TurnController("codex", FakeBackend(), EventHub("codex"))
    manager.register_agent("run_codex", controller, "Run Codex")

    transport = await manager.get_or_create_session()

    session_update, greeting = transport.sent_events[:2]
    assert session_update["type"] == "session.update"
    session = session_update["session"]
    assert session["turn_detection"] == {"type": "server_vad"}
    assert session["input_audio_transcription"] == {"model": "whisper-1"}
    assert [tool["name"] for tool in session["tools"]] == ["run_codex"]
    assert "Context Memory" in session["instructions"]
    assert greeting["type"] == "response.create"

    memory = (settings.data_dir / "CONTEXT_MEMORY.md").read_text()
    assert "Started OpenAI Realtime session" in memory


@pytest.mark.asyncio
async def test_ready_timeout_fails_creation_and_next_call_retries(manager, transport_factory):
    transport_factory.ready = False

    with pytest.raises(SessionSetupError):
        await manager.get_or_create_session()

    assert manager.is_open is False
    assert manager.is_connecting is False
    assert transport_factory.created[0].closed is True

    transport_factory.ready = True
    transport = await manager.get_or_create_session()

    assert transport is transport_factory.created[1]
    assert manager.handshakes == 2
    assert manager.is_open is True


@pytest.mark.asyncio
async def test_dead_session_is_torn_down_before_new_handshake(manager, transport_factory, hubs):
    """A transport that died underneath the session is closed before a new one opens."""
    events = EventCollector(hubs[1])
    first = await manager.get_or_create_session()
    received = []
    manager.add_audio_listener("leg-a", received.append)
    pending_text = asyncio.ensure_future(manager.wait_for_text_response("resp-1", timeout=5))
    await asyncio.sleep(0)

    first._channel_open = False
    second = await manager.get_or_create_session()

    assert second is transport_factory.created[1]
    assert first.closed is True
    assert manager.handshakes == 2
    assert events.types == ["session_opened", "session_closed", "session_opened"]
    with pytest.raises(ControlChannelError, match="Session lost"):
        await pending_text
    assert manager.listener_count == 1
    second.on_audio(make_frame(3))
    assert [frame.data[0] for frame in received] == [3]


@pytest.mark.asyncio
async def test_close_during_setup_fails_waiting_callers(manager, transport_factory):
    transport_factory.ready = False
    creation = asyncio.ensure_future(manager.get_or_create_session())
    while not transport_factory.created:
        await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert await manager.close_session() is True

    with pytest.raises(SessionSetupError, match="closed during setup"):
        await creation
    assert transport_factory.created[0].closed is True
    assert manager.is_connecting is False
    assert manager.is_open is False


@pytest.mark.asyncio
async def test_cancelled_caller_still_sees_cancellation(manager, transport_factory):
    transport_factory.ready = False
    creation = asyncio.ensure_future(manager.get_or_create_session())
    while not transport_factory.created:
        await asyncio.sleep(0)

    creation.cancel()

    with pytest.raises(asyncio.CancelledError):
        await creation
    # The shared creation keeps going for other callers
    assert manager.is_connecting is True
    await manager.close_session()


@pytest.mark.asyncio
async def test_audio_dropped_without_session(manager):
    assert manager.send_local_audio(make_frame()) is False
    assert manager.frames_dropped == 1


@pytest.mark.asyncio
async def test_local_audio_forwarded_once(manager):
    transport = await manager.get_or_create_session()
    frame = make_frame(1)

    assert manager.send_local_audio(frame) is True
    assert transport.sent_audio == [frame]


@pytest.mark.asyncio
async def test_unregistered_listener_receives_nothing(manager):
    transport = await manager.get_or_create_session()
    received = []
    unsubscribe = manager.add_audio_listener("leg-a", received.append)

    transport.on_audio(make_frame(1))
    unsubscribe()
    unsubscribe()
    transport.on_audio(make_frame(2))

    assert [frame.data[0] for frame in received] == [1]
    assert manager.listener_count == 0


@pytest.mark.asyncio
async def test_upstream_audio_fans_out_to_every_listener(manager):
    transport = await manager.get_or_create_session()
    received_a, received_b = [], []

    def broken(frame):
        raise RuntimeError("listener failed")

    manager.add_audio_listener("leg-a", received_a.append)
    manager.add_audio_listener("leg-broken", broken)
    manager.add_audio_listener("leg-b", received_b.append)

    frame = make_frame(7)
    transport.on_audio(frame)

    assert received_a == [frame]
    assert received_b == [frame]


@pytest.mark.asyncio
async def test_close_session_resets_state(manager, transport_factory, hubs):
    events = EventCollector(hubs[1])
    transport = await manager.get_or_create_session()
    manager.add_audio_listener("leg-a", lambda frame: None)

    assert await manager.close_session() is True

    assert transport.closed is True
    assert manager.is_open is False
    assert manager.listener_count == 0
    assert events.types[-1] == "session_closed"

    await manager.get_or_create_session()
    assert manager.handshakes == 2


@pytest.mark.asyncio
async def test_close_without_session_is_noop(manager):
    assert await manager.close_session() is False


@pytest.mark.asyncio
async def test_transcripts_published_and_persisted(manager, hubs):
    events = EventCollector(hubs[0])
    transport = await manager.get_or_create_session()

    await transport.on_event({"type": "response.audio_transcript.delta", "delta": "Hel"})
    await transport.on_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": "Show me the tests."})
    await transport.on_event({"type": "response.output_audio_transcript.done", "transcript": "Here they are."})

    assert events.types == ["transcript_delta", "user_transcript_done", "transcript_done"]
    assert events.of_type("transcript_delta")[0] == {"text": "Hel", "role": "assistant"}

    conversation = manager.conversations.current()
    assert [(entry.role, entry.text) for entry in conversation.transcript] == [
        ("user", "Show me the tests."),
        ("assistant", "Here they are."),
    ]
    assert conversation.title == "Show me the tests"


@pytest.mark.asyncio
async def test_function_call_runs_agent_and_writes_back(manager):
    backend = FakeBackend([assistant("Found 3 TODOs")])
    controller = TurnController("codex", backend, EventHub("codex"))
    manager.register_agent("run_codex", controller, "Run Codex")
    transport = await manager.get_or_create_session()
    transport.sent_events.clear()

    await transport.on_event(
        {
            "type": "response.function_call_arguments.done",
            "name": "run_codex",
            "call_id": "call-1",
            "arguments": json.dumps({"prompt": "find TODOs"}),
        }
    )
    await drain(manager)

    assert backend.calls == [("find TODOs", None)]
    item_create, response_create = transport.sent_events
    assert item_create["type"] == "conversation.item.create"
    assert item_create["item"]["type"] == "function_call_output"
    assert item_create["item"]["call_id"] == "call-1"
    assert json.loads(item_create["item"]["output"]) == {"result": "Found 3 TODOs"}
    assert response_create == {"type": "response.create"}


@pytest.mark.asyncio
async def test_function_call_without_prompt_answers_error(manager):
    backend = FakeBackend()
    manager.register_agent("run_codex", TurnController("codex", backend, EventHub("codex")), "Run Codex")
    transport = await manager.get_or_create_session()
    transport.sent_events.clear()

    await transport.on_event(
        {"type": "response.function_call_arguments.done", "name": "run_codex", "call_id": "call-2", "arguments": "{}"}
    )

    assert backend.calls == []
    output = json.loads(transport.sent_events[0]["item"]["output"])
    assert "missing or invalid" in output["error"]
    assert transport.sent_events[1]["type"] == "response.create"


@pytest.mark.asyncio
async def test_unknown_function_answers_error(manager):
    transport = await manager.get_or_create_session()
    transport.sent_events.clear()

    await transport.on_event(
        {"type": "response.function_call_arguments.done", "name": "run_shell", "call_id": "call-3", "arguments": "ls"}
    )

    output = json.loads(transport.sent_events[0]["item"]["output"])
    assert output == {"error": "Unknown function: run_shell"}


@pytest.mark.asyncio
async def test_unknown_event_types_are_ignored(manager):
    transport = await manager.get_or_create_session()
    await transport.on_event({"type": "rate_limits.updated", "rate_limits": []})
    assert manager.events_received == 1


@pytest.mark.asyncio
async def test_wait_for_text_response_collects_deltas(manager):
    transport = await manager.get_or_create_session()

    waiter = asyncio.create_task(manager.wait_for_text_response("resp-1", timeout=1))
    await asyncio.sleep(0)
    await transport.on_event({"type": "response.output_text.delta", "response_id": "resp-1", "delta": "Hello "})
    await transport.on_event({"type": "response.output_text.delta", "response_id": "resp-1", "delta": "world"})
    await transport.on_event({"type": "response.done", "response": {"id": "resp-1"}})

    assert await waiter == "Hello world"


@pytest.mark.asyncio
async def test_wait_for_text_response_fails_on_error_event(manager):
    transport = await manager.get_or_create_session()

    waiter = asyncio.create_task(manager.wait_for_text_response("resp-2", timeout=1))
    await asyncio.sleep(0)
    await transport.on_event({"type": "response.error", "response_id": "resp-2", "error": {"message": "bad request"}})

    with pytest.raises(ControlChannelError, match="bad request"):
        await waiter


@pytest.mark.asyncio
async def test_wait_for_text_response_fails_on_close(manager):
    await manager.get_or_create_session()

    waiter = asyncio.create_task(manager.wait_for_text_response("resp-3", timeout=1))
    await asyncio.sleep(0)
    await manager.close_session()

    with pytest.raises(ControlChannelError):
        await waiter


@pytest.mark.asyncio
async def test_wait_for_text_response_times_out(manager):
    await manager.get_or_create_session()
    with pytest.raises(asyncio.TimeoutError):
        await manager.wait_for_text_response("resp-4", timeout=0.01)


@pytest.mark.asyncio
async def test_wait_for_text_response_requires_open_session(manager):
    with pytest.raises(ControlChannelError):
        await manager.wait_for_text_response("resp-5")


@pytest.mark.asyncio
async def test_status_reports_flags(manager):
    await manager.get_or_create_session()
    manager.add_audio_listener("leg-a", lambda frame: None)

    status = manager.status()

    assert status["open"] is True
    assert status["connecting"] is False
    assert status["listeners"] == 1
    assert status["transport"] == "webrtc"
