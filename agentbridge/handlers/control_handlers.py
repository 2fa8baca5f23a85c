"""
Handlers for control-channel events arriving from the upstream Realtime session.

Each inbound event is parsed into its typed variant and routed by variant class to one
of the handlers below. Handlers run one at a time in arrival order, so anything slow
(running an agent turn for a tool call) is moved onto a background task.
"""

import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Type

from agentbridge.agents.turn_controller import TurnController
from agentbridge.config.constants import LOGGER_NAME
from agentbridge.models.realtime_events import (
    AssistantTranscriptDeltaEvent,
    AssistantTranscriptDoneEvent,
    FunctionCallArgumentsDoneEvent,
    OutputItemAddedEvent,
    OutputTextDeltaEvent,
    RealtimeBaseEvent,
    RealtimeErrorEvent,
    ResponseDoneEvent,
    SessionCreatedEvent,
    UnknownRealtimeEvent,
    UserTranscriptCompletedEvent,
    extract_prompt,
)

if TYPE_CHECKING:
    from agentbridge.bot.realtime_session import UpstreamSessionManager

logger = logging.getLogger(LOGGER_NAME)

# Type hint for handler functions
HandlerFunc = Callable[[RealtimeBaseEvent, "UpstreamSessionManager"], Awaitable[None]]


async def handle_output_item_added(event: OutputItemAddedEvent, session: "UpstreamSessionManager") -> None:
    # Fires for every output item; only function calls are interesting here
    if event.item.type == "function_call":
        logger.info(
            f"Function call detected: {event.item.name}, "
            f"callId: {event.response_id or 'unknown'}:{event.item.call_id or 'call'}"
        )


async def handle_function_call(event: FunctionCallArgumentsDoneEvent, session: "UpstreamSessionManager") -> None:
    """
    Dispatch a completed tool call to the agent registered for its function name.

    An unknown function or a missing prompt is answered immediately with an error output.
    Otherwise the agent turn runs on a background task and its result is written back
    as a ``function_call_output`` followed by ``response.create``.
    """
    logger.info(f"Function call arguments complete: {event.name}, callId: {event.call_id}")

    controller = session.controller_for_tool(event.name)
    if controller is None:
        logger.warning(f"No agent registered for function: {event.name}")
        await session.send_function_output(event.call_id, error=f"Unknown function: {event.name}")
        return

    prompt = extract_prompt(event.arguments)
    if not prompt:
        logger.error(f"{event.name} called without a valid prompt, raw args: {str(event.arguments)[:200]}")
        await session.send_function_output(
            event.call_id, error=f"{controller.name} prompt was missing or invalid."
        )
        return

    logger.info(f"Executing {controller.name} with prompt: {prompt[:160]}")
    session.spawn(run_tool_call(controller, prompt, event.call_id, session))


async def run_tool_call(
    controller: TurnController,
    prompt: str,
    call_id: str,
    session: "UpstreamSessionManager",
) -> None:
    """Run one agent turn for a tool call and hand the outcome back to the voice model."""
    try:
        result = await controller.prompt(prompt)
    except Exception as e:
        logger.error(f"Error executing {controller.name}: {e}", exc_info=True)
        await session.send_function_output(call_id, error=str(e) or f"Failed to execute {controller.name}")
        return

    if result.status == "ok":
        output = result.final_response or f"{controller.name} completed but no response was generated."
    elif result.status == "aborted":
        output = f"{controller.name} was interrupted before it finished."
    else:
        output = f"{controller.name} error: {result.error or 'Unknown error'}"

    logger.info(f"{controller.name} finished with status {result.status}, sending result back to assistant")
    await session.send_function_output(call_id, result=output)


async def handle_text_delta(event: OutputTextDeltaEvent, session: "UpstreamSessionManager") -> None:
    if event.response_id:
        session.buffer_text(event.response_id, event.delta)


async def handle_assistant_transcript_delta(
    event: AssistantTranscriptDeltaEvent, session: "UpstreamSessionManager"
) -> None:
    if event.delta:
        session.publish_transcript("transcript_delta", event.delta, "assistant")


async def handle_assistant_transcript_done(
    event: AssistantTranscriptDoneEvent, session: "UpstreamSessionManager"
) -> None:
    if event.transcript:
        logger.info(f"Assistant transcript done: {event.transcript[:200]}")
        session.publish_transcript("transcript_done", event.transcript, "assistant")
        await session.persist_transcript("assistant", event.transcript)


async def handle_user_transcript(event: UserTranscriptCompletedEvent, session: "UpstreamSessionManager") -> None:
    if event.transcript:
        logger.info(f"User transcript: {event.transcript[:200]}")
        session.publish_transcript("user_transcript_done", event.transcript, "user")
        await session.persist_transcript("user", event.transcript)


async def handle_response_done(event: ResponseDoneEvent, session: "UpstreamSessionManager") -> None:
    if event.response_id:
        logger.debug(f"Response completed: {event.response_id}")
        session.resolve_text(event.response_id)


async def handle_error(event: RealtimeErrorEvent, session: "UpstreamSessionManager") -> None:
    logger.error(f"Error event received: {event.message}")
    session.fail_text(event.response_id, event.message)


async def handle_session_created(event: SessionCreatedEvent, session: "UpstreamSessionManager") -> None:
    logger.info(f"Upstream session created: {event.session.get('id', 'unknown')}")


async def handle_unknown(event: UnknownRealtimeEvent, session: "UpstreamSessionManager") -> None:
    if session.events_received <= 20:
        logger.debug(f"Unhandled event type: {event.type}")


CONTROL_HANDLERS: Dict[Type[RealtimeBaseEvent], HandlerFunc] = {
    OutputItemAddedEvent: handle_output_item_added,
    FunctionCallArgumentsDoneEvent: handle_function_call,
    OutputTextDeltaEvent: handle_text_delta,
    AssistantTranscriptDeltaEvent: handle_assistant_transcript_delta,
    AssistantTranscriptDoneEvent: handle_assistant_transcript_done,
    UserTranscriptCompletedEvent: handle_user_transcript,
    ResponseDoneEvent: handle_response_done,
    RealtimeErrorEvent: handle_error,
    SessionCreatedEvent: handle_session_created,
    UnknownRealtimeEvent: handle_unknown,
}
