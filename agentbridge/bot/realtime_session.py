"""
The single upstream OpenAI Realtime session shared by every client leg.

``UpstreamSessionManager`` opens the session lazily, coalescing concurrent creation
requests into one handshake, fans the session's inbound audio out to every registered
listener, funnels client audio into the session's one outbound path, and demultiplexes
control events into transcripts, tool calls and text-response correlation.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from agentbridge.agents.turn_controller import TurnController
from agentbridge.bot.transports import AudioCallback, UpstreamTransport, create_transport
from agentbridge.config.constants import LOGGER_NAME, TEXT_RESPONSE_TIMEOUT
from agentbridge.config.settings import Settings
from agentbridge.exceptions import BridgeError, ControlChannelError, SessionSetupError
from agentbridge.handlers.control_handlers import CONTROL_HANDLERS
from agentbridge.models.audio import AudioFrame
from agentbridge.models.realtime_events import (
    ConversationItemCreateMessage,
    FunctionTool,
    ResponseCreateMessage,
    SessionConfig,
    SessionUpdateMessage,
    outbound_payload,
    parse_realtime_event,
)
from agentbridge.services.event_hub import EventHub
from agentbridge.services.storage import ContextMemory, ConversationStore, format_history

logger = logging.getLogger(LOGGER_NAME)

TransportFactory = Callable[..., UpstreamTransport]

SYSTEM_PROMPT_TEMPLATE = """You are a helpful voice assistant with access to AI coding assistants.

Persistent context memory from CONTEXT_MEMORY.md:
{memory}
{history}
You can help users with:
- Voice conversations and general questions
- Code analysis, finding and reading files, and explaining how code works
- Complex multi-step coding tasks

Available coding assistants:
{tools}

When a user asks about code, files, or development tasks, call the matching function.
If the user explicitly asks for one assistant by name, use that one.

Be conversational and friendly. Always explain what the coding assistant found in a clear, natural way."""

GREETING_INSTRUCTIONS = "Start the conversation with a short greeting and invite the user to speak."


@dataclass
class _TextTracker:
    future: asyncio.Future
    buffer: List[str] = field(default_factory=list)


class UpstreamSessionManager:
    """
    Owns the lifecycle of the one upstream session.

    Args:
        settings: Application settings (API key, model, voice, transport, timeouts)
        transcript_hub: Hub receiving ``transcript_delta``/``transcript_done``/``user_transcript_done``
        connection_hub: Hub receiving ``session_opened``/``session_closed``
        conversations: Store receiving final transcripts, optional
        memory: Context memory read into the instructions and appended on each start, optional
        transport_factory: Builds the transport; ``create_transport`` by default
    """

    def __init__(
        self,
        settings: Settings,
        transcript_hub: EventHub,
        connection_hub: EventHub,
        conversations: Optional[ConversationStore] = None,
        memory: Optional[ContextMemory] = None,
        transport_factory: TransportFactory = create_transport,
    ):
        self.settings = settings
        self.transcript_hub = transcript_hub
        self.connection_hub = connection_hub
        self.conversations = conversations
        self.memory = memory
        self.transport_factory = transport_factory

        self._transport: Optional[UpstreamTransport] = None
        self._opened = False
        self._pending: Optional[asyncio.Task] = None
        self._listeners: Dict[str, AudioCallback] = {}
        self._tools: Dict[str, FunctionTool] = {}
        self._controllers: Dict[str, TurnController] = {}
        self._text_trackers: Dict[str, _TextTracker] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.handshakes = 0
        self.events_received = 0
        self.frames_sent = 0
        self.frames_dropped = 0
        self.frames_received = 0
        self.opened_at: Optional[float] = None

    # Agents exposed as tools

    def register_agent(self, tool_name: str, controller: TurnController, description: str) -> None:
        """Expose an agent to the voice model as a function tool."""
        self._controllers[tool_name] = controller
        self._tools[tool_name] = FunctionTool(name=tool_name, description=description)

    def controller_for_tool(self, tool_name: Optional[str]) -> Optional[TurnController]:
        return self._controllers.get(tool_name) if tool_name else None

    # Lifecycle

    @property
    def is_open(self) -> bool:
        return self._opened and self._transport is not None and self._transport.is_open

    @property
    def is_connecting(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def get_or_create_session(self) -> UpstreamTransport:
        """
        Return the open session, creating it if necessary.

        Concurrent callers that arrive while a creation is in flight all await that same
        creation; only one handshake is ever performed at a time.

        Raises:
            ConfigurationError: If no API key is configured
            SessionSetupError: If the handshake fails or the control channel does not
                open within the configured timeout. Also raised to waiting callers when
                close_session() cancels the creation.
        """
        if self.is_open:
            return self._transport
        if self._pending is None or self._pending.done():
            self._pending = asyncio.ensure_future(self._create_session())
        pending = self._pending
        # Shielded so one caller giving up does not abort the creation for the others
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            if pending.cancelled():
                # close_session() cancelled the creation while this caller was waiting
                raise SessionSetupError("Session closed during setup") from None
            raise

    async def _create_session(self) -> UpstreamTransport:
        if self._transport is not None:
            await self._drop_stale_transport()
        self.handshakes += 1
        timeout = self.settings.control_ready_timeout
        logger.info(f"Creating upstream session (handshake #{self.handshakes})")
        transport: Optional[UpstreamTransport] = None
        try:
            transport = self.transport_factory(self.settings, self._on_upstream_audio, self._on_control_event)
            self._transport = transport
            await transport.open()
            try:
                await asyncio.wait_for(transport.wait_until_ready(), timeout=timeout)
            except asyncio.TimeoutError as e:
                logger.error(f"Control channel timeout - failed to open within {timeout} seconds")
                raise SessionSetupError(f"Control channel did not open within {timeout} seconds") from e
            self._opened = True
            await self._configure(transport)
        except BridgeError:
            await self._discard(transport)
            raise
        except Exception as e:
            logger.error(f"Upstream session setup failed: {e}", exc_info=True)
            await self._discard(transport)
            raise SessionSetupError(f"Upstream session setup failed: {e}") from e
        finally:
            # A cancelled creation must not clear the slot of one started after it
            if self._pending is asyncio.current_task():
                self._pending = None

        self.opened_at = time.time()
        logger.info("Upstream session ready")
        self.connection_hub.publish(
            "session_opened",
            {"transport": self.settings.upstream_transport, "model": self.settings.realtime_model},
        )
        return transport

    async def _drop_stale_transport(self) -> None:
        """Tear down a transport that died underneath an open session. Listeners are kept."""
        stale, self._transport = self._transport, None
        was_open = self._opened
        self._opened = False
        logger.warning("Previous upstream session is no longer open, replacing it")
        self._fail_all_text("Session lost before the response completed")
        await self._shutdown(stale, was_open)

    async def _shutdown(self, transport: UpstreamTransport, was_open: bool) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.error(f"Error during upstream session cleanup: {e}", exc_info=True)
        if was_open:
            self.connection_hub.publish("session_closed", {"events_received": self.events_received})
        self.opened_at = None

    async def _discard(self, transport: Optional[UpstreamTransport]) -> None:
        self._opened = False
        if transport is None:
            return
        if self._transport is transport:
            self._transport = None
        try:
            await transport.close()
        except Exception as e:
            logger.error(f"Error closing failed upstream transport: {e}", exc_info=True)

    async def _configure(self, transport: UpstreamTransport) -> None:
        instructions = await self._build_instructions()
        session_update = SessionUpdateMessage(
            session=SessionConfig(
                instructions=instructions,
                voice=self.settings.realtime_voice,
                tools=list(self._tools.values()),
            )
        )
        logger.info(f"Sending session.update with instructions and {len(self._tools)} tool(s)")
        await transport.send_event(outbound_payload(session_update))

        logger.info("Sending response.create for initial greeting")
        greeting = ResponseCreateMessage(response={"instructions": GREETING_INSTRUCTIONS})
        await transport.send_event(outbound_payload(greeting))

    async def _build_instructions(self) -> str:
        memory_text = "Context memory unavailable."
        if self.memory is not None:
            memory_text = await self.memory.load_async()
            await self.memory.record_run_async("Started OpenAI Realtime session (voice bridge)")

        history = ""
        if self.conversations is not None and self.conversations.current_id:
            conversation = await asyncio.to_thread(self.conversations.load, self.conversations.current_id)
            if conversation is not None:
                history = format_history(conversation)
        if history:
            history = f"\n{history}\n"

        tools = "\n".join(f"- {tool.name}: {tool.description}" for tool in self._tools.values())
        return SYSTEM_PROMPT_TEMPLATE.format(
            memory=memory_text, history=history, tools=tools or "- (none)"
        )

    async def close_session(self) -> bool:
        """
        Tear down the session, forget every listener and fail pending text responses.

        Returns:
            bool: True if there was a session (open or opening) to close
        """
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()

        transport, self._transport = self._transport, None
        was_open = self._opened
        self._opened = False
        self._listeners.clear()
        self._fail_all_text("Session closed before the response completed")

        if transport is None:
            return pending is not None

        logger.info("Closing upstream session")
        await self._shutdown(transport, was_open)
        return True

    # Audio

    def send_local_audio(self, frame: AudioFrame) -> bool:
        """Forward one client frame upstream. Frames are dropped while no session is open."""
        if not self.is_open:
            self.frames_dropped += 1
            return False
        self._transport.send_audio(frame)
        self.frames_sent += 1
        return True

    def add_audio_listener(self, listener_id: str, callback: AudioCallback) -> Callable[[], None]:
        """
        Register a fan-out target for upstream audio.

        Returns:
            A function removing exactly this registration; calling it again is a no-op
        """
        self._listeners[listener_id] = callback
        logger.debug(f"Audio listener added: {listener_id}, total: {len(self._listeners)}")

        def unsubscribe() -> None:
            if self._listeners.get(listener_id) is callback:
                del self._listeners[listener_id]
                logger.debug(f"Audio listener removed: {listener_id}, total: {len(self._listeners)}")

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _on_upstream_audio(self, frame: AudioFrame) -> None:
        self.frames_received += 1
        for listener_id, callback in list(self._listeners.items()):
            try:
                callback(frame)
            except Exception as e:
                logger.error(f"Audio listener {listener_id} failed: {e}", exc_info=True)

    # Control channel

    async def _on_control_event(self, payload: Dict[str, Any]) -> None:
        self.events_received += 1
        event = parse_realtime_event(payload)
        if self.events_received <= 10 or self.events_received % 50 == 0:
            logger.info(f"Control event #{self.events_received}: {event.type}")
        handler = CONTROL_HANDLERS.get(type(event))
        if handler is not None:
            await handler(event, self)

    async def send_event(self, payload: Dict[str, Any]) -> None:
        """
        Send a control event on the open session.

        Raises:
            ControlChannelError: If no session is open
        """
        if not self.is_open:
            raise ControlChannelError(f"Control channel not ready, cannot send {payload.get('type')}")
        await self._transport.send_event(payload)

    async def send_function_output(self, call_id: Optional[str], **output: Any) -> bool:
        """Write a tool result back and ask the model to continue. Returns False if the session is gone."""
        try:
            await self.send_event(outbound_payload(ConversationItemCreateMessage.function_output(call_id, **output)))
            await self.send_event(outbound_payload(ResponseCreateMessage()))
        except ControlChannelError as e:
            logger.warning(f"Could not deliver function output for {call_id}: {e}")
            return False
        return True

    def spawn(self, coro) -> asyncio.Task:
        """Run a coroutine in the background, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def publish_transcript(self, event_type: str, text: str, role: str) -> None:
        self.transcript_hub.publish(event_type, {"text": text, "role": role})

    async def persist_transcript(self, role: str, text: str) -> None:
        if self.conversations is None:
            return
        try:
            await self.conversations.append_async(role, text)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to persist {role} transcript: {e}")

    # Text response correlation

    async def wait_for_text_response(self, response_id: str, timeout: float = TEXT_RESPONSE_TIMEOUT) -> str:
        """
        Collect the text deltas of one response until it completes.

        Raises:
            ControlChannelError: If no session is open, the response errors, or the
                session closes first
            asyncio.TimeoutError: If the response does not complete within ``timeout``
        """
        if not self.is_open:
            raise ControlChannelError("Control channel not ready")
        tracker = _TextTracker(future=asyncio.get_running_loop().create_future())
        self._text_trackers[response_id] = tracker
        try:
            return await asyncio.wait_for(tracker.future, timeout=timeout)
        finally:
            if self._text_trackers.get(response_id) is tracker:
                del self._text_trackers[response_id]

    def buffer_text(self, response_id: str, delta: str) -> None:
        tracker = self._text_trackers.get(response_id)
        if tracker is not None:
            tracker.buffer.append(delta)

    def resolve_text(self, response_id: str) -> None:
        tracker = self._text_trackers.pop(response_id, None)
        if tracker is not None and not tracker.future.done():
            tracker.future.set_result("".join(tracker.buffer))

    def fail_text(self, response_id: Optional[str], message: str) -> None:
        """Fail the tracker for ``response_id``, or every pending tracker when no id is given."""
        if response_id is None:
            self._fail_all_text(message)
            return
        tracker = self._text_trackers.pop(response_id, None)
        if tracker is not None and not tracker.future.done():
            tracker.future.set_exception(ControlChannelError(message))

    def _fail_all_text(self, message: str) -> None:
        if self._text_trackers:
            logger.info(f"Clearing {len(self._text_trackers)} pending text response trackers")
        trackers, self._text_trackers = self._text_trackers, {}
        for response_id, tracker in trackers.items():
            if not tracker.future.done():
                tracker.future.set_exception(ControlChannelError(f"{message} ({response_id})"))

    def status(self) -> Dict[str, Any]:
        return {
            "open": self.is_open,
            "connecting": self.is_connecting,
            "transport": self.settings.upstream_transport,
            "model": self.settings.realtime_model,
            "listeners": len(self._listeners),
            "events_received": self.events_received,
            "frames_sent": self.frames_sent,
            "frames_received": self.frames_received,
            "frames_dropped": self.frames_dropped,
            "uptime": time.time() - self.opened_at if self.opened_at else 0.0,
        }
