import asyncio
import logging

import pytest

from agentbridge.agents.backends import AgentBackend
from agentbridge.bot.transports import UpstreamTransport
from agentbridge.config.constants import LOGGER_NAME
from agentbridge.config.settings import Settings
from agentbridge.models.agent_events import AgentEvent, AgentEventKind
from agentbridge.models.audio import AudioFrame

# Marker inside a backend script: the stream stalls here until cancelled
BLOCK = object()


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset the application logger before each test"""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.propagate = True
    yield


def context_started(context_id):
    return AgentEvent(
        kind=AgentEventKind.CONTEXT_STARTED,
        context_id=context_id,
        raw={"type": "context.started", "id": context_id},
    )


def assistant(text):
    return AgentEvent(kind=AgentEventKind.ASSISTANT, text=text, raw={"type": "assistant", "text": text})


def agent_error(text):
    return AgentEvent(kind=AgentEventKind.ERROR, text=text, raw={"type": "error", "message": text})


class FakeBackend(AgentBackend):
    """Plays back one scripted list of events per call to ``stream``."""

    name = "fake"

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []
        self.blocked = asyncio.Event()

    async def stream(self, prompt, context_id, token):
        self.calls.append((prompt, context_id))
        script = self.scripts.pop(0) if self.scripts else []
        for item in script:
            if item is BLOCK:
                self.blocked.set()
                await asyncio.Event().wait()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item


class FakeTransport(UpstreamTransport):
    """In-memory upstream transport; ``ready=False`` never opens its control channel."""

    def __init__(self, on_audio, on_event, ready=True):
        super().__init__(on_audio, on_event)
        self.ready = ready
        self.sent_events = []
        self.sent_audio = []
        self.open_calls = 0
        self.closed = False
        self._channel_open = False

    @property
    def is_open(self):
        return self._channel_open and not self.closed

    async def open(self):
        self.open_calls += 1
        self._prepare()
        await asyncio.sleep(0)
        if self.ready:
            self._channel_open = True
            self._mark_ready()

    async def send_event(self, payload):
        self.sent_events.append(payload)

    def send_audio(self, frame):
        self.sent_audio.append(frame)

    async def close(self):
        self.closed = True
        self._channel_open = False
        self._fail_ready(RuntimeError("closed"))
        await self._stop_dispatch()


class TransportFactory:
    """Records every transport it builds; ``ready`` applies to the next ones built."""

    def __init__(self, ready=True):
        self.ready = ready
        self.created = []

    def __call__(self, settings, on_audio, on_event):
        transport = FakeTransport(on_audio, on_event, ready=self.ready)
        self.created.append(transport)
        return transport


class FakeLeg:
    def __init__(self, leg_id, on_local_audio, on_terminal):
        self.id = leg_id
        self.on_local_audio = on_local_audio
        self.on_terminal = on_terminal
        self.delivered = []
        self.close_calls = 0

    def deliver(self, frame):
        self.delivered.append(frame)

    async def negotiate(self, offer_sdp):
        if offer_sdp == "bad-offer":
            raise ValueError("Invalid SDP")
        return f"answer-for-{self.id}"

    async def close(self):
        self.close_calls += 1


class LegFactory:
    def __init__(self):
        self.legs = []

    def __call__(self, leg_id, on_local_audio, on_terminal):
        leg = FakeLeg(leg_id, on_local_audio, on_terminal)
        self.legs.append(leg)
        return leg


def make_frame(marker=0):
    return AudioFrame(data=bytes([marker]) * 1920, sample_rate=48000, channels=1, samples_per_channel=960)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        openai_api_key="test-api-key",
        data_dir=tmp_path / "data",
        workspace_dir=tmp_path,
        control_ready_timeout=0.2,
    )


@pytest.fixture
def transport_factory():
    return TransportFactory()


@pytest.fixture
def leg_factory():
    return LegFactory()


class EventCollector:
    """Subscribes to hubs and records ``(type, payload)`` pairs."""

    def __init__(self, *hubs):
        self.events = []
        for hub in hubs:
            hub.subscribe(self.events.append)

    @property
    def types(self):
        return [event.type for event in self.events]

    def of_type(self, event_type):
        return [event.payload for event in self.events if event.type == event_type]
