"""
Transports carrying the single upstream session to the OpenAI Realtime API.

Both transports expose the same surface to the session manager: open the connection,
wait for the control channel, send control events and audio, and deliver inbound audio
frames and decoded control events through callbacks. Control events are handed over
one at a time, in arrival order, by a dispatch task owned by the transport.
"""

import asyncio
import base64
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
import websockets
from aiortc import RTCPeerConnection, RTCSessionDescription
from websockets.exceptions import ConnectionClosed

from agentbridge.bot.media import FrameConverter, QueuedAudioTrack, pump_track, to_av_frame
from agentbridge.config.constants import (
    DATA_CHANNEL_LABEL,
    LOGGER_NAME,
    REALTIME_BASE_URL,
    REALTIME_PCM_SAMPLE_RATE,
    REALTIME_WS_URL,
    SDP_EXCHANGE_TIMEOUT,
    UPSTREAM_TRANSPORT_WEBSOCKET,
    WEBRTC_SAMPLE_RATE,
)
from agentbridge.config.settings import Settings
from agentbridge.exceptions import ConfigurationError, ControlChannelError, SessionSetupError
from agentbridge.models.audio import AudioFrame

logger = logging.getLogger(LOGGER_NAME)

AudioCallback = Callable[[AudioFrame], None]
EventCallback = Callable[[Dict[str, Any]], Awaitable[None]]

# WebSocket configuration for low latency
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio chunks
WS_PING_INTERVAL = 5
WS_SEND_QUEUE = 32  # Small queue to prevent buffering

AUDIO_DELTA_TYPES = ("response.audio.delta", "response.output_audio.delta")


class UpstreamTransport(ABC):
    """Connection to the voice service: one audio path each way plus a control channel."""

    def __init__(self, on_audio: AudioCallback, on_event: EventCallback):
        self.on_audio = on_audio
        self.on_event = on_event
        self._events: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self.event_count = 0

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the control channel can carry events."""

    @abstractmethod
    async def open(self) -> None:
        """Negotiate the transport and start opening the control channel."""

    @abstractmethod
    async def send_event(self, payload: Dict[str, Any]) -> None:
        """Send one structured control event."""

    @abstractmethod
    def send_audio(self, frame: AudioFrame) -> None:
        """Queue one audio frame on the outbound path without waiting."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection."""

    async def wait_until_ready(self) -> None:
        if self._ready is None:
            raise SessionSetupError("Transport has not been opened")
        await asyncio.shield(self._ready)

    def _prepare(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._dispatch_task = asyncio.ensure_future(self._dispatch_loop())

    def _mark_ready(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

    def _fail_ready(self, error: Exception) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            # Retrieved here so an unawaited failure is not reported as unhandled
            self._ready.exception()

    def _receive_raw(self, message: Any) -> None:
        raw = message.decode("utf-8") if isinstance(message, (bytes, bytearray)) else message
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse control channel message: {e}")
            return
        if not isinstance(payload, dict) or not payload.get("type"):
            logger.warning(f"Received control message without type field: {str(payload)[:200]}")
            return
        self._events.put_nowait(payload)

    async def _dispatch_loop(self) -> None:
        while True:
            payload = await self._events.get()
            if payload is None:
                return
            self.event_count += 1
            try:
                await self.on_event(payload)
            except Exception as e:
                logger.error(f"Error handling control event {payload.get('type')}: {e}", exc_info=True)

    async def _stop_dispatch(self) -> None:
        if self._dispatch_task is None:
            return
        self._events.put_nowait(None)
        try:
            await asyncio.wait_for(self._dispatch_task, timeout=1.0)
        except asyncio.TimeoutError:
            self._dispatch_task.cancel()
        except asyncio.CancelledError:
            pass
        self._dispatch_task = None


class WebRTCUpstreamTransport(UpstreamTransport):
    """
    Peer connection to the Realtime API with an ``oai-events`` data channel.

    The SDP offer is POSTed to the realtime endpoint and the response body is the answer.
    """

    def __init__(self, on_audio: AudioCallback, on_event: EventCallback,
                 api_key: str, model: str, sdp_timeout: float = SDP_EXCHANGE_TIMEOUT):
        super().__init__(on_audio, on_event)
        self.api_key = api_key
        self.model = model
        self.sdp_timeout = sdp_timeout
        self.pc: Optional[RTCPeerConnection] = None
        self.channel = None
        self.outbound_track: Optional[QueuedAudioTrack] = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    async def open(self) -> None:
        self._prepare()
        self.pc = RTCPeerConnection()
        self.outbound_track = QueuedAudioTrack()
        self.pc.addTrack(self.outbound_track)
        self.channel = self.pc.createDataChannel(DATA_CHANNEL_LABEL)

        @self.channel.on("open")
        def on_open():
            logger.info("Upstream data channel opened")
            self._mark_ready()

        @self.channel.on("message")
        def on_message(message):
            self._receive_raw(message)

        @self.channel.on("close")
        def on_close():
            logger.info("Upstream data channel closed")
            self._fail_ready(SessionSetupError("Data channel closed before it was ready"))

        @self.pc.on("track")
        def on_track(track):
            if track.kind == "audio":
                logger.info("Audio track received from upstream")
                self._reader_task = asyncio.ensure_future(
                    pump_track(track, self.on_audio, "UPSTREAM")
                )
            else:
                logger.info(f"Ignoring upstream {track.kind} track")
                track.stop()

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            logger.info(f"Upstream peer connection state: {state}")
            if state in ("failed", "closed"):
                self._fail_ready(SessionSetupError(f"Peer connection {state}"))

        offer = await self.pc.createOffer()
        # aiortc finishes ICE gathering inside setLocalDescription
        await self.pc.setLocalDescription(offer)
        offer_sdp = self.pc.localDescription.sdp
        logger.info(f"Sending SDP offer to Realtime API, model: {self.model}")

        answer_sdp = await self._exchange_sdp(offer_sdp)
        logger.info(f"Received SDP answer, length: {len(answer_sdp)}")
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))

    async def _exchange_sdp(self, offer_sdp: str) -> str:
        url = f"{REALTIME_BASE_URL}?model={self.model}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/sdp",
        }
        timeout = aiohttp.ClientTimeout(total=self.sdp_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, data=offer_sdp, headers=headers) as response:
                    body = await response.text()
                    if response.status >= 400:
                        raise SessionSetupError(
                            f"SDP exchange failed with status {response.status}: {body[:200]}"
                        )
                    return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SessionSetupError(f"SDP exchange failed: {e}") from e

    async def send_event(self, payload: Dict[str, Any]) -> None:
        if not self.is_open:
            raise ControlChannelError(f"Control channel not open, cannot send {payload.get('type')}")
        logger.debug(f"Sending event: {payload.get('type')}")
        self.channel.send(json.dumps(payload))

    def send_audio(self, frame: AudioFrame) -> None:
        if self.outbound_track is not None:
            self.outbound_track.push(frame)

    async def close(self) -> None:
        logger.info("Closing upstream WebRTC transport")
        self._fail_ready(SessionSetupError("Transport closed"))
        if self._reader_task is not None:
            self._reader_task.cancel()
            self._reader_task = None
        if self.outbound_track is not None:
            self.outbound_track.stop()
        if self.pc is not None:
            await self.pc.close()
        await self._stop_dispatch()


class WebSocketUpstreamTransport(UpstreamTransport):
    """
    WebSocket connection to the Realtime API.

    Audio travels as base64 PCM16 at 24 kHz inside ``input_audio_buffer.append`` and
    ``response.audio.delta`` events; it is resampled to and from the bridge's 48 kHz.
    """

    def __init__(self, on_audio: AudioCallback, on_event: EventCallback,
                 api_key: str, model: str, connect_timeout: float = SDP_EXCHANGE_TIMEOUT):
        super().__init__(on_audio, on_event)
        self.api_key = api_key
        self.model = model
        self.connect_timeout = connect_timeout
        self.ws = None
        self._connection_active = False
        self._recv_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._outbound: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=WS_SEND_QUEUE)
        self._uplink = FrameConverter(sample_rate=REALTIME_PCM_SAMPLE_RATE)
        self._downlink = FrameConverter(sample_rate=WEBRTC_SAMPLE_RATE)
        self._uplink_pts = 0
        self._downlink_pts = 0
        self.dropped_frames = 0

    @property
    def is_open(self) -> bool:
        return self._connection_active and self._ready is not None and self._ready.done() \
            and not self._ready.cancelled() and self._ready.exception() is None

    async def open(self) -> None:
        self._prepare()
        url = f"{REALTIME_WS_URL}?model={self.model}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        logger.info(f"Connecting to OpenAI Realtime API with model: {self.model}")
        connection_start = time.time()
        try:
            self.ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    max_size=WS_MAX_SIZE,
                    ping_interval=WS_PING_INTERVAL,
                    ping_timeout=10,
                    compression=None,
                    additional_headers=headers,
                ),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SessionSetupError(
                f"Timeout while connecting to OpenAI Realtime API (after {self.connect_timeout}s)"
            ) from e
        except (OSError, websockets.InvalidHandshake) as e:
            raise SessionSetupError(f"Failed to connect to OpenAI Realtime API: {e}") from e

        logger.debug(f"WebSocket connection established in {time.time() - connection_start:.2f} seconds")
        self._connection_active = True
        self._recv_task = asyncio.ensure_future(self._recv_loop())
        self._send_task = asyncio.ensure_future(self._send_loop())

    async def _recv_loop(self) -> None:
        try:
            async for message in self.ws:
                if isinstance(message, bytes):
                    logger.debug(f"Ignoring binary message of size {len(message)} bytes")
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"Received invalid JSON: {message[:100]}...")
                    continue

                event_type = data.get("type")
                if event_type in AUDIO_DELTA_TYPES:
                    self._deliver_audio(data.get("delta") or "")
                    continue
                if event_type == "session.created":
                    self._mark_ready()
                self._receive_raw(message)
        except ConnectionClosed as e:
            logger.warning(f"Upstream WebSocket closed: {e}")
        except Exception as e:
            logger.error(f"Error in upstream receive loop: {e}", exc_info=True)
        finally:
            self._connection_active = False
            self._fail_ready(SessionSetupError("WebSocket closed before session was created"))
            logger.info("Receive loop exited, connection marked as inactive")

    def _deliver_audio(self, encoded: str) -> None:
        if not encoded:
            return
        pcm = base64.b64decode(encoded)
        frame = AudioFrame(
            data=pcm,
            sample_rate=REALTIME_PCM_SAMPLE_RATE,
            channels=1,
            samples_per_channel=len(pcm) // 2,
        )
        av_frame = to_av_frame(frame, self._downlink_pts)
        self._downlink_pts += frame.samples_per_channel
        for converted in self._downlink.convert(av_frame):
            self.on_audio(converted)

    async def _send_loop(self) -> None:
        while True:
            message = await self._outbound.get()
            if message is None:
                return
            try:
                await self.ws.send(message)
            except ConnectionClosed:
                logger.warning("Connection closed while sending audio")
                return

    async def send_event(self, payload: Dict[str, Any]) -> None:
        if not self._connection_active or self.ws is None:
            raise ControlChannelError(f"Control channel not open, cannot send {payload.get('type')}")
        logger.debug(f"Sending event: {payload.get('type')}")
        try:
            await self.ws.send(json.dumps(payload))
        except ConnectionClosed as e:
            raise ControlChannelError(f"Connection closed while sending {payload.get('type')}") from e

    def send_audio(self, frame: AudioFrame) -> None:
        if not self._connection_active:
            return
        av_frame = to_av_frame(frame, self._uplink_pts)
        self._uplink_pts += frame.samples_per_channel
        for converted in self._uplink.convert(av_frame):
            message = json.dumps(
                {
                    "type": "input_audio_buffer.append",
                    "audio": base64.b64encode(converted.data).decode("utf-8"),
                }
            )
            try:
                self._outbound.put_nowait(message)
            except asyncio.QueueFull:
                self.dropped_frames += 1

    async def close(self) -> None:
        logger.info("Closing OpenAI Realtime WebSocket transport")
        self._connection_active = False
        self._fail_ready(SessionSetupError("Transport closed"))
        for task in (self._recv_task, self._send_task):
            if task is not None:
                task.cancel()
        if self.ws is not None:
            await self.ws.close()
        await self._stop_dispatch()


def create_transport(settings: Settings, on_audio: AudioCallback, on_event: EventCallback) -> UpstreamTransport:
    """
    Build the configured upstream transport.

    Raises:
        ConfigurationError: If no OpenAI API key is configured
    """
    if not settings.openai_api_key:
        logger.error("OPENAI_API_KEY environment variable not set")
        raise ConfigurationError("OPENAI_API_KEY environment variable not set")

    if settings.upstream_transport == UPSTREAM_TRANSPORT_WEBSOCKET:
        return WebSocketUpstreamTransport(on_audio, on_event, settings.openai_api_key, settings.realtime_model)
    return WebRTCUpstreamTransport(on_audio, on_event, settings.openai_api_key, settings.realtime_model)
