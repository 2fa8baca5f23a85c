"""
One client's WebRTC connection into the shared upstream session.

A leg receives the client's microphone track and pumps it into the upstream session,
and plays upstream audio back through its own paced outbound track. The registry owns
legs; a leg only reports terminal connection states back through ``on_terminal``.
"""

import asyncio
import logging
from typing import Callable, Optional

from aiortc import RTCPeerConnection, RTCSessionDescription

from agentbridge.bot.media import QueuedAudioTrack, pump_track
from agentbridge.config.constants import LOGGER_NAME
from agentbridge.models.audio import AudioFrame

logger = logging.getLogger(LOGGER_NAME)

TERMINAL_STATES = ("failed", "disconnected", "closed")
# ICE can report a dead path before the connection state catches up
ICE_TERMINAL_STATES = ("failed", "disconnected")


class WebRTCClientLeg:
    """
    Peer connection for one client.

    Args:
        leg_id: Registry identifier for this leg
        on_local_audio: Receives every frame captured from the client
        on_terminal: Called with ``(leg_id, state)`` when the connection fails or closes
    """

    def __init__(
        self,
        leg_id: str,
        on_local_audio: Callable[[AudioFrame], object],
        on_terminal: Callable[[str, str], None],
    ):
        self.id = leg_id
        self.on_local_audio = on_local_audio
        self.on_terminal = on_terminal
        self.pc = RTCPeerConnection()
        self.outbound_track = QueuedAudioTrack()
        self.pc.addTrack(self.outbound_track)
        self._pump_task: Optional[asyncio.Task] = None
        self._closed = False

        self.pc.on("track", self._on_track)
        self.pc.on("connectionstatechange", self._on_connection_state)
        self.pc.on("iceconnectionstatechange", self._on_ice_state)

    def _on_track(self, track) -> None:
        if track.kind == "audio":
            logger.info(f"[LEG:{self.id}] Client audio track received")
            self._pump_task = asyncio.ensure_future(
                pump_track(track, self.on_local_audio, f"LEG:{self.id}")
            )
        else:
            track.stop()

    async def _on_connection_state(self) -> None:
        state = self.pc.connectionState
        logger.info(f"[LEG:{self.id}] Connection state: {state}")
        if state in TERMINAL_STATES:
            self._report_terminal(state)

    async def _on_ice_state(self) -> None:
        state = self.pc.iceConnectionState
        logger.info(f"[LEG:{self.id}] ICE connection state: {state}")
        if state in ICE_TERMINAL_STATES:
            self._report_terminal(f"ice-{state}")

    def _report_terminal(self, state: str) -> None:
        if not self._closed:
            self.on_terminal(self.id, state)

    @property
    def dropped_frames(self) -> int:
        return self.outbound_track.dropped

    def deliver(self, frame: AudioFrame) -> None:
        """Queue one upstream frame for playback to this client."""
        self.outbound_track.push(frame)

    async def negotiate(self, offer_sdp: str) -> str:
        """Apply the client's offer and return the answer SDP (ICE gathering included)."""
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer_sdp, type="offer"))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self.pc.localDescription.sdp

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pump_task is not None:
            self._pump_task.cancel()
        self.outbound_track.stop()
        await self.pc.close()
