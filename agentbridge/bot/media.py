"""
Audio plumbing between aiortc media tracks and the bridge's ``AudioFrame``.

Everything inside the bridge is 48 kHz mono signed 16-bit PCM. Inbound tracks are
normalised with a resampler before frames leave this module; outbound tracks are fed
from a short queue and paced in real time, emitting silence while nothing is queued.
"""

import asyncio
import fractions
import logging
import time
from collections import deque
from typing import Callable, Deque, List, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from agentbridge.config.constants import (
    FRAME_DURATION,
    LOGGER_NAME,
    OUTBOUND_QUEUE_SIZE,
    WEBRTC_SAMPLE_RATE,
)
from agentbridge.models.audio import AudioFrame

logger = logging.getLogger(LOGGER_NAME)


class FrameConverter:
    """Converts decoded ``av.AudioFrame`` objects to bridge frames at a fixed format."""

    def __init__(self, sample_rate: int = WEBRTC_SAMPLE_RATE, channels: int = 1):
        self.sample_rate = sample_rate
        self.channels = channels
        layout = "mono" if channels == 1 else "stereo"
        self._resampler = av.AudioResampler(format="s16", layout=layout, rate=sample_rate)

    def convert(self, frame: av.AudioFrame) -> List[AudioFrame]:
        converted = []
        for resampled in self._resampler.resample(frame):
            samples = resampled.to_ndarray()
            converted.append(
                AudioFrame(
                    data=samples.astype(np.int16).tobytes(),
                    sample_rate=resampled.sample_rate,
                    channels=self.channels,
                    samples_per_channel=resampled.samples,
                )
            )
        return converted


def to_av_frame(frame: AudioFrame, pts: int) -> av.AudioFrame:
    """Build an ``av.AudioFrame`` (packed s16) from a bridge frame."""
    samples = np.frombuffer(frame.data, dtype=np.int16).reshape(1, -1)
    av_frame = av.AudioFrame.from_ndarray(
        samples, format="s16", layout="mono" if frame.channels == 1 else "stereo"
    )
    av_frame.sample_rate = frame.sample_rate
    av_frame.pts = pts
    av_frame.time_base = fractions.Fraction(1, frame.sample_rate)
    return av_frame


def silence(sample_rate: int = WEBRTC_SAMPLE_RATE, channels: int = 1,
            duration: float = FRAME_DURATION) -> AudioFrame:
    samples = int(sample_rate * duration)
    return AudioFrame(
        data=bytes(samples * channels * 2),
        sample_rate=sample_rate,
        channels=channels,
        samples_per_channel=samples,
    )


class QueuedAudioTrack(MediaStreamTrack):
    """
    Outbound audio track fed by ``push``.

    Late audio has no value, so when the queue is full the oldest frame is dropped.
    """

    kind = "audio"

    def __init__(self, sample_rate: int = WEBRTC_SAMPLE_RATE, channels: int = 1,
                 max_queue: int = OUTBOUND_QUEUE_SIZE):
        super().__init__()
        self.sample_rate = sample_rate
        self.channels = channels
        self._queue: Deque[AudioFrame] = deque(maxlen=max_queue)
        self._start: Optional[float] = None
        self._elapsed = 0.0
        self._pts = 0
        self.dropped = 0

    @property
    def queued(self) -> int:
        return len(self._queue)

    def push(self, frame: AudioFrame) -> None:
        if self.readyState != "live":
            return
        if len(self._queue) == self._queue.maxlen:
            self.dropped += 1
        self._queue.append(frame)

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        if self._queue:
            frame = self._queue.popleft()
        else:
            frame = silence(self.sample_rate, self.channels)

        if self._start is None:
            self._start = time.time()
        else:
            wait = self._start + self._elapsed - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
        self._elapsed += frame.duration

        av_frame = to_av_frame(frame, self._pts)
        self._pts += frame.samples_per_channel
        return av_frame


async def pump_track(
    track: MediaStreamTrack,
    on_frame: Callable[[AudioFrame], None],
    label: str,
    converter: Optional[FrameConverter] = None,
) -> int:
    """
    Read ``track`` until it ends and hand every normalised frame to ``on_frame``.

    Returns:
        int: Number of frames delivered
    """
    converter = converter or FrameConverter()
    delivered = 0
    while True:
        try:
            av_frame = await track.recv()
        except MediaStreamError:
            logger.info(f"[{label}] Audio track ended after {delivered} frame(s)")
            return delivered

        for frame in converter.convert(av_frame):
            delivered += 1
            if delivered == 1:
                logger.info(
                    f"[{label}] First audio frame: {frame.sample_rate}Hz, "
                    f"{frame.channels} channel(s), {frame.samples_per_channel} samples"
                )
            try:
                on_frame(frame)
            except Exception as e:
                logger.error(f"[{label}] Audio frame handler failed: {e}", exc_info=True)
