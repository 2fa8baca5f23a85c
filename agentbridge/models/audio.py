"""Opaque audio frame passed between client legs and the upstream session."""

from dataclasses import dataclass


@dataclass(frozen=True)
class AudioFrame:
    """
    A fixed-format block of interleaved signed 16-bit PCM samples.

    The core never inspects ``data``; the transports convert to and from their own
    frame types using the attached format fields.
    """

    data: bytes
    sample_rate: int
    channels: int = 1
    samples_per_channel: int = 0

    @property
    def duration(self) -> float:
        if not self.sample_rate:
            return 0.0
        return self.samples_per_channel / self.sample_rate
