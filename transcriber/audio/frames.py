"""
Audio frame primitives shared by the whole pipeline.

- AudioFrame: one immutable block of mono float32 samples in [-1, 1] with its capture time.
- ChannelKey: (session_id, participant_id); identity of all per-channel state.
- PCM helpers: int16 bytes <-> float32, RMS energy, mono downmix.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np


class MalformedAudio(ValueError):
    """Audio that cannot be used: empty, all-zero, oversized or inconsistent. Dropped, never retried."""


class ChannelKey(NamedTuple):
    """Typed composite key for per-channel state maps."""

    session_id: str
    participant_id: str

    def __str__(self) -> str:
        return f"{self.session_id}/{self.participant_id}"


def pcm_bytes_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """Convert PCM 16-bit little-endian bytes to float32 [-1.0, 1.0]."""
    samples = np.frombuffer(pcm_bytes, dtype="<i2")
    return samples.astype(np.float32) / 32768.0


def float32_to_pcm_bytes(audio: np.ndarray) -> bytes:
    """Convert float32 [-1, 1] to PCM 16-bit mono little-endian bytes (clipped, rounded)."""
    clipped = np.clip(audio, -1.0, 1.0)
    samples = np.round(clipped * 32767.0).astype("<i2")
    return samples.tobytes()


def to_float32(samples: bytes | bytearray | np.ndarray) -> np.ndarray:
    """Accept PCM16 bytes, an int16 array or a float array; return float32 [-1, 1]."""
    if isinstance(samples, (bytes, bytearray, memoryview)):
        if len(samples) % 2 != 0:
            raise MalformedAudio(f"PCM payload length {len(samples)} not divisible by 2")
        return pcm_bytes_to_float32(bytes(samples))
    arr = np.asarray(samples)
    if arr.dtype == np.int16:
        return arr.astype(np.float32) / 32768.0
    if np.issubdtype(arr.dtype, np.floating):
        return arr.astype(np.float32, copy=False)
    raise MalformedAudio(f"Unsupported sample dtype {arr.dtype}")


def downmix(samples: np.ndarray, channel_count: int) -> np.ndarray:
    """Interleaved multi-channel samples -> mono by averaging. Mono input returned as-is."""
    if channel_count <= 1:
        return samples
    usable = len(samples) - (len(samples) % channel_count)
    if usable == 0:
        return np.array([], dtype=np.float32)
    return samples[:usable].reshape(-1, channel_count).mean(axis=1).astype(np.float32)


def rms(samples: np.ndarray) -> float:
    """Root-mean-square energy of normalized samples. 0.0 for empty input."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


@dataclass(frozen=True)
class AudioFrame:
    """
    One block of mono audio as delivered by the transport.

    samples: float32 in [-1, 1]; never mutated after construction.
    captured_at: capture time in seconds (monotonic within a channel).
    """

    samples: np.ndarray
    sample_rate: int
    channel_count: int = 1
    captured_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.samples.setflags(write=False)

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) * 1000.0 / self.sample_rate

    @classmethod
    def from_input(
        cls,
        samples: bytes | bytearray | np.ndarray,
        sample_rate: int,
        channel_count: int = 1,
        captured_at: float | None = None,
        max_samples: int | None = None,
    ) -> "AudioFrame":
        """
        Build a mono frame from transport input. Raises MalformedAudio when the
        payload is empty, oversized or has an invalid rate.
        """
        if sample_rate <= 0:
            raise MalformedAudio(f"Invalid sample rate {sample_rate}")
        audio = to_float32(samples)
        if audio.size == 0:
            raise MalformedAudio("Empty audio frame")
        if max_samples is not None and audio.size > max_samples:
            raise MalformedAudio(f"Audio frame too large: {audio.size} samples (max {max_samples})")
        mono = np.array(downmix(audio, channel_count), dtype=np.float32, copy=True)
        return cls(
            samples=mono,
            sample_rate=sample_rate,
            channel_count=1,
            captured_at=time.monotonic() if captured_at is None else captured_at,
        )
