"""
Canonical container for provider uploads: PCM 16-bit mono WAV.

Encoded in memory with the stdlib wave writer so header fields (sample rate,
channel count, byte rate, block align, data size) are always consistent.
"""
from __future__ import annotations

import io
import wave
from dataclasses import dataclass

import numpy as np

from transcriber.audio.frames import float32_to_pcm_bytes

SAMPLE_WIDTH = 2
NCHANNELS = 1


@dataclass(frozen=True)
class WavInfo:
    sample_rate: int
    channels: int
    sample_width: int
    n_frames: int

    @property
    def duration_ms(self) -> float:
        return self.n_frames * 1000.0 / self.sample_rate if self.sample_rate else 0.0


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """float32 mono [-1, 1] -> complete WAV file bytes (RIFF header + PCM16 data)."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(NCHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(float32_to_pcm_bytes(samples))
    return buf.getvalue()


def read_wav_info(data: bytes) -> WavInfo:
    """Parse the header of an in-memory WAV file."""
    with wave.open(io.BytesIO(data), "rb") as wav:
        return WavInfo(
            sample_rate=wav.getframerate(),
            channels=wav.getnchannels(),
            sample_width=wav.getsampwidth(),
            n_frames=wav.getnframes(),
        )

