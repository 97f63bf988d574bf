"""
tests/fixtures.py
==================
Shared synthetic audio and fake providers.

Audio is generated on a media clock: frame i of a stream is captured at
origin + i * frame_ms, so VAD timing is deterministic.
"""

import asyncio

import numpy as np

from transcriber.audio.frames import AudioFrame, float32_to_pcm_bytes
from transcriber.stt.base import ProviderResult, STTProvider

SAMPLE_RATE = 16000
FRAME_MS = 20
FRAME_SAMPLES = SAMPLE_RATE * FRAME_MS // 1000


def tone(n_samples, amplitude=0.3, freq=220.0, sample_rate=SAMPLE_RATE):
    t = np.arange(n_samples, dtype=np.float32) / sample_rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def silence(n_samples):
    return np.zeros(n_samples, dtype=np.float32)


def pcm_stream(segments, sample_rate=SAMPLE_RATE):
    """[("voice", 1.5), ("silence", 1.0)] -> PCM16 bytes."""
    parts = []
    for kind, seconds in segments:
        n = int(round(seconds * sample_rate))
        parts.append(tone(n) if kind == "voice" else silence(n))
    return float32_to_pcm_bytes(np.concatenate(parts))


class FrameClock:
    """Produces consecutive 20ms frames for one channel."""

    def __init__(self, origin=0.0, frame_ms=FRAME_MS, sample_rate=SAMPLE_RATE):
        self.index = 0
        self.origin = origin
        self.frame_ms = frame_ms
        self.sample_rate = sample_rate

    @property
    def now(self):
        return self.origin + self.index * self.frame_ms / 1000.0

    def frames(self, kind, seconds, amplitude=0.3):
        n = int(round(seconds * 1000 / self.frame_ms))
        samples_per_frame = self.sample_rate * self.frame_ms // 1000
        out = []
        for _ in range(n):
            samples = tone(samples_per_frame, amplitude) if kind == "voice" else silence(samples_per_frame)
            out.append(AudioFrame(samples=samples, sample_rate=self.sample_rate, captured_at=self.now))
            self.index += 1
        return out

    def speech(self, voice_s, silence_s):
        return self.frames("voice", voice_s) + self.frames("silence", silence_s)


class ScriptedProvider(STTProvider):
    """
    Returns / raises the scripted outcomes in order; repeats the last one.
    Set `gate` to an asyncio.Event to hold every call until it is set.
    """

    def __init__(self, outcomes=None, gate=None):
        self.outcomes = list(outcomes or [ProviderResult(text="Bom dia, doutora.")])
        self.gate = gate
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    @property
    def model_name(self):
        return "scripted-whisper"

    async def transcribe(self, wav_bytes, language):
        self.calls.append((wav_bytes, language))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            index = min(len(self.calls) - 1, len(self.outcomes) - 1)
            outcome = self.outcomes[index]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active -= 1

    async def aclose(self):
        self.closed = True


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and only yields once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class CollectingSubscriber:
    def __init__(self):
        self.segments = []

    async def on_transcript(self, segment):
        self.segments.append(segment)
