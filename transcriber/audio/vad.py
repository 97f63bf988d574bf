"""
VoiceActivityDetector: energy-based speech boundary classifier, one per channel.

Each frame's RMS energy (normalized samples) is compared with a threshold:
- SpeechStarted fires once when energy stays above threshold for the confirm
  window (e.g. 100ms) since the first loud frame. Any pending silence is cancelled.
- SpeechEnded fires once when energy stays below threshold for the silence
  duration after a confirmed start, provided the span from start to the onset
  of that silence reaches the minimum speech duration.
- NoiseDetected fires instead when the loud span was too short to be speech
  (including loud bursts that never reached the confirm window). Non-terminal.

Time comes from AudioFrame.captured_at, not from the wall clock at call time.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

from transcriber.audio.frames import AudioFrame, rms
from transcriber.config import get_settings


class VadPhase(enum.Enum):
    IDLE = "idle"
    PREROLL = "preroll"  # loud frames seen, speech not confirmed yet
    SPEAKING = "speaking"


@dataclass(frozen=True)
class SpeechStarted:
    started_at: float  # captured_at of the first loud frame (seconds)


@dataclass(frozen=True)
class SpeechEnded:
    started_at: float
    ended_at: float  # onset of the terminating silence (seconds)
    duration_ms: float


@dataclass(frozen=True)
class NoiseDetected:
    started_at: float
    duration_ms: float


VadEvent = Union[SpeechStarted, SpeechEnded, NoiseDetected]


@dataclass(frozen=True)
class VadDecision:
    """Per-frame classification plus the event (if any) the frame triggered."""

    energy: float
    voiced: bool
    event: VadEvent | None = None


class VoiceActivityDetector:
    """Holds no cross-channel state; create one instance per ChannelKey."""

    def __init__(
        self,
        energy_threshold: float | None = None,
        silence_duration_ms: int | None = None,
        min_speech_duration_ms: int | None = None,
        speech_confirm_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self._threshold = energy_threshold if energy_threshold is not None else settings.VAD_ENERGY_THRESHOLD
        self._silence_ms = silence_duration_ms if silence_duration_ms is not None else settings.VAD_SILENCE_DURATION_MS
        self._min_speech_ms = (
            min_speech_duration_ms if min_speech_duration_ms is not None else settings.VAD_MIN_SPEECH_DURATION_MS
        )
        self._confirm_ms = speech_confirm_ms if speech_confirm_ms is not None else settings.VAD_SPEECH_CONFIRM_MS
        self.reset()

    def reset(self) -> None:
        """Clear all timers and return to the initial state."""
        self._phase = VadPhase.IDLE
        self._speech_start: float | None = None
        self._silence_start: float | None = None

    @property
    def phase(self) -> VadPhase:
        return self._phase

    @property
    def is_speaking(self) -> bool:
        return self._phase is VadPhase.SPEAKING

    def process(self, frame: AudioFrame) -> VadDecision:
        """Classify one mono frame and advance the state machine."""
        energy = rms(frame.samples)
        now = frame.captured_at
        if energy > self._threshold:
            return VadDecision(energy=energy, voiced=True, event=self._on_voiced(now))
        return VadDecision(energy=energy, voiced=False, event=self._on_silent(now))

    def _on_voiced(self, now: float) -> VadEvent | None:
        # Loud frame cancels any pending silence countdown
        self._silence_start = None
        if self._phase is VadPhase.SPEAKING:
            return None
        if self._speech_start is None:
            self._speech_start = now
            self._phase = VadPhase.PREROLL
        if (now - self._speech_start) * 1000.0 >= self._confirm_ms:
            self._phase = VadPhase.SPEAKING
            return SpeechStarted(started_at=self._speech_start)
        return None

    def _on_silent(self, now: float) -> VadEvent | None:
        if self._phase is not VadPhase.SPEAKING:
            if self._phase is VadPhase.PREROLL and self._speech_start is not None:
                started = self._speech_start
                self.reset()
                return NoiseDetected(started_at=started, duration_ms=(now - started) * 1000.0)
            return None

        if self._silence_start is None:
            self._silence_start = now
        if (now - self._silence_start) * 1000.0 < self._silence_ms:
            return None

        started = self._speech_start if self._speech_start is not None else self._silence_start
        silence_onset = self._silence_start
        spoken_ms = (silence_onset - started) * 1000.0
        self.reset()
        if spoken_ms >= self._min_speech_ms:
            return SpeechEnded(started_at=started, ended_at=silence_onset, duration_ms=spoken_ms)
        return NoiseDetected(started_at=started, duration_ms=spoken_ms)
