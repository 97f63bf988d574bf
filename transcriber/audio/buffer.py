"""
ChannelBufferManager: per-channel pre-roll ring + active speech buffer, driven by VAD events.

- Idle/Preroll: every frame goes to a bounded pre-roll ring (oldest evicted first).
- SpeechStarted: ring is spliced, in order, onto the front of the active buffer and cleared,
  so the first syllables (heard before speech was confirmed) are kept.
- Speaking: every frame is appended to the active buffer.
- SpeechEnded: trailing silence is trimmed and the active buffer is handed off as PhraseReady.
- NoiseDetected: the candidate is discarded.
- Phrase limit: a buffer reaching MAX_PHRASE_DURATION_MS mid-speech is flushed at the limit;
  frames past the limit stay buffered and start the next phrase.
- Hard ceiling: when BUFFER_CEILING_MS is lower than the phrase limit it becomes the flush point,
  and carry-over never grows the buffer past it.

Frames of a flush that the dispatcher refused (in flight / cooldown) are kept as carry-over
and prepended to the next phrase of the same channel rather than lost.

All mutations of one channel happen through push(); callers serialize per channel.
"""
from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass, field

from transcriber.audio.frames import AudioFrame, ChannelKey, MalformedAudio
from transcriber.audio.vad import (
    NoiseDetected,
    SpeechEnded,
    SpeechStarted,
    VadDecision,
    VadPhase,
    VoiceActivityDetector,
)
from transcriber.config import get_settings

logger = logging.getLogger(__name__)


class FlushReason(enum.Enum):
    SPEECH_END = "speech_end"
    MAX_PHRASE = "max_phrase"
    CEILING = "ceiling"
    SESSION_END = "session_end"


@dataclass(frozen=True)
class PhraseReady:
    """A completed utterance candidate: ordered frames of one channel."""

    key: ChannelKey
    sequence: int
    frames: tuple[AudioFrame, ...]
    reason: FlushReason

    @property
    def duration_ms(self) -> float:
        return sum(f.duration_ms for f in self.frames)

    @property
    def sample_rate(self) -> int:
        return self.frames[0].sample_rate if self.frames else 0


@dataclass(frozen=True)
class BufferResult:
    """Outcome of pushing one frame: VAD classification and a phrase if one completed."""

    decision: VadDecision
    phrase: PhraseReady | None = None


def _frames_ms(frames) -> float:
    return sum(f.duration_ms for f in frames)


@dataclass
class ChannelState:
    """Per-channel state. Created lazily on first frame; owned by ChannelBufferManager."""

    vad: VoiceActivityDetector
    preroll: deque
    active: list[AudioFrame] = field(default_factory=list)
    carryover: list[AudioFrame] = field(default_factory=list)
    speech_started_at: float | None = None
    last_voice_at: float | None = None
    consecutive_voice_frames: int = 0
    sample_rate: int | None = None
    next_sequence: int = 0

    @property
    def vad_phase(self) -> VadPhase:
        return self.vad.phase

    @property
    def buffered_ms(self) -> float:
        return _frames_ms(self.carryover) + _frames_ms(self.active)


class ChannelBufferManager:
    """Owns every ChannelState, keyed by ChannelKey."""

    def __init__(
        self,
        preroll_capacity_frames: int | None = None,
        buffer_ceiling_ms: int | None = None,
        max_phrase_duration_ms: int | None = None,
        energy_threshold: float | None = None,
        silence_duration_ms: int | None = None,
        min_speech_duration_ms: int | None = None,
        speech_confirm_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self._preroll_capacity = max(
            1,
            preroll_capacity_frames if preroll_capacity_frames is not None else settings.PREROLL_CAPACITY_FRAMES,
        )
        self._ceiling_ms = buffer_ceiling_ms if buffer_ceiling_ms is not None else settings.BUFFER_CEILING_MS
        self._max_phrase_ms = (
            max_phrase_duration_ms if max_phrase_duration_ms is not None else settings.MAX_PHRASE_DURATION_MS
        )
        self._vad_kwargs = dict(
            energy_threshold=energy_threshold,
            silence_duration_ms=silence_duration_ms,
            min_speech_duration_ms=min_speech_duration_ms,
            speech_confirm_ms=speech_confirm_ms,
        )
        self._channels: dict[ChannelKey, ChannelState] = {}

    def _state(self, key: ChannelKey) -> ChannelState:
        state = self._channels.get(key)
        if state is None:
            state = ChannelState(
                vad=VoiceActivityDetector(**self._vad_kwargs),
                preroll=deque(maxlen=self._preroll_capacity),
            )
            self._channels[key] = state
        return state

    def _next_phrase(self, key: ChannelKey, state: ChannelState, frames: list[AudioFrame], reason: FlushReason) -> PhraseReady:
        phrase = PhraseReady(key=key, sequence=state.next_sequence, frames=tuple(frames), reason=reason)
        state.next_sequence += 1
        return phrase

    def push(self, key: ChannelKey, frame: AudioFrame) -> BufferResult:
        """Feed one frame of one channel. Returns the VAD decision and a completed phrase, if any."""
        state = self._state(key)
        if state.sample_rate is None:
            state.sample_rate = frame.sample_rate
        elif frame.sample_rate != state.sample_rate:
            raise MalformedAudio(
                f"Sample rate changed on {key}: {frame.sample_rate} != {state.sample_rate}"
            )

        decision = state.vad.process(frame)
        if decision.voiced:
            state.consecutive_voice_frames += 1
            state.last_voice_at = frame.captured_at
        else:
            state.consecutive_voice_frames = 0

        event = decision.event
        if isinstance(event, SpeechStarted):
            state.speech_started_at = event.started_at
            state.active.extend(state.preroll)
            state.preroll.clear()
            state.active.append(frame)
            logger.debug("Speech started on %s (pre-roll %d frames)", key, len(state.active) - 1)
            return BufferResult(decision, self._check_limits(key, state))

        if isinstance(event, SpeechEnded):
            spoken = [f for f in state.active if state.last_voice_at is None or f.captured_at <= state.last_voice_at]
            frames = state.carryover + spoken
            state.carryover = []
            state.active = []
            state.speech_started_at = None
            state.preroll.append(frame)
            if not frames:
                return BufferResult(decision)
            logger.debug("Speech ended on %s after %.0fms", key, event.duration_ms)
            return BufferResult(decision, self._next_phrase(key, state, frames, FlushReason.SPEECH_END))

        if isinstance(event, NoiseDetected):
            if state.active:
                logger.debug("Discarding %.0fms noise candidate on %s", _frames_ms(state.active), key)
            state.active = []
            state.speech_started_at = None
            state.preroll.append(frame)
            return BufferResult(decision)

        if state.vad.is_speaking:
            state.active.append(frame)
            return BufferResult(decision, self._check_limits(key, state))

        state.preroll.append(frame)
        return BufferResult(decision)

    def _check_limits(self, key: ChannelKey, state: ChannelState) -> PhraseReady | None:
        """Flush mid-speech once the buffer reaches the phrase limit (or the ceiling, if lower)."""
        limit_ms = min(self._max_phrase_ms, self._ceiling_ms)
        buffered_ms = state.buffered_ms
        if buffered_ms < limit_ms:
            return None
        if limit_ms == self._ceiling_ms:
            reason = FlushReason.CEILING
            logger.warning("Buffer on %s reached %.0fms (ceiling %dms); forcing flush", key, buffered_ms, limit_ms)
        else:
            reason = FlushReason.MAX_PHRASE
            logger.debug("Phrase on %s reached %.0fms; flushing at %dms", key, buffered_ms, limit_ms)

        frames = state.carryover + state.active
        head: list[AudioFrame] = []
        total = 0.0
        for frame in frames:
            if head and total + frame.duration_ms > limit_ms:
                break
            head.append(frame)
            total += frame.duration_ms
        # Frames past the limit open the next phrase
        state.carryover = frames[len(head):]
        state.active = []
        return self._next_phrase(key, state, head, reason)

    def carry_over(self, phrase: PhraseReady) -> bool:
        """
        Keep the frames of a refused flush for the channel's next phrase.
        Returns False (frames dropped) when that would exceed the hard ceiling.
        The phrase's sequence number is handed back so the next phrase reuses it.
        """
        state = self._channels.get(phrase.key)
        if state is None:
            return False
        if _frames_ms(phrase.frames) + state.buffered_ms >= self._ceiling_ms:
            logger.warning(
                "Dropping %.0fms of audio on %s: carry-over would exceed ceiling", phrase.duration_ms, phrase.key
            )
            return False
        state.carryover = list(phrase.frames) + state.carryover
        if phrase.sequence == state.next_sequence - 1:
            state.next_sequence = phrase.sequence
        return True

    def drain(self, key: ChannelKey) -> PhraseReady | None:
        """Hand off everything buffered for a channel (carry-over + active) and reset it to idle."""
        state = self._channels.get(key)
        if state is None:
            return None
        frames = state.carryover + state.active
        state.carryover = []
        state.active = []
        state.speech_started_at = None
        state.vad.reset()
        if not frames:
            return None
        return self._next_phrase(key, state, frames, FlushReason.SESSION_END)

    def clear(self, key: ChannelKey) -> None:
        """Destroy a channel's state without flushing."""
        self._channels.pop(key, None)

    def keys(self, session_id: str | None = None) -> list[ChannelKey]:
        return [k for k in self._channels if session_id is None or k.session_id == session_id]

    def state(self, key: ChannelKey) -> ChannelState | None:
        return self._channels.get(key)

    @property
    def preroll_capacity(self) -> int:
        return self._preroll_capacity
