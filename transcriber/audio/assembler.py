"""
PhraseAssembler: turns a completed frame sequence into one encoded Utterance.

1. Concatenate frames into one contiguous buffer.
2. Reject empty / all-zero buffers and phrases shorter than MIN_PHRASE_DURATION_MS.
3. Truncate phrases longer than MAX_PHRASE_DURATION_MS (keep the head, never reject).
4. Peak-normalize to NORMALIZE_TARGET_PEAK unless the peak is below the silence floor.
5. Encode as PCM 16-bit mono WAV.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from transcriber.audio.buffer import PhraseReady
from transcriber.audio.frames import ChannelKey
from transcriber.audio.wav import encode_wav
from transcriber.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Utterance:
    """One phrase ready for transcription. Consumed once by the dispatcher."""

    key: ChannelKey
    sequence: int
    encoded_audio: bytes
    duration_ms: float
    sample_rate: int
    truncated: bool = False


def normalize_peak(audio: np.ndarray, target_peak: float, silence_floor: float) -> np.ndarray:
    """Scale so max |sample| == target_peak. Near-silent buffers are returned unchanged."""
    if audio.size == 0:
        return audio
    peak = float(np.max(np.abs(audio)))
    if peak < silence_floor:
        return audio
    return (audio * (target_peak / peak)).astype(np.float32)


class PhraseAssembler:
    def __init__(
        self,
        min_phrase_duration_ms: int | None = None,
        max_phrase_duration_ms: int | None = None,
        target_peak: float | None = None,
        silence_floor: float | None = None,
        max_upload_bytes: int | None = None,
    ) -> None:
        settings = get_settings()
        self._min_ms = min_phrase_duration_ms if min_phrase_duration_ms is not None else settings.MIN_PHRASE_DURATION_MS
        self._max_ms = max_phrase_duration_ms if max_phrase_duration_ms is not None else settings.MAX_PHRASE_DURATION_MS
        self._target_peak = target_peak if target_peak is not None else settings.NORMALIZE_TARGET_PEAK
        self._silence_floor = silence_floor if silence_floor is not None else settings.NORMALIZE_SILENCE_FLOOR
        self._max_upload_bytes = max_upload_bytes if max_upload_bytes is not None else settings.MAX_UPLOAD_BYTES

    def assemble(self, phrase: PhraseReady) -> Utterance | None:
        """Return an Utterance, or None when the phrase is discarded (reason is logged)."""
        key = phrase.key
        if not phrase.frames:
            logger.warning("Discarding phrase #%d on %s: no frames", phrase.sequence, key)
            return None

        sample_rate = phrase.sample_rate
        audio = np.concatenate([f.samples for f in phrase.frames]).astype(np.float32)
        if audio.size == 0 or not np.any(audio):
            logger.warning("Discarding phrase #%d on %s: empty or all-zero audio", phrase.sequence, key)
            return None

        duration_ms = audio.size * 1000.0 / sample_rate
        if duration_ms < self._min_ms:
            logger.info(
                "Discarding phrase #%d on %s: %.0fms shorter than %dms", phrase.sequence, key, duration_ms, self._min_ms
            )
            return None

        truncated = False
        if duration_ms > self._max_ms:
            keep = int(sample_rate * self._max_ms / 1000)
            logger.warning(
                "Truncating phrase #%d on %s from %.0fms to %dms", phrase.sequence, key, duration_ms, self._max_ms
            )
            audio = audio[:keep]
            duration_ms = keep * 1000.0 / sample_rate
            truncated = True

        normalized = normalize_peak(audio, self._target_peak, self._silence_floor)
        encoded = encode_wav(normalized, sample_rate)
        if len(encoded) > self._max_upload_bytes:
            logger.warning(
                "Discarding phrase #%d on %s: %d bytes exceeds upload limit %d",
                phrase.sequence,
                key,
                len(encoded),
                self._max_upload_bytes,
            )
            return None

        return Utterance(
            key=key,
            sequence=phrase.sequence,
            encoded_audio=encoded,
            duration_ms=duration_ms,
            sample_rate=sample_rate,
            truncated=truncated,
        )
