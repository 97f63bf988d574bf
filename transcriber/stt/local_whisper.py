"""
LocalWhisperProvider: in-process Whisper using faster-whisper.

- Model loaded ONCE at startup (singleton, injected at construction).
- Decodes the WAV payload back to float32, resamples to the 16kHz the model
  expects (linear interpolation) and transcribes with temperature 0.
- Runs in executor so the event loop stays responsive.
"""
from __future__ import annotations

import asyncio
import io
import math
import wave
from typing import Any

import numpy as np

from transcriber.audio.frames import pcm_bytes_to_float32
from transcriber.config import get_settings
from transcriber.stt.base import PermanentProviderError, ProviderResult, STTProvider

# Type for shared WhisperModel (loaded at startup)
WhisperModelT = Any

MODEL_SAMPLE_RATE = 16000


def load_whisper_model() -> WhisperModelT:
    """Load faster-whisper model once. Called at startup when STT_BACKEND=local."""
    try:
        from faster_whisper import WhisperModel
    except ImportError as err:
        raise ImportError(
            "faster-whisper is required for STT_BACKEND=local. "
            "Install with: pip install 'consult-transcriber[local]'"
        ) from err
    settings = get_settings()
    return WhisperModel(
        settings.LOCAL_WHISPER_MODEL,
        device=settings.LOCAL_WHISPER_DEVICE,
        compute_type=settings.LOCAL_WHISPER_COMPUTE_TYPE,
    )


def _wav_to_float32(wav_bytes: bytes) -> tuple[np.ndarray, int]:
    with wave.open(io.BytesIO(wav_bytes), "rb") as wav:
        rate = wav.getframerate()
        pcm = wav.readframes(wav.getnframes())
    return pcm_bytes_to_float32(pcm), rate


def resample_linear(audio: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resample. Same-rate input is returned unchanged."""
    if src_rate == dst_rate or audio.size == 0:
        return audio
    out_len = max(1, int(round(audio.size * dst_rate / src_rate)))
    t_in = np.arange(audio.size, dtype=np.float64) / src_rate
    t_out = np.arange(out_len, dtype=np.float64) / dst_rate
    return np.interp(t_out, t_in, audio).astype(np.float32)


class LocalWhisperProvider(STTProvider):
    def __init__(self, model: WhisperModelT | None = None) -> None:
        self._model = model

    @property
    def model_name(self) -> str:
        return f"faster-whisper:{get_settings().LOCAL_WHISPER_MODEL}"

    def _transcribe_sync(self, wav_bytes: bytes, language: str) -> ProviderResult:
        if self._model is None:
            raise PermanentProviderError("Local Whisper model is not loaded")
        audio, rate = _wav_to_float32(wav_bytes)
        if rate <= 0:
            raise PermanentProviderError(f"Invalid WAV sample rate {rate}")
        audio = resample_linear(audio, rate, MODEL_SAMPLE_RATE)

        segments, info = self._model.transcribe(
            audio,
            language=language,
            temperature=0.0,
            beam_size=get_settings().LOCAL_WHISPER_BEAM_SIZE,
            condition_on_previous_text=False,
        )
        parts: list[str] = []
        logprobs: list[float] = []
        for seg in segments:
            t = (seg.text or "").strip()
            if t:
                parts.append(t)
                logprobs.append(seg.avg_logprob)

        confidence = math.exp(sum(logprobs) / len(logprobs)) if logprobs else None
        return ProviderResult(
            text=" ".join(parts).strip(),
            confidence=min(1.0, confidence) if confidence is not None else None,
            language=getattr(info, "language", language),
            audio_duration_ms=getattr(info, "duration", len(audio) / MODEL_SAMPLE_RATE) * 1000.0,
        )

    async def transcribe(self, wav_bytes: bytes, language: str) -> ProviderResult:
        """Run _transcribe_sync in executor so event loop is not blocked."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._transcribe_sync, wav_bytes, language)
