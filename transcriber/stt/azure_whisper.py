"""
AzureWhisperProvider: Whisper via the Azure OpenAI audio transcription endpoint.

POST {endpoint}/openai/deployments/{deployment}/audio/transcriptions?api-version=...
multipart: file=audio.wav, language, response_format=verbose_json, temperature=0.
Every call builds a fresh multipart body from the bytes, so retries resend the full audio.
"""
from __future__ import annotations

import logging
import math

import httpx

from transcriber.config import get_settings
from transcriber.stt.base import (
    PermanentProviderError,
    ProviderResult,
    STTProvider,
    TransientProviderError,
    classify_status,
)

logger = logging.getLogger(__name__)


def _confidence_from_segments(segments: list[dict] | None) -> float | None:
    """Mean segment avg_logprob -> probability in [0, 1]. None when not reported."""
    if not segments:
        return None
    logprobs = [s.get("avg_logprob") for s in segments if isinstance(s, dict) and s.get("avg_logprob") is not None]
    if not logprobs:
        return None
    return max(0.0, min(1.0, math.exp(sum(logprobs) / len(logprobs))))


def parse_transcription(data: dict) -> ProviderResult:
    """Parse a json / verbose_json transcription body."""
    if not isinstance(data, dict) or "text" not in data:
        raise PermanentProviderError("STT provider returned no text field")
    duration = data.get("duration")
    return ProviderResult(
        text=(data.get("text") or "").strip(),
        confidence=_confidence_from_segments(data.get("segments")),
        language=data.get("language"),
        audio_duration_ms=float(duration) * 1000.0 if duration is not None else None,
        raw=data,
    )


class AzureWhisperProvider(STTProvider):
    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        deployment: str | None = None,
        api_version: str | None = None,
        timeout_s: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._endpoint = (endpoint if endpoint is not None else settings.AZURE_OPENAI_ENDPOINT).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.AZURE_OPENAI_API_KEY
        self._deployment = deployment or settings.AZURE_OPENAI_WHISPER_DEPLOYMENT
        self._api_version = api_version or settings.AZURE_OPENAI_WHISPER_API_VERSION
        timeout = timeout_s if timeout_s is not None else settings.STT_REQUEST_TIMEOUT_S
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._model_name = settings.WHISPER_MODEL_NAME
        if not self._endpoint or not self._api_key:
            logger.error("Azure OpenAI Whisper is not configured (AZURE_OPENAI_ENDPOINT / AZURE_OPENAI_API_KEY)")

    @property
    def url(self) -> str:
        return f"{self._endpoint}/openai/deployments/{self._deployment}/audio/transcriptions"

    @property
    def model_name(self) -> str:
        return self._model_name

    async def transcribe(self, wav_bytes: bytes, language: str) -> ProviderResult:
        if not self._endpoint or not self._api_key:
            raise PermanentProviderError("Azure OpenAI Whisper is not configured")

        files = {"file": ("audio.wav", wav_bytes, "audio/wav")}
        data = {"language": language, "response_format": "verbose_json", "temperature": "0"}
        try:
            resp = await self._client.post(
                self.url,
                params={"api-version": self._api_version},
                headers={"api-key": self._api_key},
                files=files,
                data=data,
            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"STT request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"STT transport error: {e}") from e

        if resp.status_code != 200:
            raise classify_status(resp.status_code, resp.text[:200])
        try:
            body = resp.json()
        except ValueError as e:
            raise PermanentProviderError(f"STT provider returned invalid JSON: {e}") from e
        return parse_transcription(body)

    async def aclose(self) -> None:
        await self._client.aclose()
