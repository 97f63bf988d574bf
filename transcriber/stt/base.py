"""
STTProvider: abstract interface for the external speech-to-text service.

Implementations: AzureWhisperProvider (HTTP), LocalWhisperProvider (faster-whisper).
A provider performs exactly one request per call; retry policy lives in the dispatcher.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ProviderResult:
    """Parsed provider response for one utterance."""

    text: str
    confidence: float | None = None
    language: str | None = None
    audio_duration_ms: float | None = None  # reported by provider when available
    raw: dict[str, Any] = field(default_factory=dict)


class ProviderError(Exception):
    """Base for provider failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """429, 5xx, timeouts and connection failures. Retried with backoff."""


class PermanentProviderError(ProviderError):
    """Other 4xx, bad configuration, unparseable response, or retries exhausted. Never retried."""


def classify_status(status_code: int, detail: str = "") -> ProviderError:
    """Map a non-2xx HTTP status to the error taxonomy."""
    message = f"STT provider error: {status_code}" + (f" - {detail}" if detail else "")
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(message, status_code=status_code)
    return PermanentProviderError(message, status_code=status_code)


class STTProvider(ABC):
    """
    Transcribe one WAV payload. The audio bytes are passed on every call so a
    retry always re-sends the complete request.
    """

    @abstractmethod
    async def transcribe(self, wav_bytes: bytes, language: str) -> ProviderResult:
        """
        Send the encoded utterance with a language hint and deterministic decoding
        (temperature 0). Raises TransientProviderError / PermanentProviderError.
        """
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model identifier used for usage accounting."""
        ...

    async def aclose(self) -> None:
        """Release network/model resources. Default: nothing to release."""
        return None
