"""STT: provider interface, HTTP and local Whisper providers, dispatcher with retry and usage accounting."""
from .base import (
    PermanentProviderError,
    ProviderError,
    ProviderResult,
    STTProvider,
    TransientProviderError,
)
from .azure_whisper import AzureWhisperProvider
from .local_whisper import LocalWhisperProvider, load_whisper_model
from .dispatcher import ProcessingLock, TranscriptionDispatcher
from .usage import LoggingUsageRecorder, UsageRecord, UsageRecorder

__all__ = [
    "STTProvider",
    "ProviderResult",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "AzureWhisperProvider",
    "LocalWhisperProvider",
    "load_whisper_model",
    "ProcessingLock",
    "TranscriptionDispatcher",
    "UsageRecord",
    "UsageRecorder",
    "LoggingUsageRecorder",
]
