"""Application configuration. Loads from env vars."""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Audio: PCM 16-bit mono, 16kHz
    SAMPLE_RATE: int = 16000
    SAMPLE_WIDTH: int = 2  # 16-bit
    CHANNELS: int = 1

    # Frame: 20ms @ 16kHz = 320 samples = 640 bytes
    FRAME_MS: int = 20
    # Frames larger than this (samples) are dropped at ingestion (~11s @ 44.1kHz)
    MAX_FRAME_SAMPLES: int = 500_000

    # Voice activity detection (energy based, normalized RMS in [0, 1])
    VAD_ENERGY_THRESHOLD: float = 0.01
    VAD_SPEECH_CONFIRM_MS: int = 100  # above-threshold time before speechStart fires
    VAD_SILENCE_DURATION_MS: int = 800  # silence that ends an utterance
    VAD_MIN_SPEECH_DURATION_MS: int = 200  # shorter bursts are classified as noise

    # Channel buffering
    PREROLL_CAPACITY_FRAMES: int = 15  # ~300ms of 20ms frames kept before speech is confirmed
    BUFFER_CEILING_MS: int = 30_000  # hard safety bound; force flush beyond this

    # Phrase assembly
    MIN_PHRASE_DURATION_MS: int = 800
    MAX_PHRASE_DURATION_MS: int = 15_000
    NORMALIZE_TARGET_PEAK: float = 0.85  # fraction of full scale
    NORMALIZE_SILENCE_FLOOR: float = 0.001  # below this peak the buffer is left untouched
    MAX_UPLOAD_BYTES: int = 25 * 1024 * 1024  # provider upload limit

    # Transcription dispatch
    STT_BACKEND: Literal["azure", "local"] = "azure"
    STT_LANGUAGE: str = "pt"
    STT_MAX_RETRIES: int = 3  # maximum attempts, including the first
    STT_RETRY_BASE_DELAY_MS: int = 2000  # 2s, 4s, ...
    STT_COOLDOWN_WINDOW_MS: int = 2000
    STT_REQUEST_TIMEOUT_S: float = 30.0

    # Azure OpenAI Whisper (when STT_BACKEND=azure)
    AZURE_OPENAI_ENDPOINT: str = ""
    AZURE_OPENAI_API_KEY: str = ""
    AZURE_OPENAI_WHISPER_DEPLOYMENT: str = "whisper"
    AZURE_OPENAI_WHISPER_API_VERSION: str = "2024-06-01"

    # Local Whisper (when STT_BACKEND=local): model loaded once at startup
    LOCAL_WHISPER_MODEL: str = "base"  # base | small | medium | large-v3
    LOCAL_WHISPER_DEVICE: Literal["cpu", "cuda"] = "cpu"
    LOCAL_WHISPER_COMPUTE_TYPE: Literal["int8", "float16"] = "int8"
    LOCAL_WHISPER_BEAM_SIZE: int = 5

    # Cost accounting: USD per minute of transcribed audio
    WHISPER_MODEL_NAME: str = "whisper-1"
    WHISPER_PRICE_PER_MINUTE: float = 0.006

    # Transcript filter: also reject bare "obrigado" / "tchau" outputs
    FILTER_BLOCK_CLOSINGS: bool = False

    # Speakers: role assigned when neither registration nor name heuristic applies
    SPEAKER_FALLBACK_ROLE: Literal["patient", "unknown"] = "patient"

    # Session teardown: max wait for in-flight transcriptions (seconds)
    SESSION_SHUTDOWN_TIMEOUT_S: float = 10.0

    # Session transcript storage: one .txt per session, append-only.
    TRANSCRIPT_SAVE_ENABLED: bool = True
    TRANSCRIPT_DIR: str = "./transcripts"

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path = also write logs to file (empty = console only).
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
