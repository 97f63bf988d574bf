"""Real-time consultation transcription: per-participant VAD, phrase assembly and Whisper dispatch."""

__version__ = "0.1.0"
