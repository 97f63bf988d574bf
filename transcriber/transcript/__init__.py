from .models import TranscriptCandidate, TranscriptSegment
from .filter import HallucinationFilter, normalize_text
from .emitter import TranscriptEmitter, TranscriptSubscriber
from .writer import (
    NoOpTranscriptStore,
    SessionTranscriptWriter,
    TranscriptFileStore,
    TranscriptStoreBase,
    create_transcript_store,
    format_segment_line,
)

__all__ = [
    "TranscriptCandidate",
    "TranscriptSegment",
    "HallucinationFilter",
    "normalize_text",
    "TranscriptEmitter",
    "TranscriptSubscriber",
    "TranscriptStoreBase",
    "TranscriptFileStore",
    "NoOpTranscriptStore",
    "SessionTranscriptWriter",
    "create_transcript_store",
    "format_segment_line",
]
