"""
Transcript value types.

- TranscriptCandidate: provider output for one utterance, before filtering and speaker resolution.
- TranscriptSegment: terminal, immutable segment published once per accepted utterance.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from transcriber.audio.frames import ChannelKey
from transcriber.speakers.models import SpeakerIdentity, SpeakerRole


@dataclass(frozen=True)
class TranscriptCandidate:
    key: ChannelKey
    sequence: int
    text: str
    duration_ms: float
    confidence: float | None = None
    language: str | None = None


@dataclass(frozen=True)
class TranscriptSegment:
    id: str
    session_id: str
    participant_id: str
    speaker_role: SpeakerRole
    speaker_name: str
    text: str
    timestamp: datetime
    sequence: int = 0
    duration_ms: float = 0.0
    confidence: float | None = None
    language: str | None = None

    @classmethod
    def create(
        cls,
        candidate: TranscriptCandidate,
        speaker: SpeakerIdentity,
        timestamp: datetime | None = None,
    ) -> "TranscriptSegment":
        return cls(
            id=uuid.uuid4().hex,
            session_id=candidate.key.session_id,
            participant_id=candidate.key.participant_id,
            speaker_role=speaker.role,
            speaker_name=speaker.display_name,
            text=candidate.text,
            timestamp=timestamp or datetime.now(timezone.utc),
            sequence=candidate.sequence,
            duration_ms=candidate.duration_ms,
            confidence=candidate.confidence,
            language=candidate.language,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dict (role as string, ISO timestamp)."""
        payload = asdict(self)
        payload["speaker_role"] = self.speaker_role.value
        payload["timestamp"] = self.timestamp.isoformat()
        return payload

