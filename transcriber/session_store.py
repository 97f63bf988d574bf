"""
In-memory session store: the read model behind GET /api/sessions/{id}/transcript.

Segments arrive through the emitter (on_transcript); duplicate deliveries of
the same segment id are ignored. Sessions are created on first WebSocket
connection or first segment, and kept after they end so the transcript stays
readable until the process exits.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field

from transcriber.transcript.models import TranscriptSegment


@dataclass
class SessionRecord:
    session_id: str
    created_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    segments: list[TranscriptSegment] = field(default_factory=list)
    segment_ids: set[str] = field(default_factory=set)

    @property
    def ended(self) -> bool:
        return self.ended_at is not None

    def transcript_text(self) -> str:
        return "\n".join(f"{s.speaker_name}: {s.text}" for s in self.segments)


class SessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}

    def get(self, session_id: str) -> SessionRecord | None:
        return self._sessions.get(session_id)

    def ensure(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            record = SessionRecord(session_id=session_id)
            self._sessions[session_id] = record
        return record

    def mark_ended(self, session_id: str) -> SessionRecord | None:
        record = self._sessions.get(session_id)
        if record is not None and record.ended_at is None:
            record.ended_at = time.time()
        return record

    async def on_transcript(self, segment: TranscriptSegment) -> None:
        record = self.ensure(segment.session_id)
        if segment.id in record.segment_ids:
            return
        record.segment_ids.add(segment.id)
        record.segments.append(segment)
