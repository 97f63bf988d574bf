"""
Schemas for the session API: participant registration, transcript read model,
teardown and statistics.
"""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from transcriber.speakers.models import SpeakerRole


class ParticipantRegistration(BaseModel):
    """Request body for POST /api/sessions/{session_id}/participants."""

    participant_id: str = Field(..., description="Transport-level participant identifier (one audio channel)")
    name: str = Field("", description="Display name; the participant id is used when empty")
    role: SpeakerRole = Field(..., description="doctor | patient | system | unknown")


class ParticipantResponse(BaseModel):
    session_id: str
    participant_id: str
    display_name: str
    role: SpeakerRole
    registered: bool = True


class TranscriptSegmentOut(BaseModel):
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


class TranscriptResponse(BaseModel):
    """Response body for GET /api/sessions/{session_id}/transcript."""

    session_id: str
    ended: bool = Field(False, description="True once the session was torn down")
    segments: list[TranscriptSegmentOut] = Field(default_factory=list)
    text: str = Field("", description="Plain transcript, one 'name: text' line per segment")


class SessionEndResponse(BaseModel):
    session_id: str
    segments: int = Field(0, description="Segments in the session transcript after the final flush")
    cancelled_tasks: int = Field(0, description="Transcriptions cancelled by the shutdown timeout")


class ChannelStats(BaseModel):
    session_id: str
    participant_id: str
    phase: str
    buffered_ms: float
    preroll_frames: int
    utterances: int
    in_flight: bool


class SessionStatsResponse(BaseModel):
    session_id: str
    active_channels: int = 0
    in_flight: int = 0
    pending_tasks: int = 0
    connections: int = 0
    channels: list[ChannelStats] = Field(default_factory=list)
