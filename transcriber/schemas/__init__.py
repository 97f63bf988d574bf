"""Pydantic schemas for API request/response."""
from transcriber.schemas.sessions import (
    ChannelStats,
    ParticipantRegistration,
    ParticipantResponse,
    SessionEndResponse,
    SessionStatsResponse,
    TranscriptResponse,
    TranscriptSegmentOut,
)

__all__ = [
    "ChannelStats",
    "ParticipantRegistration",
    "ParticipantResponse",
    "SessionEndResponse",
    "SessionStatsResponse",
    "TranscriptResponse",
    "TranscriptSegmentOut",
]
