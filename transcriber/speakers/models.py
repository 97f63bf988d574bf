"""
Speaker identity for transcript segments.

Each channel carries exactly one participant, so identity is a lookup by
participant id, not a diarization decision.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass


class SpeakerRole(str, enum.Enum):
    DOCTOR = "doctor"
    PATIENT = "patient"
    SYSTEM = "system"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SpeakerIdentity:
    """
    participant_id: transport-level participant identifier.
    display_name: name shown next to the text; the participant id when nothing better is known.
    registered: False when the identity came from the name heuristic.
    """

    participant_id: str
    display_name: str
    role: SpeakerRole
    registered: bool = True
