"""
SpeakerResolver: participant id -> display name and role, per session.

- Explicit registration (name + role) from the signaling layer always wins.
- Otherwise a best-effort substring heuristic on the participant id / name:
  doctor terms -> doctor, patient terms -> patient, else SPEAKER_FALLBACK_ROLE.
- Heuristic results are cached for the session and logged once, since they can misattribute speech.
"""
from __future__ import annotations

import logging

from transcriber.config import get_settings
from transcriber.speakers.models import SpeakerIdentity, SpeakerRole

logger = logging.getLogger(__name__)

DOCTOR_TERMS = ("doctor", "médico", "medico", "doutor", "doutora", "dr.", "dra.")
PATIENT_TERMS = ("patient", "paciente")


def guess_role(*hints: str, fallback: SpeakerRole = SpeakerRole.PATIENT) -> SpeakerRole:
    """Substring heuristic over participant id / name hints."""
    text = " ".join(h for h in hints if h).lower()
    if any(term in text for term in DOCTOR_TERMS):
        return SpeakerRole.DOCTOR
    if any(term in text for term in PATIENT_TERMS):
        return SpeakerRole.PATIENT
    return fallback


class SpeakerResolver:
    """Registry keyed by (session_id, participant_id); cached for the session lifetime."""

    def __init__(self, fallback_role: SpeakerRole | str | None = None) -> None:
        if fallback_role is None:
            fallback_role = get_settings().SPEAKER_FALLBACK_ROLE
        self._fallback = SpeakerRole(fallback_role)
        self._registry: dict[tuple[str, str], SpeakerIdentity] = {}

    def register(self, session_id: str, participant_id: str, name: str, role: SpeakerRole | str) -> SpeakerIdentity:
        """Called by the signaling layer once identities are known. Overrides any heuristic guess."""
        identity = SpeakerIdentity(
            participant_id=participant_id,
            display_name=(name or "").strip() or participant_id,
            role=SpeakerRole(role),
            registered=True,
        )
        self._registry[(session_id, participant_id)] = identity
        logger.info("Registered %s as %s (%s) in session %s", participant_id, identity.display_name, identity.role.value, session_id)
        return identity

    def resolve(self, session_id: str, participant_id: str) -> SpeakerIdentity:
        identity = self._registry.get((session_id, participant_id))
        if identity is not None:
            return identity
        role = guess_role(participant_id, fallback=self._fallback)
        identity = SpeakerIdentity(
            participant_id=participant_id,
            display_name=participant_id,
            role=role,
            registered=False,
        )
        self._registry[(session_id, participant_id)] = identity
        logger.warning(
            "Participant %s in session %s is not registered; guessed role %s",
            participant_id,
            session_id,
            role.value,
        )
        return identity

    def participants(self, session_id: str) -> list[SpeakerIdentity]:
        return [ident for (sid, _), ident in self._registry.items() if sid == session_id]

    def clear_session(self, session_id: str) -> None:
        for key in [k for k in self._registry if k[0] == session_id]:
            del self._registry[key]
