"""
Speaker identity for transcript segments.

- One participant per channel; no audio separation or diarization.
- Identities come from explicit registration; unregistered participants are
  resolved by a name/id heuristic (approximate, logged).
"""
from __future__ import annotations

from transcriber.speakers.models import SpeakerIdentity, SpeakerRole
from transcriber.speakers.resolver import SpeakerResolver, guess_role

__all__ = ["SpeakerIdentity", "SpeakerRole", "SpeakerResolver", "guess_role"]
