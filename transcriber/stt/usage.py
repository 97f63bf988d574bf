"""
Usage accounting for STT calls. The pricing/cost store is an external collaborator;
this module defines what is reported and a default recorder that only logs it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from transcriber.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    model: str
    session_id: str
    participant_id: str
    sequence: int
    audio_duration_ms: float
    price: float
    text: str = ""

    @property
    def minutes(self) -> float:
        return self.audio_duration_ms / 60000.0


class UsageRecorder(Protocol):
    async def record(self, usage: UsageRecord) -> None:
        ...


def whisper_price(duration_ms: float, price_per_minute: float | None = None) -> float:
    """Price in USD for duration_ms of transcribed audio."""
    if price_per_minute is None:
        price_per_minute = get_settings().WHISPER_PRICE_PER_MINUTE
    return (duration_ms / 60000.0) * price_per_minute


class LoggingUsageRecorder:
    """Default recorder: one INFO line per successful transcription."""

    async def record(self, usage: UsageRecord) -> None:
        logger.info(
            "STT usage: model=%s session=%s participant=%s seq=%d audio=%.1fs price=$%.6f",
            usage.model,
            usage.session_id,
            usage.participant_id,
            usage.sequence,
            usage.audio_duration_ms / 1000.0,
            usage.price,
        )
