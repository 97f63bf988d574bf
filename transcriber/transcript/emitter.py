"""
TranscriptEmitter: builds the immutable TranscriptSegment and fans it out.

Subscribers (real-time notifier, file writer, session store) are awaited in
registration order. Delivery is at-least-once; a subscriber that needs
exactly-once must dedupe on segment.id. One failing subscriber is logged and
never blocks delivery to the others.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from transcriber.speakers.models import SpeakerIdentity
from transcriber.transcript.models import TranscriptCandidate, TranscriptSegment

logger = logging.getLogger(__name__)


class TranscriptSubscriber(Protocol):
    async def on_transcript(self, segment: TranscriptSegment) -> None:
        ...


class TranscriptEmitter:
    def __init__(self) -> None:
        self._subscribers: list[TranscriptSubscriber] = []

    def subscribe(self, subscriber: TranscriptSubscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: TranscriptSubscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(
        self,
        candidate: TranscriptCandidate,
        speaker: SpeakerIdentity,
        timestamp: datetime | None = None,
    ) -> TranscriptSegment:
        segment = TranscriptSegment.create(candidate, speaker, timestamp=timestamp)
        await self.deliver(segment)
        return segment

    async def deliver(self, segment: TranscriptSegment) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber.on_transcript(segment)
            except Exception:
                logger.exception(
                    "Transcript subscriber %s failed for segment %s",
                    type(subscriber).__name__,
                    segment.id,
                )
