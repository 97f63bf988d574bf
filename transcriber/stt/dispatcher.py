"""
TranscriptionDispatcher: delivers Utterances to the STT provider.

Processing lock (one per channel) is the anti-duplication guard:
- A flush is refused while a call for the same channel is in flight, or within
  STT_COOLDOWN_WINDOW_MS of the channel's last completed call.
- in_flight goes True exactly once per accepted utterance and always returns to
  False (success, failure, discard or cancellation).

Every provider call is bounded by STT_REQUEST_TIMEOUT_S; a call that does not
return in time counts as a transient failure.

Retry policy: TransientProviderError (429, 5xx, timeout) is retried with
exponential backoff (base, 2*base, ...) up to STT_MAX_RETRIES attempts in total;
each attempt re-sends the full audio. Anything else drops the utterance.
Nothing here raises to the caller: outcomes are a candidate or None.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from transcriber.audio.assembler import Utterance
from transcriber.audio.frames import ChannelKey
from transcriber.config import get_settings
from transcriber.stt.base import (
    PermanentProviderError,
    ProviderResult,
    STTProvider,
    TransientProviderError,
)
from transcriber.stt.usage import LoggingUsageRecorder, UsageRecord, UsageRecorder, whisper_price
from transcriber.transcript.models import TranscriptCandidate

logger = logging.getLogger(__name__)


@dataclass
class ProcessingLock:
    key: ChannelKey
    in_flight: bool = False
    last_completed_at: float | None = None


class TranscriptionDispatcher:
    def __init__(
        self,
        provider: STTProvider,
        usage_recorder: UsageRecorder | None = None,
        max_retries: int | None = None,
        retry_base_delay_ms: int | None = None,
        cooldown_window_ms: int | None = None,
        language: str | None = None,
        request_timeout_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._provider = provider
        self._usage = usage_recorder or LoggingUsageRecorder()
        self._max_attempts = max(1, max_retries if max_retries is not None else settings.STT_MAX_RETRIES)
        base_ms = retry_base_delay_ms if retry_base_delay_ms is not None else settings.STT_RETRY_BASE_DELAY_MS
        self._base_delay = base_ms / 1000.0
        cooldown_ms = cooldown_window_ms if cooldown_window_ms is not None else settings.STT_COOLDOWN_WINDOW_MS
        self._cooldown = cooldown_ms / 1000.0
        self._language = language or settings.STT_LANGUAGE
        self._call_timeout = request_timeout_s if request_timeout_s is not None else settings.STT_REQUEST_TIMEOUT_S
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[ChannelKey, ProcessingLock] = {}

    # --- processing lock ---

    def _lock(self, key: ChannelKey) -> ProcessingLock:
        lock = self._locks.get(key)
        if lock is None:
            lock = ProcessingLock(key=key)
            self._locks[key] = lock
        return lock

    def can_accept(self, key: ChannelKey, ignore_cooldown: bool = False) -> bool:
        lock = self._locks.get(key)
        if lock is None:
            return True
        if lock.in_flight:
            return False
        if ignore_cooldown or lock.last_completed_at is None:
            return True
        return (self._clock() - lock.last_completed_at) >= self._cooldown

    def try_acquire(self, key: ChannelKey, ignore_cooldown: bool = False) -> bool:
        """Check and set in_flight in one step (no await in between)."""
        if not self.can_accept(key, ignore_cooldown=ignore_cooldown):
            logger.debug("Flush refused on %s: call in flight or within cooldown", key)
            return False
        self._lock(key).in_flight = True
        return True

    def release(self, key: ChannelKey, completed: bool = True) -> None:
        """Clear in_flight. completed=True starts the cooldown window. No-op once the channel is forgotten."""
        lock = self._locks.get(key)
        if lock is None:
            return
        lock.in_flight = False
        if completed:
            lock.last_completed_at = self._clock()

    def is_in_flight(self, key: ChannelKey) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.in_flight)

    def lock_state(self, key: ChannelKey) -> ProcessingLock | None:
        return self._locks.get(key)

    def forget(self, key: ChannelKey) -> None:
        self._locks.pop(key, None)

    # --- dispatch ---

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before attempt n (n >= 1): base * 2**(n-1)."""
        return self._base_delay * (2 ** (attempt - 1))

    async def dispatch(self, utterance: Utterance, ignore_cooldown: bool = False) -> TranscriptCandidate | None:
        """Acquire the channel lock, then transcribe. None if refused or failed."""
        if not self.try_acquire(utterance.key, ignore_cooldown=ignore_cooldown):
            return None
        return await self.transcribe(utterance)

    async def transcribe(self, utterance: Utterance) -> TranscriptCandidate | None:
        """Caller must hold the channel lock (try_acquire). The lock is always released here."""
        key = utterance.key
        try:
            result = await self._call_with_retry(utterance)
            if result is None:
                return None
            await self._record_usage(utterance, result)
            return TranscriptCandidate(
                key=key,
                sequence=utterance.sequence,
                text=result.text,
                duration_ms=utterance.duration_ms,
                confidence=result.confidence,
                language=result.language,
            )
        finally:
            self.release(key, completed=True)

    async def _call_with_retry(self, utterance: Utterance) -> ProviderResult | None:
        key = utterance.key
        last_error: Exception | None = None
        for attempt in range(self._max_attempts):
            if attempt > 0:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "STT call for %s #%d failed (attempt %d/%d): %s; retrying in %.1fs",
                    key,
                    utterance.sequence,
                    attempt,
                    self._max_attempts,
                    last_error,
                    delay,
                )
                await self._sleep(delay)
            try:
                async with asyncio.timeout(self._call_timeout):
                    return await self._provider.transcribe(utterance.encoded_audio, self._language)
            except TimeoutError:
                last_error = TransientProviderError(f"no response within {self._call_timeout:.1f}s")
            except TransientProviderError as e:
                last_error = e
            except PermanentProviderError as e:
                logger.error("Dropping utterance %s #%d: %s", key, utterance.sequence, e)
                return None
            except Exception:
                logger.exception("Dropping utterance %s #%d: unexpected provider failure", key, utterance.sequence)
                return None

        logger.error(
            "Dropping utterance %s #%d after %d attempts: %s",
            key,
            utterance.sequence,
            self._max_attempts,
            last_error,
        )
        return None

    async def _record_usage(self, utterance: Utterance, result: ProviderResult) -> None:
        duration_ms = result.audio_duration_ms or utterance.duration_ms
        record = UsageRecord(
            model=self._provider.model_name,
            session_id=utterance.key.session_id,
            participant_id=utterance.key.participant_id,
            sequence=utterance.sequence,
            audio_duration_ms=duration_ms,
            price=whisper_price(duration_ms),
            text=result.text,
        )
        try:
            await self._usage.record(record)
        except Exception as e:
            logger.warning("Usage recording failed for %s #%d: %s", utterance.key, utterance.sequence, e)
