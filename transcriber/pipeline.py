"""
TranscriptionPipeline: frames in, TranscriptSegments out.

    ingest -> ChannelBufferManager (VAD, pre-roll, active buffer)
           -> PhraseAssembler -> TranscriptionDispatcher (lock, retry)
           -> HallucinationFilter -> SpeakerResolver -> TranscriptEmitter

Frame ingestion is synchronous and never waits on the network: each accepted
utterance is transcribed in its own asyncio task, tracked per channel so
session teardown can await or cancel it. All state mutation happens on the
event loop thread, one frame at a time per channel.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import numpy as np

from transcriber.audio.assembler import PhraseAssembler, Utterance
from transcriber.audio.buffer import BufferResult, ChannelBufferManager, PhraseReady
from transcriber.audio.frames import AudioFrame, ChannelKey, MalformedAudio
from transcriber.config import get_settings
from transcriber.speakers.resolver import SpeakerResolver
from transcriber.stt.dispatcher import TranscriptionDispatcher
from transcriber.transcript.emitter import TranscriptEmitter
from transcriber.transcript.filter import HallucinationFilter
from transcriber.transcript.models import TranscriptSegment

logger = logging.getLogger(__name__)


class TranscriptionPipeline:
    def __init__(
        self,
        dispatcher: TranscriptionDispatcher,
        buffers: ChannelBufferManager | None = None,
        assembler: PhraseAssembler | None = None,
        hallucination_filter: HallucinationFilter | None = None,
        resolver: SpeakerResolver | None = None,
        emitter: TranscriptEmitter | None = None,
        shutdown_timeout_s: float | None = None,
        max_frame_samples: int | None = None,
    ) -> None:
        settings = get_settings()
        self._dispatcher = dispatcher
        self._buffers = buffers or ChannelBufferManager()
        self._assembler = assembler or PhraseAssembler()
        self._filter = hallucination_filter or HallucinationFilter()
        self._resolver = resolver or SpeakerResolver()
        self._emitter = emitter or TranscriptEmitter()
        self._shutdown_timeout = (
            shutdown_timeout_s if shutdown_timeout_s is not None else settings.SESSION_SHUTDOWN_TIMEOUT_S
        )
        self._max_frame_samples = max_frame_samples if max_frame_samples is not None else settings.MAX_FRAME_SAMPLES
        self._tasks: dict[ChannelKey, set[asyncio.Task]] = {}

    @property
    def emitter(self) -> TranscriptEmitter:
        return self._emitter

    @property
    def resolver(self) -> SpeakerResolver:
        return self._resolver

    @property
    def dispatcher(self) -> TranscriptionDispatcher:
        return self._dispatcher

    @property
    def buffers(self) -> ChannelBufferManager:
        return self._buffers

    # --- ingestion ---

    def ingest(
        self,
        session_id: str,
        participant_id: str,
        samples: bytes | np.ndarray,
        sample_rate: int,
        channel_count: int = 1,
        timestamp: float | None = None,
    ) -> BufferResult | None:
        """Accept one transport frame. Malformed frames are logged and dropped (None)."""
        key = ChannelKey(session_id, participant_id)
        try:
            frame = AudioFrame.from_input(
                samples,
                sample_rate=sample_rate,
                channel_count=channel_count,
                captured_at=timestamp,
                max_samples=self._max_frame_samples,
            )
        except MalformedAudio as e:
            logger.warning("Dropping frame on %s: %s", key, e)
            return None
        return self.push_frame(key, frame)

    def push_frame(self, key: ChannelKey, frame: AudioFrame) -> BufferResult | None:
        try:
            result = self._buffers.push(key, frame)
        except MalformedAudio as e:
            logger.warning("Dropping frame on %s: %s", key, e)
            return None
        if result.phrase is not None:
            self._handle_phrase(result.phrase)
        return result

    def _handle_phrase(self, phrase: PhraseReady, ignore_cooldown: bool = False) -> asyncio.Task | None:
        key = phrase.key
        if not self._dispatcher.try_acquire(key, ignore_cooldown=ignore_cooldown):
            self._buffers.carry_over(phrase)
            return None
        utterance = self._assembler.assemble(phrase)
        if utterance is None:
            self._dispatcher.release(key, completed=False)
            return None
        return self._spawn(utterance)

    def _spawn(self, utterance: Utterance) -> asyncio.Task:
        key = utterance.key
        task = asyncio.create_task(self._process(utterance), name=f"stt:{key}#{utterance.sequence}")
        self._tasks.setdefault(key, set()).add(task)
        task.add_done_callback(lambda t, k=key: self._on_task_done(k, t))
        return task

    def _on_task_done(self, key: ChannelKey, task: asyncio.Task) -> None:
        tasks = self._tasks.get(key)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._tasks.pop(key, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Transcription task on %s failed", key, exc_info=exc)

    async def _process(self, utterance: Utterance) -> TranscriptSegment | None:
        key = utterance.key
        candidate = await self._dispatcher.transcribe(utterance)
        if candidate is None:
            return None
        if not self._filter.accepts(candidate.text):
            return None
        speaker = self._resolver.resolve(key.session_id, key.participant_id)
        segment = await self._emitter.publish(candidate, speaker)
        logger.info("Transcript %s #%d [%s] %s", key, utterance.sequence, speaker.role.value, segment.text)
        return segment

    # --- lifecycle ---

    def _session_keys(self, session_id: str) -> list[ChannelKey]:
        keys = set(self._buffers.keys(session_id))
        keys.update(k for k in self._tasks if k.session_id == session_id)
        return sorted(keys)

    def pending_tasks(self, session_id: str | None = None) -> list[asyncio.Task]:
        return [
            task
            for key, tasks in self._tasks.items()
            if session_id is None or key.session_id == session_id
            for task in tasks
        ]

    async def wait_until_idle(self, session_id: str | None = None, timeout: float | None = None) -> bool:
        """Wait for outstanding transcription tasks. True when none remain."""
        pending = self.pending_tasks(session_id)
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending

    async def _final_flush(self, key: ChannelKey, deadline: float) -> None:
        loop = asyncio.get_running_loop()
        in_flight = list(self._tasks.get(key, ()))
        if in_flight:
            await asyncio.wait(in_flight, timeout=max(0.0, deadline - loop.time()))
        phrase = self._buffers.drain(key)
        if phrase is None:
            return
        if self._dispatcher.is_in_flight(key):
            logger.warning(
                "Dropping final %.0fms on %s: previous call still in flight at teardown", phrase.duration_ms, key
            )
            return
        self._handle_phrase(phrase, ignore_cooldown=True)

    async def end_session(self, session_id: str) -> int:
        """
        Force-flush every channel of the session (ahead of cooldown), wait for
        outstanding calls up to SESSION_SHUTDOWN_TIMEOUT_S, cancel the rest and
        destroy all channel, lock and speaker state. Returns the number of
        cancelled transcription tasks.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._shutdown_timeout
        keys = self._session_keys(session_id)
        if keys:
            await asyncio.gather(*(self._final_flush(key, deadline) for key in keys))

        cancelled = 0
        pending = self.pending_tasks(session_id)
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=max(0.0, deadline - loop.time()))
            for task in still_pending:
                task.cancel()
            if still_pending:
                await asyncio.gather(*still_pending, return_exceptions=True)
                cancelled = len(still_pending)
                logger.warning(
                    "Session %s teardown timed out; cancelled %d transcription task(s)", session_id, cancelled
                )

        for key in set(keys) | set(self._session_keys(session_id)):
            self._buffers.clear(key)
            self._dispatcher.forget(key)
            self._tasks.pop(key, None)
        self._resolver.clear_session(session_id)
        logger.info("Session %s ended (%d channel(s))", session_id, len(keys))
        return cancelled

    def clear_channel(self, key: ChannelKey) -> None:
        """Discard one channel without flushing; pending calls are cancelled."""
        for task in self._tasks.pop(key, set()):
            task.cancel()
        self._buffers.clear(key)
        self._dispatcher.forget(key)

    async def aclose(self) -> None:
        sessions = {k.session_id for k in self._buffers.keys()} | {k.session_id for k in self._tasks}
        for session_id in sorted(sessions):
            await self.end_session(session_id)

    # --- introspection ---

    def stats(self, session_id: str | None = None) -> dict[str, Any]:
        channels = []
        for key in self._buffers.keys(session_id):
            state = self._buffers.state(key)
            if state is None:
                continue
            channels.append(
                {
                    "session_id": key.session_id,
                    "participant_id": key.participant_id,
                    "phase": state.vad_phase.value,
                    "buffered_ms": round(state.buffered_ms, 1),
                    "preroll_frames": len(state.preroll),
                    "utterances": state.next_sequence,
                    "in_flight": self._dispatcher.is_in_flight(key),
                }
            )
        return {
            "active_channels": len(channels),
            "in_flight": sum(1 for c in channels if c["in_flight"]),
            "pending_tasks": len(self.pending_tasks(session_id)),
            "channels": channels,
        }
