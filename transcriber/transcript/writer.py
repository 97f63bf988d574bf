"""
Transcript persistence: append-only, one file per session.

- {TRANSCRIPT_DIR}/{session_id}.txt, one line per segment:
  [HH:MM:SS] [role] name: text
- Lines are never rewritten; segments arrive in publish order and are appended in that order.
- A worker task drains a queue per session so file I/O never blocks the pipeline.
"""
from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

from transcriber.config import get_settings
from transcriber.transcript.models import TranscriptSegment

logger = logging.getLogger(__name__)


def format_segment_line(segment: TranscriptSegment) -> str:
    clock = segment.timestamp.strftime("%H:%M:%S")
    text = " ".join(segment.text.split())
    return f"[{clock}] [{segment.speaker_role.value}] {segment.speaker_name}: {text}"


class SessionTranscriptWriter:
    """
    Writer for one session file. start() opens the file and the worker;
    append() is non-blocking; close() flushes and closes.
    """

    def __init__(self, session_id: str, transcript_dir: Optional[str] = None) -> None:
        self._session_id = session_id
        self._transcript_dir = transcript_dir or get_settings().TRANSCRIPT_DIR
        self._path = os.path.join(self._transcript_dir, f"{session_id}.txt")
        self._file = None
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def path(self) -> str:
        return self._path

    async def _worker(self) -> None:
        """Drain queue: write each line and flush. None = close."""
        while True:
            line = await self._queue.get()
            if line is None:
                break
            if self._file is None:
                continue
            try:
                self._file.write(line + "\n")
                self._file.flush()
            except OSError as e:
                logger.warning("Transcript write failed for %s: %s", self._path, e)
        try:
            if self._file is not None:
                self._file.close()
        except OSError as e:
            logger.warning("Transcript close failed for %s: %s", self._path, e)
        finally:
            self._file = None

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        try:
            os.makedirs(self._transcript_dir, exist_ok=True)
            self._file = open(self._path, "a", encoding="utf-8")
        except OSError as e:
            logger.warning("Transcript file open failed for %s: %s", self._path, e)
        self._worker_task = asyncio.create_task(self._worker())

    def append(self, segment: TranscriptSegment) -> None:
        if not segment.text.strip():
            return
        self._queue.put_nowait(format_segment_line(segment))

    async def close(self) -> None:
        if not self._started or self._worker_task is None:
            return
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(self._worker_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Transcript writer for session %s did not drain in time", self._session_id)
        self._worker_task = None


class TranscriptStoreBase(ABC):
    """Persistence collaborator: receives every published segment."""

    @abstractmethod
    async def on_transcript(self, segment: TranscriptSegment) -> None:
        ...

    @abstractmethod
    async def close_session(self, session_id: str) -> None:
        ...

    async def aclose(self) -> None:
        pass


class NoOpTranscriptStore(TranscriptStoreBase):
    """When transcript saving is disabled. No file I/O."""

    async def on_transcript(self, segment: TranscriptSegment) -> None:
        pass

    async def close_session(self, session_id: str) -> None:
        pass


class TranscriptFileStore(TranscriptStoreBase):
    """Routes segments to one SessionTranscriptWriter per session, opened on first segment."""

    def __init__(self, transcript_dir: Optional[str] = None) -> None:
        self._transcript_dir = transcript_dir or get_settings().TRANSCRIPT_DIR
        self._writers: dict[str, SessionTranscriptWriter] = {}

    def path_for(self, session_id: str) -> str:
        return os.path.join(self._transcript_dir, f"{session_id}.txt")

    async def on_transcript(self, segment: TranscriptSegment) -> None:
        writer = self._writers.get(segment.session_id)
        if writer is None:
            writer = SessionTranscriptWriter(segment.session_id, self._transcript_dir)
            self._writers[segment.session_id] = writer
            await writer.start()
        writer.append(segment)

    async def close_session(self, session_id: str) -> None:
        writer = self._writers.pop(session_id, None)
        if writer is not None:
            await writer.close()

    async def aclose(self) -> None:
        for session_id in list(self._writers):
            await self.close_session(session_id)


def create_transcript_store(transcript_dir: Optional[str] = None) -> TranscriptStoreBase:
    """File store when TRANSCRIPT_SAVE_ENABLED is true; else no-op."""
    if not get_settings().TRANSCRIPT_SAVE_ENABLED:
        return NoOpTranscriptStore()
    return TranscriptFileStore(transcript_dir=transcript_dir)
