"""
ParticipantStream: one WebSocket = one participant channel of a session.

Client sends binary PCM 16-bit little-endian (mono unless `channels` says
otherwise) at the declared sample rate. Payloads may have any size; the
receiver slices them into FRAME_MS frames that go straight into the pipeline.
Text messages are control messages: {"type": "ping"} is answered with
{"type": "pong"} once every earlier payload has been ingested; anything else
is ignored. Transcript results come back on the same socket through the notifier.
"""
from __future__ import annotations

import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from transcriber.audio.frames import ChannelKey, MalformedAudio
from transcriber.audio.receiver import AudioReceiver
from transcriber.pipeline import TranscriptionPipeline

logger = logging.getLogger(__name__)


class ParticipantStream:
    def __init__(
        self,
        websocket: WebSocket,
        pipeline: TranscriptionPipeline,
        session_id: str,
        participant_id: str,
        sample_rate: int | None = None,
        channel_count: int = 1,
    ) -> None:
        self._ws = websocket
        self._pipeline = pipeline
        self._key = ChannelKey(session_id, participant_id)
        self._receiver = AudioReceiver(sample_rate=sample_rate, channel_count=channel_count)
        self._frames = 0

    @property
    def key(self) -> ChannelKey:
        return self._key

    @property
    def frames_ingested(self) -> int:
        return self._frames

    def feed(self, data: bytes) -> int:
        """Slice one payload into frames and push them. Returns the number of frames pushed."""
        try:
            self._receiver.feed(data)
        except MalformedAudio as e:
            logger.warning("Dropping payload on %s: %s", self._key, e)
            return 0
        frames = self._receiver.drain_frames()
        for frame in frames:
            self._pipeline.push_frame(self._key, frame)
        self._frames += len(frames)
        return len(frames)

    async def _on_control(self, text: str) -> None:
        try:
            message = json.loads(text)
        except ValueError:
            logger.debug("Ignoring non-JSON text message on %s", self._key)
            return
        if isinstance(message, dict) and message.get("type") == "ping":
            await self._ws.send_text(json.dumps({"type": "pong", "frames": self._frames}))

    async def run(self) -> None:
        """Receive loop; returns when the client disconnects."""
        await self._ws.send_text(
            json.dumps(
                {
                    "type": "session",
                    "session_id": self._key.session_id,
                    "participant_id": self._key.participant_id,
                    "sample_rate": self._receiver.sample_rate,
                }
            )
        )
        logger.info("Participant %s connected", self._key)
        try:
            while True:
                msg = await self._ws.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
                data = msg.get("bytes")
                if data is not None:
                    self.feed(data)
                elif msg.get("text"):
                    await self._on_control(msg["text"])
        except WebSocketDisconnect:
            pass
        logger.info("Participant %s disconnected after %d frames", self._key, self._frames)
