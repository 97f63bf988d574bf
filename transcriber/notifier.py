"""
TranscriptNotifier: real-time fan-out of segments to the session's WebSockets.

Message: {"type": "transcription_result", "data": <segment>}
A socket that fails to send is treated as closed and pruned.
"""
from __future__ import annotations

import json
import logging

from fastapi import WebSocket

from transcriber.transcript.models import TranscriptSegment

logger = logging.getLogger(__name__)


def segment_message(segment: TranscriptSegment) -> str:
    return json.dumps({"type": "transcription_result", "data": segment.to_dict()}, ensure_ascii=False)


class TranscriptNotifier:
    """Transcript subscriber; sockets register per session."""

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = {}

    def connect(self, session_id: str, websocket: WebSocket) -> None:
        sockets = self._connections.setdefault(session_id, [])
        if websocket not in sockets:
            sockets.append(websocket)

    def disconnect(self, session_id: str, websocket: WebSocket) -> int:
        """Remove a socket; returns how many remain for the session."""
        sockets = self._connections.get(session_id)
        if not sockets:
            return 0
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self._connections.pop(session_id, None)
            return 0
        return len(sockets)

    def connection_count(self, session_id: str) -> int:
        return len(self._connections.get(session_id, ()))

    async def on_transcript(self, segment: TranscriptSegment) -> None:
        sockets = list(self._connections.get(segment.session_id, ()))
        if not sockets:
            return
        message = segment_message(segment)
        for websocket in sockets:
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.info("Pruning closed socket for session %s: %s", segment.session_id, e)
                self.disconnect(segment.session_id, websocket)
