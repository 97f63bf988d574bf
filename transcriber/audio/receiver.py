"""
AudioReceiver: accepts raw PCM audio from a WebSocket and yields frames.

- Expects PCM 16-bit little-endian, mono unless told otherwise.
- Emits fixed-size frames (e.g. 20ms = 640 bytes at 16kHz) for VAD/buffering.
- Frame timestamps follow the media clock (origin + samples emitted), so they
  stay monotonic regardless of network jitter.
"""
from __future__ import annotations

import time

from transcriber.audio.frames import AudioFrame, MalformedAudio
from transcriber.config import get_settings


class AudioReceiver:
    """
    Buffers incoming binary WebSocket messages into fixed-size PCM frames.
    Any remainder is kept for the next message.
    """

    def __init__(
        self,
        sample_rate: int | None = None,
        channel_count: int = 1,
        frame_ms: int | None = None,
        origin: float | None = None,
    ) -> None:
        settings = get_settings()
        self._sample_rate = sample_rate or settings.SAMPLE_RATE
        self._channel_count = max(1, channel_count)
        self._frame_ms = frame_ms or settings.FRAME_MS
        # bytes per frame: samples/frame * channels * 2 bytes (int16)
        samples_per_frame = max(1, self._sample_rate * self._frame_ms // 1000)
        self._frame_bytes = samples_per_frame * self._channel_count * 2
        self._buffer = bytearray()
        self._origin = origin
        self._frames_emitted = 0

    def feed(self, data: bytes) -> None:
        """Append raw PCM bytes. Odd-length payloads cannot be int16 and are rejected."""
        if len(data) % 2 != 0:
            raise MalformedAudio(f"Invalid PCM payload size: {len(data)} bytes")
        if self._origin is None:
            self._origin = time.monotonic()
        self._buffer.extend(data)

    def drain_frames(self) -> list[AudioFrame]:
        """
        Drain all complete frames from the buffer.
        Returns list of full frames; remainder stays in buffer.
        """
        out: list[AudioFrame] = []
        origin = self._origin if self._origin is not None else time.monotonic()
        frame_sec = self._frame_ms / 1000.0
        while len(self._buffer) >= self._frame_bytes:
            chunk = bytes(self._buffer[: self._frame_bytes])
            del self._buffer[: self._frame_bytes]
            out.append(
                AudioFrame.from_input(
                    chunk,
                    sample_rate=self._sample_rate,
                    channel_count=self._channel_count,
                    captured_at=origin + self._frames_emitted * frame_sec,
                )
            )
            self._frames_emitted += 1
        return out

    def remaining_bytes(self) -> int:
        """Bytes left in buffer (incomplete frame)."""
        return len(self._buffer)

    @property
    def frame_bytes(self) -> int:
        return self._frame_bytes

    @property
    def sample_rate(self) -> int:
        return self._sample_rate
