"""
tests/test_audio.py
====================
Frame primitives, PCM receiver, phrase assembly and WAV encoding.
"""

import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from transcriber.audio.assembler import PhraseAssembler, normalize_peak
from transcriber.audio.buffer import FlushReason, PhraseReady
from transcriber.audio.frames import (
    AudioFrame,
    ChannelKey,
    MalformedAudio,
    float32_to_pcm_bytes,
    pcm_bytes_to_float32,
    rms,
)
from transcriber.audio.receiver import AudioReceiver
from transcriber.audio.wav import read_wav_info
from tests.fixtures import FrameClock, tone

KEY = ChannelKey("sess-1", "patient-1")


def _phrase(frames, sequence=0):
    return PhraseReady(key=KEY, sequence=sequence, frames=tuple(frames), reason=FlushReason.SPEECH_END)


def _assembler(**overrides):
    params = dict(
        min_phrase_duration_ms=800,
        max_phrase_duration_ms=15000,
        target_peak=0.85,
        silence_floor=0.001,
        max_upload_bytes=25 * 1024 * 1024,
    )
    params.update(overrides)
    return PhraseAssembler(**params)


# ===================================================================
# Frames
# ===================================================================

class TestFrames(unittest.TestCase):

    def test_pcm_conversion_scale(self):
        audio = pcm_bytes_to_float32(np.array([0, 16384, -32768], dtype="<i2").tobytes())
        np.testing.assert_allclose(audio, [0.0, 0.5, -1.0])

    def test_float_to_pcm_clips(self):
        pcm = np.frombuffer(float32_to_pcm_bytes(np.array([2.0, -2.0, 0.0], dtype=np.float32)), dtype="<i2")
        self.assertEqual(list(pcm), [32767, -32767, 0])

    def test_rms_of_empty_is_zero(self):
        self.assertEqual(rms(np.array([], dtype=np.float32)), 0.0)

    def test_from_input_downmixes_stereo(self):
        stereo = np.array([0.2, 0.4, -0.2, -0.4], dtype=np.float32)
        frame = AudioFrame.from_input(stereo, sample_rate=16000, channel_count=2, captured_at=1.0)
        np.testing.assert_allclose(frame.samples, [0.3, -0.3], rtol=1e-6)
        self.assertEqual(frame.channel_count, 1)
        self.assertEqual(frame.captured_at, 1.0)

    def test_from_input_accepts_pcm_bytes(self):
        frame = AudioFrame.from_input(float32_to_pcm_bytes(tone(320)), sample_rate=16000)
        self.assertEqual(len(frame.samples), 320)
        self.assertAlmostEqual(frame.duration_ms, 20.0)

    def test_from_input_rejects_bad_payloads(self):
        with self.assertRaises(MalformedAudio):
            AudioFrame.from_input(b"", sample_rate=16000)
        with self.assertRaises(MalformedAudio):
            AudioFrame.from_input(b"\x00\x01\x02", sample_rate=16000)
        with self.assertRaises(MalformedAudio):
            AudioFrame.from_input(np.zeros(1000, dtype=np.float32), sample_rate=16000, max_samples=500)
        with self.assertRaises(MalformedAudio):
            AudioFrame.from_input(np.zeros(10, dtype=np.float32), sample_rate=0)

    def test_frame_samples_are_read_only(self):
        frame = AudioFrame.from_input(np.zeros(10, dtype=np.float32), sample_rate=16000)
        with self.assertRaises(ValueError):
            frame.samples[0] = 1.0

    def test_channel_key_str(self):
        self.assertEqual(str(KEY), "sess-1/patient-1")


# ===================================================================
# Receiver
# ===================================================================

class TestAudioReceiver(unittest.TestCase):

    def test_slices_frames_and_keeps_remainder(self):
        receiver = AudioReceiver(sample_rate=16000, frame_ms=20, origin=10.0)
        self.assertEqual(receiver.frame_bytes, 640)
        receiver.feed(b"\x00\x00" * 500)  # 1000 bytes
        frames = receiver.drain_frames()
        self.assertEqual(len(frames), 1)
        self.assertEqual(receiver.remaining_bytes(), 360)
        receiver.feed(b"\x00\x00" * 460)  # 920 bytes -> 1280 buffered
        frames += receiver.drain_frames()
        self.assertEqual(len(frames), 3)
        self.assertEqual(receiver.remaining_bytes(), 0)
        np.testing.assert_allclose([f.captured_at for f in frames], [10.0, 10.02, 10.04])

    def test_odd_payload_rejected(self):
        receiver = AudioReceiver(sample_rate=16000, frame_ms=20)
        with self.assertRaises(MalformedAudio):
            receiver.feed(b"\x00" * 641)
        self.assertEqual(receiver.remaining_bytes(), 0)

    def test_stereo_frames_are_downmixed(self):
        receiver = AudioReceiver(sample_rate=16000, channel_count=2, frame_ms=20, origin=0.0)
        self.assertEqual(receiver.frame_bytes, 1280)
        receiver.feed(b"\x00\x00" * 640)
        frames = receiver.drain_frames()
        self.assertEqual(len(frames), 1)
        self.assertEqual(len(frames[0].samples), 320)


# ===================================================================
# Assembler
# ===================================================================

class TestPhraseAssembler(unittest.TestCase):

    def test_assembles_normalized_wav(self):
        frames = FrameClock().frames("voice", 1.5)
        utterance = _assembler().assemble(_phrase(frames, sequence=3))
        self.assertIsNotNone(utterance)
        self.assertEqual(utterance.sequence, 3)
        self.assertEqual(utterance.key, KEY)
        self.assertAlmostEqual(utterance.duration_ms, 1500.0)
        self.assertFalse(utterance.truncated)

        info = read_wav_info(utterance.encoded_audio)
        self.assertEqual(info.sample_rate, 16000)
        self.assertEqual(info.channels, 1)
        self.assertEqual(info.sample_width, 2)
        self.assertAlmostEqual(info.duration_ms, 1500.0)

        pcm = np.frombuffer(utterance.encoded_audio[44:], dtype="<i2").astype(np.float32) / 32767.0
        self.assertAlmostEqual(float(np.max(np.abs(pcm))), 0.85, delta=0.001)

    def test_rejects_short_phrase(self):
        frames = FrameClock().frames("voice", 0.5)
        with self.assertLogs("transcriber.audio.assembler", level="INFO"):
            self.assertIsNone(_assembler().assemble(_phrase(frames)))

    def test_rejects_all_zero_phrase(self):
        frames = FrameClock().frames("silence", 2.0)
        with self.assertLogs("transcriber.audio.assembler", level="WARNING"):
            self.assertIsNone(_assembler().assemble(_phrase(frames)))

    def test_rejects_empty_phrase(self):
        self.assertIsNone(_assembler().assemble(_phrase([])))

    def test_truncates_long_phrase(self):
        frames = FrameClock().frames("voice", 3.0)
        with self.assertLogs("transcriber.audio.assembler", level="WARNING"):
            utterance = _assembler(max_phrase_duration_ms=2000).assemble(_phrase(frames))
        self.assertTrue(utterance.truncated)
        self.assertAlmostEqual(utterance.duration_ms, 2000.0)
        self.assertAlmostEqual(read_wav_info(utterance.encoded_audio).duration_ms, 2000.0)

    def test_upload_limit(self):
        frames = FrameClock().frames("voice", 1.0)
        with self.assertLogs("transcriber.audio.assembler", level="WARNING"):
            self.assertIsNone(_assembler(max_upload_bytes=1000).assemble(_phrase(frames)))

    def test_normalize_leaves_near_silence_untouched(self):
        quiet = np.full(100, 0.0005, dtype=np.float32)
        np.testing.assert_array_equal(normalize_peak(quiet, 0.85, 0.001), quiet)
        loud = np.array([0.1, -0.5, 0.25], dtype=np.float32)
        np.testing.assert_allclose(normalize_peak(loud, 0.85, 0.001), [0.17, -0.85, 0.425], rtol=1e-5)


if __name__ == "__main__":
    unittest.main()
