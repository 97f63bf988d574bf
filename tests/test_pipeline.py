"""
tests/test_pipeline.py
=======================
TranscriptionPipeline end to end (frames in, segments out) with a scripted
provider: utterance boundaries, per-channel serialization with carry-over,
hallucination filtering and session teardown.
"""

import asyncio
import os
import sys
import unittest
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from transcriber.audio.assembler import PhraseAssembler
from transcriber.audio.buffer import ChannelBufferManager
from transcriber.audio.frames import ChannelKey
from transcriber.audio.wav import read_wav_info
from transcriber.pipeline import TranscriptionPipeline
from transcriber.speakers.models import SpeakerRole
from transcriber.speakers.resolver import SpeakerResolver
from transcriber.stt.base import ProviderResult
from transcriber.stt.dispatcher import TranscriptionDispatcher
from transcriber.transcript.emitter import TranscriptEmitter
from transcriber.transcript.filter import HallucinationFilter
from tests.fixtures import CollectingSubscriber, FrameClock, RecordingSleep, ScriptedProvider

SESSION = "consulta-1"
DOCTOR = ChannelKey(SESSION, "doctor-1")
PATIENT = ChannelKey(SESSION, "patient-1")


def _build(provider, cooldown_window_ms=0, shutdown_timeout_s=5.0, clock=None):
    dispatcher_kwargs = dict(
        max_retries=3,
        retry_base_delay_ms=2000,
        cooldown_window_ms=cooldown_window_ms,
        language="pt",
        usage_recorder=AsyncMock(),
        sleep=RecordingSleep(),
    )
    if clock is not None:
        dispatcher_kwargs["clock"] = clock
    emitter = TranscriptEmitter()
    sink = CollectingSubscriber()
    emitter.subscribe(sink)
    pipeline = TranscriptionPipeline(
        TranscriptionDispatcher(provider, **dispatcher_kwargs),
        buffers=ChannelBufferManager(
            preroll_capacity_frames=15,
            buffer_ceiling_ms=30000,
            max_phrase_duration_ms=15000,
            energy_threshold=0.01,
            silence_duration_ms=800,
            min_speech_duration_ms=200,
            speech_confirm_ms=100,
        ),
        assembler=PhraseAssembler(
            min_phrase_duration_ms=800,
            max_phrase_duration_ms=15000,
            target_peak=0.85,
            silence_floor=0.001,
            max_upload_bytes=25 * 1024 * 1024,
        ),
        hallucination_filter=HallucinationFilter(),
        resolver=SpeakerResolver(fallback_role="patient"),
        emitter=emitter,
        shutdown_timeout_s=shutdown_timeout_s,
        max_frame_samples=500_000,
    )
    return pipeline, sink


def _feed(pipeline, key, frames):
    for frame in frames:
        pipeline.ingest(key.session_id, key.participant_id, frame.samples, frame.sample_rate, timestamp=frame.captured_at)


# ===================================================================
# End to end
# ===================================================================

class TestEndToEnd(unittest.IsolatedAsyncioTestCase):

    async def test_one_phrase_one_request(self):
        provider = ScriptedProvider([ProviderResult(text="Bom dia, estou com febre.", language="pt")])
        pipeline, sink = _build(provider)
        pipeline.resolver.register(SESSION, "patient-1", "Maria", SpeakerRole.PATIENT)

        _feed(pipeline, PATIENT, FrameClock().speech(1.5, 1.5))
        self.assertTrue(await pipeline.wait_until_idle(timeout=5))

        self.assertEqual(len(provider.calls), 1)
        wav, language = provider.calls[0]
        self.assertEqual(language, "pt")
        self.assertAlmostEqual(read_wav_info(wav).duration_ms, 1500.0, delta=1.0)

        self.assertEqual(len(sink.segments), 1)
        segment = sink.segments[0]
        self.assertAlmostEqual(segment.duration_ms, 1500.0, delta=1.0)
        self.assertEqual(segment.text, "Bom dia, estou com febre.")
        self.assertEqual(segment.speaker_role, SpeakerRole.PATIENT)
        self.assertEqual(segment.speaker_name, "Maria")
        self.assertEqual(segment.sequence, 0)

    async def test_silence_only_issues_no_request(self):
        provider = ScriptedProvider()
        pipeline, sink = _build(provider)
        _feed(pipeline, PATIENT, FrameClock().frames("silence", 3.0))
        await pipeline.wait_until_idle(timeout=5)
        self.assertEqual(provider.calls, [])
        self.assertEqual(sink.segments, [])

    async def test_noise_burst_issues_no_request(self):
        provider = ScriptedProvider()
        pipeline, sink = _build(provider)
        _feed(pipeline, PATIENT, FrameClock().speech(0.16, 1.5))
        await pipeline.wait_until_idle(timeout=5)
        self.assertEqual(provider.calls, [])

    async def test_blocklisted_text_not_emitted(self):
        provider = ScriptedProvider([ProviderResult(text="Obrigado por assistir!")])
        pipeline, sink = _build(provider)
        _feed(pipeline, PATIENT, FrameClock().speech(1.5, 1.5))
        await pipeline.wait_until_idle(timeout=5)
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(sink.segments, [])

    async def test_short_affirmative_emitted(self):
        provider = ScriptedProvider([ProviderResult(text="Sim")])
        pipeline, sink = _build(provider)
        _feed(pipeline, DOCTOR, FrameClock().speech(1.5, 1.5))
        await pipeline.wait_until_idle(timeout=5)
        self.assertEqual([s.text for s in sink.segments], ["Sim"])
        # unregistered participant resolved by the name heuristic
        self.assertEqual(sink.segments[0].speaker_role, SpeakerRole.DOCTOR)

    async def test_long_monologue_is_split_without_losing_audio(self):
        provider = ScriptedProvider()
        pipeline, sink = _build(provider)
        _feed(pipeline, DOCTOR, FrameClock().speech(25.0, 1.5))
        await pipeline.wait_until_idle(timeout=5)
        await pipeline.end_session(SESSION)

        durations = [read_wav_info(wav).duration_ms for wav, _ in provider.calls]
        self.assertEqual(len(durations), 2)
        self.assertTrue(all(d <= 15000.0 + 1.0 for d in durations))
        self.assertAlmostEqual(sum(durations), 25000.0, delta=1.0)
        self.assertEqual(len(sink.segments), 2)

    async def test_channels_transcribe_independently(self):
        gate = asyncio.Event()
        provider = ScriptedProvider(gate=gate)
        pipeline, sink = _build(provider)
        _feed(pipeline, DOCTOR, FrameClock().speech(1.5, 1.5))
        _feed(pipeline, PATIENT, FrameClock().speech(1.5, 1.5))
        await asyncio.sleep(0)
        self.assertEqual(provider.active, 2)
        gate.set()
        await pipeline.wait_until_idle(timeout=5)
        self.assertEqual({s.participant_id for s in sink.segments}, {"doctor-1", "patient-1"})

    async def test_malformed_frames_are_dropped(self):
        pipeline, _ = _build(ScriptedProvider())
        with self.assertLogs("transcriber.pipeline", level="WARNING"):
            self.assertIsNone(pipeline.ingest(SESSION, "patient-1", b"\x00\x01\x02", 16000))
            self.assertIsNone(pipeline.ingest(SESSION, "patient-1", b"", 16000))
        self.assertIsNotNone(pipeline.ingest(SESSION, "patient-1", b"\x00\x00" * 320, 16000, timestamp=0.0))
        with self.assertLogs("transcriber.pipeline", level="WARNING"):
            self.assertIsNone(pipeline.ingest(SESSION, "patient-1", b"\x00\x00" * 160, 8000, timestamp=0.02))


# ===================================================================
# Per-channel serialization
# ===================================================================

class TestSerialization(unittest.IsolatedAsyncioTestCase):

    async def test_refused_flush_is_carried_into_next_utterance(self):
        gate = asyncio.Event()
        provider = ScriptedProvider(gate=gate)
        pipeline, sink = _build(provider)
        clock = FrameClock()

        _feed(pipeline, PATIENT, clock.speech(1.0, 1.5))
        await asyncio.sleep(0)
        self.assertEqual(len(provider.calls), 1)

        # second phrase ends while the first call is still in flight
        _feed(pipeline, PATIENT, clock.speech(1.0, 1.5))
        await asyncio.sleep(0)
        self.assertEqual(len(provider.calls), 1)
        self.assertGreater(pipeline.buffers.state(PATIENT).buffered_ms, 1000.0)

        gate.set()
        await pipeline.wait_until_idle(timeout=5)

        _feed(pipeline, PATIENT, clock.speech(1.0, 1.5))
        await pipeline.wait_until_idle(timeout=5)

        self.assertEqual(len(provider.calls), 2)
        self.assertEqual(provider.max_active, 1)
        first = read_wav_info(provider.calls[0][0]).duration_ms
        second = read_wav_info(provider.calls[1][0]).duration_ms
        self.assertAlmostEqual(first, 1000.0, delta=1.0)
        # carried phrase (pre-roll + 1s) followed by the new one (pre-roll + 1s)
        self.assertAlmostEqual(second, 2400.0, delta=50.0)
        self.assertEqual(len(sink.segments), 2)

    async def test_cooldown_refusal_also_carries_over(self):
        now = [0.0]
        provider = ScriptedProvider()
        pipeline, _ = _build(provider, cooldown_window_ms=60000, clock=lambda: now[0])
        clock = FrameClock()
        _feed(pipeline, PATIENT, clock.speech(1.0, 1.5))
        await pipeline.wait_until_idle(timeout=5)
        _feed(pipeline, PATIENT, clock.speech(1.0, 1.5))
        await pipeline.wait_until_idle(timeout=5)
        self.assertEqual(len(provider.calls), 1)
        self.assertGreater(pipeline.buffers.state(PATIENT).buffered_ms, 1000.0)


# ===================================================================
# Session lifecycle
# ===================================================================

class TestSessionLifecycle(unittest.IsolatedAsyncioTestCase):

    async def test_end_session_flushes_active_speech(self):
        provider = ScriptedProvider([ProviderResult(text="Até a próxima consulta.")])
        now = [0.0]
        pipeline, sink = _build(provider, cooldown_window_ms=60000, clock=lambda: now[0])
        clock = FrameClock()
        _feed(pipeline, DOCTOR, clock.speech(1.0, 1.5))
        await pipeline.wait_until_idle(timeout=5)
        # speaking when the session ends, inside the cooldown window
        _feed(pipeline, DOCTOR, clock.frames("voice", 1.2))

        cancelled = await pipeline.end_session(SESSION)

        self.assertEqual(cancelled, 0)
        self.assertEqual(len(provider.calls), 2)
        self.assertEqual(len(sink.segments), 2)
        self.assertEqual(pipeline.buffers.keys(SESSION), [])
        self.assertIsNone(pipeline.dispatcher.lock_state(DOCTOR))
        self.assertEqual(pipeline.stats(SESSION)["active_channels"], 0)

    async def test_end_session_waits_for_in_flight_before_final_flush(self):
        gate = asyncio.Event()
        provider = ScriptedProvider(gate=gate)
        pipeline, sink = _build(provider)
        clock = FrameClock()
        _feed(pipeline, DOCTOR, clock.speech(1.0, 1.5))
        _feed(pipeline, DOCTOR, clock.frames("voice", 1.2))
        await asyncio.sleep(0)

        ending = asyncio.create_task(pipeline.end_session(SESSION))
        await asyncio.sleep(0.01)
        self.assertFalse(ending.done())
        gate.set()
        self.assertEqual(await ending, 0)
        self.assertEqual(len(provider.calls), 2)
        self.assertEqual(provider.max_active, 1)
        self.assertEqual(len(sink.segments), 2)

    async def test_end_session_is_bounded(self):
        provider = ScriptedProvider(gate=asyncio.Event())  # never released
        pipeline, sink = _build(provider, shutdown_timeout_s=0.05)
        _feed(pipeline, DOCTOR, FrameClock().speech(1.0, 1.5))
        await asyncio.sleep(0)

        with self.assertLogs("transcriber.pipeline", level="WARNING"):
            cancelled = await pipeline.end_session(SESSION)

        self.assertEqual(cancelled, 1)
        self.assertEqual(pipeline.pending_tasks(SESSION), [])
        self.assertIsNone(pipeline.dispatcher.lock_state(DOCTOR))
        self.assertEqual(sink.segments, [])

    async def test_end_session_leaves_other_sessions_alone(self):
        provider = ScriptedProvider()
        pipeline, _ = _build(provider)
        other = ChannelKey("consulta-2", "doctor-9")
        _feed(pipeline, DOCTOR, FrameClock().frames("voice", 0.5))
        _feed(pipeline, other, FrameClock().frames("voice", 0.5))
        await pipeline.end_session(SESSION)
        self.assertEqual(pipeline.buffers.keys(), [other])

    async def test_clear_channel_discards_without_flush(self):
        provider = ScriptedProvider()
        pipeline, _ = _build(provider)
        _feed(pipeline, PATIENT, FrameClock().frames("voice", 1.5))
        pipeline.clear_channel(PATIENT)
        await pipeline.end_session(SESSION)
        self.assertEqual(provider.calls, [])

    async def test_clear_channel_during_call_leaves_no_lock(self):
        provider = ScriptedProvider(gate=asyncio.Event())
        pipeline, _ = _build(provider)
        _feed(pipeline, PATIENT, FrameClock().speech(1.0, 1.5))
        await asyncio.sleep(0)
        self.assertTrue(pipeline.dispatcher.is_in_flight(PATIENT))

        pipeline.clear_channel(PATIENT)
        for _ in range(3):
            await asyncio.sleep(0)

        self.assertIsNone(pipeline.dispatcher.lock_state(PATIENT))
        self.assertEqual(pipeline.pending_tasks(), [])
        self.assertEqual(provider.active, 0)

    async def test_stats(self):
        gate = asyncio.Event()
        provider = ScriptedProvider(gate=gate)
        pipeline, _ = _build(provider)
        _feed(pipeline, DOCTOR, FrameClock().speech(1.0, 1.5))
        _feed(pipeline, PATIENT, FrameClock().frames("voice", 0.5))
        await asyncio.sleep(0)

        stats = pipeline.stats(SESSION)
        self.assertEqual(stats["active_channels"], 2)
        self.assertEqual(stats["in_flight"], 1)
        self.assertEqual(stats["pending_tasks"], 1)
        by_participant = {c["participant_id"]: c for c in stats["channels"]}
        self.assertEqual(by_participant["patient-1"]["phase"], "speaking")
        self.assertTrue(by_participant["doctor-1"]["in_flight"])
        self.assertEqual(by_participant["doctor-1"]["utterances"], 1)

        gate.set()
        await pipeline.aclose()
        self.assertEqual(pipeline.stats()["active_channels"], 0)


if __name__ == "__main__":
    unittest.main()
