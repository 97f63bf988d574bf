"""
FastAPI app: real-time consultation transcription.

WebSocket /ws/transcribe?session=<id>&participant=<id>[&sample_rate=16000][&channels=1]
  Client sends binary PCM 16-bit little-endian. Server pushes JSON:
  { "type": "transcription_result", "data": { id, session_id, participant_id,
    speaker_role, speaker_name, text, confidence, language, timestamp, ... } }
  The session ends (final flush, bounded wait) when its last socket disconnects.

HTTP API: participant registration, transcript read, explicit session end, stats.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, status

from transcriber.config import Settings, get_settings
from transcriber.notifier import TranscriptNotifier
from transcriber.pipeline import TranscriptionPipeline
from transcriber.schemas.sessions import (
    ChannelStats,
    ParticipantRegistration,
    ParticipantResponse,
    SessionEndResponse,
    SessionStatsResponse,
    TranscriptResponse,
    TranscriptSegmentOut,
)
from transcriber.session_store import SessionStore
from transcriber.stt.azure_whisper import AzureWhisperProvider
from transcriber.stt.base import STTProvider
from transcriber.stt.dispatcher import TranscriptionDispatcher
from transcriber.stt.local_whisper import LocalWhisperProvider, load_whisper_model
from transcriber.stt.usage import LoggingUsageRecorder, UsageRecorder
from transcriber.transcript.emitter import TranscriptEmitter
from transcriber.transcript.writer import create_transcript_store
from transcriber.websocket_manager import ParticipantStream

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_provider(settings: Settings) -> STTProvider:
    """Provider from STT_BACKEND. Local model is loaded once here."""
    if settings.STT_BACKEND == "local":
        return LocalWhisperProvider(model=load_whisper_model())
    return AzureWhisperProvider()


async def end_session(app: FastAPI, session_id: str) -> SessionEndResponse:
    state = app.state
    cancelled = await state.pipeline.end_session(session_id)
    await state.transcripts.close_session(session_id)
    record = state.sessions.mark_ended(session_id)
    return SessionEndResponse(
        session_id=session_id,
        segments=len(record.segments) if record else 0,
        cancelled_tasks=cancelled,
    )


def create_app(
    provider: STTProvider | None = None,
    usage_recorder: UsageRecorder | None = None,
) -> FastAPI:
    """Build the app. Services are constructed in the lifespan and kept on app.state."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(settings)
        stt = provider or build_provider(settings)
        emitter = TranscriptEmitter()
        notifier = TranscriptNotifier()
        sessions = SessionStore()
        transcripts = create_transcript_store()
        # Persist before notifying so a client that saw a segment can read it back.
        emitter.subscribe(sessions)
        emitter.subscribe(transcripts)
        emitter.subscribe(notifier)
        dispatcher = TranscriptionDispatcher(stt, usage_recorder=usage_recorder or LoggingUsageRecorder())

        app.state.provider = stt
        app.state.notifier = notifier
        app.state.sessions = sessions
        app.state.transcripts = transcripts
        app.state.pipeline = TranscriptionPipeline(dispatcher, emitter=emitter)
        logger.info("Transcription service started (backend=%s, model=%s)", settings.STT_BACKEND, stt.model_name)
        try:
            yield
        finally:
            await app.state.pipeline.aclose()
            await transcripts.aclose()
            await stt.aclose()
            logger.info("Transcription service stopped")

    app = FastAPI(
        title="Consultation Transcriber",
        description="Per-participant VAD, phrase assembly and Whisper transcription over WebSocket",
        lifespan=lifespan,
    )

    @app.websocket("/ws/transcribe")
    async def websocket_transcribe(
        websocket: WebSocket,
        session: str = Query(...),
        participant: str = Query(...),
        sample_rate: int | None = Query(None),
        channels: int = Query(1),
    ) -> None:
        if not session.strip() or not participant.strip() or (sample_rate is not None and sample_rate <= 0) or channels < 1:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await websocket.accept()
        state = websocket.app.state
        state.sessions.ensure(session)
        state.notifier.connect(session, websocket)
        stream = ParticipantStream(
            websocket,
            state.pipeline,
            session_id=session,
            participant_id=participant,
            sample_rate=sample_rate,
            channel_count=channels,
        )
        try:
            await stream.run()
        finally:
            if state.notifier.disconnect(session, websocket) == 0:
                await end_session(websocket.app, session)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/sessions/{session_id}/participants", response_model=ParticipantResponse)
    async def register_participant(session_id: str, body: ParticipantRegistration, request: Request) -> ParticipantResponse:
        if not body.participant_id.strip():
            raise HTTPException(status_code=400, detail="participant_id is required")
        identity = request.app.state.pipeline.resolver.register(session_id, body.participant_id, body.name, body.role)
        request.app.state.sessions.ensure(session_id)
        return ParticipantResponse(
            session_id=session_id,
            participant_id=identity.participant_id,
            display_name=identity.display_name,
            role=identity.role,
            registered=identity.registered,
        )

    @app.get("/api/sessions/{session_id}/transcript", response_model=TranscriptResponse)
    async def get_transcript(session_id: str, request: Request) -> TranscriptResponse:
        record = request.app.state.sessions.get(session_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return TranscriptResponse(
            session_id=session_id,
            ended=record.ended,
            segments=[TranscriptSegmentOut(**s.to_dict()) for s in record.segments],
            text=record.transcript_text(),
        )

    @app.post("/api/sessions/{session_id}/end", response_model=SessionEndResponse)
    async def end_session_endpoint(session_id: str, request: Request) -> SessionEndResponse:
        if request.app.state.sessions.get(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return await end_session(request.app, session_id)

    @app.get("/api/sessions/{session_id}/stats", response_model=SessionStatsResponse)
    async def session_stats(session_id: str, request: Request) -> SessionStatsResponse:
        state = request.app.state
        if state.sessions.get(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        stats = state.pipeline.stats(session_id)
        return SessionStatsResponse(
            session_id=session_id,
            active_channels=stats["active_channels"],
            in_flight=stats["in_flight"],
            pending_tasks=stats["pending_tasks"],
            connections=state.notifier.connection_count(session_id),
            channels=[ChannelStats(**c) for c in stats["channels"]],
        )

    return app


app = create_app()
