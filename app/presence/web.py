import logging
import shutil
import tempfile
from pathlib import Path
from typing import NoReturn, Optional

from fastapi import FastAPI, File, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .analysis import QualitativeAnalyzer
from .config import Settings, load_settings
from .constants import MAX_REQUEST_BYTES
from .errors import (
    AssessmentNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
    NotEntitledError,
    PresenceError,
    ResultNotReadyError,
    UpstreamError,
)
from .llm_client import HttpChatCompletionClient
from .models import (
    SCENARIO_MODE,
    AssessmentRecord,
    AssessmentResultResponse,
    AssessmentStatusResponse,
    CreateAssessmentResponse,
    SubmitAssessmentRequest,
    SubmitScenarioRequest,
    UsageResponse,
)
from .pipeline import AssessmentService
from .storage import build_assessment_store, build_usage_store
from .transcription import GoogleSpeechTranscriber, write_upload_to_disk
from .usage import CAPABILITIES, VIDEO_ANALYSIS, UsageGate, build_entitlement_provider


logger = logging.getLogger("uvicorn.error")


def build_service(settings: Settings) -> AssessmentService:
    analyzer = None
    if settings.llm is not None:
        analyzer = QualitativeAnalyzer(HttpChatCompletionClient(settings.llm))
    gate = UsageGate(
        build_entitlement_provider(settings.database_url, settings.default_plan),
        build_usage_store(settings.database_url),
    )
    transcriber = None
    if settings.speech_configured:
        transcriber = GoogleSpeechTranscriber(
            language_code=settings.language_code,
            timeout_seconds=settings.speech_timeout_seconds,
        )
    return AssessmentService(
        store=build_assessment_store(settings.database_url),
        gate=gate,
        analyzer=analyzer,
        transcriber=transcriber,
        run_inline=settings.run_inline,
    )


def _raise_http(exc: PresenceError) -> NoReturn:
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, NotEntitledError):
        raise HTTPException(
            status_code=402,
            detail={"message": str(exc), "capability": exc.capability, "reason": exc.reason},
        ) from exc
    if isinstance(exc, AssessmentNotFoundError):
        raise HTTPException(status_code=404, detail="Assessment not found.") from exc
    if isinstance(exc, (ResultNotReadyError, InvalidTransitionError)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, UpstreamError):
        logger.warning("request_rejected status_code=503 error=%s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


def _require_user(x_user_id: Optional[str]) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header.")
    return user_id


def _to_result_response(record: AssessmentRecord) -> AssessmentResultResponse:
    return AssessmentResultResponse(
        assessment_id=record.assessment_id,
        user_id=record.user_id,
        mode=record.mode,
        status=record.status.value,
        overall_score=record.overall_score,
        communication=record.communication,
        appearance=record.appearance,
        storytelling=record.storytelling,
        scenario=record.scenario,
        narrative=record.narrative,
        lexical_metrics=record.lexical_metrics,
        pause_metrics=record.pause_metrics,
        scoring_version=record.scoring_version,
        transcript=record.transcript,
        duration_seconds=record.duration_seconds,
        created_at=record.created_at,
        completed_at=record.completed_at,
    )


def create_app(
    service: Optional[AssessmentService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or load_settings()
    service = service or build_service(settings)

    app = FastAPI(title="Executive Presence Scoring Backend")
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.frontend_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def enforce_upload_size(request, call_next):
        if request.method == "POST" and request.url.path.startswith("/api/"):
            content_length = request.headers.get("content-length")
            if content_length:
                try:
                    if int(content_length) > MAX_REQUEST_BYTES:
                        return JSONResponse(
                            status_code=413,
                            content={"detail": f"Request too large. Max size is {MAX_REQUEST_BYTES} bytes."},
                        )
                except ValueError:
                    pass
        return await call_next(request)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "analysis_configured": service.analysis_configured,
            "transcription_configured": service.transcription_configured,
        }

    @app.post("/api/assessments", response_model=CreateAssessmentResponse)
    def create_assessment(
        payload: SubmitAssessmentRequest,
        x_user_id: Optional[str] = Header(None),
    ) -> CreateAssessmentResponse:
        user_id = _require_user(x_user_id)
        try:
            assessment_id = service.submit(user_id, payload.transcript)
            status = service.get_status(assessment_id)
        except PresenceError as exc:
            _raise_http(exc)
        return CreateAssessmentResponse(assessment_id=assessment_id, status=status.status)

    @app.post("/api/scenarios", response_model=CreateAssessmentResponse)
    def create_scenario_assessment(
        payload: SubmitScenarioRequest,
        x_user_id: Optional[str] = Header(None),
    ) -> CreateAssessmentResponse:
        user_id = _require_user(x_user_id)
        try:
            assessment_id = service.submit(
                user_id,
                payload.transcript,
                mode=SCENARIO_MODE,
                scenario=payload.scenario,
            )
            status = service.get_status(assessment_id)
        except PresenceError as exc:
            _raise_http(exc)
        return CreateAssessmentResponse(assessment_id=assessment_id, status=status.status)

    @app.post("/api/assessments/upload", response_model=CreateAssessmentResponse)
    async def upload_assessment_media(
        media: Optional[UploadFile] = File(None),
        x_user_id: Optional[str] = Header(None),
    ) -> CreateAssessmentResponse:
        user_id = _require_user(x_user_id)
        if media is None:
            raise HTTPException(status_code=400, detail="Missing media file.")
        # Configuration and entitlement are checked before the upload is buffered to disk.
        if not service.transcription_configured:
            raise HTTPException(status_code=503, detail="Transcription is not configured.")
        try:
            service.require_entitlement(user_id, VIDEO_ANALYSIS)
        except PresenceError as exc:
            _raise_http(exc)

        work_dir = Path(tempfile.mkdtemp(prefix="assessment_"))
        suffix = Path(media.filename or "").suffix or ".webm"
        input_path = work_dir / f"input{suffix}"
        try:
            await write_upload_to_disk(media, input_path, field_name="media")
        except Exception:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

        try:
            assessment_id = service.submit_media(user_id, input_path, work_dir)
            status = service.get_status(assessment_id)
        except PresenceError as exc:
            shutil.rmtree(work_dir, ignore_errors=True)
            _raise_http(exc)
        return CreateAssessmentResponse(assessment_id=assessment_id, status=status.status)

    @app.get("/api/assessments/{assessment_id}", response_model=AssessmentStatusResponse)
    def get_assessment_status(
        assessment_id: str,
        x_user_id: Optional[str] = Header(None),
    ) -> AssessmentStatusResponse:
        user_id = _require_user(x_user_id)
        try:
            return service.get_status(assessment_id, user_id)
        except PresenceError as exc:
            _raise_http(exc)

    @app.get("/api/assessments/{assessment_id}/result", response_model=AssessmentResultResponse)
    def get_assessment_result(
        assessment_id: str,
        x_user_id: Optional[str] = Header(None),
    ) -> AssessmentResultResponse:
        user_id = _require_user(x_user_id)
        try:
            record = service.get_result(assessment_id, user_id)
        except PresenceError as exc:
            _raise_http(exc)
        return _to_result_response(record)

    @app.get("/api/usage", response_model=UsageResponse)
    def get_usage(
        capability: str = VIDEO_ANALYSIS,
        x_user_id: Optional[str] = Header(None),
    ) -> UsageResponse:
        user_id = _require_user(x_user_id)
        if capability not in CAPABILITIES:
            raise HTTPException(status_code=400, detail=f"Unknown capability: {capability}.")
        return UsageResponse(**service.usage_summary(user_id, capability))

    return app
