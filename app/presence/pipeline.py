import logging
import math
import shutil
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .analysis import QualitativeAnalyzer
from .constants import POLL_INTERVAL_SECONDS
from .errors import (
    AssessmentNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
    PresenceError,
    ResultNotReadyError,
    UpstreamError,
    truncate_message,
)
from .lifecycle import STATUS_PROGRESS, AssessmentStatus, StatusBroadcaster, is_terminal
from .metrics import (
    DEFAULT_LEXICON,
    Lexicon,
    compute_lexical_metrics,
    compute_pause_metrics,
    count_word_tokens,
    validate_word_timings,
)
from .models import (
    FULL_MODE,
    SCENARIO_MODE,
    AssessmentRecord,
    AssessmentStatusResponse,
    Narrative,
    Scenario,
    TranscriptSource,
    utc_now,
)
from .scoring import SCORING_SCHEMA_VERSION, aggregate_overall, scenario_result
from .storage import AssessmentStore
from .transcription import Transcriber
from .usage import SIMULATOR_SCENARIO, VIDEO_ANALYSIS, UsageGate


logger = logging.getLogger("uvicorn.error")

CAPABILITY_BY_MODE = {
    FULL_MODE: VIDEO_ANALYSIS,
    SCENARIO_MODE: SIMULATOR_SCENARIO,
}


def validate_transcript_source(source: TranscriptSource) -> None:
    """Reject input that could never produce a report, before a record exists."""
    if count_word_tokens(source.text) == 0:
        raise InvalidInputError("Transcript is empty.")
    if not math.isfinite(source.duration_seconds):
        raise InvalidInputError("duration_seconds must be a finite number.")
    if source.duration_seconds < 0:
        raise InvalidInputError("duration_seconds must not be negative.")
    validate_word_timings(source.words)


class AssessmentService:
    """Submit, run and poll assessments.

    Each assessment is processed by exactly one pipeline run. Runs are
    started on a daemon thread and always end in ``completed`` or ``failed``;
    callers find out by polling :meth:`get_status`.
    """

    def __init__(
        self,
        store: AssessmentStore,
        gate: UsageGate,
        analyzer: Optional[QualitativeAnalyzer],
        transcriber: Optional[Transcriber] = None,
        broadcaster: Optional[StatusBroadcaster] = None,
        clock: Callable[[], datetime] = utc_now,
        lexicon: Lexicon = DEFAULT_LEXICON,
        run_inline: bool = False,
    ) -> None:
        self._store = store
        self._gate = gate
        self._analyzer = analyzer
        self._transcriber = transcriber
        self._broadcaster = broadcaster or StatusBroadcaster()
        self._clock = clock
        self._lexicon = lexicon
        self._run_inline = run_inline
        self._active_jobs: set[str] = set()
        self._active_jobs_lock = threading.Lock()

    @property
    def broadcaster(self) -> StatusBroadcaster:
        return self._broadcaster

    @property
    def analysis_configured(self) -> bool:
        return self._analyzer is not None

    @property
    def transcription_configured(self) -> bool:
        return self._transcriber is not None

    # Submission

    def submit(
        self,
        user_id: str,
        source: TranscriptSource,
        mode: str = FULL_MODE,
        scenario: Optional[Scenario] = None,
    ) -> str:
        if mode not in CAPABILITY_BY_MODE:
            raise InvalidInputError(f"Unknown assessment mode: {mode}.")
        if mode == SCENARIO_MODE and scenario is None:
            raise InvalidInputError("Scenario mode requires a scenario.")
        validate_transcript_source(source)
        if self._analyzer is None:
            raise UpstreamError("Qualitative analysis is not configured.")
        self._gate.require(user_id, CAPABILITY_BY_MODE[mode])

        record = self._new_record(
            user_id,
            mode,
            AssessmentStatus.PROCESSING,
            transcript=source.text,
            duration_seconds=source.duration_seconds,
            scenario_brief=scenario,
        )
        self._store.create_assessment(record)
        logger.info(
            "assessment_id=%s submitted user_id=%s mode=%s words=%s",
            record.assessment_id,
            user_id,
            mode,
            count_word_tokens(source.text),
        )
        self._start(record.assessment_id, self._run_transcript_job, record.assessment_id, source)
        return record.assessment_id

    def submit_media(self, user_id: str, media_path: Path, work_dir: Path) -> str:
        """Start a full assessment from a recording; ``work_dir`` is removed when the run ends."""
        if self._transcriber is None:
            raise UpstreamError("Transcription is not configured.")
        if self._analyzer is None:
            raise UpstreamError("Qualitative analysis is not configured.")
        self._gate.require(user_id, VIDEO_ANALYSIS)

        record = self._new_record(user_id, FULL_MODE, AssessmentStatus.UPLOADING)
        self._store.create_assessment(record)
        logger.info("assessment_id=%s submitted_media user_id=%s", record.assessment_id, user_id)
        self._start(record.assessment_id, self._run_media_job, record.assessment_id, media_path, work_dir)
        return record.assessment_id

    def _new_record(self, user_id: str, mode: str, status: AssessmentStatus, **fields) -> AssessmentRecord:
        now = self._clock()
        return AssessmentRecord(
            assessment_id=str(uuid.uuid4()),
            user_id=user_id,
            mode=mode,
            status=status,
            created_at=now,
            updated_at=now,
            **fields,
        )

    def _start(self, assessment_id: str, target: Callable, *args) -> bool:
        with self._active_jobs_lock:
            if assessment_id in self._active_jobs:
                logger.info("assessment_id=%s pipeline_already_running", assessment_id)
                return False
            self._active_jobs.add(assessment_id)

        if self._run_inline:
            target(*args)
        else:
            thread = threading.Thread(target=target, args=args, daemon=True)
            thread.start()
        return True

    # Pipeline

    def _advance(self, assessment_id: str, status: AssessmentStatus, **fields) -> AssessmentRecord:
        record = self._store.update_assessment(assessment_id, status=status, **fields)
        logger.info("assessment_id=%s status=%s", assessment_id, status.value)
        self._broadcaster.publish(assessment_id, status, record.error_message)
        return record

    def _mark_failed(self, assessment_id: str, message: str) -> None:
        error_message = truncate_message(message) or "Assessment failed."
        try:
            self._advance(assessment_id, AssessmentStatus.FAILED, error_message=error_message)
        except (InvalidTransitionError, AssessmentNotFoundError):
            logger.warning("assessment_id=%s mark_failed_skipped error=%s", assessment_id, error_message)

    def _run_guarded(self, assessment_id: str, body: Callable[[], None]) -> None:
        start_ts = time.monotonic()
        try:
            body()
        except PresenceError as exc:
            logger.warning("assessment_id=%s pipeline_failed error=%s", assessment_id, truncate_message(str(exc)))
            self._mark_failed(assessment_id, str(exc))
        except Exception as exc:
            logger.error("assessment_id=%s pipeline_unhandled_error", assessment_id, exc_info=True)
            self._mark_failed(assessment_id, f"Unexpected error: {exc}")
        finally:
            with self._active_jobs_lock:
                self._active_jobs.discard(assessment_id)
            logger.info(
                "assessment_id=%s pipeline_finished elapsed_ms=%s",
                assessment_id,
                int((time.monotonic() - start_ts) * 1000),
            )

    def _run_transcript_job(self, assessment_id: str, source: TranscriptSource) -> None:
        self._run_guarded(assessment_id, lambda: self._score(assessment_id, source))

    def _run_media_job(self, assessment_id: str, media_path: Path, work_dir: Path) -> None:
        def _body() -> None:
            source = self._transcriber.transcribe(media_path, work_dir)
            if count_word_tokens(source.text) == 0:
                raise UpstreamError("No speech was detected in the recording.")
            self._advance(
                assessment_id,
                AssessmentStatus.PROCESSING,
                transcript=source.text,
                duration_seconds=source.duration_seconds,
            )
            self._score(assessment_id, source)

        try:
            self._run_guarded(assessment_id, _body)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _score(self, assessment_id: str, source: TranscriptSource) -> None:
        record = self._store.get_assessment(assessment_id)
        if record is None:
            raise AssessmentNotFoundError(f"Assessment {assessment_id} not found.")

        lexical = compute_lexical_metrics(source.text, source.duration_seconds, self._lexicon)
        pauses = compute_pause_metrics(source.words, source.duration_seconds or None)
        self._advance(
            assessment_id,
            AssessmentStatus.ANALYZING,
            lexical_metrics=lexical,
            pause_metrics=pauses,
        )

        if record.mode == SCENARIO_MODE:
            scenario_analysis = self._analyzer.analyze_scenario(
                source.text, record.scenario_brief, lexical, pauses
            )
            self._advance(assessment_id, AssessmentStatus.SCORING)
            final_fields = {"scenario": scenario_result(scenario_analysis)}
        else:
            analysis = self._analyzer.analyze_full(source.text, lexical, pauses, source.words)
            self._advance(assessment_id, AssessmentStatus.SCORING)
            final_fields = {
                "communication": analysis.communication,
                "appearance": analysis.appearance,
                "storytelling": analysis.storytelling,
                "overall_score": aggregate_overall(
                    analysis.communication, analysis.appearance, analysis.storytelling
                ),
                "narrative": Narrative(
                    summary=analysis.summary,
                    top_strengths=list(analysis.top_strengths),
                    priority_development=analysis.priority_development,
                ),
            }

        self._advance(assessment_id, AssessmentStatus.GENERATING)
        capability = CAPABILITY_BY_MODE[record.mode]
        if not self._gate.record_consumption(record.user_id, assessment_id, capability):
            raise UpstreamError("Monthly usage limit reached before the assessment could complete.")

        # The unit only stands if the completed write lands.
        try:
            self._advance(
                assessment_id,
                AssessmentStatus.COMPLETED,
                scoring_version=SCORING_SCHEMA_VERSION,
                completed_at=self._clock(),
                **final_fields,
            )
        except Exception:
            self._gate.release_consumption(record.user_id, assessment_id)
            raise

    # Queries

    def _require_record(self, assessment_id: str, user_id: Optional[str] = None) -> AssessmentRecord:
        record = self._store.get_assessment(assessment_id)
        # Another user's assessment is reported exactly like a missing one.
        if record is None or (user_id is not None and record.user_id != user_id):
            raise AssessmentNotFoundError(f"Assessment {assessment_id} not found.")
        return record

    def get_status(self, assessment_id: str, user_id: Optional[str] = None) -> AssessmentStatusResponse:
        record = self._require_record(assessment_id, user_id)
        return AssessmentStatusResponse(
            assessment_id=assessment_id,
            status=record.status.value,
            progress=STATUS_PROGRESS[record.status],
            error_message=record.error_message,
            poll_after_seconds=None if is_terminal(record.status) else POLL_INTERVAL_SECONDS,
        )

    def get_result(self, assessment_id: str, user_id: Optional[str] = None) -> AssessmentRecord:
        record = self._require_record(assessment_id, user_id)
        if record.status != AssessmentStatus.COMPLETED:
            raise ResultNotReadyError(f"Assessment {assessment_id} is {record.status.value}.")
        return record

    def may_consume(self, user_id: str, capability: str = VIDEO_ANALYSIS) -> bool:
        return self._gate.may_consume(user_id, capability)

    def require_entitlement(self, user_id: str, capability: str = VIDEO_ANALYSIS) -> None:
        self._gate.require(user_id, capability)

    def record_consumption(self, user_id: str, assessment_id: str, capability: str = VIDEO_ANALYSIS) -> bool:
        return self._gate.record_consumption(user_id, assessment_id, capability)

    def usage_summary(self, user_id: str, capability: str = VIDEO_ANALYSIS) -> dict:
        return self._gate.usage_summary(user_id, capability)
