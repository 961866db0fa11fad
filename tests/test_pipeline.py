from pathlib import Path

import pytest

from app.presence.constants import MAX_ERROR_CHARS, POLL_INTERVAL_SECONDS
from app.presence.errors import (
    AssessmentNotFoundError,
    InvalidInputError,
    NotEntitledError,
    ResultNotReadyError,
    UpstreamError,
)
from app.presence.lifecycle import AssessmentStatus
from app.presence.models import Scenario, TranscriptSource
from app.presence.scoring import SCORING_SCHEMA_VERSION
from app.presence.usage import SIMULATOR_SCENARIO, VIDEO_ANALYSIS
from conftest import SAMPLE_SCENARIO, SAMPLE_TRANSCRIPT, full_payload, scenario_payload


def _source(**overrides):
    payload = dict(SAMPLE_TRANSCRIPT)
    payload.update(overrides)
    return TranscriptSource.model_validate(payload)


def test_full_assessment_completes_with_weighted_score(make_service, clock):
    service, client = make_service(full_payload())

    assessment_id = service.submit("user-1", _source())
    record = service.get_result(assessment_id)

    assert record.status == AssessmentStatus.COMPLETED
    assert record.overall_score == 78
    assert record.scoring_version == SCORING_SCHEMA_VERSION
    assert record.completed_at == clock.now
    assert record.lexical_metrics.filler_count == 3
    assert record.pause_metrics.pause_count == 2
    assert record.narrative.priority_development == "Replace fillers with silent pauses."
    assert len(client.calls) == 1
    assert service.may_consume("user-1", VIDEO_ANALYSIS) is True
    assert service.usage_summary("user-1")["used"] == 1


def test_status_after_completion_stops_polling(make_service):
    service, _ = make_service(full_payload())
    assessment_id = service.submit("user-1", _source())

    status = service.get_status(assessment_id)

    assert status.status == "completed"
    assert status.progress == 100
    assert status.poll_after_seconds is None


def test_missing_bucket_fails_the_assessment(make_service):
    payload = full_payload()
    del payload["appearance_nonverbal"]
    service, _ = make_service(payload)

    assessment_id = service.submit("user-1", _source())
    status = service.get_status(assessment_id)

    assert status.status == "failed"
    assert "appearance_nonverbal" in status.error_message
    with pytest.raises(ResultNotReadyError):
        service.get_result(assessment_id)

    record = service._store.get_assessment(assessment_id)
    assert record.overall_score is None
    assert record.communication is None
    assert record.transcript == SAMPLE_TRANSCRIPT["text"]
    assert record.lexical_metrics is not None
    # A failed run consumes nothing.
    assert service.usage_summary("user-1")["used"] == 0


def test_upstream_timeout_fails_with_truncated_message(make_service):
    service, _ = make_service(UpstreamError("timed out " + "x" * 5000))

    assessment_id = service.submit("user-1", _source())
    status = service.get_status(assessment_id)

    assert status.status == "failed"
    assert len(status.error_message) <= MAX_ERROR_CHARS
    assert status.error_message.startswith("timed out")


def test_unparseable_reply_fails(make_service):
    service, _ = make_service("I could not score this recording.")
    assessment_id = service.submit("user-1", _source())
    assert service.get_status(assessment_id).status == "failed"


def test_status_history_is_published_in_order(make_service):
    service, _ = make_service(full_payload())
    statuses = []

    original_create = service._store.create_assessment

    def _create_and_subscribe(record):
        original_create(record)
        service.broadcaster.subscribe(
            record.assessment_id,
            lambda aid, status, err: statuses.append(status.value),
        )

    service._store.create_assessment = _create_and_subscribe
    service.submit("user-1", _source())

    assert statuses == ["analyzing", "scoring", "generating", "completed"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"text": ""},
        {"text": "   "},
        {"duration_seconds": -1.0},
        {"duration_seconds": float("inf")},
        {"duration_seconds": float("nan")},
        {"words": [{"word": "a", "start": float("nan"), "end": 0.5}]},
        {"words": [{"word": "a", "start": 2.0, "end": 2.5}, {"word": "b", "start": 1.0, "end": 1.5}]},
    ],
)
def test_invalid_input_is_rejected_before_any_record_or_call(make_service, overrides):
    service, client = make_service(full_payload())

    with pytest.raises(InvalidInputError):
        service.submit("user-1", _source(**overrides))

    assert client.calls == []
    assert service._store._records == {}


def test_entitlement_denial_creates_no_record(make_service):
    service, client = make_service(full_payload(), plan="free_trial")
    service.record_consumption("user-1", "earlier-1")
    service.record_consumption("user-1", "earlier-2")

    with pytest.raises(NotEntitledError):
        service.submit("user-1", _source())

    assert client.calls == []
    assert service._store._records == {}


def test_limit_exhausted_during_run_fails_the_assessment(make_service):
    service, _ = make_service(full_payload(), plan="free_trial")
    service.record_consumption("user-1", "earlier-1")
    original_require = service._gate.require

    def _require_then_race(user_id, capability):
        original_require(user_id, capability)
        # Another completion takes the last slot after the gate check.
        service.record_consumption("user-1", "concurrent-1")

    service._gate.require = _require_then_race
    assessment_id = service.submit("user-1", _source())

    status = service.get_status(assessment_id)
    assert status.status == "failed"
    assert "usage limit" in status.error_message


def test_scenario_mode_uses_model_score_and_simulator_quota(make_service):
    service, client = make_service(scenario_payload())

    assessment_id = service.submit(
        "user-1",
        _source(),
        mode="scenario",
        scenario=Scenario.model_validate(SAMPLE_SCENARIO),
    )
    record = service.get_result(assessment_id)

    assert record.mode == "scenario"
    assert record.scenario.score == 72
    assert record.scenario.dimension_average == 70.0
    assert record.overall_score is None
    assert service.usage_summary("user-1", SIMULATOR_SCENARIO)["used"] == 1
    assert service.usage_summary("user-1", VIDEO_ANALYSIS)["used"] == 0
    assert "Restructuring Announcement" in client.calls[0]["user_prompt"]


def test_scenario_mode_requires_a_scenario(make_service):
    service, _ = make_service(scenario_payload())
    with pytest.raises(InvalidInputError):
        service.submit("user-1", _source(), mode="scenario")


def test_unknown_assessment(make_service):
    service, _ = make_service()
    with pytest.raises(AssessmentNotFoundError):
        service.get_status("missing")


def test_other_users_assessment_looks_missing(make_service):
    service, _ = make_service(full_payload())
    assessment_id = service.submit("user-1", _source())
    with pytest.raises(AssessmentNotFoundError):
        service.get_status(assessment_id, user_id="user-2")


def test_in_progress_status_advertises_poll_interval(make_service):
    service, _ = make_service(full_payload())
    service._run_inline = False
    service._start = lambda *args: True

    assessment_id = service.submit("user-1", _source())
    status = service.get_status(assessment_id)

    assert status.status == "processing"
    assert status.poll_after_seconds == POLL_INTERVAL_SECONDS
    with pytest.raises(ResultNotReadyError):
        service.get_result(assessment_id)


class _FakeTranscriber:
    def __init__(self, source):
        self.source = source
        self.calls = []

    def transcribe(self, media_path, work_dir):
        self.calls.append(media_path)
        return self.source


def test_media_submission_transcribes_then_scores(make_service, tmp_path):
    transcriber = _FakeTranscriber(_source())
    service, _ = make_service(full_payload(), transcriber=transcriber)
    work_dir = tmp_path / "job"
    work_dir.mkdir()
    media_path = work_dir / "input.webm"
    media_path.write_bytes(b"fake")

    assessment_id = service.submit_media("user-1", media_path, work_dir)

    record = service.get_result(assessment_id)
    assert record.transcript == SAMPLE_TRANSCRIPT["text"]
    assert record.overall_score == 78
    assert transcriber.calls == [media_path]
    assert not work_dir.exists()


def test_media_without_speech_fails(make_service, tmp_path):
    transcriber = _FakeTranscriber(TranscriptSource(text="", duration_seconds=4.0))
    service, client = make_service(full_payload(), transcriber=transcriber)

    assessment_id = service.submit_media("user-1", Path(tmp_path / "input.webm"), tmp_path / "work")

    status = service.get_status(assessment_id)
    assert status.status == "failed"
    assert "No speech" in status.error_message
    assert client.calls == []


def test_media_submission_requires_transcriber(make_service, tmp_path):
    service, _ = make_service(full_payload())
    with pytest.raises(UpstreamError):
        service.submit_media("user-1", tmp_path / "input.webm", tmp_path)


def test_failed_completion_write_releases_the_usage_unit(make_service):
    service, _ = make_service(full_payload())
    original_update = service._store.update_assessment

    def _update(assessment_id, **fields):
        if fields.get("status") == AssessmentStatus.COMPLETED:
            raise OSError("database connection dropped")
        return original_update(assessment_id, **fields)

    service._store.update_assessment = _update
    assessment_id = service.submit("user-1", _source())

    status = service.get_status(assessment_id)
    assert status.status == "failed"
    assert "database connection dropped" in status.error_message
    assert service.usage_summary("user-1")["used"] == 0
