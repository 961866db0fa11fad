from datetime import datetime, timezone

import pytest

from app.presence.errors import AssessmentNotFoundError, InvalidTransitionError
from app.presence.lifecycle import AssessmentStatus
from app.presence.models import AssessmentRecord, BucketAnalysis
from app.presence.storage import (
    InMemoryAssessmentStore,
    InMemoryUsageStore,
    build_assessment_store,
    build_usage_store,
    normalize_database_url,
)


NOW = datetime(2026, 3, 15, tzinfo=timezone.utc)


def _create(store, status=AssessmentStatus.PROCESSING):
    store.create_assessment(
        AssessmentRecord(
            assessment_id="a-1",
            user_id="user-1",
            mode="full",
            status=status,
            created_at=NOW,
            updated_at=NOW,
            transcript="we ship on friday",
        )
    )


def _complete(store):
    bucket = BucketAnalysis(overall_score=70, parameters={})
    for status in ("analyzing", "scoring", "generating"):
        store.update_assessment("a-1", status=AssessmentStatus(status))
    return store.update_assessment(
        "a-1",
        status=AssessmentStatus.COMPLETED,
        communication=bucket,
        appearance=bucket,
        storytelling=bucket,
        overall_score=70,
        completed_at=NOW,
    )


def test_build_without_database_url_is_in_memory():
    assert build_assessment_store("").storage_name == "memory"
    assert build_usage_store("").storage_name == "memory"


def test_normalize_database_url():
    assert normalize_database_url("postgres://u@h/db") == "postgresql://u@h/db"
    assert normalize_database_url("postgresql://u@h/db") == "postgresql://u@h/db"


def test_update_moves_forward_and_keeps_fields():
    store = InMemoryAssessmentStore()
    _create(store)

    record = _complete(store)

    assert record.status == AssessmentStatus.COMPLETED
    assert record.overall_score == 70
    assert store.get_assessment("a-1").transcript == "we ship on friday"


@pytest.mark.parametrize("target", [AssessmentStatus.FAILED, AssessmentStatus.ANALYZING, None])
def test_completed_record_cannot_be_mutated(target):
    store = InMemoryAssessmentStore()
    _create(store)
    _complete(store)

    with pytest.raises(InvalidTransitionError):
        store.update_assessment("a-1", status=target, error_message="late failure")

    assert store.get_assessment("a-1").error_message is None


def test_failed_record_cannot_be_mutated():
    store = InMemoryAssessmentStore()
    _create(store)
    store.update_assessment("a-1", status=AssessmentStatus.FAILED, error_message="boom")

    with pytest.raises(InvalidTransitionError):
        store.update_assessment("a-1", status=AssessmentStatus.COMPLETED)


def test_completion_without_scores_is_rejected_and_not_written():
    store = InMemoryAssessmentStore()
    _create(store)
    for status in ("analyzing", "scoring", "generating"):
        store.update_assessment("a-1", status=AssessmentStatus(status))

    with pytest.raises(ValueError):
        store.update_assessment("a-1", status=AssessmentStatus.COMPLETED, completed_at=NOW)

    assert store.get_assessment("a-1").status == AssessmentStatus.GENERATING


def test_returned_records_are_copies():
    store = InMemoryAssessmentStore()
    _create(store)
    record = store.get_assessment("a-1")
    record.status = AssessmentStatus.COMPLETED
    assert store.get_assessment("a-1").status == AssessmentStatus.PROCESSING


def test_unknown_assessment():
    store = InMemoryAssessmentStore()
    assert store.get_assessment("missing") is None
    with pytest.raises(AssessmentNotFoundError):
        store.update_assessment("missing", status=AssessmentStatus.FAILED, error_message="x")


def test_usage_store_limits_per_period():
    store = InMemoryUsageStore()
    assert store.consume_if_below("user-1", "a-1", "video_analysis", "2026-03", 1) is True
    assert store.consume_if_below("user-1", "a-2", "video_analysis", "2026-03", 1) is False
    assert store.consume_if_below("user-1", "a-3", "video_analysis", "2026-04", 1) is True
    assert store.consume_if_below("user-1", "a-4", "video_analysis", "2026-04", None) is True
    assert store.count_usage("user-1", "video_analysis", "2026-04") == 2
