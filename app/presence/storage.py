import dataclasses
import json
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol

from .constants import UNSET
from .errors import AssessmentNotFoundError, InvalidTransitionError
from .lifecycle import AssessmentStatus, is_terminal, transition, validate_terminal_payload
from .models import (
    AssessmentRecord,
    BucketAnalysis,
    LexicalMetrics,
    Narrative,
    PauseMetrics,
    Scenario,
    ScenarioScore,
    utc_now,
)

try:
    import psycopg
    from psycopg.types.json import Jsonb
except Exception:  # pragma: no cover - only relevant when Postgres is enabled.
    psycopg = None
    Jsonb = None


# Record attributes persisted as JSONB, with the model used to read them back.
JSON_FIELDS = {
    "scenario_brief": Scenario,
    "lexical_metrics": LexicalMetrics,
    "pause_metrics": PauseMetrics,
    "communication": BucketAnalysis,
    "appearance": BucketAnalysis,
    "storytelling": BucketAnalysis,
    "scenario": ScenarioScore,
    "narrative": Narrative,
}
MUTABLE_FIELDS = (
    "transcript",
    "duration_seconds",
    "lexical_metrics",
    "pause_metrics",
    "communication",
    "appearance",
    "storytelling",
    "overall_score",
    "scenario",
    "narrative",
    "scoring_version",
    "completed_at",
    "error_message",
)
_RECORD_COLUMNS = (
    "assessment_id",
    "user_id",
    "mode",
    "status",
    "created_at",
    "updated_at",
    "transcript",
    "duration_seconds",
    "scenario_brief",
) + MUTABLE_FIELDS[2:]


def normalize_database_url(database_url: str) -> str:
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://") :]
    return database_url


def apply_update(
    record: AssessmentRecord,
    status: Optional[AssessmentStatus],
    changes: Dict[str, Any],
) -> AssessmentRecord:
    """Return the record as it would look after the write, or raise.

    Terminal records reject every write. A status change must be a legal
    transition and a terminal target must satisfy the all-or-nothing payload
    contract before anything is committed.
    """
    if is_terminal(record.status):
        target = status.value if status is not None else record.status.value
        raise InvalidTransitionError(record.status.value, target)

    updated = dataclasses.replace(record, **changes)
    if status is not None:
        updated.status = transition(record.status, status)
    updated.updated_at = utc_now()
    validate_terminal_payload(updated)
    return updated


def _collect_changes(**fields: Any) -> Dict[str, Any]:
    return {name: value for name, value in fields.items() if value is not UNSET}


class AssessmentStore(Protocol):
    storage_name: str

    def create_assessment(self, record: AssessmentRecord) -> None:
        pass

    def get_assessment(self, assessment_id: str) -> Optional[AssessmentRecord]:
        pass

    def update_assessment(
        self,
        assessment_id: str,
        *,
        status: Optional[AssessmentStatus] = None,
        transcript: object = UNSET,
        duration_seconds: object = UNSET,
        lexical_metrics: object = UNSET,
        pause_metrics: object = UNSET,
        communication: object = UNSET,
        appearance: object = UNSET,
        storytelling: object = UNSET,
        overall_score: object = UNSET,
        scenario: object = UNSET,
        narrative: object = UNSET,
        scoring_version: object = UNSET,
        completed_at: object = UNSET,
        error_message: object = UNSET,
    ) -> AssessmentRecord:
        pass


class UsageStore(Protocol):
    storage_name: str

    def consume_if_below(
        self,
        user_id: str,
        assessment_id: str,
        capability: str,
        period_key: str,
        limit: Optional[int],
    ) -> bool:
        pass

    def count_usage(self, user_id: str, capability: str, period_key: str) -> int:
        pass

    def has_usage(self, user_id: str, assessment_id: str) -> bool:
        pass

    def release(self, user_id: str, assessment_id: str) -> bool:
        pass


class InMemoryAssessmentStore:
    storage_name = "memory"

    def __init__(self) -> None:
        self._records: Dict[str, AssessmentRecord] = {}
        self._lock = threading.Lock()

    def create_assessment(self, record: AssessmentRecord) -> None:
        with self._lock:
            if record.assessment_id in self._records:
                raise ValueError(f"Assessment {record.assessment_id} already exists.")
            self._records[record.assessment_id] = dataclasses.replace(record)

    def get_assessment(self, assessment_id: str) -> Optional[AssessmentRecord]:
        with self._lock:
            record = self._records.get(assessment_id)
            return dataclasses.replace(record) if record is not None else None

    def update_assessment(
        self,
        assessment_id: str,
        *,
        status: Optional[AssessmentStatus] = None,
        transcript: object = UNSET,
        duration_seconds: object = UNSET,
        lexical_metrics: object = UNSET,
        pause_metrics: object = UNSET,
        communication: object = UNSET,
        appearance: object = UNSET,
        storytelling: object = UNSET,
        overall_score: object = UNSET,
        scenario: object = UNSET,
        narrative: object = UNSET,
        scoring_version: object = UNSET,
        completed_at: object = UNSET,
        error_message: object = UNSET,
    ) -> AssessmentRecord:
        changes = _collect_changes(
            transcript=transcript,
            duration_seconds=duration_seconds,
            lexical_metrics=lexical_metrics,
            pause_metrics=pause_metrics,
            communication=communication,
            appearance=appearance,
            storytelling=storytelling,
            overall_score=overall_score,
            scenario=scenario,
            narrative=narrative,
            scoring_version=scoring_version,
            completed_at=completed_at,
            error_message=error_message,
        )
        with self._lock:
            record = self._records.get(assessment_id)
            if record is None:
                raise AssessmentNotFoundError(f"Assessment {assessment_id} not found.")
            updated = apply_update(record, status, changes)
            self._records[assessment_id] = updated
            return dataclasses.replace(updated)


class InMemoryUsageStore:
    storage_name = "memory"

    def __init__(self) -> None:
        # (user_id, assessment_id) -> (capability, period_key)
        self._rows: Dict[tuple[str, str], tuple[str, str]] = {}
        self._counts: Dict[tuple[str, str, str], int] = defaultdict(int)
        self._lock = threading.Lock()

    def consume_if_below(
        self,
        user_id: str,
        assessment_id: str,
        capability: str,
        period_key: str,
        limit: Optional[int],
    ) -> bool:
        with self._lock:
            if (user_id, assessment_id) in self._rows:
                return True
            counter_key = (user_id, capability, period_key)
            if limit is not None and self._counts[counter_key] >= limit:
                return False
            self._rows[(user_id, assessment_id)] = (capability, period_key)
            self._counts[counter_key] += 1
            return True

    def count_usage(self, user_id: str, capability: str, period_key: str) -> int:
        with self._lock:
            return self._counts.get((user_id, capability, period_key), 0)

    def has_usage(self, user_id: str, assessment_id: str) -> bool:
        with self._lock:
            return (user_id, assessment_id) in self._rows

    def release(self, user_id: str, assessment_id: str) -> bool:
        with self._lock:
            row = self._rows.pop((user_id, assessment_id), None)
            if row is None:
                return False
            capability, period_key = row
            self._counts[(user_id, capability, period_key)] -= 1
            return True


class _PostgresStore:
    storage_name = "postgres"

    def __init__(self, database_url: str) -> None:
        if psycopg is None or Jsonb is None:
            raise RuntimeError("psycopg is required when DATABASE_URL is set.")
        self._database_url = normalize_database_url(database_url)
        self._ensure_schema()

    def _connect(self, *, autocommit: bool = True):
        return psycopg.connect(self._database_url, autocommit=autocommit)

    def _ensure_schema(self) -> None:
        raise NotImplementedError


def _to_column(name: str, value: Any) -> Any:
    if name in JSON_FIELDS:
        return Jsonb(value.model_dump(mode="json")) if value is not None else None
    if isinstance(value, AssessmentStatus):
        return value.value
    return value


def _from_row(row: tuple) -> AssessmentRecord:
    values = dict(zip(_RECORD_COLUMNS, row))
    for name, model in JSON_FIELDS.items():
        raw = values.get(name)
        if raw is None:
            continue
        if isinstance(raw, str):
            raw = json.loads(raw)
        values[name] = model.model_validate(raw)
    values["assessment_id"] = str(values["assessment_id"])
    values["status"] = AssessmentStatus(values["status"])
    values["transcript"] = values.get("transcript") or ""
    return AssessmentRecord(**values)


class PostgresAssessmentStore(_PostgresStore):
    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS assessments (
                        assessment_id UUID PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        mode TEXT NOT NULL,
                        status TEXT NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        transcript TEXT NOT NULL DEFAULT '',
                        duration_seconds DOUBLE PRECISION NULL,
                        scenario_brief JSONB NULL,
                        lexical_metrics JSONB NULL,
                        pause_metrics JSONB NULL,
                        communication JSONB NULL,
                        appearance JSONB NULL,
                        storytelling JSONB NULL,
                        overall_score INTEGER NULL CHECK (overall_score BETWEEN 0 AND 100),
                        scenario JSONB NULL,
                        narrative JSONB NULL,
                        scoring_version TEXT NULL,
                        completed_at TIMESTAMPTZ NULL,
                        error_message TEXT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_assessments_user_created_at
                    ON assessments (user_id, created_at DESC)
                    """
                )

    def create_assessment(self, record: AssessmentRecord) -> None:
        values = [_to_column(name, getattr(record, name)) for name in _RECORD_COLUMNS]
        placeholders = ", ".join(["%s"] * len(_RECORD_COLUMNS))
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO assessments ({', '.join(_RECORD_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )

    def get_assessment(self, assessment_id: str) -> Optional[AssessmentRecord]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {', '.join(_RECORD_COLUMNS)} FROM assessments WHERE assessment_id = %s",
                    (assessment_id,),
                )
                row = cur.fetchone()
                if row is None:
                    return None
                return _from_row(row)

    def update_assessment(
        self,
        assessment_id: str,
        *,
        status: Optional[AssessmentStatus] = None,
        transcript: object = UNSET,
        duration_seconds: object = UNSET,
        lexical_metrics: object = UNSET,
        pause_metrics: object = UNSET,
        communication: object = UNSET,
        appearance: object = UNSET,
        storytelling: object = UNSET,
        overall_score: object = UNSET,
        scenario: object = UNSET,
        narrative: object = UNSET,
        scoring_version: object = UNSET,
        completed_at: object = UNSET,
        error_message: object = UNSET,
    ) -> AssessmentRecord:
        changes = _collect_changes(
            transcript=transcript,
            duration_seconds=duration_seconds,
            lexical_metrics=lexical_metrics,
            pause_metrics=pause_metrics,
            communication=communication,
            appearance=appearance,
            storytelling=storytelling,
            overall_score=overall_score,
            scenario=scenario,
            narrative=narrative,
            scoring_version=scoring_version,
            completed_at=completed_at,
            error_message=error_message,
        )
        with self._connect(autocommit=False) as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT {', '.join(_RECORD_COLUMNS)} FROM assessments "
                        "WHERE assessment_id = %s FOR UPDATE",
                        (assessment_id,),
                    )
                    row = cur.fetchone()
                    if row is None:
                        raise AssessmentNotFoundError(f"Assessment {assessment_id} not found.")
                    updated = apply_update(_from_row(row), status, changes)

                    written = ("status", "updated_at") + MUTABLE_FIELDS
                    assignments: List[str] = [f"{name} = %s" for name in written]
                    values: List[Any] = [_to_column(name, getattr(updated, name)) for name in written]
                    values.append(assessment_id)
                    cur.execute(
                        f"UPDATE assessments SET {', '.join(assignments)} WHERE assessment_id = %s",
                        values,
                    )
        return updated


class PostgresUsageStore(_PostgresStore):
    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS usage_events (
                        id BIGSERIAL PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        assessment_id TEXT NOT NULL,
                        capability TEXT NOT NULL,
                        period_key TEXT NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        UNIQUE (user_id, assessment_id)
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_usage_events_period
                    ON usage_events (user_id, capability, period_key)
                    """
                )

    def consume_if_below(
        self,
        user_id: str,
        assessment_id: str,
        capability: str,
        period_key: str,
        limit: Optional[int],
    ) -> bool:
        with self._connect(autocommit=False) as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    # Serialises check-then-insert per user, capability and month.
                    cur.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (f"{user_id}:{capability}:{period_key}",),
                    )
                    cur.execute(
                        "SELECT 1 FROM usage_events WHERE user_id = %s AND assessment_id = %s",
                        (user_id, assessment_id),
                    )
                    if cur.fetchone() is not None:
                        return True
                    if limit is not None:
                        cur.execute(
                            """
                            SELECT COUNT(*) FROM usage_events
                            WHERE user_id = %s AND capability = %s AND period_key = %s
                            """,
                            (user_id, capability, period_key),
                        )
                        (used,) = cur.fetchone()
                        if int(used) >= limit:
                            return False
                    cur.execute(
                        """
                        INSERT INTO usage_events (user_id, assessment_id, capability, period_key)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (user_id, assessment_id) DO NOTHING
                        """,
                        (user_id, assessment_id, capability, period_key),
                    )
                    return True

    def count_usage(self, user_id: str, capability: str, period_key: str) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COUNT(*) FROM usage_events
                    WHERE user_id = %s AND capability = %s AND period_key = %s
                    """,
                    (user_id, capability, period_key),
                )
                (used,) = cur.fetchone()
                return int(used)

    def has_usage(self, user_id: str, assessment_id: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM usage_events WHERE user_id = %s AND assessment_id = %s",
                    (user_id, assessment_id),
                )
                return cur.fetchone() is not None

    def release(self, user_id: str, assessment_id: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM usage_events WHERE user_id = %s AND assessment_id = %s",
                    (user_id, assessment_id),
                )
                return cur.rowcount > 0


def build_assessment_store(database_url: str = "") -> AssessmentStore:
    if database_url:
        return PostgresAssessmentStore(database_url=database_url)
    return InMemoryAssessmentStore()


def build_usage_store(database_url: str = "") -> UsageStore:
    if database_url:
        return PostgresUsageStore(database_url=database_url)
    return InMemoryUsageStore()
