"""Assessment lifecycle.

An assessment moves forward through::

    uploading -> processing -> analyzing -> scoring -> generating -> completed

and may drop to ``failed`` from any non-terminal state.  ``uploading`` and
``generating`` are bookkeeping states owned by the orchestration layer, but
they are written to the same ``status`` field callers poll.  Once a record is
``completed`` or ``failed`` nothing about it may change; a re-run always
means a new record.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from enum import Enum
from typing import Callable, Optional

from .errors import InvalidTransitionError


logger = logging.getLogger("uvicorn.error")


class AssessmentStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    SCORING = "scoring"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({AssessmentStatus.COMPLETED, AssessmentStatus.FAILED})

_FORWARD_CHAIN = [
    AssessmentStatus.UPLOADING,
    AssessmentStatus.PROCESSING,
    AssessmentStatus.ANALYZING,
    AssessmentStatus.SCORING,
    AssessmentStatus.GENERATING,
    AssessmentStatus.COMPLETED,
]

ALLOWED_TRANSITIONS: dict[AssessmentStatus, frozenset[AssessmentStatus]] = {
    status: frozenset({nxt, AssessmentStatus.FAILED})
    for status, nxt in zip(_FORWARD_CHAIN, _FORWARD_CHAIN[1:])
}
ALLOWED_TRANSITIONS[AssessmentStatus.COMPLETED] = frozenset()
ALLOWED_TRANSITIONS[AssessmentStatus.FAILED] = frozenset()

# Coarse progress hint per state, mirrored from the report UI.
STATUS_PROGRESS = {
    AssessmentStatus.UPLOADING: 15,
    AssessmentStatus.PROCESSING: 35,
    AssessmentStatus.ANALYZING: 65,
    AssessmentStatus.SCORING: 80,
    AssessmentStatus.GENERATING: 90,
    AssessmentStatus.COMPLETED: 100,
    AssessmentStatus.FAILED: 100,
}


def is_terminal(status: AssessmentStatus | str) -> bool:
    return AssessmentStatus(status) in TERMINAL_STATES


def transition(current: AssessmentStatus | str, target: AssessmentStatus | str) -> AssessmentStatus:
    """Return ``target`` if ``current -> target`` is legal, else raise."""
    current_status = AssessmentStatus(current)
    target_status = AssessmentStatus(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(current_status.value, target_status.value)
    return target_status


def validate_terminal_payload(record) -> None:
    """Check the all-or-nothing contract on a record about to be written."""
    status = AssessmentStatus(record.status)
    score_fields = (
        record.communication,
        record.appearance,
        record.storytelling,
        record.overall_score,
        record.scenario,
    )

    if status == AssessmentStatus.FAILED:
        if not (record.error_message or "").strip():
            raise ValueError("A failed assessment must carry an error_message.")
        if any(value is not None for value in score_fields):
            raise ValueError("A failed assessment must not carry score fields.")
        return

    if status != AssessmentStatus.COMPLETED:
        return

    if record.mode == "scenario":
        if record.scenario is None:
            raise ValueError("A completed scenario assessment requires a scenario score.")
    else:
        missing = [
            name
            for name in ("communication", "appearance", "storytelling", "overall_score")
            if getattr(record, name) is None
        ]
        if missing:
            raise ValueError(
                "A completed assessment requires all score fields; missing: " + ", ".join(missing)
            )
    if record.completed_at is None:
        raise ValueError("A completed assessment requires completed_at.")


StatusListener = Callable[[str, AssessmentStatus, Optional[str]], None]


class StatusBroadcaster:
    """In-process push channel for status changes.

    Polling ``get_status`` stays the contract; listeners are an addition for
    callers that prefer to be told.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[StatusListener]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, assessment_id: str, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._listeners[assessment_id].append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(assessment_id, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(assessment_id, None)

        return _unsubscribe

    def publish(
        self,
        assessment_id: str,
        status: AssessmentStatus,
        error_message: Optional[str] = None,
    ) -> None:
        with self._lock:
            listeners = list(self._listeners.get(assessment_id, []))
            if status in TERMINAL_STATES:
                self._listeners.pop(assessment_id, None)

        for listener in listeners:
            try:
                listener(assessment_id, status, error_message)
            except Exception:
                logger.warning(
                    "assessment_id=%s status_listener_failed status=%s",
                    assessment_id,
                    status.value,
                    exc_info=True,
                )
