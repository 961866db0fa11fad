from .constants import MAX_ERROR_CHARS


def truncate_message(text: str, max_chars: int = MAX_ERROR_CHARS) -> str:
    value = (text or "").strip()
    if len(value) <= max_chars:
        return value
    return value[: max_chars - 3] + "..."


class PresenceError(Exception):
    """Base class for errors raised by the scoring engine."""


class InvalidInputError(PresenceError, ValueError):
    """Transcript or timing input was rejected before any external call."""


class UpstreamError(PresenceError, RuntimeError):
    """Transcription or qualitative-analysis capability failed."""


class SchemaViolationError(UpstreamError):
    """Model output parsed but did not match the expected document shape."""


class NotEntitledError(PresenceError):
    def __init__(self, user_id: str, capability: str, reason: str):
        super().__init__(f"User {user_id} is not entitled to {capability}: {reason}")
        self.user_id = user_id
        self.capability = capability
        self.reason = reason


class InvalidTransitionError(PresenceError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal assessment transition {current} -> {target}.")
        self.current = current
        self.target = target


class AssessmentNotFoundError(PresenceError, KeyError):
    pass


class ResultNotReadyError(PresenceError):
    pass
