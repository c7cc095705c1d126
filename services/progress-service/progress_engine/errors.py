"""
Domain errors for the progress engine

All of these are local and recoverable except InvariantViolation, which halts the
operation instead of producing a corrupted record.
"""
from datetime import datetime
from typing import Optional


class ProgressEngineError(Exception):
    """Base class for every error raised by the engine"""


class OutOfOrderTransition(ProgressEngineError):
    """Requested phase is not the immediate successor of the last completed phase"""

    def __init__(self, requested, expected):
        self.requested = requested
        self.expected = expected
        expected_label = expected.value if expected is not None else "none (lesson completed, restart required)"
        super().__init__(
            f"Out of order transition: requested {requested.value}, expected {expected_label}"
        )


class FreezeAlreadyGranted(ProgressEngineError):
    """A streak freeze was already granted inside the current grant window"""

    def __init__(self, learner_id: str, next_grant_at: datetime):
        self.learner_id = learner_id
        self.next_grant_at = next_grant_at
        super().__init__(
            f"Streak freeze already granted for learner {learner_id}; "
            f"next grant available at {next_grant_at.isoformat()}"
        )


class InvalidRecordState(ProgressEngineError):
    """
    Record violates a data-integrity rule.

    Merge code collects these as flagged issues instead of raising them.
    """

    def __init__(self, reason: str, record_key: Optional[str] = None):
        self.reason = reason
        self.record_key = record_key
        prefix = f"[{record_key}] " if record_key else ""
        super().__init__(f"{prefix}{reason}")

    def __eq__(self, other):
        if not isinstance(other, InvalidRecordState):
            return NotImplemented
        return (self.reason, self.record_key) == (other.reason, other.record_key)

    def __hash__(self):
        return hash((self.reason, self.record_key))


class InvariantViolation(ProgressEngineError):
    """Unexpected invariant violation; the operation must not produce a record"""


class RecordNotFound(ProgressEngineError):
    """Storage collaborator has no record for the requested key"""

    def __init__(self, key):
        self.key = key
        super().__init__(f"Record not found: {key}")
