"""Exception taxonomy for the scoring engine.

Only ``InvalidTransitionError`` and the not-found errors are meant to reach an
API caller.  ``UnknownRuleError`` and ``InsufficientHistoryError`` are
recovered inside the engine; ``ScoringTimeoutError`` is recorded as a failed
subject in the batch report.
"""

from __future__ import annotations


class RiskEngineError(Exception):
    """Base class for every error raised by the scoring engine."""


class UnknownRuleError(RiskEngineError):
    """A rule code has no entry in the registry."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Unknown risk rule '{code}'")
        self.code = code


class InsufficientHistoryError(RiskEngineError):
    """A statistical check does not have enough data points to be meaningful."""

    def __init__(self, check: str, available: int, required: int) -> None:
        super().__init__(
            f"{check} needs at least {required} data points, got {available}"
        )
        self.check = check
        self.available = available
        self.required = required


class InvalidTransitionError(RiskEngineError):
    """An alert lifecycle action targets a state it cannot leave."""

    def __init__(self, alert_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Alert '{alert_id}' cannot move from '{current}' to '{target}'"
        )
        self.alert_id = alert_id
        self.current = current
        self.target = target


class ScoringTimeoutError(RiskEngineError):
    """A scoring run exceeded its time budget."""

    def __init__(self, subject: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Scoring run for {subject} exceeded {timeout_seconds:.2f}s"
        )
        self.subject = subject
        self.timeout_seconds = timeout_seconds


class AlertNotFoundError(RiskEngineError):
    """No alert with the given id exists for the tenant."""

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Alert '{alert_id}' not found")
        self.alert_id = alert_id


class SubjectNotFoundError(RiskEngineError):
    """The document or client company to score does not exist for the tenant."""

    def __init__(self, subject_type: str, subject_id: str) -> None:
        super().__init__(f"{subject_type.capitalize()} '{subject_id}' not found")
        self.subject_type = subject_type
        self.subject_id = subject_id
