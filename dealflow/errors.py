"""Exception hierarchy for the automation engine."""

from __future__ import annotations

from typing import Optional


class DealflowError(Exception):
    """Base class for all dealflow errors."""


class AutomationValidationError(DealflowError):
    """An automation or workflow record violates a persistence invariant."""


class MatchError(DealflowError):
    """``trigger_rules`` could not be interpreted for the event."""


class ConditionEvaluationError(DealflowError):
    """A condition could not be evaluated (unknown operator, bad operand)."""


class ActionExecutionError(DealflowError):
    """A collaborator call made by an action failed."""

    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.attempts = 1


class TransientActionError(ActionExecutionError):
    """Timeouts, connection errors and 5xx responses; retried with backoff."""

    retryable = True


class PermanentActionError(ActionExecutionError):
    """4xx responses, validation problems; recorded and never retried."""


class TemplateError(PermanentActionError):
    """A template placeholder could not be resolved in strict mode."""


class StepRequiredFailure(DealflowError):
    """A required workflow step failed after its retries were exhausted."""

    def __init__(self, enrollment_id: str, step_index: int, reason: str) -> None:
        super().__init__(
            f"Required step {step_index} failed for enrollment {enrollment_id}: {reason}"
        )
        self.enrollment_id = enrollment_id
        self.step_index = step_index
        self.reason = reason


class EnrollmentError(DealflowError):
    """Illegal enrollment operation (duplicate, unknown, bad transition)."""


class ConcurrentModificationError(DealflowError):
    """An enrollment was written by another runner since it was read."""
