"""Exception hierarchy used across the engine."""

from __future__ import annotations


class CarelineError(Exception):
    """Base class for engine errors."""

    retryable = True


class ValidationError(CarelineError):
    """Bad input to a workflow entry point. Reported to the caller, never retried."""

    retryable = False


class InvalidTransitionError(ValidationError):
    """A workflow status change outside the allowed transition table."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"cannot move workflow from {current!r} to {requested!r}")
        self.current = current
        self.requested = requested


class NotFoundError(CarelineError):
    """A referenced document does not exist.

    Inside a job this is a data integrity violation: the job is dead-lettered
    without further attempts.
    """

    retryable = False

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class TransientActionError(CarelineError):
    """A step side effect failed because of an external dependency."""


class ConditionEvaluationError(CarelineError):
    """A condition descriptor could not be evaluated."""

    retryable = False


class ConcurrencyError(CarelineError):
    """Optimistic write kept losing against concurrent writers."""


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are assumed to be transient."""
    return getattr(exc, "retryable", True)
