"""Clinical follow-up workflow engine."""

from .engine import Engine, build_engine, build_memory_engine, build_postgres_engine
from .errors import (
    CarelineError,
    ConcurrencyError,
    ConditionEvaluationError,
    InvalidTransitionError,
    NotFoundError,
    TransientActionError,
    ValidationError,
)
from .models import (
    Lane,
    StepDraft,
    StepStatus,
    StepType,
    Workflow,
    WorkflowDraft,
    WorkflowStatus,
    WorkflowStep,
    WorkflowView,
)
from .service import WorkflowService

__all__ = [
    "CarelineError",
    "ConcurrencyError",
    "ConditionEvaluationError",
    "Engine",
    "InvalidTransitionError",
    "Lane",
    "NotFoundError",
    "StepDraft",
    "StepStatus",
    "StepType",
    "TransientActionError",
    "ValidationError",
    "Workflow",
    "WorkflowDraft",
    "WorkflowService",
    "WorkflowStatus",
    "WorkflowStep",
    "WorkflowView",
    "build_engine",
    "build_memory_engine",
    "build_postgres_engine",
]
