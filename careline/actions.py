"""Side-effecting handlers, one per step type.

A handler receives an :class:`ActionContext` and returns the step result. It
raises :class:`~careline.errors.TransientActionError` (or any other
exception) when its side effect fails, and :class:`AwaitingInput` when the
step cannot run until someone submits data for it.
"""

from __future__ import annotations

import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, ClassVar, Mapping, Optional

from .errors import CarelineError
from .models import (
    AlertAction,
    AnalysisTestAction,
    AppointmentAction,
    Audience,
    Doctor,
    Job,
    Patient,
    ReminderAction,
    StepType,
    TaskAction,
    Workflow,
    WorkflowStep,
)
from .notifications import NotificationSender
from .utils.logging import get_logger
from .utils.timing import parse_duration

logger = get_logger()

DEFAULT_APPOINTMENT_DELAY = "7d"


class AwaitingInput(CarelineError):
    """The step needs externally submitted data before it can complete."""

    retryable = False


@dataclass
class ActionContext:
    step: WorkflowStep
    patient: Patient
    doctor: Doctor
    workflow: Workflow
    job: Job
    now: datetime
    # recipients this job already reached on an earlier attempt
    delivered: set[str] = field(default_factory=set)
    on_delivery: Optional[Callable[[str], None]] = None

    @property
    def submitted(self) -> dict[str, Any]:
        """Values attached to the step for this patient before execution, e.g. submitted test results."""
        return dict(self.step.results_for.get(self.patient.id) or {})

    def was_delivered(self, recipient_id: str) -> bool:
        return recipient_id in self.delivered

    def record_delivery(self, recipient_id: str) -> None:
        self.delivered.add(recipient_id)
        if self.on_delivery is not None:
            self.on_delivery(recipient_id)


class _Formatter(string.Formatter):
    def get_value(self, key: Any, args: Any, kwargs: Mapping[str, Any]) -> Any:
        if isinstance(key, str) and key not in kwargs:
            return "{" + key + "}"
        return super().get_value(key, args, kwargs)


def render(template: str, ctx: ActionContext) -> str:
    """Fill ``{patient.firstname}``-style placeholders, leaving unknown ones untouched."""
    try:
        fields = {"patient": ctx.patient, "doctor": ctx.doctor, "step": ctx.step, "workflow": ctx.workflow}
        return _Formatter().format(template, **fields)
    except (AttributeError, IndexError, ValueError) as exc:
        logger.warning(f"Could not render template for step {ctx.step.id}: {exc!r}")
        return template


class ActionHandler(ABC):
    step_type: ClassVar[StepType]

    @abstractmethod
    def __call__(self, ctx: ActionContext) -> dict[str, Any]:
        """Perform the step's side effect and return its result."""


class ReminderHandler(ActionHandler):
    step_type = StepType.REMINDER

    def __init__(self, sender: NotificationSender) -> None:
        self.sender = sender

    def __call__(self, ctx: ActionContext) -> dict[str, Any]:
        action: ReminderAction = ctx.step.action
        message = render(action.message, ctx)
        targets = {
            Audience.PATIENT: [ctx.patient],
            Audience.DOCTOR: [ctx.doctor],
            Audience.BOTH: [ctx.patient, ctx.doctor],
        }[action.audience]
        for target in targets:
            if ctx.was_delivered(target.id):
                continue
            self.sender.send(target, message)
            ctx.record_delivery(target.id)
        return {"sent": True, "to": [t.email or t.id for t in targets], "message": message}


def request_appointment(
    ctx: ActionContext,
    reason: str,
    after: Optional[str] = None,
    at: Optional[datetime] = None,
) -> dict[str, Any]:
    when = at or ctx.now + timedelta(milliseconds=parse_duration(after or DEFAULT_APPOINTMENT_DELAY))
    return {
        "appointment_requested": True,
        "appointment_date": when.isoformat(),
        "reason": reason,
        "patient_id": ctx.patient.id,
        "doctor_id": ctx.doctor.id,
    }


TaskFunction = Callable[[ActionContext], Mapping[str, Any]]


def _schedule_appointment_task(ctx: ActionContext) -> Mapping[str, Any]:
    params = ctx.step.action.params
    return request_appointment(ctx, params.get("reason", "Follow-up consultation"), params.get("after"))


class TaskHandler(ActionHandler):
    """Runs a named task. Unknown task names simply complete."""

    step_type = StepType.TASK

    def __init__(self, tasks: Optional[Mapping[str, TaskFunction]] = None) -> None:
        self.tasks: dict[str, TaskFunction] = {"schedule_appointment": _schedule_appointment_task}
        self.tasks.update(tasks or {})

    def __call__(self, ctx: ActionContext) -> dict[str, Any]:
        action: TaskAction = ctx.step.action
        result = ctx.submitted
        func = self.tasks.get(action.task)
        if func is not None:
            result.update(func(ctx))
        result.update({"completed": True, "task": action.task})
        return result


class AlertHandler(ActionHandler):
    step_type = StepType.ALERT

    def __init__(self, sender: NotificationSender) -> None:
        self.sender = sender

    def __call__(self, ctx: ActionContext) -> dict[str, Any]:
        action: AlertAction = ctx.step.action
        message = render(action.message, ctx)
        self.sender.send(ctx.doctor, f"[{action.severity.value.upper()}] {message}")
        return {
            "alert_sent": True,
            "to": ctx.doctor.email or ctx.doctor.id,
            "severity": action.severity.value,
            "message": message,
        }


class AppointmentHandler(ActionHandler):
    step_type = StepType.APPOINTMENT

    def __init__(self, sender: NotificationSender) -> None:
        self.sender = sender

    def __call__(self, ctx: ActionContext) -> dict[str, Any]:
        action: AppointmentAction = ctx.step.action
        result = request_appointment(ctx, action.reason, action.after, action.at)
        self.sender.send(
            ctx.patient,
            f"An appointment with Dr {ctx.doctor.lastname} is requested "
            f"for {result['appointment_date']}: {action.reason}",
        )
        return result


class AnalysisTestHandler(ActionHandler):
    """Evaluates submitted test values; waits until every required field is present."""

    step_type = StepType.ANALYSIS_TEST

    def __call__(self, ctx: ActionContext) -> dict[str, Any]:
        action: AnalysisTestAction = ctx.step.action
        values = ctx.submitted
        missing = [f for f in action.required_fields if f not in values]
        if missing:
            raise AwaitingInput(f"waiting for {action.test_type} values: {', '.join(missing)}")
        values.update({"analysis_processed": True, "test_type": action.test_type})
        return values


def default_handlers(
    sender: NotificationSender,
    tasks: Optional[Mapping[str, TaskFunction]] = None,
) -> dict[StepType, ActionHandler]:
    return {
        StepType.REMINDER: ReminderHandler(sender),
        StepType.TASK: TaskHandler(tasks),
        StepType.ALERT: AlertHandler(sender),
        StepType.APPOINTMENT: AppointmentHandler(sender),
        StepType.ANALYSIS_TEST: AnalysisTestHandler(),
    }
