"""Documents and value objects of the workflow engine.

Condition, action and schedule payloads are closed tagged variants validated
when a step is written, so the executor and the resolver never have to
re-interpret free-form dictionaries.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils.timing import ensure_utc, is_duration, utcnow


def new_id() -> str:
    return uuid.uuid4().hex


class WorkflowStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class StepStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    WAITING_CONDITION = "waiting_condition"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})


class StepType(str, Enum):
    REMINDER = "reminder"
    TASK = "task"
    ALERT = "alert"
    APPOINTMENT = "appointment"
    ANALYSIS_TEST = "analysis_test"


class Lane(str, Enum):
    """Queue partitions, each with its own concurrency and retry policy."""

    NORMAL = "normal"
    PRIORITY = "priority"
    SCHEDULED = "scheduled"


class Operator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="


_OPERATOR_ALIASES = {"==": "=", "≠": "!=", "<>": "!=", "≥": ">=", "≤": "<="}


class ScheduleType(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class Audience(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    BOTH = "both"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid")


# conditions -----------------------------------------------------------------


class Branch(_Model):
    on_success: Optional[str] = None
    on_failure: Optional[str] = None

    def targets(self) -> set[str]:
        return {t for t in (self.on_success, self.on_failure) if t}


class _ConditionBase(_Model):
    branch: Branch = Field(default_factory=Branch)


class NoCondition(_ConditionBase):
    kind: Literal["none"] = "none"


class ParameterCondition(_ConditionBase):
    kind: Literal["parameter_based"] = "parameter_based"
    parameter: str
    operator: Operator
    threshold: Any

    @field_validator("operator", mode="before")
    @classmethod
    def _alias_operator(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _OPERATOR_ALIASES.get(value.strip(), value.strip())
        return value


class TimeCondition(_ConditionBase):
    kind: Literal["time_based"] = "time_based"
    specific_time: Optional[datetime] = None
    after: Optional[str] = None

    @field_validator("specific_time")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @field_validator("after")
    @classmethod
    def _duration(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_duration(value):
            raise ValueError(f"invalid duration {value!r}, expected <N>d|h|m|s")
        return value

    @model_validator(mode="after")
    def _one_timing(self) -> "TimeCondition":
        if self.specific_time is None and self.after is None:
            raise ValueError("time_based condition needs specific_time or after")
        return self


class EventCondition(_ConditionBase):
    kind: Literal["event_based"] = "event_based"
    event: Optional[str] = None


Condition = Annotated[
    Union[NoCondition, ParameterCondition, TimeCondition, EventCondition],
    Field(discriminator="kind"),
]


# actions --------------------------------------------------------------------


class ReminderAction(_Model):
    type: Literal["reminder"] = "reminder"
    message: str = "Reminder from Dr {doctor.lastname}: {step.name}"
    audience: Audience = Audience.PATIENT


class TaskAction(_Model):
    type: Literal["task"] = "task"
    task: str = "generic"
    params: dict[str, Any] = Field(default_factory=dict)


class AlertAction(_Model):
    type: Literal["alert"] = "alert"
    message: str = "Clinical alert for {patient.firstname} {patient.lastname}: {step.name}"
    severity: Severity = Severity.HIGH


class AppointmentAction(_Model):
    type: Literal["appointment"] = "appointment"
    reason: str = "Follow-up consultation"
    after: Optional[str] = None
    at: Optional[datetime] = None

    @field_validator("after")
    @classmethod
    def _duration(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_duration(value):
            raise ValueError(f"invalid duration {value!r}, expected <N>d|h|m|s")
        return value


class AnalysisTestAction(_Model):
    type: Literal["analysis_test"] = "analysis_test"
    test_type: str = "generic"
    required_fields: list[str] = Field(default_factory=list)


Action = Annotated[
    Union[ReminderAction, TaskAction, AlertAction, AppointmentAction, AnalysisTestAction],
    Field(discriminator="type"),
]

DEFAULT_ACTIONS = {
    StepType.REMINDER: ReminderAction,
    StepType.TASK: TaskAction,
    StepType.ALERT: AlertAction,
    StepType.APPOINTMENT: AppointmentAction,
    StepType.ANALYSIS_TEST: AnalysisTestAction,
}


# schedule -------------------------------------------------------------------


class Schedule(_Model):
    type: ScheduleType
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    interval: int = Field(default=1, ge=1)
    cron_expression: Optional[str] = None
    last_executed: Optional[datetime] = None

    @field_validator("start_date", "end_date", "last_executed")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check(self) -> "Schedule":
        if self.type == ScheduleType.CUSTOM:
            if not self.cron_expression:
                raise ValueError("custom schedule needs a cron_expression")
            CronTrigger.from_crontab(self.cron_expression)
        elif self.start_date is None:
            raise ValueError(f"{self.type.value} schedule needs a start_date")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("schedule end_date is before start_date")
        return self


# documents ------------------------------------------------------------------


class ExecutionLog(_Model):
    timestamp: datetime = Field(default_factory=utcnow)
    status: str
    message: str
    details: Any = None


class WorkflowStep(_Model):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    name: str
    description: str = ""
    order: int = Field(ge=0)
    type: StepType
    condition: Condition = Field(default_factory=NoCondition)
    action: Optional[Action] = None
    status: StepStatus = StepStatus.PENDING
    result: Optional[dict[str, Any]] = None
    # per patient results; ``result`` holds the latest one
    results_for: dict[str, dict[str, Any]] = Field(default_factory=dict)
    execution_logs: list[ExecutionLog] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    schedule: Optional[Schedule] = None
    # patient id -> instant of the patient's last completed run (the occurrence for scheduled runs)
    completed_for: dict[str, datetime] = Field(default_factory=dict)
    failed_for: list[str] = Field(default_factory=list)
    # patients whose run waits on dependencies or on submitted input
    waiting_for: list[str] = Field(default_factory=list)
    # execution id -> recipients already notified by that job
    deliveries: dict[str, list[str]] = Field(default_factory=dict)
    revision: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("dependencies")
    @classmethod
    def _unique(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _action_matches_type(self) -> "WorkflowStep":
        if self.action is None:
            self.action = DEFAULT_ACTIONS[self.type]()
        elif self.action.type != self.type.value:
            raise ValueError(f"action type {self.action.type!r} does not match step type {self.type.value!r}")
        if self.id in self.dependencies:
            raise ValueError("a step cannot depend on itself")
        return self

    @property
    def is_recurring(self) -> bool:
        return self.schedule is not None and self.schedule.type != ScheduleType.ONCE

    def settled_for(self, patient_id: str) -> bool:
        """Whether the step already completed or permanently failed for *patient_id*."""
        return patient_id in self.completed_for or patient_id in self.failed_for

    def result_for(self, patient_id: str) -> Optional[dict[str, Any]]:
        return self.results_for.get(patient_id, self.result)

    def dispatched_to(self, patient_id: str) -> bool:
        if patient_id in self.waiting_for:
            return True
        for entry in self.execution_logs:
            if isinstance(entry.details, dict) and patient_id in entry.details.get("patient_ids", ()):
                return True
        return False

    def mark_waiting(self, patient_id: str) -> None:
        if patient_id not in self.waiting_for:
            self.waiting_for.append(patient_id)

    def record_delivery(self, execution_id: str, recipient_id: str) -> None:
        sent = self.deliveries.setdefault(execution_id, [])
        if recipient_id not in sent:
            sent.append(recipient_id)

    def log(self, status: str, message: str, details: Any = None, *, at: Optional[datetime] = None) -> None:
        """Append an execution log entry. Entries are never rewritten."""
        self.execution_logs.append(
            ExecutionLog(timestamp=at or utcnow(), status=status, message=message, details=details)
        )


class WorkflowMetadata(_Model):
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    version: int = 1


class Workflow(_Model):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    doctor_id: str
    patient_ids: list[str] = Field(default_factory=list)
    # started patients whose path through the steps has not finished
    active_patients: list[str] = Field(default_factory=list)
    step_ids: list[str] = Field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.INACTIVE
    current_step_index: int = 0
    is_template: bool = False
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)
    revision: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("patient_ids")
    @classmethod
    def _unique(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


class Person(_Model):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    firstname: str = ""
    lastname: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip()


class Patient(Person):
    pass


class Doctor(Person):
    pass


class AuditRecord(_Model):
    actor_id: Optional[str] = None
    action_type: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class Job(_Model):
    """Unit of work carried by the queue broker. Never persisted by the engine."""

    step_id: str
    patient_id: str
    doctor_id: str
    workflow_id: str
    execution_id: str = Field(default_factory=new_id)
    lane: Lane = Lane.NORMAL
    attempt: int = 0
    scheduled_for: Optional[datetime] = None


# creation payloads ----------------------------------------------------------

StepRef = Union[int, str]


class StepDraft(_Model):
    """A step as submitted to workflow creation.

    ``dependencies`` and branch targets refer to sibling drafts either by
    ``key`` or by ``order``; they are resolved to step ids on creation.
    """

    key: Optional[str] = None
    name: str
    description: str = ""
    order: Optional[int] = None
    type: StepType
    condition: dict[str, Any] = Field(default_factory=lambda: {"kind": "none"})
    action: Optional[dict[str, Any]] = None
    dependencies: list[StepRef] = Field(default_factory=list)
    schedule: Optional[dict[str, Any]] = None


class WorkflowDraft(_Model):
    name: str
    description: str = ""
    doctor_id: str
    patient_ids: list[str] = Field(default_factory=list)
    steps: list[StepDraft] = Field(default_factory=list)
    created_by: Optional[str] = None
    is_template: bool = False


class WorkflowView(_Model):
    """Read model returned to the CRUD layer."""

    workflow: Workflow
    steps: list[WorkflowStep]

    @property
    def current_step(self) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.status not in TERMINAL_STEP_STATUSES:
                return step
        return None
