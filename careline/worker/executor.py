"""Execution of a single job.

:class:`StepExecutor` is what a worker thread calls for every reserved job.
It is written to be re-entrant: delivery is at-least-once, so a job may be
seen again after it already completed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from ..actions import ActionContext, ActionHandler, AwaitingInput
from ..audit import AuditOutbox
from ..dispatcher import Dispatcher
from ..errors import NotFoundError
from ..lifecycle import WorkflowLifecycle
from ..models import Doctor, Job, Patient, StepStatus, StepType, Workflow, WorkflowStatus, WorkflowStep
from ..resolver import NextStepResolver, Resolution
from ..storage.base import DoctorStore, PatientStore, StepStore, WorkflowStore
from ..utils.logging import get_logger
from ..utils.timing import Clock, utcnow

logger = get_logger()

DEAD_LETTER_POLICIES = ("error", "stall")


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    WAITING = "waiting"
    SKIPPED = "skipped"


@dataclass
class ExecutionOutcome:
    status: ExecutionStatus
    result: Optional[dict[str, Any]] = None
    resolution: Optional[Resolution] = None


@dataclass
class _Loaded:
    step: WorkflowStep
    workflow: Workflow
    patient: Patient
    doctor: Doctor


class StepExecutor:
    def __init__(
        self,
        *,
        workflows: WorkflowStore,
        steps: StepStore,
        patients: PatientStore,
        doctors: DoctorStore,
        handlers: Mapping[StepType, ActionHandler],
        dispatcher: Dispatcher,
        resolver: NextStepResolver,
        lifecycle: WorkflowLifecycle,
        audit: AuditOutbox,
        clock: Clock = utcnow,
        dead_letter_policy: str = "error",
    ) -> None:
        if dead_letter_policy not in DEAD_LETTER_POLICIES:
            raise ValueError(f"unknown dead letter policy {dead_letter_policy!r}")
        self.workflows = workflows
        self.steps = steps
        self.patients = patients
        self.doctors = doctors
        self.handlers = dict(handlers)
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.audit = audit
        self.clock = clock
        self.dead_letter_policy = dead_letter_policy

    def _load(self, job: Job) -> _Loaded:
        step = self.steps.require(job.step_id)
        workflow = self.workflows.require(job.workflow_id)
        patient = self.patients.get(job.patient_id)
        if patient is None:
            raise NotFoundError("patient", job.patient_id)
        doctor = self.doctors.get(job.doctor_id)
        if doctor is None:
            raise NotFoundError("doctor", job.doctor_id)
        return _Loaded(step, workflow, patient, doctor)

    @staticmethod
    def _already_done(step: WorkflowStep, job: Job) -> bool:
        last = step.completed_for.get(job.patient_id)
        if job.scheduled_for is not None and step.schedule is not None:
            return last is not None and last >= job.scheduled_for
        return last is not None

    def _recurrence_pending(self, step: WorkflowStep) -> bool:
        return step.is_recurring and self.dispatcher.next_occurrence(step, self.clock()) is not None

    def execute(self, job: Job) -> ExecutionOutcome:
        """Run the step behind *job* and route the workflow onwards.

        Raises whatever the handler raised once the failure has been recorded
        on the step, so the lane policy can decide about a retry.
        """
        loaded = self._load(job)
        step, workflow = loaded.step, loaded.workflow
        log = logger.bind(workflow_id=workflow.id, step_id=step.id, execution_id=job.execution_id)

        if workflow.status != WorkflowStatus.ACTIVE:
            log.info(f"Workflow {workflow.name} is {workflow.status.value}, skipping {step.name}")
            return ExecutionOutcome(ExecutionStatus.SKIPPED)
        if step.status == StepStatus.SKIPPED:
            log.info(f"Step {step.name} was skipped, ignoring job")
            return ExecutionOutcome(ExecutionStatus.SKIPPED)

        if self._already_done(step, job):
            log.info(f"Step {step.name} already executed for patient {job.patient_id}, re-running resolution only")
            resolution = self.resolver.resolve_next(
                step,
                loaded.patient,
                loaded.doctor,
                workflow,
                recurrence_pending=self._recurrence_pending(step),
            )
            return ExecutionOutcome(ExecutionStatus.DUPLICATE, step.result, resolution)

        self.audit.record(
            job.doctor_id,
            "WORKFLOW_STEP_EXECUTION",
            f'Executing step "{step.name}" of workflow "{workflow.name}" for patient {loaded.patient.full_name}',
            {
                "workflow_id": workflow.id,
                "step_id": step.id,
                "patient_id": job.patient_id,
                "execution_id": job.execution_id,
                "attempt": job.attempt,
            },
        )

        now = self.clock()
        handler = self.handlers[step.type]

        def delivered(recipient_id: str) -> None:
            self.steps.update(step.id, lambda s: s.record_delivery(job.execution_id, recipient_id))

        ctx = ActionContext(
            step=step,
            patient=loaded.patient,
            doctor=loaded.doctor,
            workflow=workflow,
            job=job,
            now=now,
            delivered=set(step.deliveries.get(job.execution_id, ())),
            on_delivery=delivered,
        )
        try:
            result = handler(ctx)
        except AwaitingInput as exc:
            self._set_status(step.id, StepStatus.WAITING_CONDITION, "waiting_condition", str(exc), waiting=job)
            log.info(f"Step {step.name} is waiting for input: {exc}")
            return ExecutionOutcome(ExecutionStatus.WAITING)
        except Exception as exc:
            self._set_status(
                step.id,
                StepStatus.FAILED,
                "failed",
                "Step execution failed",
                {
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "attempt": job.attempt,
                    "patient_id": job.patient_id,
                },
            )
            log.warning(f"Step {step.name} failed on attempt {job.attempt + 1}: {exc!r}")
            if step.is_recurring:
                self.dispatcher.schedule_recurrence(step, job)
            raise

        def complete(s: WorkflowStep) -> None:
            s.status = StepStatus.COMPLETED
            s.result = result
            s.results_for[job.patient_id] = result
            ran_at = job.scheduled_for or now
            prior = s.completed_for.get(job.patient_id)
            s.completed_for[job.patient_id] = ran_at if prior is None else max(prior, ran_at)
            if job.scheduled_for is not None and s.schedule is not None:
                last = s.schedule.last_executed
                s.schedule.last_executed = job.scheduled_for if last is None else max(last, job.scheduled_for)
            s.waiting_for = [p for p in s.waiting_for if p != job.patient_id]
            s.failed_for = [p for p in s.failed_for if p != job.patient_id]
            s.deliveries.pop(job.execution_id, None)
            s.log(
                "completed",
                "Step executed successfully",
                {"attempt": job.attempt, "lane": job.lane.value, "patient_id": job.patient_id},
                at=now,
            )

        step = self.steps.update(step.id, complete)
        log.info(f"Step {step.name} completed for patient {job.patient_id}")

        if step.is_recurring:
            self.dispatcher.schedule_recurrence(step, job)
        resolution = self.resolver.resolve_next(
            step,
            loaded.patient,
            loaded.doctor,
            workflow,
            recurrence_pending=self._recurrence_pending(step),
        )
        return ExecutionOutcome(ExecutionStatus.COMPLETED, result, resolution)

    def _set_status(
        self,
        step_id: str,
        status: StepStatus,
        log_status: str,
        message: str,
        details=None,
        *,
        waiting: Optional[Job] = None,
        failed: Optional[Job] = None,
    ) -> None:
        now = self.clock()

        def mutate(s: WorkflowStep) -> None:
            s.status = status
            if waiting is not None:
                s.mark_waiting(waiting.patient_id)
            if failed is not None and failed.patient_id not in s.failed_for:
                s.failed_for.append(failed.patient_id)
                s.deliveries.pop(failed.execution_id, None)
            s.log(log_status, message, details, at=now)

        self.steps.update(step_id, mutate)

    def on_dead_letter(self, job: Job, error: str) -> None:
        """Handle a job that will not be attempted again."""
        try:
            loaded = self._load(job)
        except NotFoundError as exc:
            logger.error(f"Dead-lettered job {job.execution_id} references missing data: {exc}")
            return
        step, workflow = loaded.step, loaded.workflow
        log = logger.bind(workflow_id=workflow.id, step_id=step.id, execution_id=job.execution_id)
        log.error(f"Step {step.name} dead-lettered after {job.attempt + 1} attempts: {error}")
        if job.patient_id not in step.failed_for:
            self._set_status(
                step.id,
                StepStatus.FAILED,
                "failed",
                "Step permanently failed",
                {"error": error, "patient_id": job.patient_id},
                failed=job,
            )
        if workflow.status != WorkflowStatus.ACTIVE:
            return

        if self.resolver.route_failure(step, loaded.patient, loaded.doctor, workflow) is not None:
            return
        if self._recurrence_pending(step):
            log.warning(f"Occurrence of {step.name} failed, next occurrence stays scheduled")
            return
        if self.dead_letter_policy == "stall":
            log.warning(f"Workflow {workflow.name} stalled on failed step {step.name}")
            return
        self.lifecycle.fail(
            workflow.id,
            actor_id=job.doctor_id,
            patient=loaded.patient,
            reason=f"step {step.name} failed: {error}",
        )
