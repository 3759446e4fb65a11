"""Decides what runs after a step finishes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .conditions import evaluate
from .dispatcher import DispatchResult, Dispatcher, DispatchState
from .lifecycle import WorkflowLifecycle
from .models import (
    Doctor,
    NoCondition,
    Patient,
    StepStatus,
    Workflow,
    WorkflowStatus,
    WorkflowStep,
)
from .storage.base import StepStore
from .utils.logging import get_logger
from .utils.timing import Clock, utcnow

logger = get_logger()

_OPEN_STATUSES = frozenset({StepStatus.PENDING, StepStatus.QUEUED, StepStatus.WAITING_CONDITION})


class ResolutionKind(str, Enum):
    DISPATCHED = "dispatched"
    WAITING = "waiting"
    COMPLETED = "completed"
    FINISHED = "finished"
    NOTHING = "nothing"


@dataclass
class Resolution:
    kind: ResolutionKind
    target: Optional[str] = None
    released: list[str] = field(default_factory=list)


class NextStepResolver:
    """Routes a patient's path forward after one of its steps finishes.

    Progress is tracked per patient: a step counts as done for a patient once
    it completed or permanently failed for them, whatever its shared status
    says. Safe to run more than once for the same (step, patient) pair: steps
    the patient already settled are never dispatched again, a successor still
    in flight is deduplicated by the broker, and closing an already completed
    workflow is a no-op.
    """

    def __init__(
        self,
        steps: StepStore,
        dispatcher: Dispatcher,
        lifecycle: WorkflowLifecycle,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.steps = steps
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle
        self.clock = clock

    def _branch_target(self, step: WorkflowStep, patient: Patient) -> tuple[Optional[str], str]:
        condition = step.condition
        if isinstance(condition, NoCondition):
            return None, "no condition"
        outcome = evaluate(condition, patient, step.result_for(patient.id), now=self.clock())
        target = condition.branch.on_success if outcome.met else condition.branch.on_failure
        return target, outcome.reason

    @staticmethod
    def _open_for(step: WorkflowStep, patient_id: str) -> bool:
        return step.status != StepStatus.SKIPPED and not step.settled_for(patient_id)

    def _ordinal_next(self, step: WorkflowStep, steps: list[WorkflowStep], patient_id: str) -> Optional[WorkflowStep]:
        for candidate in steps:
            if candidate.order > step.order and self._open_for(candidate, patient_id):
                return candidate
        return None

    def resolve_next(
        self,
        completed_step: WorkflowStep,
        patient: Patient,
        doctor: Doctor,
        workflow: Workflow,
        *,
        recurrence_pending: bool = False,
    ) -> Resolution:
        log = logger.bind(workflow_id=workflow.id, step_id=completed_step.id)
        if workflow.status != WorkflowStatus.ACTIVE:
            log.info(f"Workflow {workflow.id} is {workflow.status.value}, not resolving")
            return Resolution(ResolutionKind.NOTHING)

        steps = self.steps.find(workflow.id)
        by_id = {s.id: s for s in steps}
        current = by_id.get(completed_step.id, completed_step)

        target_id, reason = self._branch_target(current, patient)
        if target_id is not None and target_id not in by_id:
            log.warning(f"Branch target {target_id} of {current.name} does not exist, falling through")
            target_id = None

        is_last = bool(steps) and steps[-1].id == current.id
        if is_last and target_id is None and not recurrence_pending:
            return self._close(workflow, patient, doctor)

        released = self._release_dependents(current, steps, workflow, patient, doctor)

        target: Optional[WorkflowStep]
        if target_id is not None:
            target = by_id[target_id]
            if not self._open_for(target, patient.id):
                log.info(f"Branch target {target.name} already finished for patient {patient.id}, not re-dispatching")
                return self._finish(workflow, patient, doctor, released, recurrence_pending)
            log.info(f"Branching from {current.name} to {target.name} ({reason})")
        else:
            target = self._ordinal_next(current, steps, patient.id)

        while target is not None:
            if target.id in released:
                return Resolution(ResolutionKind.DISPATCHED, target.id, released)
            result = self._dispatch(target, workflow, patient, doctor)
            self.lifecycle.track_position(workflow.id, [s.id for s in steps].index(target.id))
            if result.state == DispatchState.WAITING:
                return Resolution(ResolutionKind.WAITING, target.id, released)
            if result.state != DispatchState.SKIPPED:
                return Resolution(ResolutionKind.DISPATCHED, target.id, released)
            # exhausted schedule: continue from the skipped step
            steps = self.steps.find(workflow.id)
            target = self._ordinal_next(target, steps, patient.id)

        return self._finish(workflow, patient, doctor, released, recurrence_pending)

    def _dispatch(self, step: WorkflowStep, workflow: Workflow, patient: Patient, doctor: Doctor) -> DispatchResult:
        return self.dispatcher.schedule(step, workflow, [patient.id], doctor.id)

    def _release_dependents(
        self,
        completed: WorkflowStep,
        steps: list[WorkflowStep],
        workflow: Workflow,
        patient: Patient,
        doctor: Doctor,
    ) -> list[str]:
        released = []
        for step in steps:
            if patient.id not in step.waiting_for or completed.id not in step.dependencies:
                continue
            if not self.steps.dependencies_met(step, patient.id):
                continue
            result = self._dispatch(step, workflow, patient, doctor)
            if result.state in (DispatchState.ENQUEUED, DispatchState.DEDUPLICATED):
                released.append(step.id)
        return released

    def _finish(
        self,
        workflow: Workflow,
        patient: Patient,
        doctor: Doctor,
        released: list[str],
        recurrence_pending: bool,
    ) -> Resolution:
        if released:
            return Resolution(ResolutionKind.DISPATCHED, released[0], released)
        if recurrence_pending:
            return Resolution(ResolutionKind.NOTHING)
        for s in self.steps.find(workflow.id):
            if not self._open_for(s, patient.id):
                continue
            if patient.id in s.waiting_for or s.status in _OPEN_STATUSES:
                return Resolution(ResolutionKind.NOTHING)
        return self._close(workflow, patient, doctor)

    def _close(self, workflow: Workflow, patient: Patient, doctor: Doctor) -> Resolution:
        remaining = self.lifecycle.finish_patient(workflow.id, patient.id)
        if remaining:
            logger.bind(workflow_id=workflow.id).info(
                f"Patient {patient.id} finished, {len(remaining)} patients still in progress"
            )
            return Resolution(ResolutionKind.FINISHED)
        self.lifecycle.complete(workflow.id, actor_id=doctor.id, patient=patient, reason="all steps finished")
        return Resolution(ResolutionKind.COMPLETED)

    def route_failure(
        self,
        failed_step: WorkflowStep,
        patient: Patient,
        doctor: Doctor,
        workflow: Workflow,
    ) -> Optional[Resolution]:
        """Dispatch ``branch.on_failure`` of a dead-lettered step, if it has one."""
        target_id = failed_step.condition.branch.on_failure
        if not target_id:
            return None
        target = self.steps.get(target_id)
        if target is None or target.workflow_id != workflow.id:
            logger.warning(f"Failure route {target_id} of {failed_step.name} does not exist")
            return None
        if not self._open_for(target, patient.id):
            return Resolution(ResolutionKind.NOTHING, target.id)
        result = self._dispatch(target, workflow, patient, doctor)
        if result.state == DispatchState.WAITING:
            return Resolution(ResolutionKind.WAITING, target.id)
        return Resolution(ResolutionKind.DISPATCHED, target.id)
