"""Workflow status transitions."""

from __future__ import annotations

from typing import Optional

from .audit import AuditOutbox
from .errors import InvalidTransitionError
from .models import Patient, Workflow, WorkflowStatus
from .storage.base import WorkflowStore
from .utils.logging import get_logger

logger = get_logger()

TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.INACTIVE: frozenset({WorkflowStatus.ACTIVE}),
    WorkflowStatus.ACTIVE: frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.PAUSED, WorkflowStatus.ERROR}),
    WorkflowStatus.PAUSED: frozenset({WorkflowStatus.ACTIVE, WorkflowStatus.ERROR}),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.ERROR: frozenset(),
}

_AUDIT_ACTIONS = {
    WorkflowStatus.ACTIVE: "WORKFLOW_ACTIVATED",
    WorkflowStatus.PAUSED: "WORKFLOW_PAUSED",
    WorkflowStatus.COMPLETED: "WORKFLOW_COMPLETED",
    WorkflowStatus.ERROR: "WORKFLOW_ERROR",
}


def can_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    return target == current or target in TRANSITIONS[current]


class WorkflowLifecycle:
    """Owns every write to ``Workflow.status``.

    Transitions are idempotent: asking for the status a workflow already has
    returns ``False`` and writes nothing, so duplicate job deliveries cannot
    emit a second audit record.
    """

    def __init__(self, workflows: WorkflowStore, audit: AuditOutbox) -> None:
        self.workflows = workflows
        self.audit = audit

    def transition(
        self,
        workflow_id: str,
        target: WorkflowStatus,
        *,
        actor_id: Optional[str] = None,
        patient: Optional[Patient] = None,
        reason: str = "",
    ) -> bool:
        previous: list[WorkflowStatus] = []

        def mutate(wf: Workflow) -> Optional[bool]:
            previous[:] = [wf.status]
            if wf.status == target:
                return False
            if target not in TRANSITIONS[wf.status]:
                raise InvalidTransitionError(wf.status.value, target.value)
            wf.status = target
            wf.metadata.version += 1
            if actor_id is not None:
                wf.metadata.last_modified_by = actor_id
            return None

        wf = self.workflows.update(workflow_id, mutate)
        if wf.status != target or previous == [target]:
            return False

        resumed = previous == [WorkflowStatus.PAUSED] and target == WorkflowStatus.ACTIVE
        action = "WORKFLOW_RESUMED" if resumed else _AUDIT_ACTIONS[target]
        who = f" for patient {patient.full_name}" if patient is not None else ""
        description = f'Workflow "{wf.name}" {target.value}{who}' + (f": {reason}" if reason else "")
        logger.bind(workflow_id=workflow_id).info(description)
        metadata = {"workflow_id": workflow_id, "from": previous[0].value, "to": target.value}
        if patient is not None:
            metadata["patient_id"] = patient.id
        self.audit.record(actor_id or wf.doctor_id, action, description, metadata)
        return True

    def activate(self, workflow_id: str, **kwargs) -> bool:
        return self.transition(workflow_id, WorkflowStatus.ACTIVE, **kwargs)

    def pause(self, workflow_id: str, **kwargs) -> bool:
        return self.transition(workflow_id, WorkflowStatus.PAUSED, **kwargs)

    def resume(self, workflow_id: str, **kwargs) -> bool:
        return self.transition(workflow_id, WorkflowStatus.ACTIVE, **kwargs)

    def complete(self, workflow_id: str, **kwargs) -> bool:
        return self.transition(workflow_id, WorkflowStatus.COMPLETED, **kwargs)

    def fail(self, workflow_id: str, **kwargs) -> bool:
        return self.transition(workflow_id, WorkflowStatus.ERROR, **kwargs)

    def track_position(self, workflow_id: str, step_index: int) -> None:
        """Update the advisory ``current_step_index``."""

        def mutate(wf: Workflow) -> Optional[bool]:
            if wf.current_step_index == step_index:
                return False
            wf.current_step_index = step_index
            return None

        self.workflows.update(workflow_id, mutate)

    def enroll(self, workflow_id: str, patient_id: str) -> None:
        """Record that *patient_id* started down the workflow's steps."""

        def mutate(wf: Workflow) -> Optional[bool]:
            if patient_id in wf.active_patients:
                return False
            wf.active_patients.append(patient_id)
            return None

        self.workflows.update(workflow_id, mutate)

    def finish_patient(self, workflow_id: str, patient_id: str) -> list[str]:
        """Drop *patient_id* from the patients in progress and return those left."""

        def mutate(wf: Workflow) -> Optional[bool]:
            if patient_id not in wf.active_patients:
                return False
            wf.active_patients.remove(patient_id)
            return None

        return self.workflows.update(workflow_id, mutate).active_patients
