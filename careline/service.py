"""Entry points used by the CRUD layer.

Everything here runs synchronously in the caller and raises
:class:`~careline.errors.ValidationError` or
:class:`~careline.errors.NotFoundError` for bad requests. Step execution
itself happens later on the worker pool.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping, Optional, Union

import networkx as nx
import pydantic

from .audit import AuditOutbox
from .broker import QueueBroker
from .dispatcher import DispatchResult, Dispatcher, DispatchState
from .errors import NotFoundError, ValidationError
from .lifecycle import WorkflowLifecycle
from .models import (
    Lane,
    StepDraft,
    StepStatus,
    StepType,
    Workflow,
    WorkflowDraft,
    WorkflowMetadata,
    WorkflowStatus,
    WorkflowStep,
    WorkflowView,
    new_id,
)
from .resolver import NextStepResolver
from .storage.base import DoctorStore, PatientStore, StepStore, WorkflowStore
from .utils.logging import get_logger

logger = get_logger()

_STATUS_COMMANDS = {WorkflowStatus.PAUSED, WorkflowStatus.ACTIVE, WorkflowStatus.COMPLETED}


def _validation_message(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def dependency_graph(steps: Iterable[WorkflowStep]) -> nx.DiGraph:
    """Directed graph with an edge from every dependency to its dependent step."""
    graph = nx.DiGraph()
    for step in steps:
        graph.add_node(step.id, name=step.name, order=step.order)
        for dep in step.dependencies:
            graph.add_edge(dep, step.id)
    return graph


class _DraftRefs:
    """Maps the ``key``/``order`` references of step drafts to generated ids."""

    def __init__(self, drafts: list[StepDraft], orders: list[int]) -> None:
        self.ids = [new_id() for _ in drafts]
        self.by_key = {d.key: i for d, i in zip(drafts, self.ids) if d.key}
        self.by_order = dict(zip(orders, self.ids))

    def resolve(self, ref: Any, where: str) -> str:
        if isinstance(ref, bool):
            raise ValidationError(f"{where}: invalid step reference {ref!r}")
        if isinstance(ref, int) and ref in self.by_order:
            return self.by_order[ref]
        if isinstance(ref, str):
            if ref in self.by_key:
                return self.by_key[ref]
            if ref in self.ids:
                return ref
        raise ValidationError(f"{where}: unknown step reference {ref!r}")


class WorkflowService:
    def __init__(
        self,
        *,
        workflows: WorkflowStore,
        steps: StepStore,
        patients: PatientStore,
        doctors: DoctorStore,
        broker: QueueBroker,
        dispatcher: Dispatcher,
        resolver: NextStepResolver,
        lifecycle: WorkflowLifecycle,
        audit: AuditOutbox,
    ) -> None:
        self.workflows = workflows
        self.steps = steps
        self.patients = patients
        self.doctors = doctors
        self.broker = broker
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.audit = audit

    # creation ---------------------------------------------------------------

    def _build_steps(self, workflow_id: str, drafts: list[StepDraft]) -> list[WorkflowStep]:
        orders = [d.order if d.order is not None else i + 1 for i, d in enumerate(drafts)]
        if len(set(orders)) != len(orders):
            raise ValidationError("step orders must be unique within a workflow")
        keys = [d.key for d in drafts if d.key]
        if len(set(keys)) != len(keys):
            raise ValidationError("step keys must be unique within a workflow")

        refs = _DraftRefs(drafts, orders)
        steps = []
        for draft, order, step_id in zip(drafts, orders, refs.ids):
            where = f"step {draft.name!r}"
            condition = copy.deepcopy(draft.condition)
            branch = condition.get("branch") or {}
            for field in ("on_success", "on_failure"):
                if branch.get(field) is not None:
                    branch[field] = refs.resolve(branch[field], f"{where} branch.{field}")
            if branch:
                condition["branch"] = branch
            data = {
                "id": step_id,
                "workflow_id": workflow_id,
                "name": draft.name,
                "description": draft.description,
                "order": order,
                "type": draft.type,
                "condition": condition,
                "action": draft.action,
                "dependencies": [refs.resolve(d, f"{where} dependencies") for d in draft.dependencies],
                "schedule": draft.schedule,
            }
            try:
                steps.append(WorkflowStep.model_validate(data))
            except pydantic.ValidationError as exc:
                raise ValidationError(f"{where}: {_validation_message(exc)}") from exc
        return sorted(steps, key=lambda s: s.order)

    @staticmethod
    def _check_acyclic(steps: list[WorkflowStep]) -> None:
        graph = dependency_graph(steps)
        if not nx.is_directed_acyclic_graph(graph):
            cycle = [graph.nodes[u].get("name", u) for u, _ in nx.find_cycle(graph)]
            raise ValidationError(f"step dependencies form a cycle: {' -> '.join(cycle)}")

    def _require_people(self, doctor_id: str, patient_ids: Iterable[str]) -> None:
        if self.doctors.get(doctor_id) is None:
            raise ValidationError(f"unknown doctor {doctor_id}")
        missing = [p for p in patient_ids if self.patients.get(p) is None]
        if missing:
            raise ValidationError(f"unknown patients: {', '.join(missing)}")

    def create_workflow(self, draft: Union[WorkflowDraft, Mapping[str, Any]]) -> Workflow:
        """Persist a workflow and its steps. Nothing is dispatched until it is started."""
        if not isinstance(draft, WorkflowDraft):
            try:
                draft = WorkflowDraft.model_validate(draft)
            except pydantic.ValidationError as exc:
                raise ValidationError(_validation_message(exc)) from exc
        if not draft.steps:
            raise ValidationError("a workflow needs at least one step")
        self._require_people(draft.doctor_id, draft.patient_ids)

        workflow_id = new_id()
        steps = self._build_steps(workflow_id, draft.steps)
        self._check_acyclic(steps)
        workflow = Workflow(
            id=workflow_id,
            name=draft.name,
            description=draft.description,
            doctor_id=draft.doctor_id,
            patient_ids=draft.patient_ids,
            step_ids=[s.id for s in steps],
            is_template=draft.is_template,
            metadata=WorkflowMetadata(created_by=draft.created_by, last_modified_by=draft.created_by),
        )
        for step in steps:
            self.steps.save(step)
        workflow = self.workflows.save(workflow)
        logger.bind(workflow_id=workflow.id).info(f"Created workflow {workflow.name} with {len(steps)} steps")
        self.audit.record(
            draft.created_by or draft.doctor_id,
            "CREATE_WORKFLOW",
            f'Workflow "{workflow.name}" created with {len(steps)} steps',
            {"workflow_id": workflow.id, "patient_ids": workflow.patient_ids, "is_template": workflow.is_template},
        )
        return workflow

    # lifecycle --------------------------------------------------------------

    def start_workflow(
        self,
        workflow_id: str,
        patient_id: str,
        doctor_id: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> DispatchResult:
        """Activate the workflow and dispatch its first step for *patient_id*."""
        workflow = self.workflows.require(workflow_id)
        patient = self.patients.get(patient_id)
        if patient is None:
            raise NotFoundError("patient", patient_id)
        doctor = self.doctors.get(doctor_id or workflow.doctor_id)
        if doctor is None:
            raise NotFoundError("doctor", doctor_id or workflow.doctor_id)
        if workflow.is_template:
            raise ValidationError("templates cannot be started, apply them first")
        if patient_id not in workflow.patient_ids:
            raise ValidationError(f"patient {patient_id} is not part of workflow {workflow_id}")
        steps = self.steps.find(workflow_id)
        if not steps:
            raise ValidationError(f"workflow {workflow_id} has no steps")

        actor = actor_id or doctor.id
        self.lifecycle.activate(workflow_id, actor_id=actor, patient=patient)
        self.lifecycle.enroll(workflow_id, patient_id)
        workflow = self.workflows.require(workflow_id)
        self.audit.record(
            actor,
            "START_WORKFLOW",
            f'Workflow "{workflow.name}" started for patient {patient.full_name}',
            {"workflow_id": workflow_id, "patient_id": patient_id},
        )

        first = steps[0]
        result = self.dispatcher.schedule(first, workflow, [patient_id], doctor.id, initial=True)
        self.lifecycle.track_position(workflow_id, 0)
        if result.state == DispatchState.SKIPPED:
            self.resolver.resolve_next(self.steps.require(first.id), patient, doctor, workflow)
        return result

    def _has_job(self, step: WorkflowStep, patient_id: str) -> bool:
        return any(
            job.step_id == step.id and job.patient_id == patient_id for lane in Lane for job in self.broker.jobs(lane)
        )

    def _redispatch(self, workflow: Workflow) -> list[str]:
        dispatched = []
        for step in self.steps.find(workflow.id):
            if step.status == StepStatus.SKIPPED:
                continue
            patients = []
            for patient_id in workflow.active_patients:
                # steps a patient never reached are left to the resolver
                if step.settled_for(patient_id) or not step.dispatched_to(patient_id):
                    continue
                if not self.steps.dependencies_met(step, patient_id) or self._has_job(step, patient_id):
                    continue
                patients.append(patient_id)
            if not patients:
                continue
            result = self.dispatcher.schedule(step, workflow, patients)
            if result.state == DispatchState.ENQUEUED:
                dispatched.append(step.id)
        return dispatched

    def update_workflow_status(
        self,
        workflow_id: str,
        status: Union[WorkflowStatus, str],
        *,
        actor_id: Optional[str] = None,
    ) -> Workflow:
        """Pause, resume or complete a workflow."""
        try:
            target = WorkflowStatus(status)
        except ValueError as exc:
            raise ValidationError(f"unknown workflow status {status!r}") from exc
        if target not in _STATUS_COMMANDS:
            raise ValidationError(f"workflow status cannot be set to {target.value!r} directly")

        before = self.workflows.require(workflow_id).status
        changed = self.lifecycle.transition(workflow_id, target, actor_id=actor_id)
        workflow = self.workflows.require(workflow_id)
        if changed and before == WorkflowStatus.PAUSED and target == WorkflowStatus.ACTIVE:
            dispatched = self._redispatch(workflow)
            logger.bind(workflow_id=workflow_id).info(f"Resumed workflow, re-dispatched {len(dispatched)} steps")
        return workflow

    def submit_test_results(
        self,
        workflow_id: str,
        step_id: str,
        patient_id: str,
        results: Mapping[str, Any],
        *,
        actor_id: Optional[str] = None,
    ) -> Optional[DispatchResult]:
        """Attach submitted values to an ``analysis_test`` step and run it when possible."""
        workflow = self.workflows.require(workflow_id)
        step = self.steps.require(step_id)
        if step.workflow_id != workflow_id:
            raise ValidationError(f"step {step_id} does not belong to workflow {workflow_id}")
        if step.type != StepType.ANALYSIS_TEST:
            raise ValidationError(f"step {step.name!r} is not an analysis test")
        if patient_id not in workflow.patient_ids:
            raise ValidationError(f"patient {patient_id} is not part of workflow {workflow_id}")
        if self.patients.get(patient_id) is None:
            raise NotFoundError("patient", patient_id)
        if patient_id in step.completed_for:
            raise ValidationError(f"step {step.name!r} is already completed for patient {patient_id}")
        if not results:
            raise ValidationError("no test results submitted")

        values = dict(results)

        def attach(s: WorkflowStep) -> None:
            s.result = {**(s.result or {}), **values}
            s.results_for[patient_id] = {**s.results_for.get(patient_id, {}), **values}
            s.log("results_submitted", "Test results submitted", {"fields": sorted(values), "patient_id": patient_id})

        step = self.steps.update(step_id, attach)
        self.audit.record(
            actor_id or workflow.doctor_id,
            "TEST_RESULTS_SUBMITTED",
            f'Results submitted for step "{step.name}"',
            {"workflow_id": workflow_id, "step_id": step_id, "patient_id": patient_id},
        )
        # steps not reached yet pick the values up when they run
        if workflow.status != WorkflowStatus.ACTIVE or patient_id not in step.waiting_for:
            return None
        return self.dispatcher.schedule(step, workflow, [patient_id])

    def delete_workflow(self, workflow_id: str, *, actor_id: Optional[str] = None) -> int:
        """Delete a workflow and all of its steps. Returns the number of steps removed."""
        workflow = self.workflows.require(workflow_id)
        removed = self.steps.delete_for_workflow(workflow_id)
        self.workflows.delete(workflow_id)
        self.audit.record(
            actor_id or workflow.doctor_id,
            "DELETE_WORKFLOW",
            f'Workflow "{workflow.name}" deleted with {removed} steps',
            {"workflow_id": workflow_id},
        )
        return removed

    # templates --------------------------------------------------------------

    def apply_template(
        self,
        template_id: str,
        patient_ids: Iterable[str],
        doctor_id: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> list[Workflow]:
        """Create one fresh workflow per patient from a template workflow."""
        template = self.workflows.require(template_id)
        if not template.is_template:
            raise ValidationError(f"workflow {template_id} is not a template")
        patient_ids = list(dict.fromkeys(patient_ids))
        if not patient_ids:
            raise ValidationError("no patients given")
        doctor_id = doctor_id or template.doctor_id
        self._require_people(doctor_id, patient_ids)
        template_steps = self.steps.find(template_id)
        actor = actor_id or doctor_id

        created = []
        for patient_id in patient_ids:
            workflow_id = new_id()
            ids = {s.id: new_id() for s in template_steps}
            steps = []
            for src in template_steps:
                condition = src.condition.model_copy(deep=True)
                branch = condition.branch
                branch.on_success = ids.get(branch.on_success) if branch.on_success else None
                branch.on_failure = ids.get(branch.on_failure) if branch.on_failure else None
                schedule = src.schedule.model_copy(update={"last_executed": None}) if src.schedule else None
                steps.append(
                    WorkflowStep(
                        id=ids[src.id],
                        workflow_id=workflow_id,
                        name=src.name,
                        description=src.description,
                        order=src.order,
                        type=src.type,
                        condition=condition,
                        action=src.action.model_copy(deep=True),
                        dependencies=[ids[d] for d in src.dependencies if d in ids],
                        schedule=schedule,
                    )
                )
            for step in steps:
                self.steps.save(step)
            workflow = self.workflows.save(
                Workflow(
                    id=workflow_id,
                    name=template.name,
                    description=template.description,
                    doctor_id=doctor_id,
                    patient_ids=[patient_id],
                    step_ids=[s.id for s in steps],
                    metadata=WorkflowMetadata(created_by=actor, last_modified_by=actor),
                )
            )
            created.append(workflow)
            self.audit.record(
                actor,
                "APPLY_TEMPLATE",
                f'Template "{template.name}" applied for patient {patient_id}',
                {"template_id": template_id, "workflow_id": workflow_id, "patient_id": patient_id},
            )
        logger.info(f"Applied template {template.name} to {len(created)} patients")
        return created

    # read models ------------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> WorkflowView:
        workflow = self.workflows.require(workflow_id)
        return WorkflowView(workflow=workflow, steps=self.steps.find(workflow_id))

    def list_steps(self, workflow_id: str) -> list[WorkflowStep]:
        self.workflows.require(workflow_id)
        return self.steps.find(workflow_id)

    def list_workflows(
        self,
        *,
        doctor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        return self.workflows.find(doctor_id=doctor_id, patient_id=patient_id, status=status)
