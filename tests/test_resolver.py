import pytest

from careline.models import Lane, StepStatus, WorkflowStatus
from careline.resolver import ResolutionKind


@pytest.fixture
def resolve(engine, patient, doctor):
    def run(step, workflow_id, **kwargs):
        workflow = engine.workflows.get(workflow_id)
        return engine.resolver.resolve_next(engine.steps.get(step.id), patient, doctor, workflow, **kwargs)

    return run


def complete(engine, step, result=None, patient_id="pat-1"):
    def mutate(s):
        s.status = StepStatus.COMPLETED
        s.result = result
        s.completed_for[patient_id] = s.updated_at

    return engine.steps.update(step.id, mutate)


def test_inactive_workflow_is_not_resolved(engine, started, resolve):
    wf, steps = started({"name": "A", "type": "task"}, {"name": "B", "type": "task"})
    engine.service.update_workflow_status(wf.id, "paused")
    complete(engine, steps["A"])
    assert resolve(steps["A"], wf.id).kind == ResolutionKind.NOTHING
    assert engine.steps.get(steps["B"].id).status == StepStatus.PENDING


def test_pending_recurrence_keeps_workflow_open(engine, started, resolve):
    wf, steps = started({"name": "A", "type": "task"})
    complete(engine, steps["A"])
    assert resolve(steps["A"], wf.id, recurrence_pending=True).kind == ResolutionKind.NOTHING
    assert engine.workflows.get(wf.id).status == WorkflowStatus.ACTIVE
    assert resolve(steps["A"], wf.id).kind == ResolutionKind.COMPLETED
    assert engine.workflows.get(wf.id).status == WorkflowStatus.COMPLETED


def test_finished_branch_target_is_not_dispatched_again(engine, started, resolve):
    wf, steps = started(
        {
            "name": "A",
            "type": "task",
            "condition": {
                "kind": "parameter_based",
                "parameter": "x",
                "operator": ">",
                "threshold": 1,
                "branch": {"on_success": "b"},
            },
        },
        {"key": "b", "name": "B", "type": "task"},
        {"name": "C", "type": "task"},
    )
    complete(engine, steps["A"], {"x": 2})
    complete(engine, steps["B"])
    resolution = resolve(steps["A"], wf.id)
    assert resolution.kind == ResolutionKind.NOTHING
    assert engine.steps.get(steps["C"].id).status == StepStatus.PENDING
    assert engine.workflows.get(wf.id).status == WorkflowStatus.ACTIVE


def test_unmet_branch_falls_back_to_on_failure(engine, started, resolve):
    wf, steps = started(
        {
            "name": "A",
            "type": "task",
            "condition": {
                "kind": "parameter_based",
                "parameter": "x",
                "operator": ">",
                "threshold": 1,
                "branch": {"on_success": "b", "on_failure": "c"},
            },
        },
        {"key": "b", "name": "B", "type": "task"},
        {"key": "c", "name": "C", "type": "alert"},
    )
    complete(engine, steps["A"], {"x": 0})
    resolution = resolve(steps["A"], wf.id)
    assert resolution.kind == ResolutionKind.DISPATCHED
    assert resolution.target == steps["C"].id
    assert engine.broker.stats(Lane.PRIORITY).waiting == 1
    assert engine.steps.get(steps["B"].id).status == StepStatus.PENDING


def test_completion_releases_waiting_dependents(engine, started, resolve):
    wf, steps = started(
        {"key": "a", "name": "A", "type": "task"},
        {"name": "B", "type": "task"},
        {"name": "C", "type": "reminder", "dependencies": ["a"]},
    )
    waiting = engine.dispatcher.schedule(steps["C"], engine.workflows.get(wf.id), ["pat-1"])
    assert waiting.state.value == "waiting"

    complete(engine, steps["A"])
    resolution = resolve(steps["A"], wf.id)
    assert resolution.kind == ResolutionKind.DISPATCHED
    assert resolution.target == steps["B"].id
    assert resolution.released == [steps["C"].id]
    assert engine.steps.get(steps["C"].id).status == StepStatus.QUEUED
    assert engine.steps.get(steps["B"].id).status == StepStatus.QUEUED


def test_failure_route_without_target(engine, started, patient, doctor):
    wf, steps = started({"name": "A", "type": "task"})
    workflow = engine.workflows.get(wf.id)
    assert engine.resolver.route_failure(steps["A"], patient, doctor, workflow) is None


def test_patient_finishing_leaves_workflow_open_for_others(engine, create, resolve):
    wf = create({"name": "A", "type": "task"}, patient_ids=["pat-1", "pat-2"])
    engine.service.start_workflow(wf.id, "pat-1")
    engine.service.start_workflow(wf.id, "pat-2")
    step = engine.steps.find(wf.id)[0]

    complete(engine, step)
    assert resolve(step, wf.id).kind == ResolutionKind.FINISHED
    stored = engine.workflows.get(wf.id)
    assert stored.status == WorkflowStatus.ACTIVE
    assert stored.active_patients == ["pat-2"]


def test_branch_uses_the_patients_own_result(engine, create, resolve):
    wf = create(
        {
            "name": "A",
            "type": "task",
            "condition": {
                "kind": "parameter_based",
                "parameter": "x",
                "operator": ">",
                "threshold": 1,
                "branch": {"on_success": "b", "on_failure": "c"},
            },
        },
        {"key": "b", "name": "B", "type": "task"},
        {"key": "c", "name": "C", "type": "task"},
        patient_ids=["pat-1", "pat-2"],
    )
    engine.service.start_workflow(wf.id, "pat-1")
    a, b, c = engine.steps.find(wf.id)

    def record(s):
        s.status = StepStatus.COMPLETED
        s.completed_for["pat-1"] = s.updated_at
        s.results_for["pat-1"] = {"x": 0}
        # latest result belongs to another patient
        s.result = {"x": 5}

    engine.steps.update(a.id, record)
    assert resolve(a, wf.id).target == c.id
