import pytest

from careline.errors import InvalidTransitionError
from careline.lifecycle import can_transition
from careline.models import WorkflowStatus


@pytest.fixture
def workflow(create):
    return create({"name": "A", "type": "reminder"})


def test_transition_bumps_version_and_audits(engine, workflow, audit_types):
    assert engine.lifecycle.activate(workflow.id, actor_id="doc-1")
    stored = engine.workflows.get(workflow.id)
    assert stored.status == WorkflowStatus.ACTIVE
    assert stored.metadata.version == 2
    assert stored.metadata.last_modified_by == "doc-1"
    assert audit_types().count("WORKFLOW_ACTIVATED") == 1


def test_repeated_transition_is_a_no_op(engine, workflow, audit_types):
    engine.lifecycle.activate(workflow.id)
    assert not engine.lifecycle.activate(workflow.id)
    assert engine.workflows.get(workflow.id).metadata.version == 2
    assert audit_types().count("WORKFLOW_ACTIVATED") == 1


def test_resume_is_audited_as_resume(engine, workflow, audit_types):
    engine.lifecycle.activate(workflow.id)
    engine.lifecycle.pause(workflow.id)
    assert engine.lifecycle.resume(workflow.id)
    types = audit_types()
    assert types.count("WORKFLOW_ACTIVATED") == 1
    assert types.count("WORKFLOW_RESUMED") == 1


def test_terminal_statuses_are_final(engine, workflow):
    engine.lifecycle.activate(workflow.id)
    engine.lifecycle.complete(workflow.id)
    with pytest.raises(InvalidTransitionError) as info:
        engine.lifecycle.fail(workflow.id)
    assert info.value.current == "completed"
    assert engine.workflows.get(workflow.id).status == WorkflowStatus.COMPLETED


def test_fail_records_reason(engine, workflow, patient):
    engine.lifecycle.activate(workflow.id)
    engine.lifecycle.fail(workflow.id, patient=patient, reason="step Labs failed")
    engine.audit.flush()
    (record,) = engine.audit_log.of_type("WORKFLOW_ERROR")
    assert record.description.endswith("for patient Lena Marsh: step Labs failed")
    assert record.metadata == {"workflow_id": workflow.id, "from": "active", "to": "error", "patient_id": "pat-1"}


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        (WorkflowStatus.INACTIVE, WorkflowStatus.ACTIVE, True),
        (WorkflowStatus.INACTIVE, WorkflowStatus.PAUSED, False),
        (WorkflowStatus.PAUSED, WorkflowStatus.ERROR, True),
        (WorkflowStatus.PAUSED, WorkflowStatus.COMPLETED, False),
        (WorkflowStatus.ERROR, WorkflowStatus.ACTIVE, False),
        (WorkflowStatus.COMPLETED, WorkflowStatus.COMPLETED, True),
    ],
)
def test_can_transition(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_patients_in_progress(engine, workflow):
    engine.lifecycle.enroll(workflow.id, "pat-1")
    engine.lifecycle.enroll(workflow.id, "pat-2")
    engine.lifecycle.enroll(workflow.id, "pat-1")
    assert engine.workflows.get(workflow.id).active_patients == ["pat-1", "pat-2"]
    assert engine.lifecycle.finish_patient(workflow.id, "pat-1") == ["pat-2"]
    assert engine.lifecycle.finish_patient(workflow.id, "pat-1") == ["pat-2"]
    assert engine.lifecycle.finish_patient(workflow.id, "pat-2") == []
