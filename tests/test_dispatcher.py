from datetime import datetime, timedelta, timezone

from careline.dispatcher import DispatchState
from careline.models import Lane, StepStatus


def first_step(engine, wf):
    return engine.steps.find(wf.id)[0]


def test_step_without_dependencies_dispatches_now(engine, create, clock):
    wf = create({"name": "Reminder", "type": "reminder"})
    step = first_step(engine, wf)
    result = engine.dispatcher.schedule(step, wf, ["pat-1"])
    assert result.state == DispatchState.ENQUEUED
    assert result.lane == Lane.NORMAL
    assert result.wake_at == clock.now
    assert len(result.job_ids) == 1

    stored = engine.steps.get(step.id)
    assert stored.status == StepStatus.QUEUED
    assert stored.execution_logs[-1].details["lane"] == "normal"
    assert engine.broker.reserve(Lane.NORMAL).job.patient_id == "pat-1"


def test_unmet_dependencies_wait_without_job(engine, create):
    wf = create(
        {"key": "labs", "name": "Labs", "type": "task"},
        {"name": "Review", "type": "reminder", "dependencies": ["labs"]},
    )
    labs, review = engine.steps.find(wf.id)
    result = engine.dispatcher.schedule(review, wf, ["pat-1"])
    assert result.state == DispatchState.WAITING
    stored = engine.steps.get(review.id)
    assert stored.status == StepStatus.WAITING_CONDITION
    assert stored.execution_logs[-1].details == {"missing": [labs.id], "patient_ids": ["pat-1"]}
    assert stored.waiting_for == ["pat-1"]
    assert all(engine.broker.size(lane) == 0 for lane in Lane)


def test_alert_goes_to_priority_lane(engine, create):
    wf = create({"name": "Alert", "type": "alert"})
    result = engine.dispatcher.schedule(first_step(engine, wf), wf, ["pat-1"])
    assert result.lane == Lane.PRIORITY
    assert engine.broker.stats(Lane.PRIORITY).waiting == 1


def test_scheduled_step_waits_for_its_occurrence(engine, create, clock):
    wf = create(
        {
            "name": "Daily check",
            "type": "reminder",
            "schedule": {"type": "daily", "start_date": clock.now.isoformat()},
        }
    )
    result = engine.dispatcher.schedule(first_step(engine, wf), wf, ["pat-1"])
    assert result.lane == Lane.SCHEDULED
    assert result.wake_at == datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)
    assert engine.broker.reserve(Lane.SCHEDULED) is None
    clock.advance(hours=1)
    delivery = engine.broker.reserve(Lane.SCHEDULED)
    assert delivery.job.scheduled_for == result.wake_at


def test_relative_time_condition_delays_dispatch(engine, create, clock):
    wf = create({"name": "Later", "type": "reminder", "condition": {"kind": "time_based", "after": "2d"}})
    result = engine.dispatcher.schedule(first_step(engine, wf), wf, ["pat-1"])
    assert result.lane == Lane.NORMAL
    assert result.wake_at == clock.now + timedelta(days=2)
    assert engine.broker.stats(Lane.NORMAL).delayed == 1


def test_past_specific_time_runs_immediately(engine, create, clock):
    past = (clock.now - timedelta(days=1)).isoformat()
    wf = create({"name": "Overdue", "type": "reminder", "condition": {"kind": "time_based", "specific_time": past}})
    result = engine.dispatcher.schedule(first_step(engine, wf), wf, ["pat-1"])
    assert result.wake_at == clock.now


def test_exhausted_schedule_skips_step(engine, create, clock):
    past = (clock.now - timedelta(days=1)).isoformat()
    wf = create({"name": "Once", "type": "reminder", "schedule": {"type": "once", "start_date": past}})
    step = first_step(engine, wf)
    result = engine.dispatcher.schedule(step, wf, ["pat-1"])
    assert result.state == DispatchState.SKIPPED
    assert engine.steps.get(step.id).status == StepStatus.SKIPPED
    assert engine.broker.size(Lane.SCHEDULED) == 0


def test_initial_dispatch_keeps_step_pending_and_deduplicates(engine, create):
    wf = create({"name": "Reminder", "type": "reminder"})
    step = first_step(engine, wf)
    first = engine.dispatcher.schedule(step, wf, ["pat-1"], initial=True)
    assert first.state == DispatchState.ENQUEUED
    assert engine.steps.get(step.id).status == StepStatus.PENDING

    again = engine.dispatcher.schedule(step, wf, ["pat-1"], initial=True)
    assert again.state == DispatchState.DEDUPLICATED
    assert engine.broker.size(Lane.NORMAL) == 1


def test_queued_step_is_not_dispatched_twice(engine, create):
    wf = create({"name": "Reminder", "type": "reminder"})
    step = first_step(engine, wf)
    engine.dispatcher.schedule(step, wf, ["pat-1"])
    assert engine.dispatcher.schedule(step, wf, ["pat-1"]).state == DispatchState.DEDUPLICATED
    assert engine.broker.size(Lane.NORMAL) == 1

    # once the job is settled the pair may be queued again
    engine.broker.ack(engine.broker.reserve(Lane.NORMAL))
    assert engine.dispatcher.schedule(step, wf, ["pat-1"]).state == DispatchState.ENQUEUED


def test_step_settled_for_patient_is_not_dispatched_again(engine, create, clock):
    wf = create({"name": "Reminder", "type": "reminder"}, patient_ids=["pat-1", "pat-2"])
    step = first_step(engine, wf)

    def settle(s):
        s.status = StepStatus.COMPLETED
        s.completed_for["pat-1"] = clock.now

    engine.steps.update(step.id, settle)
    assert engine.dispatcher.schedule(step, wf, ["pat-1"]).state == DispatchState.IGNORED

    result = engine.dispatcher.schedule(step, wf, ["pat-1", "pat-2"])
    assert result.state == DispatchState.ENQUEUED
    assert [j.patient_id for j in engine.broker.jobs(Lane.NORMAL)] == ["pat-2"]
    # the shared status is never moved out of a terminal state
    assert engine.steps.get(step.id).status == StepStatus.COMPLETED


def test_skipped_step_is_ignored(engine, create):
    wf = create({"name": "Reminder", "type": "reminder"})
    step = first_step(engine, wf)
    engine.steps.update(step.id, lambda s: setattr(s, "status", StepStatus.SKIPPED))
    assert engine.dispatcher.schedule(step, wf, ["pat-1"]).state == DispatchState.IGNORED


def test_one_job_per_patient(engine, create):
    wf = create({"name": "Reminder", "type": "reminder"}, patient_ids=["pat-1", "pat-2"])
    result = engine.dispatcher.schedule(first_step(engine, wf), wf, wf.patient_ids)
    assert len(result.job_ids) == 2
    assert sorted(j.patient_id for j in engine.broker.jobs(Lane.NORMAL)) == ["pat-1", "pat-2"]


def test_idempotency_key_buckets(engine, clock):
    key = engine.dispatcher.idempotency_key
    now = datetime(2024, 3, 4, 8, 0, 10, tzinfo=timezone.utc)
    assert key("s", "p", now) == key("s", "p", now + timedelta(seconds=30))
    assert key("s", "p", now) != key("s", "p", now + timedelta(seconds=60))
    assert key("s", "p", now) != key("s", "other", now)
    # without an instant the key covers the pair while its job is held
    assert key("s", "p") == key("s", "p")
    assert key("s", "p") != key("s", "p", now)


def test_dispatch_across_bucket_boundary_is_deduplicated(engine, create, clock):
    wf = create({"name": "Reminder", "type": "reminder"})
    step = first_step(engine, wf)
    clock.advance(seconds=59)
    assert engine.dispatcher.schedule(step, wf, ["pat-1"], initial=True).state == DispatchState.ENQUEUED
    clock.advance(seconds=2)
    assert engine.dispatcher.schedule(step, wf, ["pat-1"], initial=True).state == DispatchState.DEDUPLICATED
    assert engine.broker.size(Lane.NORMAL) == 1
