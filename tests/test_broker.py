import pytest

from careline.broker import EnqueueOptions, MemoryQueueBroker
from careline.models import Job, Lane
from careline.policies import FixedBackoff


def make_job(step_id="s1", patient_id="p1") -> Job:
    return Job(step_id=step_id, patient_id=patient_id, doctor_id="d1", workflow_id="w1")


@pytest.fixture
def broker(clock):
    return MemoryQueueBroker(clock=clock)


def test_delayed_job_is_not_reserved_before_wake_time(broker, clock):
    broker.enqueue(Lane.NORMAL, make_job(), EnqueueOptions(delay_ms=60_000))
    assert broker.reserve(Lane.NORMAL) is None
    assert broker.stats(Lane.NORMAL).delayed == 1
    clock.advance(seconds=59)
    assert broker.reserve(Lane.NORMAL) is None
    clock.advance(seconds=1)
    delivery = broker.reserve(Lane.NORMAL)
    assert delivery is not None
    assert delivery.job.lane == Lane.NORMAL
    assert broker.stats(Lane.NORMAL).reserved == 1


def test_lower_priority_value_served_first(broker):
    broker.enqueue(Lane.NORMAL, make_job("late"), EnqueueOptions(priority=10))
    broker.enqueue(Lane.NORMAL, make_job("urgent"), EnqueueOptions(priority=1))
    assert broker.reserve(Lane.NORMAL).job.step_id == "urgent"
    assert broker.reserve(Lane.NORMAL).job.step_id == "late"


def test_lanes_are_independent(broker):
    broker.enqueue(Lane.PRIORITY, make_job(), EnqueueOptions())
    assert broker.reserve(Lane.NORMAL) is None
    assert broker.reserve(Lane.PRIORITY) is not None


def test_idempotency_key_rejects_duplicates_until_ack(broker):
    opts = EnqueueOptions(idempotency_key="k1")
    first = broker.enqueue(Lane.NORMAL, make_job(), opts)
    assert first is not None
    assert broker.enqueue(Lane.NORMAL, make_job(), opts) is None
    delivery = broker.reserve(Lane.NORMAL)
    broker.ack(delivery)
    assert broker.enqueue(Lane.NORMAL, make_job(), opts) is not None


def test_kept_jobs_hold_their_key_after_ack(broker):
    opts = EnqueueOptions(idempotency_key="k2", remove_on_complete=False)
    broker.enqueue(Lane.SCHEDULED, make_job(), opts)
    broker.ack(broker.reserve(Lane.SCHEDULED))
    assert broker.enqueue(Lane.SCHEDULED, make_job(), opts) is None


def test_retry_bumps_attempt_and_delays(broker, clock):
    broker.enqueue(Lane.NORMAL, make_job(), EnqueueOptions(attempts=3, backoff=FixedBackoff(1000)))
    delivery = broker.reserve(Lane.NORMAL)
    broker.retry(delivery, 1000)
    assert broker.reserve(Lane.NORMAL) is None
    clock.advance(seconds=1)
    again = broker.reserve(Lane.NORMAL)
    assert again.delivery_id == delivery.delivery_id
    assert again.job.attempt == 1


def test_dead_letter_releases_key(broker):
    opts = EnqueueOptions(idempotency_key="k3")
    broker.enqueue(Lane.PRIORITY, make_job(), opts)
    delivery = broker.reserve(Lane.PRIORITY)
    broker.dead_letter(delivery, "boom")
    dead = broker.dead_letters(Lane.PRIORITY)
    assert [d.error for d in dead] == ["boom"]
    assert broker.size(Lane.PRIORITY) == 0
    assert broker.stats(Lane.PRIORITY).dead == 1
    assert broker.enqueue(Lane.PRIORITY, make_job(), opts) is not None


def test_enqueue_options_config_roundtrip():
    opts = EnqueueOptions(delay_ms=5, priority=2, attempts=4, backoff=FixedBackoff(10), idempotency_key="x")
    assert EnqueueOptions.from_config(opts.to_config()) == opts
