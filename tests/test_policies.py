import pytest

from careline.errors import NotFoundError, TransientActionError, ValidationError
from careline.models import Lane
from careline.policies import (
    BackoffPolicy,
    ExponentialBackoff,
    FailureAction,
    FixedBackoff,
    LanePolicy,
    default_lane_policies,
)


def test_fixed_backoff():
    policy = FixedBackoff(3000)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [3000, 3000, 3000]


def test_exponential_backoff_doubles_and_caps():
    policy = ExponentialBackoff(5000)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [5000, 10000, 20000]
    capped = ExponentialBackoff(5000, max_delay_ms=12000)
    assert capped.delay_for(3) == 12000


def test_backoff_from_config():
    policy = BackoffPolicy.from_config({"type": "exponential", "delay_ms": 100, "max_delay_ms": 400})
    assert isinstance(policy, ExponentialBackoff)
    assert policy == ExponentialBackoff(100, 400)
    assert policy != FixedBackoff(100)


def test_default_lanes():
    lanes = default_lane_policies()
    assert lanes[Lane.NORMAL].attempts == 3
    assert lanes[Lane.NORMAL].concurrency == 10
    assert lanes[Lane.PRIORITY].attempts == 5
    assert lanes[Lane.PRIORITY].priority < lanes[Lane.SCHEDULED].priority < lanes[Lane.NORMAL].priority
    assert lanes[Lane.SCHEDULED].backoff == FixedBackoff(60000)
    assert lanes[Lane.SCHEDULED].keep_completed


@pytest.fixture
def lane():
    return LanePolicy(Lane.NORMAL, attempts=3, backoff=ExponentialBackoff(1000), priority=10)


def test_retry_until_attempts_exhausted(lane):
    first = lane.on_failure(TransientActionError("smtp down"), attempt=0)
    assert first.action == FailureAction.RETRY
    assert first.delay_ms == 1000
    second = lane.on_failure(TransientActionError("smtp down"), attempt=1)
    assert second.delay_ms == 2000
    assert lane.on_failure(TransientActionError("smtp down"), attempt=2).action == FailureAction.FAIL


def test_unknown_errors_are_retried(lane):
    assert lane.on_failure(RuntimeError("boom"), attempt=0).action == FailureAction.RETRY


def test_permanent_errors_fail_immediately(lane):
    assert lane.on_failure(NotFoundError("patient", "p"), attempt=0).action == FailureAction.FAIL
    assert lane.on_failure(ValidationError("bad"), attempt=0).action == FailureAction.FAIL
