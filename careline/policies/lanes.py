from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from ..errors import is_retryable
from ..models import Lane
from .backoff import ExponentialBackoff, FixedBackoff
from .base import BackoffPolicy, FailureAction, FailureDecision


@dataclass
class LanePolicy:
    """Retry, priority and concurrency settings of one lane.

    ``priority`` follows the broker convention: lower numbers are served first.
    """

    lane: Lane
    attempts: int
    backoff: BackoffPolicy
    priority: int
    concurrency: int = 1
    keep_completed: bool = False

    def on_failure(self, exc: BaseException, attempt: int) -> FailureDecision:
        """Decide what happens after attempt number *attempt* (0-based) raised *exc*."""
        if not is_retryable(exc):
            return FailureDecision(FailureAction.FAIL)
        made = attempt + 1
        if made >= self.attempts:
            return FailureDecision(FailureAction.FAIL)
        return FailureDecision(FailureAction.RETRY, self.backoff.delay_for(made))

    def to_config(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": self.backoff.to_config(),
            "priority": self.priority,
            "concurrency": self.concurrency,
        }


def default_lane_policies() -> dict[Lane, LanePolicy]:
    """Normal traffic gets the most workers, alerts the most attempts and top priority."""
    return {
        Lane.NORMAL: LanePolicy(Lane.NORMAL, attempts=3, backoff=ExponentialBackoff(5000), priority=10, concurrency=10),
        Lane.PRIORITY: LanePolicy(Lane.PRIORITY, attempts=5, backoff=FixedBackoff(3000), priority=1, concurrency=5),
        Lane.SCHEDULED: LanePolicy(
            Lane.SCHEDULED,
            attempts=3,
            backoff=FixedBackoff(60000),
            priority=5,
            concurrency=2,
            keep_completed=True,
        ),
    }
