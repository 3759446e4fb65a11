"""Backoff and lane policies."""

from .backoff import ExponentialBackoff, FixedBackoff
from .base import _POLICY_REGISTRY, BackoffPolicy, FailureAction, FailureDecision
from .lanes import LanePolicy, default_lane_policies

__all__ = [
    "_POLICY_REGISTRY",
    "BackoffPolicy",
    "ExponentialBackoff",
    "FailureAction",
    "FailureDecision",
    "FixedBackoff",
    "LanePolicy",
    "default_lane_policies",
]
