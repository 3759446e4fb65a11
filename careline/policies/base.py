# -*- coding: utf-8 -*-
"""Policy interfaces for job failure handling.

Backoff policies are serialisable so lane settings can be read from
configuration files and stored alongside queued jobs.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Type

# registry for serializable backoff policies
_POLICY_REGISTRY: Dict[str, Type["BackoffPolicy"]] = {}


class FailureAction(str, Enum):
    """Decision returned when a job fails."""

    RETRY = "retry"
    FAIL = "fail"


@dataclass
class FailureDecision:
    """Outcome from :meth:`LanePolicy.on_failure`."""

    action: FailureAction
    delay_ms: int = 0


class BackoffPolicy(abc.ABC):
    """Delay before the *n*-th retry of a failed job."""

    name = "backoff"

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if hasattr(cls, "name"):
            _POLICY_REGISTRY[cls.name] = cls

    def __init__(self, delay_ms: int = 0) -> None:
        self.delay_ms = delay_ms

    @abc.abstractmethod
    def delay_for(self, retry: int) -> int:
        """Milliseconds to wait before retry number *retry* (1-based)."""

    def to_config(self) -> Dict[str, Any]:
        """Return a serialisable representation."""
        return {"type": self.name, "delay_ms": self.delay_ms}

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "BackoffPolicy":
        cfg = dict(cfg)
        policy_cls = _POLICY_REGISTRY[cfg.pop("type")]
        return policy_cls(**cfg)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, BackoffPolicy) and self.to_config() == other.to_config()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_config()})"
