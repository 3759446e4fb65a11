from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from ..models import Job, Lane
from ..policies import BackoffPolicy


@dataclass
class EnqueueOptions:
    """Delivery options passed to :meth:`QueueBroker.enqueue`.

    ``priority`` follows the usual queue convention: lower values are served
    first among jobs that are ready. A job whose ``idempotency_key`` matches
    one still held by the broker is not enqueued again.
    """

    delay_ms: int = 0
    priority: int = 10
    attempts: int = 1
    backoff: Optional[BackoffPolicy] = None
    idempotency_key: Optional[str] = None
    remove_on_complete: bool = True

    def to_config(self) -> dict[str, Any]:
        return {
            "delay_ms": self.delay_ms,
            "priority": self.priority,
            "attempts": self.attempts,
            "backoff": self.backoff.to_config() if self.backoff else None,
            "idempotency_key": self.idempotency_key,
            "remove_on_complete": self.remove_on_complete,
        }

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "EnqueueOptions":
        cfg = dict(cfg)
        backoff = cfg.pop("backoff", None)
        return cls(backoff=BackoffPolicy.from_config(backoff) if backoff else None, **cfg)


@dataclass
class Delivery:
    """A job reserved by a worker. Must be acked, retried or dead-lettered."""

    delivery_id: str
    lane: Lane
    job: Job
    options: EnqueueOptions
    reserved_at: datetime


@dataclass
class DeadLetter:
    """A job that exhausted its attempts or failed permanently."""

    delivery_id: str
    lane: Lane
    job: Job
    error: str
    failed_at: datetime


@dataclass
class LaneStats:
    lane: Lane
    waiting: int = 0
    delayed: int = 0
    reserved: int = 0
    dead: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


class QueueBroker(ABC):
    """Interface of the job queue consumed by the dispatcher and the worker pool."""

    @abstractmethod
    def enqueue(self, lane: Lane, job: Job, options: EnqueueOptions) -> Optional[str]:
        """Queue *job* on *lane*.

        Returns the delivery id, or ``None`` when the idempotency key is
        already held by another job.
        """

    @abstractmethod
    def reserve(self, lane: Lane) -> Optional[Delivery]:
        """Hand out the best ready job of *lane*, if any is due."""

    @abstractmethod
    def ack(self, delivery: Delivery) -> None:
        """Mark *delivery* as done."""

    @abstractmethod
    def retry(self, delivery: Delivery, delay_ms: int) -> None:
        """Put *delivery* back after *delay_ms* with its attempt counter bumped."""

    @abstractmethod
    def dead_letter(self, delivery: Delivery, error: str) -> None:
        """Park *delivery* permanently."""

    @abstractmethod
    def dead_letters(self, lane: Lane) -> list[DeadLetter]:
        """Return the dead-lettered jobs of *lane*."""

    @abstractmethod
    def stats(self, lane: Lane) -> LaneStats:
        """Return queue depth counters for *lane*."""

    def size(self, lane: Lane) -> int:
        """Jobs of *lane* not yet finished (waiting, delayed or reserved)."""
        st = self.stats(lane)
        return st.waiting + st.delayed + st.reserved

    def jobs(self, lane: Lane) -> Iterable[Job]:  # pragma: no cover - optional introspection
        """Jobs currently held for *lane*."""
        return []

    def status(self) -> dict[str, str]:
        """Return a simple status dictionary."""
        return {"status": "ok"}

    def close(self) -> None:
        """Release broker resources."""
