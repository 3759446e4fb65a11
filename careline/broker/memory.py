from __future__ import annotations

import heapq
import itertools
import threading
from datetime import datetime, timedelta
from typing import Optional

from ..models import Job, Lane, new_id
from ..utils.timing import Clock, utcnow
from .base import DeadLetter, Delivery, EnqueueOptions, LaneStats, QueueBroker


class _LaneQueue:
    def __init__(self) -> None:
        # (ready_at, seq, delivery_id) for jobs whose delay has not elapsed
        self.delayed: list[tuple[datetime, int, str]] = []
        # (priority, ready_at, seq, delivery_id) for jobs ready to run
        self.ready: list[tuple[int, datetime, int, str]] = []
        self.reserved: set[str] = set()
        self.dead: list[DeadLetter] = []


class MemoryQueueBroker(QueueBroker):
    """In-process broker used for tests and single-process deployments.

    Delays are measured against the injected ``clock`` so tests can move time
    forward without sleeping.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self._lanes: dict[Lane, _LaneQueue] = {lane: _LaneQueue() for lane in Lane}
        self._jobs: dict[str, tuple[Lane, Job, EnqueueOptions]] = {}
        self._ready_at: dict[str, datetime] = {}
        self._keys: dict[str, str] = {}
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def enqueue(self, lane: Lane, job: Job, options: EnqueueOptions) -> Optional[str]:
        with self._lock:
            key = options.idempotency_key
            if key is not None and key in self._keys:
                return None
            delivery_id = new_id()
            job = job.model_copy(update={"lane": lane})
            self._jobs[delivery_id] = (lane, job, options)
            if key is not None:
                self._keys[key] = delivery_id
            self._schedule(lane, delivery_id, options.delay_ms)
            return delivery_id

    def _schedule(self, lane: Lane, delivery_id: str, delay_ms: int) -> None:
        ready_at = self.clock() + timedelta(milliseconds=max(0, delay_ms))
        self._ready_at[delivery_id] = ready_at
        heapq.heappush(self._lanes[lane].delayed, (ready_at, next(self._seq), delivery_id))

    def _promote(self, lane: Lane) -> None:
        queue = self._lanes[lane]
        now = self.clock()
        while queue.delayed and queue.delayed[0][0] <= now:
            ready_at, seq, delivery_id = heapq.heappop(queue.delayed)
            _, _, options = self._jobs[delivery_id]
            heapq.heappush(queue.ready, (options.priority, ready_at, seq, delivery_id))

    def reserve(self, lane: Lane) -> Optional[Delivery]:
        with self._lock:
            self._promote(lane)
            queue = self._lanes[lane]
            if not queue.ready:
                return None
            _, _, _, delivery_id = heapq.heappop(queue.ready)
            queue.reserved.add(delivery_id)
            _, job, options = self._jobs[delivery_id]
            return Delivery(
                delivery_id=delivery_id,
                lane=lane,
                job=job.model_copy(),
                options=options,
                reserved_at=self.clock(),
            )

    def _release(self, delivery: Delivery, keep_key: bool = False) -> None:
        self._lanes[delivery.lane].reserved.discard(delivery.delivery_id)
        _, _, options = self._jobs.pop(delivery.delivery_id, (None, None, delivery.options))
        self._ready_at.pop(delivery.delivery_id, None)
        key = options.idempotency_key
        if key is not None and not keep_key and self._keys.get(key) == delivery.delivery_id:
            del self._keys[key]

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            self._release(delivery, keep_key=not delivery.options.remove_on_complete)

    def retry(self, delivery: Delivery, delay_ms: int) -> None:
        with self._lock:
            if delivery.delivery_id not in self._jobs:
                return
            lane, job, options = self._jobs[delivery.delivery_id]
            self._lanes[lane].reserved.discard(delivery.delivery_id)
            self._jobs[delivery.delivery_id] = (lane, job.model_copy(update={"attempt": job.attempt + 1}), options)
            self._schedule(lane, delivery.delivery_id, delay_ms)

    def dead_letter(self, delivery: Delivery, error: str) -> None:
        with self._lock:
            self._lanes[delivery.lane].dead.append(
                DeadLetter(
                    delivery_id=delivery.delivery_id,
                    lane=delivery.lane,
                    job=delivery.job,
                    error=error,
                    failed_at=self.clock(),
                )
            )
            self._release(delivery)

    def dead_letters(self, lane: Lane) -> list[DeadLetter]:
        with self._lock:
            return list(self._lanes[lane].dead)

    def stats(self, lane: Lane) -> LaneStats:
        with self._lock:
            self._promote(lane)
            queue = self._lanes[lane]
            return LaneStats(
                lane=lane,
                waiting=len(queue.ready),
                delayed=len(queue.delayed),
                reserved=len(queue.reserved),
                dead=len(queue.dead),
            )

    def jobs(self, lane: Lane) -> list[Job]:
        with self._lock:
            return [job for (job_lane, job, _) in self._jobs.values() if job_lane == lane]

    def next_ready_at(self, lane: Lane) -> Optional[datetime]:
        """Wake time of the earliest delayed job of *lane*."""
        with self._lock:
            queue = self._lanes[lane]
            return queue.delayed[0][0] if queue.delayed else None
