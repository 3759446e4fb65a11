"""Thread-based lane consumers."""

from __future__ import annotations

import dataclasses
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from ..broker import Delivery, QueueBroker
from ..models import Lane
from ..policies import FailureAction, FailureDecision, LanePolicy, default_lane_policies
from ..utils.logging import get_logger
from .executor import StepExecutor

logger = get_logger()

# alerts first when draining synchronously
DRAIN_ORDER = (Lane.PRIORITY, Lane.NORMAL, Lane.SCHEDULED)


class WorkerPool:
    """Consume every lane with a bounded pool of worker threads.

    Each lane gets its own :class:`ThreadPoolExecutor` sized by the lane's
    ``concurrency`` so a burst of reminders can never starve alerts.
    """

    def __init__(
        self,
        broker: QueueBroker,
        executor: StepExecutor,
        lanes: Optional[dict[Lane, LanePolicy]] = None,
        *,
        poll_interval: float = 1.0,
    ) -> None:
        self.broker = broker
        self.executor = executor
        self.lanes = lanes or default_lane_policies()
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._pools: list[ThreadPoolExecutor] = []

    def _decide(self, delivery: Delivery, exc: BaseException) -> FailureDecision:
        policy = self.lanes[delivery.lane]
        options = delivery.options
        # the options a job was queued with win over the current lane settings
        policy = dataclasses.replace(policy, attempts=options.attempts, backoff=options.backoff or policy.backoff)
        return policy.on_failure(exc, delivery.job.attempt)

    def process(self, delivery: Delivery) -> None:
        """Execute one reserved job and settle it with the broker."""
        job = delivery.job
        log = logger.bind(lane=delivery.lane.value, step_id=job.step_id, execution_id=job.execution_id)
        try:
            self.executor.execute(job)
        except Exception as exc:
            decision = self._decide(delivery, exc)
            if decision.action == FailureAction.RETRY:
                log.warning(f"Job {delivery.delivery_id} failed, retrying in {decision.delay_ms} ms: {exc!r}")
                self.broker.retry(delivery, decision.delay_ms)
                return
            log.error(f"Job {delivery.delivery_id} failed permanently: {exc!r}")
            self.broker.dead_letter(delivery, repr(exc))
            self.executor.on_dead_letter(job, str(exc))
            return
        self.broker.ack(delivery)

    def drain(self, max_jobs: Optional[int] = None) -> int:
        """Process ready jobs on the calling thread until none are left.

        Jobs that become ready while draining (follow-up steps, immediate
        retries) are picked up as well. Returns the number of jobs processed.
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            found = False
            for lane in DRAIN_ORDER:
                delivery = self.broker.reserve(lane)
                if delivery is None:
                    continue
                found = True
                self.process(delivery)
                processed += 1
                break
            if not found:
                break
        return processed

    def _consume(self, lane: Lane) -> None:
        while not self._stop.is_set():
            try:
                delivery = self.broker.reserve(lane)
            except Exception as exc:
                logger.error(f"Could not reserve from {lane.value} lane: {exc!r}")
                self._stop.wait(self.poll_interval)
                continue
            if delivery is None:
                self._stop.wait(self.poll_interval)
                continue
            try:
                self.process(delivery)
            except Exception:
                logger.exception(f"Settling job {delivery.delivery_id} on {lane.value} lane failed")

    def run(self, *, block: bool = True) -> None:
        """Start the consumers of every lane.

        With ``block`` the call only returns after :meth:`stop`.
        """
        self._stop.clear()
        for lane, policy in self.lanes.items():
            workers = max(1, policy.concurrency)
            pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"careline-{lane.value}")
            for _ in range(workers):
                pool.submit(self._consume, lane)
            self._pools.append(pool)
            logger.info(f"Started {workers} workers on {lane.value} lane")
        if block:
            self._stop.wait()
            self._shutdown()

    def stop(self) -> None:
        self._stop.set()

    def _shutdown(self) -> None:
        pools, self._pools = self._pools, []
        for pool in pools:
            pool.shutdown(wait=True)
        logger.info("Worker pool stopped")

    def close(self) -> None:
        """Stop consumers and wait for in-flight jobs."""
        self.stop()
        self._shutdown()
