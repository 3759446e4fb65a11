"""Turns a runnable step into queued jobs.

The dispatcher decides *when* (wake time) and *where* (lane) a step runs and
records that decision on the step. It never runs anything itself.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Iterable, Optional

from .broker import EnqueueOptions, QueueBroker
from .models import (
    TERMINAL_STEP_STATUSES,
    Job,
    Lane,
    StepStatus,
    StepType,
    TimeCondition,
    Workflow,
    WorkflowStep,
    new_id,
)
from .policies import LanePolicy, default_lane_policies
from .recurrence import REFERENCE_HOUR, next_execution
from .storage.base import StepStore
from .utils.logging import get_logger
from .utils.timing import Clock, delay_until, parse_duration, utcnow

logger = get_logger()


class DispatchState(str, Enum):
    ENQUEUED = "enqueued"
    DEDUPLICATED = "deduplicated"
    WAITING = "waiting"
    SKIPPED = "skipped"
    IGNORED = "ignored"


@dataclass
class DispatchResult:
    state: DispatchState
    lane: Optional[Lane] = None
    wake_at: Optional[datetime] = None
    job_ids: list[str] = field(default_factory=list)


class Dispatcher:
    def __init__(
        self,
        steps: StepStore,
        broker: QueueBroker,
        lanes: Optional[dict[Lane, LanePolicy]] = None,
        *,
        clock: Clock = utcnow,
        tz: tzinfo = timezone.utc,
        reference_hour: int = REFERENCE_HOUR,
        bucket_seconds: int = 60,
    ) -> None:
        self.steps = steps
        self.broker = broker
        self.lanes = lanes or default_lane_policies()
        self.clock = clock
        self.tz = tz
        self.reference_hour = reference_hour
        self.bucket_seconds = max(1, bucket_seconds)

    # decisions -------------------------------------------------------------

    def lane_for(self, step: WorkflowStep) -> Lane:
        if step.schedule is not None:
            return Lane.SCHEDULED
        if step.type == StepType.ALERT:
            return Lane.PRIORITY
        return Lane.NORMAL

    def next_occurrence(self, step: WorkflowStep, now: datetime) -> Optional[datetime]:
        return next_execution(step.schedule, now, tz=self.tz, hour=self.reference_hour)

    def wake_time(self, step: WorkflowStep, now: datetime) -> Optional[datetime]:
        """Absolute instant the step may run, or ``None`` when its schedule is exhausted."""
        if step.schedule is not None:
            return self.next_occurrence(step, now)
        condition = step.condition
        if isinstance(condition, TimeCondition):
            if condition.after is not None:
                return now + timedelta(milliseconds=parse_duration(condition.after))
            return max(condition.specific_time, now)
        return now

    def idempotency_key(self, step_id: str, patient_id: str, instant: Optional[datetime] = None) -> str:
        """Deterministic key of one (step, patient) unit of work.

        Scheduled occurrences are told apart by the bucket of their wake
        instant. Without an instant the key names the pair itself, which the
        broker holds until the job is acked or dead-lettered.
        """
        if instant is None:
            return hashlib.sha1(f"{step_id}:{patient_id}".encode()).hexdigest()
        bucket = int(instant.timestamp()) // self.bucket_seconds
        return hashlib.sha1(f"{step_id}:{patient_id}:{bucket}".encode()).hexdigest()

    def _options(self, lane: Lane, delay_ms: int, key: str) -> EnqueueOptions:
        policy = self.lanes[lane]
        return EnqueueOptions(
            delay_ms=delay_ms,
            priority=policy.priority,
            attempts=policy.attempts,
            backoff=policy.backoff,
            idempotency_key=key,
            remove_on_complete=not policy.keep_completed,
        )

    # operations ------------------------------------------------------------

    def _mark(
        self,
        step_id: str,
        status: StepStatus,
        log_status: str,
        message: str,
        details=None,
        *,
        waiting: Iterable[str] = (),
        dispatched: Iterable[str] = (),
    ) -> WorkflowStep:
        now = self.clock()
        waiting, dispatched = list(waiting), list(dispatched)

        def mutate(step: WorkflowStep) -> None:
            # another patient may have settled the step already; its status stays
            if step.status not in TERMINAL_STEP_STATUSES:
                step.status = status
            for patient_id in waiting:
                step.mark_waiting(patient_id)
            step.waiting_for = [p for p in step.waiting_for if p not in dispatched]
            step.log(log_status, message, details, at=now)

        return self.steps.update(step_id, mutate)

    def schedule(
        self,
        step: WorkflowStep,
        workflow: Workflow,
        patient_ids: Iterable[str],
        doctor_id: Optional[str] = None,
        *,
        initial: bool = False,
    ) -> DispatchResult:
        """Queue *step* once per patient whose dependencies are complete.

        Patients the step already completed or permanently failed for are
        left out, and a patient whose job for the step is still held by the
        broker is deduplicated by the idempotency key. ``initial`` marks the
        enqueue done right after a workflow starts; the step then stays
        ``pending`` instead of ``queued``.
        """
        current = self.steps.require(step.id)
        log = logger.bind(workflow_id=workflow.id, step_id=current.id)
        if current.status == StepStatus.SKIPPED:
            log.debug(f"Step {current.name} is skipped, not dispatching")
            return DispatchResult(DispatchState.IGNORED)
        targets = [p for p in dict.fromkeys(patient_ids) if not current.settled_for(p)]
        if not targets:
            log.debug(f"Step {current.name} already ran for every requested patient")
            return DispatchResult(DispatchState.IGNORED)

        ready = [p for p in targets if self.steps.dependencies_met(current, p)]
        blocked = [p for p in targets if p not in ready]
        if blocked:
            done = {s.id for s in self.steps.find_completed(current.dependencies)}
            missing = [d for d in current.dependencies if d not in done]
            self._mark(
                current.id,
                StepStatus.WAITING_CONDITION,
                "waiting_condition",
                "Waiting for dependencies to complete",
                {"missing": missing, "patient_ids": blocked},
                waiting=blocked,
            )
            log.info(f"Step {current.name} waiting on dependencies for {len(blocked)} patients")
            if not ready:
                return DispatchResult(DispatchState.WAITING)

        now = self.clock()
        wake_at = self.wake_time(current, now)
        if wake_at is None:
            self._mark(current.id, StepStatus.SKIPPED, "skipped", "Schedule exhausted, step skipped")
            log.info(f"Step {current.name} skipped, schedule exhausted")
            return DispatchResult(DispatchState.SKIPPED)

        lane = self.lane_for(current)
        delay_ms = delay_until(wake_at, now)
        scheduled = lane == Lane.SCHEDULED
        job_ids: list[str] = []
        enqueued: list[str] = []
        for patient_id in ready:
            job = Job(
                step_id=current.id,
                patient_id=patient_id,
                doctor_id=doctor_id or workflow.doctor_id,
                workflow_id=workflow.id,
                lane=lane,
                scheduled_for=wake_at if scheduled else None,
            )
            key = self.idempotency_key(current.id, patient_id, wake_at if scheduled else None)
            job_id = self.broker.enqueue(lane, job, self._options(lane, delay_ms, key))
            if job_id is None:
                log.info(f"Duplicate dispatch of {current.name} for patient {patient_id} ignored")
                continue
            job_ids.append(job_id)
            enqueued.append(patient_id)

        if not job_ids:
            return DispatchResult(DispatchState.DEDUPLICATED, lane, wake_at)

        self._mark(
            current.id,
            StepStatus.PENDING if initial else StepStatus.QUEUED,
            "scheduled" if scheduled else "queued",
            f"Step added to {lane.value} queue",
            {
                "lane": lane.value,
                "wake_at": wake_at.isoformat(),
                "delay_ms": delay_ms,
                "job_ids": job_ids,
                "patient_ids": enqueued,
            },
            dispatched=enqueued,
        )
        log.info(f"Dispatched {current.name} to {lane.value} lane, wake at {wake_at.isoformat()}")
        return DispatchResult(DispatchState.ENQUEUED, lane, wake_at, job_ids)

    def schedule_recurrence(self, step: WorkflowStep, job: Job) -> Optional[str]:
        """Submit the occurrence following *job* for a recurring step.

        Computed from the occurrence the job was created for, so the failed
        and the successful path, and any retries of either, all produce the
        same next occurrence and the same idempotency key.
        """
        if step.schedule is None or job.scheduled_for is None:
            return None
        done = job.scheduled_for
        prior = step.completed_for.get(job.patient_id)
        if prior is not None:
            done = max(done, prior)
        schedule = step.schedule.model_copy(update={"last_executed": done})
        now = self.clock()
        wake_at = next_execution(schedule, now, tz=self.tz, hour=self.reference_hour)
        if wake_at is None:
            logger.bind(step_id=step.id).info(f"Recurrence of {step.name} exhausted")
            return None
        follow_up = job.model_copy(update={"attempt": 0, "scheduled_for": wake_at, "execution_id": new_id()})
        key = self.idempotency_key(step.id, job.patient_id, wake_at)
        options = self._options(Lane.SCHEDULED, delay_until(wake_at, now), key)
        job_id = self.broker.enqueue(Lane.SCHEDULED, follow_up, options)
        if job_id is not None:
            self.steps.update(
                step.id,
                lambda s: s.log(
                    "scheduled",
                    "Next occurrence scheduled",
                    {"lane": Lane.SCHEDULED.value, "wake_at": wake_at.isoformat(), "job_ids": [job_id]},
                    at=now,
                ),
            )
        return job_id
