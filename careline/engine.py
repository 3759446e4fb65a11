"""Wiring of stores, broker and engine components."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from .actions import TaskFunction, default_handlers
from .audit import AuditOutbox
from .broker import MemoryQueueBroker, QueueBroker
from .config import CarelineConfig
from .dispatcher import Dispatcher
from .lifecycle import WorkflowLifecycle
from .models import Doctor, Lane, Patient
from .notifications import LoggingNotificationSender, NotificationSender
from .policies import LanePolicy
from .resolver import NextStepResolver
from .service import WorkflowService
from .storage import (
    AuditLog,
    DoctorStore,
    MemoryAuditLog,
    MemoryDoctorStore,
    MemoryPatientStore,
    MemoryStepStore,
    MemoryWorkflowStore,
    PatientStore,
    StepStore,
    WorkflowStore,
)
from .utils.logging import get_logger
from .utils.timing import Clock, utcnow
from .worker import StepExecutor
from .worker.pool import WorkerPool

logger = get_logger()


@dataclass
class Engine:
    """All collaborators of one running engine."""

    config: CarelineConfig
    lanes: dict[Lane, LanePolicy]
    workflows: WorkflowStore
    steps: StepStore
    patients: PatientStore
    doctors: DoctorStore
    audit_log: AuditLog
    broker: QueueBroker
    audit: AuditOutbox
    sender: NotificationSender
    dispatcher: Dispatcher
    lifecycle: WorkflowLifecycle
    resolver: NextStepResolver
    executor: StepExecutor
    pool: WorkerPool
    service: WorkflowService

    def close(self) -> None:
        self.pool.close()
        self.audit.close()
        self.broker.close()


def build_engine(
    *,
    workflows: WorkflowStore,
    steps: StepStore,
    patients: PatientStore,
    doctors: DoctorStore,
    audit_log: AuditLog,
    broker: QueueBroker,
    config: Optional[CarelineConfig] = None,
    sender: Optional[NotificationSender] = None,
    tasks: Optional[Mapping[str, TaskFunction]] = None,
    clock: Clock = utcnow,
) -> Engine:
    config = config or CarelineConfig()
    settings = config.engine
    lanes = config.lane_policies()
    sender = sender or LoggingNotificationSender()
    audit = AuditOutbox(audit_log, maxsize=settings.audit_queue_size).start()
    dispatcher = Dispatcher(
        steps,
        broker,
        lanes,
        clock=clock,
        tz=settings.tz,
        reference_hour=settings.reference_hour,
        bucket_seconds=settings.idempotency_bucket_seconds,
    )
    lifecycle = WorkflowLifecycle(workflows, audit)
    resolver = NextStepResolver(steps, dispatcher, lifecycle, clock=clock)
    executor = StepExecutor(
        workflows=workflows,
        steps=steps,
        patients=patients,
        doctors=doctors,
        handlers=default_handlers(sender, tasks),
        dispatcher=dispatcher,
        resolver=resolver,
        lifecycle=lifecycle,
        audit=audit,
        clock=clock,
        dead_letter_policy=settings.dead_letter_policy,
    )
    pool = WorkerPool(broker, executor, lanes, poll_interval=config.broker.poll_interval)
    service = WorkflowService(
        workflows=workflows,
        steps=steps,
        patients=patients,
        doctors=doctors,
        broker=broker,
        dispatcher=dispatcher,
        resolver=resolver,
        lifecycle=lifecycle,
        audit=audit,
    )
    return Engine(
        config=config,
        lanes=lanes,
        workflows=workflows,
        steps=steps,
        patients=patients,
        doctors=doctors,
        audit_log=audit_log,
        broker=broker,
        audit=audit,
        sender=sender,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        resolver=resolver,
        executor=executor,
        pool=pool,
        service=service,
    )


def build_memory_engine(
    config: Optional[CarelineConfig] = None,
    *,
    patients: Iterable[Patient] = (),
    doctors: Iterable[Doctor] = (),
    sender: Optional[NotificationSender] = None,
    tasks: Optional[Mapping[str, TaskFunction]] = None,
    clock: Clock = utcnow,
) -> Engine:
    """Engine on in-memory stores and broker, for tests and embedding."""
    return build_engine(
        workflows=MemoryWorkflowStore(),
        steps=MemoryStepStore(),
        patients=MemoryPatientStore(patients),
        doctors=MemoryDoctorStore(doctors),
        audit_log=MemoryAuditLog(),
        broker=MemoryQueueBroker(clock=clock),
        config=config,
        sender=sender,
        tasks=tasks,
        clock=clock,
    )


def build_postgres_engine(
    config: CarelineConfig,
    *,
    sender: Optional[NotificationSender] = None,
    tasks: Optional[Mapping[str, TaskFunction]] = None,
) -> Engine:
    """Engine on PostgreSQL stores; the broker follows ``config.broker.backend``."""
    from .broker.postgres import PostgresQueueBroker
    from .storage.postgres import (
        PostgresAuditLog,
        PostgresDatabase,
        PostgresDoctorStore,
        PostgresPatientStore,
        PostgresStepStore,
        PostgresWorkflowStore,
    )

    db = PostgresDatabase(config.database_url)
    if config.broker.backend == "postgres":
        broker: QueueBroker = PostgresQueueBroker(db, lease=config.broker.lease_seconds)
    else:
        broker = MemoryQueueBroker()
    logger.info(f"Using {config.broker.backend} broker")
    return build_engine(
        workflows=PostgresWorkflowStore(db),
        steps=PostgresStepStore(db),
        patients=PostgresPatientStore(db),
        doctors=PostgresDoctorStore(db),
        audit_log=PostgresAuditLog(db),
        broker=broker,
        config=config,
        sender=sender,
        tasks=tasks,
    )
