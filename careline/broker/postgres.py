from __future__ import annotations

import json
from datetime import timedelta
from typing import Optional

from ..models import Job, Lane, new_id
from ..storage.postgres import PostgresDatabase
from ..utils.timing import Clock, utcnow
from .base import DeadLetter, Delivery, EnqueueOptions, LaneStats, QueueBroker

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS careline_jobs (
            id TEXT PRIMARY KEY,
            lane TEXT NOT NULL,
            state TEXT NOT NULL,
            priority INTEGER NOT NULL,
            ready_at TIMESTAMPTZ NOT NULL,
            locked_until TIMESTAMPTZ,
            idempotency_key TEXT,
            payload JSONB NOT NULL,
            options JSONB NOT NULL,
            error TEXT,
            updated_at TIMESTAMPTZ NOT NULL
        );
        """,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS careline_jobs_idempotency
            ON careline_jobs (idempotency_key) WHERE idempotency_key IS NOT NULL;
        """,
        "CREATE INDEX IF NOT EXISTS careline_jobs_ready ON careline_jobs (lane, state, priority, ready_at);",
    ]
}


class PostgresQueueBroker(QueueBroker):
    """Durable broker on a single PostgreSQL table.

    Workers claim jobs with ``FOR UPDATE SKIP LOCKED`` and hold them for
    ``lease`` seconds. A job whose lease expires without an ack is handed out
    again, which gives at-least-once delivery across worker crashes.
    """

    def __init__(self, db: PostgresDatabase, *, lease: float = 300.0, clock: Clock = utcnow) -> None:
        self.db = db
        self.lease = lease
        self.clock = clock
        db.migrate("broker", MIGRATIONS)

    def enqueue(self, lane: Lane, job: Job, options: EnqueueOptions) -> Optional[str]:
        delivery_id = new_id()
        now = self.clock()
        job = job.model_copy(update={"lane": lane})
        with self.db.cursor() as cur:
            cur.execute(
                "INSERT INTO careline_jobs"
                " (id, lane, state, priority, ready_at, idempotency_key, payload, options, updated_at)"
                " VALUES (%s, %s, 'waiting', %s, %s, %s, %s::jsonb, %s::jsonb, %s)"
                " ON CONFLICT (idempotency_key) WHERE idempotency_key IS NOT NULL DO NOTHING"
                " RETURNING id",
                (
                    delivery_id,
                    lane.value,
                    options.priority,
                    now + timedelta(milliseconds=max(0, options.delay_ms)),
                    options.idempotency_key,
                    job.model_dump_json(),
                    json.dumps(options.to_config()),
                    now,
                ),
            )
            row = cur.fetchone()
        return row[0] if row else None

    def reserve(self, lane: Lane) -> Optional[Delivery]:
        now = self.clock()
        with self.db.cursor() as cur:
            cur.execute(
                "UPDATE careline_jobs SET state='reserved', locked_until=%s, updated_at=%s"
                " WHERE id = ("
                "   SELECT id FROM careline_jobs WHERE lane=%s AND ("
                "     (state='waiting' AND ready_at <= %s) OR (state='reserved' AND locked_until < %s))"
                "   ORDER BY priority, ready_at LIMIT 1 FOR UPDATE SKIP LOCKED"
                " ) RETURNING id, payload, options",
                (now + timedelta(seconds=self.lease), now, lane.value, now, now),
            )
            row = cur.fetchone()
        if row is None:
            return None
        delivery_id, payload, options = row
        return Delivery(
            delivery_id=delivery_id,
            lane=lane,
            job=Job.model_validate(payload),
            options=EnqueueOptions.from_config(options),
            reserved_at=now,
        )

    def ack(self, delivery: Delivery) -> None:
        with self.db.cursor() as cur:
            if delivery.options.remove_on_complete:
                cur.execute("DELETE FROM careline_jobs WHERE id=%s", (delivery.delivery_id,))
            else:
                cur.execute(
                    "UPDATE careline_jobs SET state='done', locked_until=NULL, updated_at=%s WHERE id=%s",
                    (self.clock(), delivery.delivery_id),
                )

    def retry(self, delivery: Delivery, delay_ms: int) -> None:
        now = self.clock()
        job = delivery.job.model_copy(update={"attempt": delivery.job.attempt + 1})
        with self.db.cursor() as cur:
            cur.execute(
                "UPDATE careline_jobs SET state='waiting', locked_until=NULL, ready_at=%s,"
                " payload=%s::jsonb, updated_at=%s WHERE id=%s",
                (now + timedelta(milliseconds=max(0, delay_ms)), job.model_dump_json(), now, delivery.delivery_id),
            )

    def dead_letter(self, delivery: Delivery, error: str) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                "UPDATE careline_jobs SET state='dead', locked_until=NULL, idempotency_key=NULL,"
                " error=%s, updated_at=%s WHERE id=%s",
                (error, self.clock(), delivery.delivery_id),
            )

    def dead_letters(self, lane: Lane) -> list[DeadLetter]:
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT id, payload, error, updated_at FROM careline_jobs"
                " WHERE lane=%s AND state='dead' ORDER BY updated_at",
                (lane.value,),
            )
            rows = cur.fetchall()
        return [
            DeadLetter(delivery_id=r[0], lane=lane, job=Job.model_validate(r[1]), error=r[2] or "", failed_at=r[3])
            for r in rows
        ]

    def stats(self, lane: Lane) -> LaneStats:
        now = self.clock()
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT"
                " count(*) FILTER (WHERE state='waiting' AND ready_at <= %s),"
                " count(*) FILTER (WHERE state='waiting' AND ready_at > %s),"
                " count(*) FILTER (WHERE state='reserved'),"
                " count(*) FILTER (WHERE state='dead'),"
                " count(*) FILTER (WHERE state='done')"
                " FROM careline_jobs WHERE lane=%s",
                (now, now, lane.value),
            )
            waiting, delayed, reserved, dead, done = cur.fetchone()
        return LaneStats(
            lane=lane, waiting=waiting, delayed=delayed, reserved=reserved, dead=dead, extra={"done": done}
        )

    def jobs(self, lane: Lane) -> list[Job]:
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT payload FROM careline_jobs WHERE lane=%s AND state IN ('waiting', 'reserved')"
                " ORDER BY priority, ready_at",
                (lane.value,),
            )
            rows = cur.fetchall()
        return [Job.model_validate(r[0]) for r in rows]

    def close(self) -> None:
        self.db.close()
