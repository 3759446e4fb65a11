from __future__ import annotations

import json
import os
import threading
from typing import Any, ClassVar, Generic, Iterable, Optional, Type

import psycopg

from ..models import AuditRecord, Doctor, Patient, StepStatus, Workflow, WorkflowStatus, WorkflowStep
from .base import AuditLog, DoctorStore, DocumentStore, PatientStore, StaleRevisionError, StepStore, T, WorkflowStore

DEFAULT_DSN = "postgresql://localhost/careline"


class PostgresDatabase:
    """Shared connection with versioned schema migrations.

    Every store and the queue broker register their migration lists under a
    component name; each component's version is tracked separately in
    ``careline_meta``.
    """

    def __init__(self, dsn: str | None = None) -> None:
        self.dsn = dsn or os.environ.get("CARELINE_DATABASE_URL", DEFAULT_DSN)
        self.conn = psycopg.connect(self.dsn, autocommit=True)
        self.lock = threading.RLock()

    def cursor(self):
        return self.conn.cursor()

    def _get_version(self, component: str) -> int:
        with self.cursor() as cur:
            cur.execute("CREATE TABLE IF NOT EXISTS careline_meta (key TEXT PRIMARY KEY, value TEXT)")
            cur.execute("SELECT value FROM careline_meta WHERE key=%s", (f"{component}_version",))
            row = cur.fetchone()
            return int(row[0]) if row else 0

    def _set_version(self, component: str, version: int) -> None:
        with self.cursor() as cur:
            cur.execute(
                "INSERT INTO careline_meta (key, value) VALUES (%s, %s)"
                " ON CONFLICT (key) DO UPDATE SET value=EXCLUDED.value",
                (f"{component}_version", str(version)),
            )

    def migrate(self, component: str, migrations: dict[int, list[str]]) -> None:
        with self.lock:
            version = self._get_version(component)
            for v in range(version + 1, max(migrations, default=0) + 1):
                for stmt in migrations.get(v, []):
                    with self.cursor() as cur:
                        cur.execute(stmt)
                self._set_version(component, v)

    def close(self) -> None:
        self.conn.close()


SCHEMA: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            doctor_id TEXT NOT NULL,
            status TEXT NOT NULL,
            revision INTEGER NOT NULL,
            doc JSONB NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS workflow_steps (
            id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            step_order INTEGER NOT NULL,
            status TEXT NOT NULL,
            revision INTEGER NOT NULL,
            doc JSONB NOT NULL
        );
        """,
        "CREATE INDEX IF NOT EXISTS workflow_steps_by_workflow ON workflow_steps (workflow_id, step_order);",
        """
        CREATE TABLE IF NOT EXISTS patients (
            id TEXT PRIMARY KEY,
            doc JSONB NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS doctors (
            id TEXT PRIMARY KEY,
            doc JSONB NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id BIGSERIAL PRIMARY KEY,
            actor_id TEXT,
            action_type TEXT NOT NULL,
            description TEXT NOT NULL,
            metadata JSONB,
            recorded_at TIMESTAMPTZ NOT NULL
        );
        """,
    ]
}


class _PostgresDocuments(DocumentStore[T], Generic[T]):
    table: ClassVar[str]
    model: ClassVar[Type[Any]]

    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db
        db.migrate("documents", SCHEMA)

    def _columns(self, doc: T) -> dict[str, Any]:
        return {}

    def _load(self, row: Any) -> T:
        return self.model.model_validate(row)

    def get(self, doc_id: str) -> Optional[T]:
        with self.db.cursor() as cur:
            cur.execute(f"SELECT doc FROM {self.table} WHERE id=%s", (doc_id,))
            row = cur.fetchone()
            return self._load(row[0]) if row else None

    def save(self, doc: T) -> T:
        expected = doc.revision
        doc.revision = expected + 1
        payload = doc.model_dump_json()
        extra = self._columns(doc)
        names = ", ".join(extra)
        with self.db.cursor() as cur:
            if expected == 0:
                cur.execute(
                    f"INSERT INTO {self.table} (id, revision, doc, {names})"
                    f" VALUES (%s, %s, %s::jsonb, {', '.join(['%s'] * len(extra))}) ON CONFLICT (id) DO NOTHING",
                    (doc.id, doc.revision, payload, *extra.values()),
                )
            else:
                assignments = ", ".join(f"{k}=%s" for k in extra)
                cur.execute(
                    f"UPDATE {self.table} SET revision=%s, doc=%s::jsonb, {assignments} WHERE id=%s AND revision=%s",
                    (doc.revision, payload, *extra.values(), doc.id, expected),
                )
            if cur.rowcount != 1:
                doc.revision = expected
                raise StaleRevisionError(f"{self.kind} {doc.id} changed since revision {expected}")
        return doc

    def delete(self, doc_id: str) -> bool:
        with self.db.cursor() as cur:
            cur.execute(f"DELETE FROM {self.table} WHERE id=%s", (doc_id,))
            return cur.rowcount > 0


class PostgresWorkflowStore(_PostgresDocuments[Workflow], WorkflowStore):
    table = "workflows"
    model = Workflow

    def _columns(self, doc: Workflow) -> dict[str, Any]:
        return {"doctor_id": doc.doctor_id, "status": doc.status.value}

    def find(
        self,
        *,
        doctor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        clauses, params = ["TRUE"], []
        if doctor_id is not None:
            clauses.append("doctor_id=%s")
            params.append(doctor_id)
        if status is not None:
            clauses.append("status=%s")
            params.append(status.value)
        if patient_id is not None:
            clauses.append("doc->'patient_ids' ? %s")
            params.append(patient_id)
        with self.db.cursor() as cur:
            cur.execute(
                f"SELECT doc FROM workflows WHERE {' AND '.join(clauses)} ORDER BY doc->>'created_at'",
                params,
            )
            return [self._load(row[0]) for row in cur.fetchall()]


class PostgresStepStore(_PostgresDocuments[WorkflowStep], StepStore):
    table = "workflow_steps"
    model = WorkflowStep

    def _columns(self, doc: WorkflowStep) -> dict[str, Any]:
        return {"workflow_id": doc.workflow_id, "step_order": doc.order, "status": doc.status.value}

    def find(self, workflow_id: str, *, status: Optional[Iterable[StepStatus]] = None) -> list[WorkflowStep]:
        query = "SELECT doc FROM workflow_steps WHERE workflow_id=%s"
        params: list[Any] = [workflow_id]
        if status is not None:
            query += " AND status = ANY(%s)"
            params.append([s.value for s in status])
        with self.db.cursor() as cur:
            cur.execute(query + " ORDER BY step_order", params)
            return [self._load(row[0]) for row in cur.fetchall()]

    def find_completed(self, step_ids: Iterable[str]) -> list[WorkflowStep]:
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT doc FROM workflow_steps WHERE id = ANY(%s) AND status=%s",
                (list(step_ids), StepStatus.COMPLETED.value),
            )
            return [self._load(row[0]) for row in cur.fetchall()]


class PostgresPatientStore(PatientStore):
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db
        db.migrate("documents", SCHEMA)

    def get(self, patient_id: str) -> Optional[Patient]:
        with self.db.cursor() as cur:
            cur.execute("SELECT doc FROM patients WHERE id=%s", (patient_id,))
            row = cur.fetchone()
            return Patient.model_validate({**row[0], "id": patient_id}) if row else None


class PostgresDoctorStore(DoctorStore):
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db
        db.migrate("documents", SCHEMA)

    def get(self, doctor_id: str) -> Optional[Doctor]:
        with self.db.cursor() as cur:
            cur.execute("SELECT doc FROM doctors WHERE id=%s", (doctor_id,))
            row = cur.fetchone()
            return Doctor.model_validate({**row[0], "id": doctor_id}) if row else None


class PostgresAuditLog(AuditLog):
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db
        db.migrate("documents", SCHEMA)

    def record(self, record: AuditRecord) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                "INSERT INTO audit_log (actor_id, action_type, description, metadata, recorded_at)"
                " VALUES (%s, %s, %s, %s::jsonb, %s)",
                (
                    record.actor_id,
                    record.action_type,
                    record.description,
                    json.dumps(record.metadata, default=str),
                    record.timestamp,
                ),
            )
