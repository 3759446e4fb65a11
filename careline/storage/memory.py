from __future__ import annotations

import threading
from typing import Iterable, Optional

from ..models import AuditRecord, Doctor, Patient, StepStatus, Workflow, WorkflowStatus, WorkflowStep
from .base import AuditLog, DoctorStore, DocumentStore, PatientStore, StaleRevisionError, StepStore, T, WorkflowStore


class _MemoryDocuments(DocumentStore[T]):
    """Dictionary backed documents. Copies go in and out so callers never share state."""

    def __init__(self) -> None:
        self._docs: dict[str, T] = {}
        self._lock = threading.RLock()

    def get(self, doc_id: str) -> Optional[T]:
        with self._lock:
            doc = self._docs.get(doc_id)
            return doc.model_copy(deep=True) if doc is not None else None

    def save(self, doc: T) -> T:
        with self._lock:
            current = self._docs.get(doc.id)
            stored_revision = current.revision if current is not None else 0
            if stored_revision != doc.revision:
                raise StaleRevisionError(f"{self.kind} {doc.id} is at revision {stored_revision}, not {doc.revision}")
            doc.revision += 1
            self._docs[doc.id] = doc.model_copy(deep=True)
            return doc

    def delete(self, doc_id: str) -> bool:
        with self._lock:
            return self._docs.pop(doc_id, None) is not None

    def _values(self) -> list[T]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._docs.values()]


class MemoryWorkflowStore(_MemoryDocuments[Workflow], WorkflowStore):
    def find(
        self,
        *,
        doctor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        found = []
        for wf in self._values():
            if doctor_id is not None and wf.doctor_id != doctor_id:
                continue
            if patient_id is not None and patient_id not in wf.patient_ids:
                continue
            if status is not None and wf.status != status:
                continue
            found.append(wf)
        return sorted(found, key=lambda wf: wf.created_at)


class MemoryStepStore(_MemoryDocuments[WorkflowStep], StepStore):
    def find(self, workflow_id: str, *, status: Optional[Iterable[StepStatus]] = None) -> list[WorkflowStep]:
        wanted = set(status) if status is not None else None
        steps = [
            s for s in self._values() if s.workflow_id == workflow_id and (wanted is None or s.status in wanted)
        ]
        return sorted(steps, key=lambda s: s.order)

    def find_completed(self, step_ids: Iterable[str]) -> list[WorkflowStep]:
        ids = set(step_ids)
        return [s for s in self._values() if s.id in ids and s.status == StepStatus.COMPLETED]


class MemoryPatientStore(PatientStore):
    def __init__(self, patients: Iterable[Patient] = ()) -> None:
        self._patients = {p.id: p for p in patients}

    def add(self, patient: Patient) -> Patient:
        self._patients[patient.id] = patient
        return patient

    def get(self, patient_id: str) -> Optional[Patient]:
        return self._patients.get(patient_id)


class MemoryDoctorStore(DoctorStore):
    def __init__(self, doctors: Iterable[Doctor] = ()) -> None:
        self._doctors = {d.id: d for d in doctors}

    def add(self, doctor: Doctor) -> Doctor:
        self._doctors[doctor.id] = doctor
        return doctor

    def get(self, doctor_id: str) -> Optional[Doctor]:
        return self._doctors.get(doctor_id)


class MemoryAuditLog(AuditLog):
    """Keeps audit records in a list; used by tests and the in-memory engine."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def record(self, record: AuditRecord) -> None:
        with self._lock:
            self.records.append(record)

    def of_type(self, action_type: str) -> list[AuditRecord]:
        with self._lock:
            return [r for r in self.records if r.action_type == action_type]
