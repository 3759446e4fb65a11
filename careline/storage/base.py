from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Generic, Iterable, Optional, TypeVar

from ..errors import ConcurrencyError, NotFoundError
from ..models import AuditRecord, Doctor, Patient, StepStatus, Workflow, WorkflowStatus, WorkflowStep
from ..utils.timing import utcnow

T = TypeVar("T", Workflow, WorkflowStep)

UPDATE_RETRIES = 5


class StaleRevisionError(ConcurrencyError):
    """The document changed since it was read."""


class DocumentStore(ABC, Generic[T]):
    """Versioned document storage with optimistic read-modify-write.

    Every saved document carries a ``revision``. :meth:`save` only succeeds
    when the stored revision still equals the one the caller read, and bumps
    it on success.
    """

    kind = "document"

    @abstractmethod
    def get(self, doc_id: str) -> Optional[T]:
        """Return a private copy of the document or ``None``."""

    @abstractmethod
    def save(self, doc: T) -> T:
        """Persist *doc*, raising :class:`StaleRevisionError` on a lost race."""

    @abstractmethod
    def delete(self, doc_id: str) -> bool:
        """Remove the document. Returns whether it existed."""

    def require(self, doc_id: str) -> T:
        doc = self.get(doc_id)
        if doc is None:
            raise NotFoundError(self.kind, doc_id)
        return doc

    def update(self, doc_id: str, mutate: Callable[[T], Optional[bool]], retries: int = UPDATE_RETRIES) -> T:
        """Apply *mutate* to a fresh copy and save it, retrying lost races.

        *mutate* may return ``False`` to signal that nothing changed; the
        document is then returned without a write.
        """
        for _ in range(retries):
            doc = self.require(doc_id)
            if mutate(doc) is False:
                return doc
            doc.updated_at = utcnow()
            try:
                return self.save(doc)
            except StaleRevisionError:
                continue
        raise ConcurrencyError(f"{self.kind} {doc_id} kept changing during update")


class WorkflowStore(DocumentStore[Workflow]):
    kind = "workflow"

    @abstractmethod
    def find(
        self,
        *,
        doctor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        """Return workflows matching all given filters."""


class StepStore(DocumentStore[WorkflowStep]):
    kind = "step"

    @abstractmethod
    def find(self, workflow_id: str, *, status: Optional[Iterable[StepStatus]] = None) -> list[WorkflowStep]:
        """Return the steps of *workflow_id* sorted by ``order``."""

    @abstractmethod
    def find_completed(self, step_ids: Iterable[str]) -> list[WorkflowStep]:
        """Return the steps among *step_ids* whose status is ``completed``."""

    def delete_for_workflow(self, workflow_id: str) -> int:
        removed = 0
        for step in self.find(workflow_id):
            removed += int(self.delete(step.id))
        return removed

    def dependencies_met(self, step: WorkflowStep, patient_id: Optional[str] = None) -> bool:
        """Whether every dependency of *step* is complete.

        With *patient_id* a dependency only counts once it completed for that
        patient.
        """
        if not step.dependencies:
            return True
        if patient_id is None:
            done = {s.id for s in self.find_completed(step.dependencies)}
            return done.issuperset(step.dependencies)
        for dep_id in step.dependencies:
            dep = self.get(dep_id)
            if dep is None or patient_id not in dep.completed_for:
                return False
        return True


class PatientStore(ABC):
    @abstractmethod
    def get(self, patient_id: str) -> Optional[Patient]:
        """Return the patient or ``None``."""


class DoctorStore(ABC):
    @abstractmethod
    def get(self, doctor_id: str) -> Optional[Doctor]:
        """Return the doctor or ``None``."""


class AuditLog(ABC):
    """Destination of audit records. Written through :class:`~careline.audit.AuditOutbox`."""

    @abstractmethod
    def record(self, record: AuditRecord) -> None:
        """Persist *record*."""
