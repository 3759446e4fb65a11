from .base import (
    AuditLog,
    DoctorStore,
    DocumentStore,
    PatientStore,
    StaleRevisionError,
    StepStore,
    WorkflowStore,
)
from .memory import (
    MemoryAuditLog,
    MemoryDoctorStore,
    MemoryPatientStore,
    MemoryStepStore,
    MemoryWorkflowStore,
)

__all__ = [
    "AuditLog",
    "DoctorStore",
    "DocumentStore",
    "MemoryAuditLog",
    "MemoryDoctorStore",
    "MemoryPatientStore",
    "MemoryStepStore",
    "MemoryWorkflowStore",
    "PatientStore",
    "PostgresDatabase",
    "StaleRevisionError",
    "StepStore",
    "WorkflowStore",
]


def __getattr__(name: str):
    if name == "PostgresDatabase":
        from .postgres import PostgresDatabase as _PostgresDatabase
        return _PostgresDatabase
    raise AttributeError(name)
