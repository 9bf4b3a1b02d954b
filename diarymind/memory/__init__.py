"""Memory record model, store and lifecycle operations."""

from diarymind.memory.errors import (
    DiaryMemoryError,
    InvalidRecord,
    OracleError,
    PersistenceError,
    PlanInconsistencyError,
    UnknownRecord,
    WorkflowStepError,
)
from diarymind.memory.store import RecordStore
from diarymind.memory.types import MemoryRecord

__all__ = [
    "DiaryMemoryError",
    "InvalidRecord",
    "MemoryRecord",
    "OracleError",
    "PersistenceError",
    "PlanInconsistencyError",
    "RecordStore",
    "UnknownRecord",
    "WorkflowStepError",
]
