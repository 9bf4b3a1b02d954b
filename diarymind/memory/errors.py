"""Error taxonomy for the memory lifecycle."""

from __future__ import annotations


class DiaryMemoryError(Exception):
    """Base class for all memory lifecycle errors."""

    retryable = True


class InvalidRecord(DiaryMemoryError):
    """Malformed record or candidate (content, ranges, missing related id)."""

    retryable = False


class UnknownRecord(DiaryMemoryError):
    """Record id is missing or belongs to a different user."""

    retryable = False

    def __init__(self, user_id: str, memory_id: str) -> None:
        super().__init__(f"Unknown memory {memory_id!r} for user {user_id!r}")
        self.user_id = user_id
        self.memory_id = memory_id


class OracleError(DiaryMemoryError):
    """Transient failure calling the fact-extraction or consolidation oracle."""


class PersistenceError(DiaryMemoryError):
    """Store read/write failed after the bounded retries."""


class PlanInconsistencyError(DiaryMemoryError):
    """Consolidation plan failed validation. Reported as a warning, never raised to callers."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Consolidation plan inconsistent ({len(errors)} problems)")
        self.errors = list(errors)


class WorkflowStepError(DiaryMemoryError):
    """A durable workflow step exhausted its retries; the run is marked failed."""

    retryable = False

    def __init__(self, workflow: str, run_id: str, step: str, cause: BaseException) -> None:
        super().__init__(f"{workflow} run {run_id!r} failed at step {step!r}: {cause}")
        self.workflow = workflow
        self.run_id = run_id
        self.step = step
        self.cause = cause
