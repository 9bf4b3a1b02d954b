"""Durable memory-consolidation workflow."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass
from typing import Any

import structlog

from diarymind.config.schema import ConsolidationWorkflowConfig, MemoryConfig
from diarymind.logging import get_logger
from diarymind.memory.consolidation import (
    ConsolidationOracle,
    ConsolidationPlan,
    execute_consolidation_plan,
    generate_consolidation_plan,
    validate_consolidation_plan,
)
from diarymind.memory.context_cache import ContextCache
from diarymind.memory.errors import PlanInconsistencyError
from diarymind.memory.store import RecordStore
from diarymind.memory.types import MemoryRecord
from diarymind.workflows.runner import StepContext, StepPolicy, WorkflowRun, WorkflowRunner

logger = get_logger(__name__)

WORKFLOW_NAME = "memory-consolidation"
CANCELLED = "cancelled"


@dataclass
class ConsolidationOutcome:
    run_id: str
    user_id: str
    decayed: int = 0
    active_before: int = 0
    skipped: bool = False
    plan_valid: bool | None = None
    plan_errors: int = 0
    merged: int = 0
    deactivated: int = 0
    skipped_groups: int = 0
    protected: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.decayed or self.merged or self.deactivated)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsolidationOutcome:
        return cls(**data)


class MemoryConsolidationWorkflow:
    """
    ``decay-memories`` -> ``fetch-memories`` -> ``generate-plan`` ->
    ``execute-plan`` -> ``invalidate-cache``.

    Stops after ``fetch-memories`` when the active count is at or below the
    threshold. The plan is computed against the fetched snapshot; records
    created while the run is in flight wait for the next run.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        oracle: ConsolidationOracle,
        cache: ContextCache,
        runner: WorkflowRunner,
        memory_config: MemoryConfig | None = None,
        policies: ConsolidationWorkflowConfig | None = None,
    ):
        self.store = store
        self.oracle = oracle
        self.cache = cache
        self.runner = runner
        self.memory_config = memory_config or MemoryConfig()
        self.policies = policies or ConsolidationWorkflowConfig()

    def next_run_id(self, user_id: str) -> str:
        """The user's newest failed run, so it resumes from its snapshot; otherwise a fresh id."""
        for run in self.runner.list_runs(WORKFLOW_NAME):
            if run.params.get("user_id") != user_id:
                continue
            if run.status == "failed" and run.error != CANCELLED:
                return run.run_id
            break
        return f"{user_id}-{uuid.uuid4().hex[:8]}"

    async def run(self, user_id: str, *, run_id: str | None = None) -> ConsolidationOutcome:
        run_id = run_id or f"{user_id}-{uuid.uuid4().hex[:8]}"
        run = self.runner.start(WORKFLOW_NAME, run_id, {"user_id": user_id})
        if run.status == "completed" and isinstance(run.output, dict):
            return ConsolidationOutcome.from_dict(run.output)

        with structlog.contextvars.bound_contextvars(workflow=WORKFLOW_NAME, run_id=run_id, user_id=user_id):
            try:
                outcome = await self._execute(run, user_id)
            except asyncio.CancelledError:
                self.runner.fail(run, CANCELLED)
                raise
            self.runner.complete(run, outcome.to_dict())
            return outcome

    async def _execute(self, run: WorkflowRun, user_id: str) -> ConsolidationOutcome:
        policies = self.policies
        cfg = self.memory_config
        outcome = ConsolidationOutcome(run_id=run.run_id, user_id=user_id)

        outcome.decayed = await self.runner.step(
            run,
            "decay-memories",
            lambda ctx: self.store.decay_memories(user_id),
            StepPolicy.from_config(policies.decay_memories),
        )
        snapshot_rows = await self.runner.step(
            run,
            "fetch-memories",
            lambda ctx: [m.to_dict() for m in self.store.get_active_memories(user_id)],
            StepPolicy.from_config(policies.fetch_memories),
        )
        snapshot = [MemoryRecord.from_dict(row) for row in snapshot_rows]
        outcome.active_before = len(snapshot)

        if len(snapshot) <= cfg.consolidation_threshold:
            logger.info(
                "Consolidation not needed",
                active=len(snapshot),
                threshold=cfg.consolidation_threshold,
            )
            outcome.skipped = True
        else:
            plan_data = await self.runner.step(
                run,
                "generate-plan",
                lambda ctx: self._generate_plan(snapshot),
                StepPolicy.from_config(policies.generate_plan),
            )
            executed = await self.runner.step(
                run,
                "execute-plan",
                lambda ctx: self._execute_plan(ctx, user_id, ConsolidationPlan.from_dict(plan_data), snapshot),
                StepPolicy.from_config(policies.execute_plan),
            )
            outcome.plan_valid = executed["plan_valid"]
            outcome.plan_errors = executed["plan_errors"]
            outcome.merged = executed["merged"]
            outcome.deactivated = executed["deactivated"]
            outcome.skipped_groups = executed["skipped_groups"]
            outcome.protected = executed["protected"]

        if outcome.changed:
            await self.runner.step(
                run,
                "invalidate-cache",
                lambda ctx: self.cache.invalidate_context_cache(user_id),
                StepPolicy.from_config(policies.invalidate_cache),
            )
        return outcome

    async def _generate_plan(self, snapshot: list[MemoryRecord]) -> dict[str, Any]:
        plan = await generate_consolidation_plan(snapshot, self.oracle, target=self.memory_config.consolidation_target)
        logger.info(
            "Consolidation plan generated",
            keep=len(plan.keep),
            merge=len(plan.merge),
            deactivate=len(plan.deactivate),
        )
        return plan.to_dict()

    def _execute_plan(
        self,
        ctx: StepContext,
        user_id: str,
        plan: ConsolidationPlan,
        snapshot: list[MemoryRecord],
    ) -> dict[str, Any]:
        validation = validate_consolidation_plan(plan, snapshot)
        if not validation.valid:
            err = PlanInconsistencyError(validation.errors)
            logger.warning("Consolidation plan inconsistent, executing valid subset", error=str(err), errors=err.errors)
        result = execute_consolidation_plan(
            self.store,
            user_id,
            plan,
            snapshot,
            checkpoint=ctx,
            run_key=ctx.run.run_id,
        )
        return {"plan_valid": validation.valid, "plan_errors": len(validation.errors), **result.to_dict()}
