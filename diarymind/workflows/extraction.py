"""Durable memory-extraction workflow: one journal entry in, lifecycle operations out."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from diarymind.config.schema import ExtractionWorkflowConfig, MemoryConfig
from diarymind.entries import DiaryEntry, EntrySource
from diarymind.logging import get_logger
from diarymind.memory.context_cache import ContextCache
from diarymind.memory.errors import InvalidRecord, PersistenceError, UnknownRecord, WorkflowStepError
from diarymind.memory.extraction import (
    ExtractionRequest,
    ExtractionResult,
    FactExtractionOracle,
    LinkPreview,
    MemoryCandidate,
    extract_memories_from_entry,
    validate_candidate,
)
from diarymind.memory.extractions import ExtractionLedger
from diarymind.memory.store import RecordStore
from diarymind.memory.types import MemoryRecord, merge_entry_ids
from diarymind.workflows.runner import StepContext, StepPolicy, WorkflowRun, WorkflowRunner

logger = get_logger(__name__)

WORKFLOW_NAME = "memory-extraction"


class EntryNotFound(LookupError):
    """The triggering entry is not (yet) visible in the entry source."""


@dataclass
class ExtractionOutcome:
    extraction_id: str
    entry_id: str
    user_id: str
    is_explicit_request: bool = False
    created: int = 0
    updated: int = 0
    confirmed: int = 0
    dropped: int = 0
    failed: int = 0
    applied: list[dict[str, Any]] = field(default_factory=list)

    @property
    def mutated(self) -> bool:
        return bool(self.created or self.updated or self.confirmed)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExtractionOutcome:
        return cls(**data)


class MemoryExtractionWorkflow:
    """
    ``gather-context`` -> ``extract-memories`` -> ``store-memories`` -> ``finalize``.

    The run id is the extraction ledger id, so starting the same extraction
    again resumes it. ``store-memories`` checkpoints each applied candidate
    and tags creations with ``origin_key="<run_id>:<index>"``; a retried step
    therefore never applies a candidate twice.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        entries: EntrySource,
        oracle: FactExtractionOracle,
        cache: ContextCache,
        ledger: ExtractionLedger,
        runner: WorkflowRunner,
        memory_config: MemoryConfig | None = None,
        policies: ExtractionWorkflowConfig | None = None,
    ):
        self.store = store
        self.entries = entries
        self.oracle = oracle
        self.cache = cache
        self.ledger = ledger
        self.runner = runner
        self.memory_config = memory_config or MemoryConfig()
        self.policies = policies or ExtractionWorkflowConfig()

    async def run(
        self,
        *,
        extraction_id: str,
        user_id: str,
        entry_id: str,
        link_previews: list[dict[str, Any]] | None = None,
    ) -> ExtractionOutcome:
        params = {
            "extraction_id": extraction_id,
            "entry_id": entry_id,
            "user_id": user_id,
            "link_previews": list(link_previews or []),
        }
        run: WorkflowRun | None = None
        with structlog.contextvars.bound_contextvars(workflow=WORKFLOW_NAME, run_id=extraction_id, user_id=user_id):
            try:
                run = self.runner.start(WORKFLOW_NAME, extraction_id, params)
                if run.status == "completed" and isinstance(run.output, dict):
                    return ExtractionOutcome.from_dict(run.output)
                outcome = await self._execute(run)
                self.runner.complete(run, outcome.to_dict())
                return outcome
            except BaseException as e:
                self._abandon(extraction_id, run, e)
                raise

    def _abandon(self, extraction_id: str, run: WorkflowRun | None, error: BaseException) -> None:
        """Leave the ledger row failed, so the extraction can be resumed or retried."""
        if isinstance(error, WorkflowStepError):
            reason = str(error)
        elif isinstance(error, asyncio.CancelledError):
            reason = "cancelled"
        else:
            reason = f"{type(error).__name__}: {error}"
        try:
            row = self.ledger.get(extraction_id)
            if row is not None and row.status == "completed":
                return
            self.ledger.mark_failed(extraction_id, reason)
            if run is not None and run.status == "running":
                self.runner.fail(run, reason)
        except Exception:
            logger.exception("Could not record extraction failure", extraction_id=extraction_id, reason=reason)

    async def _execute(self, run: WorkflowRun) -> ExtractionOutcome:
        p = run.params
        user_id, entry_id = p["user_id"], p["entry_id"]
        policies = self.policies

        context = await self.runner.step(
            run,
            "gather-context",
            lambda ctx: self._gather_context(user_id, entry_id),
            StepPolicy.from_config(policies.gather_context),
        )
        extracted = await self.runner.step(
            run,
            "extract-memories",
            lambda ctx: self._extract(context, p.get("link_previews") or []),
            StepPolicy.from_config(policies.extract_memories),
        )
        stored = await self.runner.step(
            run,
            "store-memories",
            lambda ctx: self._store(ctx, user_id, entry_id, ExtractionResult.from_dict(extracted)),
            StepPolicy.from_config(policies.store_memories),
        )
        outcome = ExtractionOutcome(
            extraction_id=p["extraction_id"],
            entry_id=entry_id,
            user_id=user_id,
            is_explicit_request=bool(extracted.get("isExplicitRequest")),
            **stored,
        )
        await self.runner.step(
            run,
            "finalize",
            lambda ctx: self._finalize(outcome),
            StepPolicy.from_config(policies.finalize),
        )
        return outcome

    def _gather_context(self, user_id: str, entry_id: str) -> dict[str, Any]:
        entry = self.entries.get_entry(user_id, entry_id)
        if entry is None:
            raise EntryNotFound(f"Entry not found: {entry_id}")
        cfg = self.memory_config
        recent = self.entries.get_recent_entries(user_id, exclude_id=entry_id, limit=cfg.recent_entries_limit)
        memories = self.store.get_active_memories(user_id)[: cfg.existing_memories_limit]
        return {
            "current_entry": entry.to_dict(),
            "recent_entries": [e.to_dict() for e in recent],
            "existing_memories": [m.to_dict() for m in memories],
        }

    async def _extract(self, context: dict[str, Any], link_previews: list[dict[str, Any]]) -> dict[str, Any]:
        request = ExtractionRequest(
            current_entry=DiaryEntry.from_dict(context["current_entry"]),
            recent_entries=[DiaryEntry.from_dict(e) for e in context["recent_entries"]],
            existing_memories=[MemoryRecord.from_dict(m) for m in context["existing_memories"]],
            link_previews=[LinkPreview(**lp) for lp in link_previews],
        )
        result = await extract_memories_from_entry(request, self.oracle, min_chars=self.memory_config.min_entry_chars)
        logger.info(
            "Memories extracted",
            candidates=len(result.candidates),
            explicit=result.is_explicit_request,
        )
        return result.to_dict()

    def _store(self, ctx: StepContext, user_id: str, entry_id: str, result: ExtractionResult) -> dict[str, Any]:
        counts = {"created": 0, "updated": 0, "confirmed": 0, "dropped": 0, "failed": 0}
        applied: list[dict[str, Any]] = []
        action_counter = {"new": "created", "update": "updated", "confirm": "confirmed"}

        for index, candidate in enumerate(result.candidates):
            key = str(index)
            reason = validate_candidate(candidate)
            if reason is not None:
                logger.warning("Dropping invalid memory candidate", index=index, reason=reason)
                counts["dropped"] += 1
                continue
            if not ctx.is_done(key):
                try:
                    self._apply(ctx.run.run_id, index, user_id, entry_id, candidate)
                except PersistenceError:
                    raise
                except (InvalidRecord, UnknownRecord) as e:
                    logger.warning("Memory candidate rejected by store", index=index, action=candidate.action, error=str(e))
                    counts["failed"] += 1
                    continue
                except Exception:
                    logger.exception("Failed to apply memory candidate", index=index, action=candidate.action)
                    counts["failed"] += 1
                    continue
                ctx.mark_done(key)
            counts[action_counter[candidate.action]] += 1
            applied.append(candidate.to_dict())

        logger.info("Memory candidates applied", **counts)
        return {**counts, "applied": applied}

    def _apply(self, run_id: str, index: int, user_id: str, entry_id: str, candidate: MemoryCandidate) -> None:
        origin_key = f"{run_id}:{index}"
        if candidate.action == "new":
            self.store.create_memory(
                user_id,
                candidate.memory_type,
                candidate.content,
                category=candidate.category,
                source_entry_ids=[entry_id],
                confidence=candidate.confidence,
                importance=candidate.importance,
                origin_key=origin_key,
            )
            return

        related_id = str(candidate.related_memory_id)
        if candidate.action == "confirm":
            self.store.confirm_memory(user_id, related_id)
            return

        related = self.store.get_memory_by_id(user_id, related_id)
        if related is None:
            raise UnknownRecord(user_id, related_id)
        new = self.store.create_memory(
            user_id,
            candidate.memory_type,
            candidate.content,
            category=candidate.category,
            source_entry_ids=merge_entry_ids(related.source_entry_ids, [entry_id]),
            confidence=candidate.confidence,
            importance=candidate.importance,
            origin_key=origin_key,
        )
        target_id = related.id
        if related.superseded_by not in (None, new.id):
            # Already replaced elsewhere (e.g. merged); update the current head instead.
            head = self.store.get_lineage(user_id, related.id)[-1]
            if head.id == new.id:
                return
            target_id = head.id
        self.store.supersede_memory(user_id, target_id, new.id)

    def _finalize(self, outcome: ExtractionOutcome) -> dict[str, Any]:
        notes = (
            f"created={outcome.created} updated={outcome.updated} confirmed={outcome.confirmed} "
            f"dropped={outcome.dropped} failed={outcome.failed}"
        )
        if outcome.is_explicit_request:
            notes = "explicit request; " + notes
        self.ledger.mark_completed(outcome.extraction_id, outcome.applied, notes)
        if outcome.mutated:
            self.cache.invalidate_context_cache(outcome.user_id)
        return {"invalidated": outcome.mutated}
