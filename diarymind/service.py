"""Service facade wiring the store, workflows and coordinator together."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable

from diarymind.config.schema import Config
from diarymind.coordinator import ConsolidationCoordinator
from diarymind.entries import EntrySource, JsonlEntrySource
from diarymind.logging import get_logger
from diarymind.memory.consolidation import ConsolidationOracle, LLMConsolidationPlanner
from diarymind.memory.context_cache import ContextCache
from diarymind.memory.decay import DecayPolicy
from diarymind.memory.errors import WorkflowStepError
from diarymind.memory.extraction import FactExtractionOracle, LLMFactExtractor
from diarymind.memory.extractions import ExtractionLedger
from diarymind.memory.retrieval import RetrievedMemoryContext, get_memory_context_for_reply
from diarymind.memory.store import RecordStore
from diarymind.providers.base import LLMProvider
from diarymind.workflows.consolidation import ConsolidationOutcome, MemoryConsolidationWorkflow
from diarymind.workflows.extraction import ExtractionOutcome, MemoryExtractionWorkflow
from diarymind.workflows.runner import WorkflowRunner

logger = get_logger(__name__)


class MemoryService:
    """
    Entry point for callers: process entries, consolidate, decay, read context.

    Every collaborator is built from *config* unless passed in. Oracles default
    to LLM-backed implementations over *provider*; one of the two must be
    available.
    """

    def __init__(
        self,
        config: Config,
        *,
        provider: LLMProvider | None = None,
        extraction_oracle: FactExtractionOracle | None = None,
        consolidation_oracle: ConsolidationOracle | None = None,
        entries: EntrySource | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if provider is None and (extraction_oracle is None or consolidation_oracle is None):
            raise ValueError("MemoryService needs an LLM provider or both oracles")
        self.config = config
        workspace = config.workspace_path
        memory_cfg = config.memory

        self.store = RecordStore(
            workspace,
            decay_policy=DecayPolicy.from_config(memory_cfg),
            persistence_retries=memory_cfg.persistence_retries,
        )
        self.cache = ContextCache(workspace)
        self.ledger = ExtractionLedger(workspace)
        self.entries = entries or JsonlEntrySource(workspace)
        self.runner = WorkflowRunner(workspace / "workflows", sleep=sleep)
        self.coordinator = ConsolidationCoordinator()

        model = config.provider.model
        self.extraction = MemoryExtractionWorkflow(
            store=self.store,
            entries=self.entries,
            oracle=extraction_oracle or LLMFactExtractor(provider, model),
            cache=self.cache,
            ledger=self.ledger,
            runner=self.runner,
            memory_config=memory_cfg,
            policies=config.workflows.extraction,
        )
        self.consolidation = MemoryConsolidationWorkflow(
            store=self.store,
            oracle=consolidation_oracle or LLMConsolidationPlanner(provider, model),
            cache=self.cache,
            runner=self.runner,
            memory_config=memory_cfg,
            policies=config.workflows.consolidation,
        )

    async def trigger_immediate_extraction(
        self,
        user_id: str,
        entry_id: str,
        *,
        link_previews: list[dict[str, Any]] | None = None,
    ) -> ExtractionOutcome | None:
        """Extract memories from one entry. None when that entry is already being processed."""
        record = self.ledger.start(user_id, entry_id)
        if record is None:
            return None
        return await self.extraction.run(
            extraction_id=record.id,
            user_id=user_id,
            entry_id=entry_id,
            link_previews=link_previews,
        )

    async def resume_extraction(self, extraction_id: str) -> ExtractionOutcome | None:
        """Resume a failed extraction after its last completed step."""
        record = self.ledger.reopen(extraction_id)
        if record is None:
            return None
        run = self.runner.load_run("memory-extraction", extraction_id)
        previews = run.params.get("link_previews") if run else None
        return await self.extraction.run(
            extraction_id=record.id,
            user_id=record.user_id,
            entry_id=record.entry_id,
            link_previews=previews,
        )

    async def process_entry(
        self,
        user_id: str,
        entry_id: str,
        *,
        link_previews: list[dict[str, Any]] | None = None,
    ) -> ExtractionOutcome | None:
        """Extract from the entry, then start a background consolidation if the set has grown too large."""
        outcome = await self.trigger_immediate_extraction(user_id, entry_id, link_previews=link_previews)
        self.maybe_schedule_consolidation(user_id)
        return outcome

    def maybe_schedule_consolidation(self, user_id: str) -> asyncio.Task[Any] | None:
        count = self.store.get_memory_count(user_id)
        threshold = self.config.memory.consolidation_threshold
        if count <= threshold:
            return None
        if self.coordinator.is_running(user_id):
            logger.debug(
                "Consolidation already in progress", user_id=user_id, run_id=self.coordinator.active_run_id(user_id)
            )
            return None
        run_id = self.consolidation.next_run_id(user_id)
        task = self.coordinator.start_background(
            user_id, run_id, lambda rid: self._background_consolidation(user_id, rid)
        )
        if task is not None:
            logger.info(
                "Scheduled background consolidation", user_id=user_id, run_id=run_id, active=count, threshold=threshold
            )
        return task

    async def _background_consolidation(self, user_id: str, run_id: str) -> ConsolidationOutcome | None:
        try:
            return await self.consolidation.run(user_id, run_id=run_id)
        except WorkflowStepError as e:
            logger.error("Background consolidation failed", user_id=user_id, run_id=run_id, step=e.step, error=str(e.cause))
            return None

    async def consolidate(self, user_id: str) -> ConsolidationOutcome:
        """Consolidate now, resuming the user's last failed run if there is one."""

        async def _work() -> ConsolidationOutcome:
            return await self.consolidation.run(user_id, run_id=self.consolidation.next_run_id(user_id))

        return await self.coordinator.run_exclusive(user_id, _work)

    async def wait_for_background(self) -> dict[str, BaseException]:
        """Wait for background consolidations; crashes are returned keyed by run id."""
        return await self.coordinator.wait_all()

    def decay(self, user_id: str, *, now: datetime | None = None) -> int:
        deactivated = self.store.decay_memories(user_id, now=now)
        if deactivated:
            self.cache.invalidate_context_cache(user_id)
        return deactivated

    def get_memory_context(self, user_id: str, *, max_tokens: int = 500) -> RetrievedMemoryContext:
        return get_memory_context_for_reply(self.store, self.cache, user_id, max_tokens=max_tokens)

    async def clear_memories(self, user_id: str) -> int:
        """Erase every memory of the user, cancelling any consolidation in flight first."""
        await self.coordinator.cancel_inflight(user_id)
        count = self.store.clear_all_memories(user_id)
        self.cache.invalidate_context_cache(user_id)
        return count

    def cleanup_old_extractions(self) -> int:
        return self.ledger.cleanup_old(older_than_days=self.config.memory.extraction_retention_days)
