"""Consolidation: merge overlapping records and prune low-value ones."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from diarymind.logging import get_logger
from diarymind.memory.errors import OracleError
from diarymind.memory.types import MEMORY_CATEGORIES, MEMORY_TYPES, MIN_CONTENT_CHARS, MemoryRecord, format_ts, merge_entry_ids
from diarymind.providers.base import LLMProvider

if TYPE_CHECKING:
    from diarymind.memory.store import RecordStore

logger = get_logger(__name__)

CONSOLIDATION_THRESHOLD = 20
CONSOLIDATION_TARGET = 15


@dataclass
class MergeGroup:
    source_ids: list[str]
    content: str
    memory_type: str = "fact"
    category: str = "general"
    importance: int = 5

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MergeGroup:
        sources = data.get("sourceIds", data.get("source_ids")) or []
        return cls(
            source_ids=[str(s) for s in sources] if isinstance(sources, list) else [],
            content=data.get("content") if isinstance(data.get("content"), str) else "",
            memory_type=data.get("memoryType", data.get("memory_type", "fact")),
            category=data.get("category", "general"),
            importance=data.get("importance", 5),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceIds": list(self.source_ids),
            "content": self.content,
            "memoryType": self.memory_type,
            "category": self.category,
            "importance": self.importance,
        }


@dataclass
class ConsolidationPlan:
    keep: list[str] = field(default_factory=list)
    merge: list[MergeGroup] = field(default_factory=list)
    deactivate: list[str] = field(default_factory=list)

    @classmethod
    def identity(cls, memories: list[MemoryRecord]) -> ConsolidationPlan:
        return cls(keep=[m.id for m in memories])

    @property
    def is_identity(self) -> bool:
        return not self.merge and not self.deactivate

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsolidationPlan:
        def _ids(key: str) -> list[str]:
            value = data.get(key) or []
            return [str(v) for v in value] if isinstance(value, list) else []

        merge = data.get("merge") or []
        return cls(
            keep=_ids("keep"),
            merge=[MergeGroup.from_dict(g) for g in merge if isinstance(g, dict)] if isinstance(merge, list) else [],
            deactivate=_ids("deactivate"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "keep": list(self.keep),
            "merge": [g.to_dict() for g in self.merge],
            "deactivate": list(self.deactivate),
        }


@dataclass
class PlanValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class ConsolidationResult:
    merged: int = 0
    deactivated: int = 0
    skipped_groups: int = 0
    protected: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "merged": self.merged,
            "deactivated": self.deactivated,
            "skipped_groups": self.skipped_groups,
            "protected": self.protected,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsolidationResult:
        return cls(**{k: int(data.get(k, 0)) for k in ("merged", "deactivated", "skipped_groups", "protected")})


class ConsolidationOracle(Protocol):
    async def plan(self, memories: list[MemoryRecord], *, target: int) -> ConsolidationPlan: ...


class ItemCheckpoint(Protocol):
    def is_done(self, key: str) -> bool: ...
    def mark_done(self, key: str) -> None: ...


async def generate_consolidation_plan(
    memories: list[MemoryRecord],
    oracle: ConsolidationOracle,
    *,
    target: int = CONSOLIDATION_TARGET,
) -> ConsolidationPlan:
    """Identity plan at or under *target* (no oracle call), otherwise ask the oracle."""
    if len(memories) <= target:
        return ConsolidationPlan.identity(memories)
    return await oracle.plan(memories, target=target)


def validate_consolidation_plan(plan: ConsolidationPlan, memories: list[MemoryRecord]) -> PlanValidation:
    """Every active id in exactly one bucket, no unknown ids, well-formed merge groups."""
    errors: list[str] = []
    known = {m.id for m in memories}
    assigned: set[str] = set()

    def _assign(bucket: str, memory_id: str) -> None:
        if memory_id not in known:
            errors.append(f"{bucket} contains unknown ID: {memory_id}")
        if memory_id in assigned:
            errors.append(f"Duplicate ID in plan: {memory_id}")
        assigned.add(memory_id)

    for memory_id in plan.keep:
        _assign("keep", memory_id)
    for index, group in enumerate(plan.merge):
        if len(group.source_ids) < 2:
            errors.append(f"Merge group {index} must have at least 2 sources")
        for memory_id in group.source_ids:
            _assign("merge", memory_id)
        if not group.content or len(group.content.strip()) < MIN_CONTENT_CHARS:
            errors.append(f"Merge group {index} has empty content")
    for memory_id in plan.deactivate:
        _assign("deactivate", memory_id)
    for memory_id in sorted(known - assigned):
        errors.append(f"Memory {memory_id} not assigned to any action")

    return PlanValidation(valid=not errors, errors=errors)


@dataclass
class _ExecutionContext:
    user_id: str
    plan: ConsolidationPlan
    snapshot_ids: set[str]
    records: dict[str, MemoryRecord]
    by_origin: dict[str, MemoryRecord]
    checkpoint: ItemCheckpoint | None
    run_key: str | None
    consumed: set[str] = field(default_factory=set)
    result: ConsolidationResult = field(default_factory=ConsolidationResult)


class PlanExecutor:
    """
    Applies a consolidation plan against the store, fail-forward.

    Each merge group and each deactivation is an independent item: a failure
    is logged and the remaining items still run. With a *run_key*, merged
    records carry ``origin_key="<run_key>:merge:<index>"`` and finished items
    are recorded in *checkpoint*, so replaying after a crash neither creates
    duplicates nor leaves a half-superseded group behind.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def run(
        self,
        user_id: str,
        plan: ConsolidationPlan,
        snapshot: list[MemoryRecord],
        *,
        checkpoint: ItemCheckpoint | None = None,
        run_key: str | None = None,
    ) -> ConsolidationResult:
        records = {r.id: r for r in self.store.get_all_memories(user_id)}
        ctx = _ExecutionContext(
            user_id=user_id,
            plan=plan,
            snapshot_ids={m.id for m in snapshot},
            records=records,
            by_origin={r.origin_key: r for r in records.values() if r.origin_key},
            checkpoint=checkpoint,
            run_key=run_key,
        )
        self._step_merge_groups(ctx)
        self._step_deactivations(ctx)
        logger.info("Consolidation plan executed", user_id=user_id, **ctx.result.to_dict())
        return ctx.result

    @staticmethod
    def _done(ctx: _ExecutionContext, key: str) -> bool:
        return ctx.checkpoint is not None and ctx.checkpoint.is_done(key)

    @staticmethod
    def _mark(ctx: _ExecutionContext, key: str) -> None:
        if ctx.checkpoint is not None:
            ctx.checkpoint.mark_done(key)

    def _eligible_sources(self, ctx: _ExecutionContext, group: MergeGroup, existing: MemoryRecord | None) -> list[MemoryRecord]:
        sources: list[MemoryRecord] = []
        seen: set[str] = set()
        for source_id in group.source_ids:
            if source_id in seen or source_id in ctx.consumed or source_id not in ctx.snapshot_ids:
                continue
            seen.add(source_id)
            record = ctx.records.get(source_id)
            if record is None:
                continue
            if record.is_active or (existing is not None and record.superseded_by == existing.id):
                sources.append(record)
        return sources

    def _step_merge_groups(self, ctx: _ExecutionContext) -> None:
        for index, group in enumerate(ctx.plan.merge):
            key = f"merge:{index}"
            if self._done(ctx, key):
                ctx.consumed.update(group.source_ids)
                ctx.result.merged += 1
                continue
            origin_key = f"{ctx.run_key}:{key}" if ctx.run_key else None
            existing = ctx.by_origin.get(origin_key) if origin_key else None
            sources = self._eligible_sources(ctx, group, existing)
            if len(sources) < 2:
                logger.warning(
                    "Skipping merge group with fewer than 2 active sources",
                    user_id=ctx.user_id,
                    group=index,
                    requested=len(group.source_ids),
                    active=len(sources),
                )
                ctx.result.skipped_groups += 1
                continue
            if not group.content or len(group.content.strip()) < MIN_CONTENT_CHARS:
                logger.warning("Skipping merge group with empty content", user_id=ctx.user_id, group=index)
                ctx.result.skipped_groups += 1
                continue

            try:
                self._merge(ctx, group, sources, origin_key)
            except Exception:
                logger.exception("Merge group failed", user_id=ctx.user_id, group=index)
                ctx.result.skipped_groups += 1
                continue
            ctx.consumed.update(s.id for s in sources)
            self._mark(ctx, key)
            ctx.result.merged += 1

    def _merge(
        self,
        ctx: _ExecutionContext,
        group: MergeGroup,
        sources: list[MemoryRecord],
        origin_key: str | None,
    ) -> MemoryRecord:
        merged = self.store.create_memory(
            ctx.user_id,
            group.memory_type,
            group.content,
            category=group.category,
            source_entry_ids=merge_entry_ids(*(s.source_entry_ids for s in sources)),
            confidence=max(s.confidence for s in sources),
            importance=group.importance,
            origin_key=origin_key,
        )
        if any(s.user_confirmed for s in sources):
            merged = self.store.mark_user_confirmed(ctx.user_id, merged.id)
        for source in sources:
            self.store.supersede_memory(ctx.user_id, source.id, merged.id)
        logger.debug("Merged memories", user_id=ctx.user_id, new_id=merged.id, sources=[s.id for s in sources])
        return merged

    def _step_deactivations(self, ctx: _ExecutionContext) -> None:
        for memory_id in dict.fromkeys(ctx.plan.deactivate):
            key = f"deactivate:{memory_id}"
            if self._done(ctx, key):
                ctx.result.deactivated += 1
                continue
            if memory_id not in ctx.snapshot_ids:
                logger.warning("Skipping deactivation of unknown memory", user_id=ctx.user_id, memory_id=memory_id)
                continue
            if memory_id in ctx.consumed:
                logger.warning("Skipping deactivation of merged memory", user_id=ctx.user_id, memory_id=memory_id)
                continue
            try:
                changed = self.store.deactivate_memory(ctx.user_id, memory_id)
            except Exception:
                logger.exception("Deactivation failed", user_id=ctx.user_id, memory_id=memory_id)
                continue
            if changed:
                self._mark(ctx, key)
                ctx.result.deactivated += 1
                continue
            current = self.store.get_memory_by_id(ctx.user_id, memory_id)
            if current is not None and current.user_confirmed:
                ctx.result.protected += 1


def execute_consolidation_plan(
    store: RecordStore,
    user_id: str,
    plan: ConsolidationPlan,
    snapshot: list[MemoryRecord],
    *,
    checkpoint: ItemCheckpoint | None = None,
    run_key: str | None = None,
) -> ConsolidationResult:
    return PlanExecutor(store).run(user_id, plan, snapshot, checkpoint=checkpoint, run_key=run_key)


_SAVE_CONSOLIDATION_PLAN_TOOL = [
    {
        "type": "function",
        "function": {
            "name": "save_consolidation_plan",
            "description": "Save the plan that reorganizes the user's memories.",
            "parameters": {
                "type": "object",
                "properties": {
                    "keep": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "IDs of memories kept as they are.",
                    },
                    "merge": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "sourceIds": {
                                    "type": "array",
                                    "items": {"type": "string"},
                                    "minItems": 2,
                                    "description": "IDs merged into one memory (2 or more).",
                                },
                                "content": {"type": "string", "description": "Merged memory text."},
                                "memoryType": {"type": "string", "enum": list(MEMORY_TYPES)},
                                "category": {"type": "string", "enum": list(MEMORY_CATEGORIES)},
                                "importance": {"type": "integer", "minimum": 1, "maximum": 10},
                            },
                            "required": ["sourceIds", "content", "memoryType", "category", "importance"],
                        },
                    },
                    "deactivate": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "IDs of memories to forget.",
                    },
                },
                "required": ["keep", "merge", "deactivate"],
            },
        },
    }
]


def _consolidation_system_prompt(target: int) -> str:
    return f"""
You reorganize a list of memories about one user, the way human memory folds
specific episodes into general impressions and lets minor details fade.

Rules:
1. Merge similar or overlapping memories into one richer memory.
2. Prefer keeping user-confirmed and high-importance memories.
3. Memories not mentioned for a long time and of low importance are candidates to forget.
4. Aim for about {target} memories afterwards.
5. Merged text must keep the information of its sources in a natural sentence.
6. A merged memory takes the highest importance of its sources.

Every memory ID must appear exactly once in keep, merge.sourceIds or deactivate.
Respond only by calling save_consolidation_plan.
""".strip()


def format_memories_for_plan(memories: list[MemoryRecord]) -> str:
    lines = []
    for m in memories:
        flags = ", user confirmed" if m.user_confirmed else ""
        lines.append(
            f"- [{m.id}] ({m.memory_type}/{m.category}, importance: {m.importance}, "
            f"mentions: {m.mention_count}, last confirmed: {format_ts(m.last_confirmed_at)}{flags}) {m.content}"
        )
    return "\n".join(lines)


class LLMConsolidationPlanner:
    """Consolidation oracle backed by an ``LLMProvider`` tool call."""

    def __init__(self, provider: LLMProvider, model: str | None = None):
        self.provider = provider
        self.model = model or provider.get_default_model()

    async def plan(self, memories: list[MemoryRecord], *, target: int = CONSOLIDATION_TARGET) -> ConsolidationPlan:
        prompt = f"Organize the following {len(memories)} memories.\n\n{format_memories_for_plan(memories)}"
        response = await self.provider.chat(
            messages=[
                {"role": "system", "content": _consolidation_system_prompt(target)},
                {"role": "user", "content": prompt},
            ],
            tools=_SAVE_CONSOLIDATION_PLAN_TOOL,
            model=self.model,
            temperature=0.0,
        )
        if response.finish_reason == "error":
            raise OracleError(response.content or "consolidation call failed")
        call = next((tc for tc in response.tool_calls if tc.name == "save_consolidation_plan"), None)
        if call is None:
            raise OracleError("consolidation response has no save_consolidation_plan call")
        return ConsolidationPlan.from_dict(call.arguments)
