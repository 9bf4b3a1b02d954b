"""Tests for consolidation planning, plan validation and fail-forward execution."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from diarymind.memory.consolidation import (
    ConsolidationPlan,
    LLMConsolidationPlanner,
    MergeGroup,
    execute_consolidation_plan,
    generate_consolidation_plan,
    validate_consolidation_plan,
)
from diarymind.memory.errors import OracleError
from diarymind.memory.store import RecordStore
from diarymind.memory.types import MemoryRecord
from diarymind.providers.base import LLMResponse, ToolCallRequest

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


class _PlanOracle:
    def __init__(self, plan: ConsolidationPlan | None = None) -> None:
        self._plan = plan
        self.calls = 0

    async def plan(self, memories: list[MemoryRecord], *, target: int) -> ConsolidationPlan:
        self.calls += 1
        return self._plan or ConsolidationPlan.identity(memories)


class _Checkpoint:
    def __init__(self) -> None:
        self.done: set[str] = set()

    def is_done(self, key: str) -> bool:
        return key in self.done

    def mark_done(self, key: str) -> None:
        self.done.add(key)


def _store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path, clock=lambda: NOW)


def _seed(store: RecordStore, count: int, user_id: str = "u1") -> list[MemoryRecord]:
    return [
        store.create_memory(
            user_id,
            "fact",
            f"Memory number {i}",
            source_entry_ids=[f"e{i}"],
            confidence=0.5 + i / 100,
            importance=1 + i % 10,
        )
        for i in range(count)
    ]


# ---------------------------------------------------------------------------
# generate / validate
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_small_set_gets_identity_plan_without_oracle(tmp_path: Path) -> None:
    store = _store(tmp_path)
    memories = _seed(store, 15)
    oracle = _PlanOracle()

    plan = await generate_consolidation_plan(memories, oracle, target=15)

    assert oracle.calls == 0
    assert plan.is_identity
    assert sorted(plan.keep) == sorted(m.id for m in memories)
    assert validate_consolidation_plan(plan, memories).valid


@pytest.mark.asyncio
async def test_large_set_asks_oracle(tmp_path: Path) -> None:
    memories = _seed(_store(tmp_path), 16)
    oracle = _PlanOracle()

    await generate_consolidation_plan(memories, oracle, target=15)

    assert oracle.calls == 1


def test_validation_reports_every_problem(tmp_path: Path) -> None:
    memories = _seed(_store(tmp_path), 5)
    a, b, c, d, _e = (m.id for m in memories)
    plan = ConsolidationPlan(
        keep=[a, "ghost"],
        merge=[MergeGroup(source_ids=[b], content=""), MergeGroup(source_ids=[a, c], content="Merged text")],
        deactivate=[d],
    )

    result = validate_consolidation_plan(plan, memories)

    assert not result.valid
    assert "keep contains unknown ID: ghost" in result.errors
    assert "Merge group 0 must have at least 2 sources" in result.errors
    assert "Merge group 0 has empty content" in result.errors
    assert f"Duplicate ID in plan: {a}" in result.errors
    assert f"Memory {_e} not assigned to any action" in result.errors


def test_plan_from_dict_tolerates_malformed_fields() -> None:
    plan = ConsolidationPlan.from_dict({"keep": "m1", "merge": [{"sourceIds": ["a", "b"], "content": 3}, "x"]})
    assert plan.keep == []
    assert plan.deactivate == []
    assert len(plan.merge) == 1
    assert plan.merge[0].content == ""


# ---------------------------------------------------------------------------
# execute
# ---------------------------------------------------------------------------


def test_twenty_five_records_consolidate_to_twelve(tmp_path: Path) -> None:
    store = _store(tmp_path)
    memories = _seed(store, 25)
    ids = [m.id for m in memories]
    plan = ConsolidationPlan(
        keep=ids[:10],
        merge=[
            MergeGroup(source_ids=ids[10:15], content="First merged memory", importance=8),
            MergeGroup(source_ids=ids[15:20], content="Second merged memory", category="work"),
        ],
        deactivate=ids[20:],
    )
    assert validate_consolidation_plan(plan, memories).valid

    result = execute_consolidation_plan(store, "u1", plan, memories)

    assert result.merged == 2
    assert result.deactivated == 5
    assert result.skipped_groups == 0
    active = store.get_active_memories("u1")
    assert len(active) == 12
    merged = [m for m in active if m.id not in ids]
    assert {m.content for m in merged} == {"First merged memory", "Second merged memory"}
    for source_id in ids[10:20]:
        assert store.get_memory_by_id("u1", source_id).superseded_by is not None
    for gone in ids[20:]:
        record = store.get_memory_by_id("u1", gone)
        assert not record.is_active
        assert record.superseded_by is None


def test_merged_record_carries_sources_forward(tmp_path: Path) -> None:
    store = _store(tmp_path)
    a, b, c = _seed(store, 3)
    store.mark_user_confirmed("u1", b.id)
    plan = ConsolidationPlan(
        keep=[c.id], merge=[MergeGroup(source_ids=[a.id, b.id], content="Combined memory", importance=6)]
    )

    execute_consolidation_plan(store, "u1", plan, [a, b, c])

    head = store.get_lineage("u1", a.id)[-1]
    assert head.content == "Combined memory"
    assert set(head.source_entry_ids) >= {"e0", "e1"}
    assert head.confidence == max(a.confidence, b.confidence)
    assert head.user_confirmed is True
    assert head.importance == 6


def test_user_confirmed_record_survives_deactivation(tmp_path: Path) -> None:
    store = _store(tmp_path)
    memories = _seed(store, 3)
    pinned = memories[0]
    store.mark_user_confirmed("u1", pinned.id)
    plan = ConsolidationPlan(keep=[m.id for m in memories[1:]], deactivate=[pinned.id])

    result = execute_consolidation_plan(store, "u1", plan, memories)

    assert result.deactivated == 0
    assert result.protected == 1
    assert store.get_memory_by_id("u1", pinned.id).is_active


def test_invalid_items_are_skipped_and_rest_applied(tmp_path: Path) -> None:
    store = _store(tmp_path)
    memories = _seed(store, 6)
    ids = [m.id for m in memories]
    store.deactivate_memory("u1", ids[1])
    plan = ConsolidationPlan(
        merge=[
            MergeGroup(source_ids=[ids[0], ids[1]], content="Only one source is still active"),
            MergeGroup(source_ids=[ids[2], ids[3]], content="Fine merge"),
            MergeGroup(source_ids=[ids[3], ids[4]], content="Reuses a consumed source"),
        ],
        deactivate=[ids[5], "ghost", ids[2]],
    )

    result = execute_consolidation_plan(store, "u1", plan, memories)

    assert result.merged == 1
    assert result.skipped_groups == 2
    assert result.deactivated == 1
    assert store.get_memory_by_id("u1", ids[0]).is_active
    assert store.get_memory_by_id("u1", ids[4]).is_active
    assert not store.get_memory_by_id("u1", ids[5]).is_active


def test_failed_merge_does_not_stop_remaining_items(tmp_path: Path) -> None:
    store = _store(tmp_path)
    memories = _seed(store, 5)
    ids = [m.id for m in memories]
    plan = ConsolidationPlan(
        merge=[
            MergeGroup(source_ids=ids[0:2], content="Broken group", memory_type="nonsense"),
            MergeGroup(source_ids=ids[2:4], content="Working group"),
        ],
        deactivate=[ids[4]],
    )

    result = execute_consolidation_plan(store, "u1", plan, memories)

    assert result.merged == 1
    assert result.skipped_groups == 1
    assert result.deactivated == 1
    assert store.get_memory_by_id("u1", ids[0]).is_active


def test_ids_of_a_failed_merge_stay_available(tmp_path: Path) -> None:
    store = _store(tmp_path)
    memories = _seed(store, 4)
    ids = [m.id for m in memories]
    plan = ConsolidationPlan(
        merge=[
            MergeGroup(source_ids=ids[0:2], content="Broken group", memory_type="nonsense"),
            MergeGroup(source_ids=[ids[0], ids[2]], content="Second try at the same memory"),
        ],
        deactivate=[ids[1]],
    )

    result = execute_consolidation_plan(store, "u1", plan, memories)

    assert result.merged == 1
    assert result.skipped_groups == 1
    assert result.deactivated == 1
    merged_id = store.get_memory_by_id("u1", ids[0]).superseded_by
    assert merged_id is not None
    assert store.get_memory_by_id("u1", ids[2]).superseded_by == merged_id
    assert not store.get_memory_by_id("u1", ids[1]).is_active


def test_replay_with_run_key_creates_no_duplicates(tmp_path: Path) -> None:
    store = _store(tmp_path)
    memories = _seed(store, 4)
    ids = [m.id for m in memories]
    plan = ConsolidationPlan(
        keep=[ids[3]], merge=[MergeGroup(source_ids=ids[:2], content="Merged once")], deactivate=[ids[2]]
    )

    # First attempt created the merged record and superseded one source, then crashed.
    partial = store.create_memory("u1", "fact", "Merged once", origin_key="run-1:merge:0")
    store.supersede_memory("u1", ids[0], partial.id)

    checkpoint = _Checkpoint()
    result = execute_consolidation_plan(store, "u1", plan, memories, checkpoint=checkpoint, run_key="run-1")

    assert result.merged == 1
    assert result.deactivated == 1
    assert checkpoint.done == {"merge:0", f"deactivate:{ids[2]}"}
    merged = [r for r in store.get_all_memories("u1") if r.content == "Merged once"]
    assert len(merged) == 1
    assert store.get_memory_by_id("u1", ids[1]).superseded_by == partial.id

    again = execute_consolidation_plan(store, "u1", plan, memories, checkpoint=checkpoint, run_key="run-1")
    assert again.merged == 1
    assert again.deactivated == 1
    assert len(store.get_active_memories("u1")) == 2


# ---------------------------------------------------------------------------
# LLMConsolidationPlanner
# ---------------------------------------------------------------------------


def _provider(response: LLMResponse) -> MagicMock:
    provider = MagicMock()
    provider.get_default_model.return_value = "test-model"
    provider.chat = AsyncMock(return_value=response)
    return provider


@pytest.mark.asyncio
async def test_planner_parses_tool_call(tmp_path: Path) -> None:
    memories = _seed(_store(tmp_path), 3)
    ids = [m.id for m in memories]
    provider = _provider(
        LLMResponse(
            content=None,
            tool_calls=[
                ToolCallRequest(
                    id="c1",
                    name="save_consolidation_plan",
                    arguments={
                        "keep": [ids[0]],
                        "merge": [
                            {
                                "sourceIds": ids[1:],
                                "content": "Merged",
                                "memoryType": "pattern",
                                "category": "health",
                                "importance": 7,
                            }
                        ],
                        "deactivate": [],
                    },
                )
            ],
        )
    )

    plan = await LLMConsolidationPlanner(provider).plan(memories, target=2)

    assert plan.keep == [ids[0]]
    assert plan.merge[0].memory_type == "pattern"
    assert plan.merge[0].source_ids == ids[1:]
    prompt = provider.chat.await_args.kwargs["messages"][1]["content"]
    assert f"[{ids[0]}]" in prompt
    assert "about 2 memories" in provider.chat.await_args.kwargs["messages"][0]["content"]


@pytest.mark.asyncio
async def test_planner_errors_raise_oracle_error(tmp_path: Path) -> None:
    memories = _seed(_store(tmp_path), 2)
    with pytest.raises(OracleError):
        await LLMConsolidationPlanner(_provider(LLMResponse(content="no tools"))).plan(memories)
    with pytest.raises(OracleError):
        await LLMConsolidationPlanner(_provider(LLMResponse(content="down", finish_reason="error"))).plan(memories)
