"""End-to-end tests for the durable memory-extraction workflow."""

import asyncio
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock

import pytest

from diarymind.config.schema import Config
from diarymind.memory.errors import PersistenceError, WorkflowStepError
from diarymind.memory.extraction import ExtractionRequest, ExtractionResult, MemoryCandidate
from diarymind.service import MemoryService
from diarymind.workflows.extraction import WORKFLOW_NAME


class _ScriptedOracle:
    """Returns candidates computed from the request; records every call."""

    def __init__(self, script: Callable[[ExtractionRequest], list[MemoryCandidate]], explicit: bool = False) -> None:
        self.script = script
        self.explicit = explicit
        self.requests: list[ExtractionRequest] = []

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        self.requests.append(request)
        return ExtractionResult(is_explicit_request=self.explicit, candidates=self.script(request))


class _NoPlan:
    async def plan(self, memories, *, target):
        raise AssertionError("consolidation should not run")


def _cand(content: str, action: str = "new", related: str | None = None, **kw) -> MemoryCandidate:
    return MemoryCandidate(
        memory_type=kw.get("memory_type", "fact"),
        category=kw.get("category", "general"),
        content=content,
        confidence=kw.get("confidence", 0.8),
        importance=kw.get("importance", 5),
        action=action,
        related_memory_id=related,
    )


def _service(tmp_path: Path, oracle) -> MemoryService:
    return MemoryService(
        Config(workspace=str(tmp_path)),
        extraction_oracle=oracle,
        consolidation_oracle=_NoPlan(),
        sleep=AsyncMock(),
    )


@pytest.mark.asyncio
async def test_entry_produces_records_and_completes_ledger(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(lambda req: [_cand("Works as a nurse", category="work"), _cand("Has a cat named Miso")])
    service = _service(tmp_path, oracle)
    entry = service.entries.append_entry("u1", "Long shift at the hospital, Miso waited by the door.")

    outcome = await service.trigger_immediate_extraction("u1", entry.id)

    assert outcome.created == 2
    assert outcome.dropped == 0
    active = service.store.get_active_memories("u1")
    assert {m.content for m in active} == {"Works as a nurse", "Has a cat named Miso"}
    assert all(m.source_entry_ids == [entry.id] for m in active)
    row = service.ledger.get(outcome.extraction_id)
    assert row.status == "completed"
    assert len(row.extracted_memories) == 2
    run = service.runner.load_run(WORKFLOW_NAME, outcome.extraction_id)
    assert run.status == "completed"
    assert set(run.steps) == {"gather-context", "extract-memories", "store-memories", "finalize"}


@pytest.mark.asyncio
async def test_context_passed_to_oracle(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(lambda req: [])
    service = _service(tmp_path, oracle)
    for i in range(7):
        service.entries.append_entry("u1", f"Older entry number {i}", entry_date=f"2026-01-0{i + 1}")
    service.store.create_memory("u1", "preference", "Prefers green tea")
    entry = service.entries.append_entry("u1", "Today I tried matcha for the first time", entry_date="2026-01-09")

    await service.trigger_immediate_extraction("u1", entry.id, link_previews=[{"url": "https://t.co/x", "title": "Matcha"}])

    request = oracle.requests[0]
    assert request.current_entry.id == entry.id
    assert len(request.recent_entries) == 5
    assert request.recent_entries[0].detail == "Older entry number 6"
    assert [m.content for m in request.existing_memories] == ["Prefers green tea"]
    assert request.link_previews[0].title == "Matcha"


@pytest.mark.asyncio
async def test_invalid_update_candidate_is_dropped_others_applied(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(
        lambda req: [
            _cand("Changed jobs to teaching", action="update", related=""),
            _cand("Runs every morning", category="health"),
        ]
    )
    service = _service(tmp_path, oracle)
    entry = service.entries.append_entry("u1", "Ran 5k before breakfast again today")

    outcome = await service.trigger_immediate_extraction("u1", entry.id)

    assert outcome.dropped == 1
    assert outcome.created == 1
    assert [m.content for m in service.store.get_active_memories("u1")] == ["Runs every morning"]


@pytest.mark.asyncio
async def test_update_and_confirm_actions(tmp_path: Path) -> None:
    service = _service(tmp_path, _ScriptedOracle(lambda req: []))
    job = service.store.create_memory("u1", "fact", "Works at a bakery", category="work", source_entry_ids=["old"])
    cat = service.store.create_memory("u1", "fact", "Has a cat", category="family")
    service.extraction.oracle = _ScriptedOracle(
        lambda req: [
            _cand("Works at a bakery as head baker", action="update", related=job.id, category="work", importance=6),
            _cand("Has a cat", action="confirm", related=cat.id, category="family"),
            _cand("Ghost update", action="update", related="missing"),
        ]
    )
    entry = service.entries.append_entry("u1", "Got promoted to head baker today!")

    outcome = await service.trigger_immediate_extraction("u1", entry.id)

    assert outcome.updated == 1
    assert outcome.confirmed == 1
    assert outcome.failed == 1
    lineage = service.store.get_lineage("u1", job.id)
    assert len(lineage) == 2
    assert lineage[-1].content == "Works at a bakery as head baker"
    assert set(lineage[-1].source_entry_ids) == {"old", entry.id}
    assert not service.store.get_memory_by_id("u1", job.id).is_active
    assert service.store.get_memory_by_id("u1", cat.id).mention_count == 2


@pytest.mark.asyncio
async def test_explicit_request_is_stored_strongly(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(lambda req: [_cand("Passport expires in June", confidence=0.6, importance=3)])
    service = _service(tmp_path, oracle)
    entry = service.entries.append_entry("u1", "Remember this: my passport expires in June")

    outcome = await service.trigger_immediate_extraction("u1", entry.id)

    assert outcome.is_explicit_request
    record = service.store.get_active_memories("u1")[0]
    assert record.confidence == 1.0
    assert record.importance >= 7
    assert service.ledger.get(outcome.extraction_id).processing_notes.startswith("explicit request")


@pytest.mark.asyncio
async def test_short_entry_completes_without_oracle(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(lambda req: [_cand("Should never appear")])
    service = _service(tmp_path, oracle)
    entry = service.entries.append_entry("u1", "meh")

    outcome = await service.trigger_immediate_extraction("u1", entry.id)

    assert oracle.requests == []
    assert outcome.created == 0
    assert service.ledger.get(outcome.extraction_id).status == "completed"


@pytest.mark.asyncio
async def test_mutation_invalidates_context_cache(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(lambda req: [_cand("Learning Portuguese", memory_type="goal", category="personal")])
    service = _service(tmp_path, oracle)
    service.store.create_memory("u1", "fact", "Lives in Lisbon")
    assert "Lisbon" in service.get_memory_context("u1").summary
    assert service.cache.is_context_cache_valid("u1")

    entry = service.entries.append_entry("u1", "First Portuguese lesson tonight, obrigado!")
    await service.trigger_immediate_extraction("u1", entry.id)

    assert not service.cache.is_context_cache_valid("u1")
    assert "Learning Portuguese" in service.get_memory_context("u1").summary


@pytest.mark.asyncio
async def test_entry_already_in_flight_is_skipped(tmp_path: Path) -> None:
    service = _service(tmp_path, _ScriptedOracle(lambda req: []))
    entry = service.entries.append_entry("u1", "A perfectly normal entry text")
    service.ledger.start("u1", entry.id)

    assert await service.trigger_immediate_extraction("u1", entry.id) is None


@pytest.mark.asyncio
async def test_store_step_retry_does_not_duplicate(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    oracle = _ScriptedOracle(lambda req: [_cand("First fact here"), _cand("Second fact here"), _cand("Third fact here")])
    service = _service(tmp_path, oracle)
    entry = service.entries.append_entry("u1", "Three things happened today worth noting")

    real_create = service.store.create_memory
    calls = {"n": 0}

    def _flaky_create(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise PersistenceError("disk full")
        return real_create(*args, **kwargs)

    monkeypatch.setattr(service.store, "create_memory", _flaky_create)

    outcome = await service.trigger_immediate_extraction("u1", entry.id)

    assert outcome.created == 3
    contents = sorted(m.content for m in service.store.get_active_memories("u1"))
    assert contents == ["First fact here", "Second fact here", "Third fact here"]
    run = service.runner.load_run(WORKFLOW_NAME, outcome.extraction_id)
    assert run.steps["store-memories"]["attempts"] == 2


@pytest.mark.asyncio
async def test_replayed_create_reuses_origin_record(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(lambda req: [_cand("Plays the cello")])
    service = _service(tmp_path, oracle)
    entry = service.entries.append_entry("u1", "Cello practice for two hours")
    row = service.ledger.start("u1", entry.id)
    # Crash happened after the create but before the checkpoint was written.
    service.store.create_memory("u1", "fact", "Plays the cello", origin_key=f"{row.id}:0")

    outcome = await service.extraction.run(extraction_id=row.id, user_id="u1", entry_id=entry.id)

    assert outcome.created == 1
    assert len(service.store.get_all_memories("u1")) == 1


@pytest.mark.asyncio
async def test_missing_entry_fails_then_resumes(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(lambda req: [_cand("Adopted a puppy", category="family")])
    service = _service(tmp_path, oracle)

    with pytest.raises(WorkflowStepError) as exc_info:
        await service.trigger_immediate_extraction("u1", "e-late")

    assert exc_info.value.step == "gather-context"
    assert service.ledger.get(exc_info.value.run_id).status == "failed"

    service.entries.append_entry("u1", "We adopted a puppy called Biscuit", entry_id="e-late")
    outcome = await service.resume_extraction(exc_info.value.run_id)

    assert outcome.created == 1
    assert service.ledger.get(exc_info.value.run_id).status == "completed"
    assert await service.resume_extraction(exc_info.value.run_id) is None


@pytest.mark.asyncio
async def test_concurrent_entries_for_same_user_both_persist(tmp_path: Path) -> None:
    oracle = _ScriptedOracle(lambda req: [_cand(f"Memory from {req.current_entry.id}")])
    service = _service(tmp_path, oracle)
    first = service.entries.append_entry("u1", "Morning entry with enough text", entry_id="a")
    second = service.entries.append_entry("u1", "Evening entry with enough text", entry_id="b")

    results = await asyncio.gather(
        service.process_entry("u1", first.id),
        service.process_entry("u1", second.id),
    )

    assert [r.created for r in results] == [1, 1]
    contents = {m.content for m in service.store.get_active_memories("u1")}
    assert contents == {"Memory from a", "Memory from b"}


class _BlockingOracle:
    """Blocks inside the oracle call until cancelled."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        self.started.set()
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


@pytest.mark.asyncio
async def test_cancelled_extraction_is_failed_and_resumable(tmp_path: Path) -> None:
    oracle = _BlockingOracle()
    service = _service(tmp_path, oracle)
    entry = service.entries.append_entry("u1", "Signed up for a pottery class downtown")

    task = asyncio.create_task(service.process_entry("u1", entry.id))
    await oracle.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    extraction_id = service.runner.list_runs(WORKFLOW_NAME)[0].run_id
    row = service.ledger.get(extraction_id)
    assert row.status == "failed"
    assert row.processing_notes == "cancelled"
    assert service.runner.load_run(WORKFLOW_NAME, extraction_id).status == "failed"

    service.extraction.oracle = _ScriptedOracle(lambda req: [_cand("Takes pottery classes", category="hobby")])
    outcome = await service.resume_extraction(extraction_id)

    assert outcome.created == 1
    assert service.ledger.get(extraction_id).status == "completed"


@pytest.mark.asyncio
async def test_run_log_failure_leaves_entry_retriable(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service = _service(tmp_path, _ScriptedOracle(lambda req: [_cand("Bakes sourdough on Sundays")]))
    entry = service.entries.append_entry("u1", "Fed the starter and baked two loaves")
    real_start = service.runner.start

    def _broken_start(*args, **kwargs):
        raise OSError("read-only filesystem")

    monkeypatch.setattr(service.runner, "start", _broken_start)
    with pytest.raises(OSError):
        await service.trigger_immediate_extraction("u1", entry.id)

    assert service.ledger.find_in_progress(entry.id) is None
    monkeypatch.setattr(service.runner, "start", real_start)
    outcome = await service.trigger_immediate_extraction("u1", entry.id)

    assert outcome is not None
    assert outcome.created == 1


def test_entry_logs_are_per_user_even_when_names_sanitize_alike(tmp_path: Path) -> None:
    service = _service(tmp_path, _ScriptedOracle(lambda req: []))
    entry = service.entries.append_entry("team/alice", "Night shift again at the ward")

    assert service.entries.get_entry("team_alice", entry.id) is None
    assert service.entries.get_recent_entries("team_alice") == []
    assert service.entries.get_entry("team/alice", entry.id) == entry
