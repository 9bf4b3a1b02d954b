"""Record store: persistence and invariant enforcement for memory records."""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from diarymind.logging import get_logger
from diarymind.memory.decay import DecayPolicy, apply_decay
from diarymind.memory.errors import InvalidRecord, PersistenceError, UnknownRecord
from diarymind.memory.io import MemoryIO
from diarymind.memory.types import (
    MAX_CONTENT_CHARS,
    MEMORY_CATEGORIES,
    MEMORY_TYPES,
    MIN_CONTENT_CHARS,
    MemoryRecord,
    merge_entry_ids,
    utcnow,
)
from diarymind.utils.helpers import ensure_dir, user_filename

logger = get_logger(__name__)

T = TypeVar("T")

_Records = dict[str, MemoryRecord]


def _new_memory_id() -> str:
    return uuid.uuid4().hex[:16]


def validate_record_fields(
    *,
    memory_type: object,
    category: object,
    content: object,
    confidence: object,
    importance: object,
) -> str:
    """Check record fields and return the normalized content. Raises InvalidRecord."""
    if memory_type not in MEMORY_TYPES:
        raise InvalidRecord(f"unknown memory type: {memory_type!r}")
    if category not in MEMORY_CATEGORIES:
        raise InvalidRecord(f"unknown category: {category!r}")
    if not isinstance(content, str) or len(content.strip()) < MIN_CONTENT_CHARS:
        raise InvalidRecord("content must be at least 3 characters")
    text = " ".join(content.split())
    if len(text) > MAX_CONTENT_CHARS:
        raise InvalidRecord(f"content exceeds {MAX_CONTENT_CHARS} characters")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise InvalidRecord(f"confidence must be a number: {confidence!r}")
    if not 0.0 <= float(confidence) <= 1.0:
        raise InvalidRecord(f"confidence out of range: {confidence!r}")
    if isinstance(importance, bool) or not isinstance(importance, int):
        raise InvalidRecord(f"importance must be an integer: {importance!r}")
    if not 1 <= importance <= 10:
        raise InvalidRecord(f"importance out of range: {importance!r}")
    return text


class RecordStore:
    """Per-user JSON documents of memory records.

    Every mutation is a read-modify-write of one user's document under that
    user's lock, so concurrent single-record operations never lose updates.
    Users are independent partitions.
    """

    _FILE_VERSION = 1

    def __init__(
        self,
        workspace: Path,
        *,
        decay_policy: DecayPolicy | None = None,
        persistence_retries: int = 2,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = _new_memory_id,
    ) -> None:
        self.memory_dir = ensure_dir(workspace / "memory")
        self.users_dir = ensure_dir(self.memory_dir / "users")
        self.decay_policy = decay_policy or DecayPolicy()
        self.persistence_retries = max(0, persistence_retries)
        self._clock = clock
        self._new_id = id_factory
        self._io = MemoryIO()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -- persistence ---------------------------------------------------------

    def _user_file(self, user_id: str) -> Path:
        return self.users_dir / f"{user_filename(user_id)}.json"

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def _load(self, user_id: str) -> _Records:
        payload = self._io.read_json(self._user_file(user_id))
        if payload is None:
            return {}
        if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
            raise json.JSONDecodeError("unexpected memory document shape", "", 0)
        records: _Records = {}
        for row in payload["records"]:
            record = MemoryRecord.from_dict(row)
            records[record.id] = record
        return records

    def _save(self, user_id: str, records: _Records) -> None:
        payload = {
            "version": self._FILE_VERSION,
            "user_id": user_id,
            "records": [r.to_dict() for r in records.values()],
        }
        self._io.write_json(self._user_file(user_id), payload)

    def _with_retries(self, op: str, user_id: str, fn: Callable[[], T]) -> T:
        last_error: Exception | None = None
        for attempt in range(self.persistence_retries + 1):
            try:
                return fn()
            except (OSError, json.JSONDecodeError) as e:
                last_error = e
                logger.warning(
                    "Memory store I/O failed",
                    op=op,
                    user_id=user_id,
                    attempt=attempt + 1,
                    error=str(e),
                )
        raise PersistenceError(f"{op} failed for user {user_id!r}: {last_error}") from last_error

    def _read(self, op: str, user_id: str) -> _Records:
        def _do() -> _Records:
            with self._lock_for(user_id):
                return self._load(user_id)

        return self._with_retries(op, user_id, _do)

    def _mutate(self, op: str, user_id: str, fn: Callable[[_Records], T]) -> T:
        def _do() -> T:
            with self._lock_for(user_id):
                records = self._load(user_id)
                result = fn(records)
                self._save(user_id, records)
                return result

        return self._with_retries(op, user_id, _do)

    @staticmethod
    def _require(records: _Records, user_id: str, memory_id: str) -> MemoryRecord:
        record = records.get(memory_id)
        if record is None or record.user_id != user_id:
            raise UnknownRecord(user_id, memory_id)
        return record

    @staticmethod
    def _owned(records: _Records, user_id: str) -> list[MemoryRecord]:
        return [r for r in records.values() if r.user_id == user_id]

    @staticmethod
    def _lineage(records: _Records, memory_id: str) -> list[MemoryRecord]:
        chain: list[MemoryRecord] = []
        seen: set[str] = set()
        current = records.get(memory_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.append(current)
            if current.superseded_by is None:
                break
            current = records.get(current.superseded_by)
        return chain

    # -- lifecycle operations -----------------------------------------------

    def create_memory(
        self,
        user_id: str,
        memory_type: str,
        content: str,
        *,
        category: str = "general",
        source_entry_ids: Iterable[str] = (),
        confidence: float = 1.0,
        importance: int = 5,
        origin_key: str | None = None,
    ) -> MemoryRecord:
        """Create an active record. With *origin_key*, replaying the same create returns the first record."""
        text = validate_record_fields(
            memory_type=memory_type,
            category=category,
            content=content,
            confidence=confidence,
            importance=importance,
        )
        entry_ids = merge_entry_ids([str(x) for x in source_entry_ids])

        def _apply(records: _Records) -> MemoryRecord:
            if origin_key:
                for existing in records.values():
                    if existing.origin_key == origin_key and existing.user_id == user_id:
                        return existing.copy()
            now = self._clock()
            record = MemoryRecord(
                id=self._new_id(),
                user_id=user_id,
                memory_type=memory_type,
                category=category,
                content=text,
                confidence=float(confidence),
                importance=int(importance),
                first_observed_at=now,
                last_confirmed_at=now,
                created_at=now,
                updated_at=now,
                source_entry_ids=entry_ids,
                origin_key=origin_key,
            )
            records[record.id] = record
            return record.copy()

        record = self._mutate("create_memory", user_id, _apply)
        logger.debug("Memory created", user_id=user_id, memory_id=record.id, memory_type=memory_type)
        return record

    def confirm_memory(self, user_id: str, memory_id: str, *, user_confirmed: bool = False) -> MemoryRecord:
        """Bump mention count and refresh ``last_confirmed_at``.

        A superseded record is frozen, so the confirmation lands on the active
        head of its lineage instead.
        """

        def _apply(records: _Records) -> MemoryRecord:
            self._require(records, user_id, memory_id)
            target = self._lineage(records, memory_id)[-1]
            now = self._clock()
            target.mention_count += 1
            target.last_confirmed_at = now
            target.updated_at = now
            if user_confirmed:
                target.user_confirmed = True
            return target.copy()

        record = self._mutate("confirm_memory", user_id, _apply)
        if record.id != memory_id:
            logger.debug("Confirmation forwarded to lineage head", user_id=user_id, memory_id=memory_id, head_id=record.id)
        return record

    def mark_user_confirmed(self, user_id: str, memory_id: str) -> MemoryRecord:
        def _apply(records: _Records) -> MemoryRecord:
            self._require(records, user_id, memory_id)
            target = self._lineage(records, memory_id)[-1]
            if not target.user_confirmed:
                target.user_confirmed = True
                target.updated_at = self._clock()
            return target.copy()

        return self._mutate("mark_user_confirmed", user_id, _apply)

    def supersede_memory(self, user_id: str, old_id: str, new_id: str) -> MemoryRecord:
        """Point *old_id* at *new_id*. Returns the (now inactive) old record."""
        if old_id == new_id:
            raise InvalidRecord(f"memory {old_id!r} cannot supersede itself")

        def _apply(records: _Records) -> MemoryRecord:
            old = self._require(records, user_id, old_id)
            new = self._require(records, user_id, new_id)
            if old.superseded_by == new_id:
                return old.copy()
            if old.superseded_by is not None:
                raise InvalidRecord(f"memory {old_id!r} already superseded by {old.superseded_by!r}")
            downstream = self._lineage(records, new.id)
            if any(r.id == old_id for r in downstream):
                raise InvalidRecord(f"superseding {old_id!r} with {new_id!r} would create a cycle")
            now = self._clock()
            old.superseded_by = new_id
            old.is_active = False
            old.updated_at = now
            # Lineage carries entry ids and user confirmation forward.
            for successor in downstream:
                successor.source_entry_ids = merge_entry_ids(successor.source_entry_ids, old.source_entry_ids)
                if old.user_confirmed:
                    successor.user_confirmed = True
                successor.updated_at = now
            return old.copy()

        record = self._mutate("supersede_memory", user_id, _apply)
        logger.debug("Memory superseded", user_id=user_id, old_id=old_id, new_id=new_id)
        return record

    def deactivate_memory(self, user_id: str, memory_id: str) -> bool:
        """Deactivate a record. User-confirmed records are silently left alone.

        Returns True only when the record flipped from active to inactive.
        """

        def _apply(records: _Records) -> bool:
            record = self._require(records, user_id, memory_id)
            if record.user_confirmed:
                logger.info("Skipping deactivation of user-confirmed memory", user_id=user_id, memory_id=memory_id)
                return False
            if not record.is_active:
                return False
            record.is_active = False
            record.updated_at = self._clock()
            return True

        return self._mutate("deactivate_memory", user_id, _apply)

    def decay_memories(self, user_id: str, *, now: datetime | None = None) -> int:
        """Decay stale unconfirmed records and return how many were deactivated."""
        at = now or self._clock()
        policy = self.decay_policy

        def _apply(records: _Records) -> tuple[int, int]:
            decayed = 0
            deactivated = 0
            for record in records.values():
                if record.user_id != user_id:
                    continue
                outcome = apply_decay(record, at, policy)
                if outcome is None:
                    continue
                decayed += 1
                record.confidence = outcome.confidence
                record.importance = outcome.importance
                record.last_decayed_at = at
                record.updated_at = at
                if outcome.deactivate:
                    record.is_active = False
                    deactivated += 1
            return decayed, deactivated

        decayed, deactivated = self._mutate("decay_memories", user_id, _apply)
        if decayed:
            logger.info("Memory decay applied", user_id=user_id, decayed=decayed, deactivated=deactivated)
        return deactivated

    # -- queries -------------------------------------------------------------

    def get_memory_by_id(self, user_id: str, memory_id: str) -> MemoryRecord | None:
        record = self._read("get_memory_by_id", user_id).get(memory_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    def get_active_memories(self, user_id: str) -> list[MemoryRecord]:
        """Active records, most important and most recently confirmed first."""
        records = [r for r in self._owned(self._read("get_active_memories", user_id), user_id) if r.is_active]
        records.sort(key=lambda r: (-r.importance, -r.last_confirmed_at.timestamp(), r.id))
        return records

    def get_memories_by_type(self, user_id: str, memory_type: str) -> list[MemoryRecord]:
        return [r for r in self.get_active_memories(user_id) if r.memory_type == memory_type]

    def get_memories_by_category(self, user_id: str, category: str) -> list[MemoryRecord]:
        return [r for r in self.get_active_memories(user_id) if r.category == category]

    def get_memory_count(self, user_id: str) -> int:
        return sum(1 for r in self._owned(self._read("get_memory_count", user_id), user_id) if r.is_active)

    def get_all_memories(self, user_id: str) -> list[MemoryRecord]:
        return self._owned(self._read("get_all_memories", user_id), user_id)

    def get_lineage(self, user_id: str, memory_id: str) -> list[MemoryRecord]:
        """The record followed by each successor up to the active head."""
        records = self._read("get_lineage", user_id)
        self._require(records, user_id, memory_id)
        return self._lineage(records, memory_id)

    def clear_all_memories(self, user_id: str) -> int:
        """Erase a user's whole partition (explicit privacy request)."""

        def _do() -> int:
            with self._lock_for(user_id):
                records = self._load(user_id)
                owned = {r.id for r in self._owned(records, user_id)}
                others = {k: r for k, r in records.items() if k not in owned}
                path = self._user_file(user_id)
                if others:
                    self._save(user_id, others)
                elif path.exists():
                    path.unlink()
                return len(owned)

        count = self._with_retries("clear_all_memories", user_id, _do)
        logger.info("Cleared all memories", user_id=user_id, count=count)
        return count
