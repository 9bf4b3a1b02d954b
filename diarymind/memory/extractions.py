"""Ledger of extraction jobs, one row per triggering entry."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from diarymind.logging import get_logger
from diarymind.memory.io import MemoryIO
from diarymind.memory.types import format_ts, parse_ts, utcnow
from diarymind.utils.helpers import ensure_dir

logger = get_logger(__name__)

IN_PROGRESS_STATUSES = frozenset({"pending", "processing"})
FINISHED_STATUSES = frozenset({"completed", "failed"})


@dataclass
class ExtractionRecord:
    id: str
    user_id: str
    entry_id: str
    status: str
    created_at: str
    extracted_memories: list[dict[str, Any]] | None = None
    processing_notes: str | None = None
    processed_at: str | None = None


class ExtractionLedger:
    def __init__(self, workspace: Path, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.ledger_file = ensure_dir(workspace / "memory") / "extractions.json"
        self._clock = clock
        self._io = MemoryIO()
        self._lock = threading.Lock()

    def _load(self) -> dict[str, ExtractionRecord]:
        data = self._io.read_json(self.ledger_file) or []
        rows = [ExtractionRecord(**row) for row in data if isinstance(row, dict)]
        return {row.id: row for row in rows}

    def _save(self, rows: dict[str, ExtractionRecord]) -> None:
        self._io.write_json(self.ledger_file, [asdict(r) for r in rows.values()])

    def get(self, extraction_id: str) -> ExtractionRecord | None:
        with self._lock:
            return self._load().get(extraction_id)

    def find_in_progress(self, entry_id: str) -> ExtractionRecord | None:
        with self._lock:
            for row in self._load().values():
                if row.entry_id == entry_id and row.status in IN_PROGRESS_STATUSES:
                    return row
        return None

    def start(self, user_id: str, entry_id: str) -> ExtractionRecord | None:
        """Register a processing extraction, or return None if one is already in flight."""
        with self._lock:
            rows = self._load()
            for row in rows.values():
                if row.entry_id == entry_id and row.status in IN_PROGRESS_STATUSES:
                    logger.info("Extraction already in progress, skipping", entry_id=entry_id, extraction_id=row.id)
                    return None
            record = ExtractionRecord(
                id=uuid.uuid4().hex[:16],
                user_id=user_id,
                entry_id=entry_id,
                status="processing",
                created_at=format_ts(self._clock()),
            )
            rows[record.id] = record
            self._save(rows)
            return record

    def reopen(self, extraction_id: str) -> ExtractionRecord | None:
        """Move a failed extraction back to processing so its run can resume."""
        with self._lock:
            rows = self._load()
            row = rows.get(extraction_id)
            if row is None or row.status != "failed":
                return None
            row.status = "processing"
            row.processed_at = None
            self._save(rows)
            return row

    def _finish(self, extraction_id: str, **changes: Any) -> None:
        with self._lock:
            rows = self._load()
            row = rows.get(extraction_id)
            if row is None:
                logger.warning("Unknown extraction id", extraction_id=extraction_id)
                return
            for key, value in changes.items():
                setattr(row, key, value)
            row.processed_at = format_ts(self._clock())
            self._save(rows)

    def mark_completed(self, extraction_id: str, extracted: list[dict[str, Any]], notes: str | None = None) -> None:
        self._finish(extraction_id, status="completed", extracted_memories=extracted, processing_notes=notes)

    def mark_failed(self, extraction_id: str, error: str) -> None:
        self._finish(extraction_id, status="failed", processing_notes=error)

    def cleanup_old(self, *, older_than_days: int = 30) -> int:
        """Drop finished rows older than the retention window."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        with self._lock:
            rows = self._load()
            stale = [
                key
                for key, row in rows.items()
                if row.status in FINISHED_STATUSES and (parse_ts(row.created_at) or cutoff) < cutoff
            ]
            for key in stale:
                del rows[key]
            if stale:
                self._save(rows)
        return len(stale)
