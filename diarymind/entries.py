"""Read-only access to journal entries."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass
from datetime import date
from pathlib import Path
from typing import Any, Protocol

from diarymind.logging import get_logger
from diarymind.utils.helpers import atomic_append_text, ensure_dir, user_filename

logger = get_logger(__name__)


@dataclass
class DiaryEntry:
    id: str
    user_id: str
    entry_date: str
    detail: str | None = None
    mood_label: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiaryEntry:
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            entry_date=str(data.get("entry_date") or ""),
            detail=data.get("detail"),
            mood_label=data.get("mood_label"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EntrySource(Protocol):
    def get_entry(self, user_id: str, entry_id: str) -> DiaryEntry | None: ...
    def get_recent_entries(self, user_id: str, *, exclude_id: str | None = None, limit: int = 5) -> list[DiaryEntry]: ...


class JsonlEntrySource:
    """
    Entries stored as one JSONL file per user under ``<workspace>/entries``.

    Lines are appended in write order; the newest entry is the last line.
    """

    def __init__(self, workspace: Path):
        self.entries_dir = ensure_dir(workspace / "entries")

    def _path(self, user_id: str) -> Path:
        return self.entries_dir / f"{user_filename(user_id)}.jsonl"

    def _iter_entries(self, user_id: str) -> list[DiaryEntry]:
        path = self._path(user_id)
        if not path.exists():
            return []
        entries: list[DiaryEntry] = []
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = DiaryEntry.from_dict(json.loads(line))
                except (ValueError, KeyError):
                    logger.warning("Skipping malformed entry line", user_id=user_id, line=lineno)
                    continue
                if entry.user_id == user_id:
                    entries.append(entry)
        return entries

    def get_entry(self, user_id: str, entry_id: str) -> DiaryEntry | None:
        for entry in self._iter_entries(user_id):
            if entry.id == entry_id:
                return entry
        return None

    def get_recent_entries(self, user_id: str, *, exclude_id: str | None = None, limit: int = 5) -> list[DiaryEntry]:
        """Most recent first, newest by entry date then by write order."""
        indexed = [(i, e) for i, e in enumerate(self._iter_entries(user_id)) if e.id != exclude_id]
        indexed.sort(key=lambda pair: (pair[1].entry_date, pair[0]), reverse=True)
        return [e for _, e in indexed[: max(0, limit)]]

    def append_entry(
        self,
        user_id: str,
        detail: str,
        *,
        entry_date: str | None = None,
        mood_label: str | None = None,
        entry_id: str | None = None,
    ) -> DiaryEntry:
        entry = DiaryEntry(
            id=entry_id or uuid.uuid4().hex[:12],
            user_id=user_id,
            entry_date=entry_date or date.today().isoformat(),
            detail=detail,
            mood_label=mood_label,
        )
        atomic_append_text(self._path(user_id), json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
        return entry
