"""Memory record model."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal

MemoryType = Literal["fact", "preference", "pattern", "relationship", "goal", "emotion_trigger"]
MemoryCategory = Literal["work", "health", "hobby", "family", "personal", "general"]

MEMORY_TYPES: tuple[str, ...] = (
    "fact",
    "preference",
    "pattern",
    "relationship",
    "goal",
    "emotion_trigger",
)
MEMORY_CATEGORIES: tuple[str, ...] = (
    "work",
    "health",
    "hobby",
    "family",
    "personal",
    "general",
)
CATEGORY_LABELS: dict[str, str] = {
    "work": "Work",
    "health": "Health",
    "hobby": "Hobbies",
    "family": "Family",
    "personal": "Personal",
    "general": "Other",
}

MIN_CONTENT_CHARS = 3
MAX_CONTENT_CHARS = 300


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class MemoryRecord:
    """A single durable fact about a user.

    Once ``superseded_by`` is set the record is frozen: content and flags no
    longer change, and it stays on disk for lineage.
    """

    id: str
    user_id: str
    memory_type: str
    category: str
    content: str
    confidence: float
    importance: int
    first_observed_at: datetime
    last_confirmed_at: datetime
    created_at: datetime
    updated_at: datetime
    mention_count: int = 1
    is_active: bool = True
    superseded_by: str | None = None
    user_confirmed: bool = False
    source_entry_ids: list[str] = field(default_factory=list)
    last_decayed_at: datetime | None = None
    origin_key: str | None = None

    def copy(self, **changes: Any) -> MemoryRecord:
        return replace(self, source_entry_ids=list(self.source_entry_ids), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "memory_type": self.memory_type,
            "category": self.category,
            "content": self.content,
            "confidence": self.confidence,
            "importance": self.importance,
            "first_observed_at": format_ts(self.first_observed_at),
            "last_confirmed_at": format_ts(self.last_confirmed_at),
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
            "mention_count": self.mention_count,
            "is_active": self.is_active,
            "superseded_by": self.superseded_by,
            "user_confirmed": self.user_confirmed,
            "source_entry_ids": list(self.source_entry_ids),
            "last_decayed_at": format_ts(self.last_decayed_at),
            "origin_key": self.origin_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryRecord:
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            memory_type=str(data["memory_type"]),
            category=str(data.get("category") or "general"),
            content=str(data["content"]),
            confidence=float(data["confidence"]),
            importance=int(data["importance"]),
            first_observed_at=parse_ts(data["first_observed_at"]),
            last_confirmed_at=parse_ts(data["last_confirmed_at"]),
            created_at=parse_ts(data.get("created_at") or data["first_observed_at"]),
            updated_at=parse_ts(data.get("updated_at") or data["last_confirmed_at"]),
            mention_count=int(data.get("mention_count") or 1),
            is_active=bool(data.get("is_active", True)),
            superseded_by=data.get("superseded_by") or None,
            user_confirmed=bool(data.get("user_confirmed", False)),
            source_entry_ids=[str(x) for x in data.get("source_entry_ids") or []],
            last_decayed_at=parse_ts(data.get("last_decayed_at")),
            origin_key=data.get("origin_key") or None,
        )

    def summary(self) -> dict[str, Any]:
        """Compact view handed to the consolidation oracle."""
        return {
            "id": self.id,
            "type": self.memory_type,
            "category": self.category,
            "content": self.content,
            "importance": self.importance,
            "mention_count": self.mention_count,
            "last_confirmed_at": format_ts(self.last_confirmed_at),
            "user_confirmed": self.user_confirmed,
        }


def merge_entry_ids(*groups: list[str]) -> list[str]:
    """Ordered union of entry id lists."""
    seen: set[str] = set()
    merged: list[str] = []
    for group in groups:
        for entry_id in group:
            if entry_id and entry_id not in seen:
                seen.add(entry_id)
                merged.append(entry_id)
    return merged
