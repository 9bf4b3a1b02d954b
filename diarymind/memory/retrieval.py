"""Build the memory context handed to reply generation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from diarymind.memory.types import CATEGORY_LABELS, MemoryRecord, utcnow

if TYPE_CHECKING:
    from diarymind.memory.context_cache import ContextCache
    from diarymind.memory.store import RecordStore

_CHARS_PER_TOKEN = 4
_CONTEXT_MEMORY_LIMIT = 20
_CATEGORY_ORDER = ("work", "family", "personal", "health", "hobby", "general")
_TRUNCATION_SUFFIX = "\n..."


@dataclass
class RetrievedMemoryContext:
    summary: str
    memories: list[dict] = field(default_factory=list)
    token_estimate: int = 0


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // _CHARS_PER_TOKEN) if text else 0


def score_memory(record: MemoryRecord, now: datetime) -> float:
    """Hybrid relevance: importance, mention frequency, recency, user confirmation."""
    score = record.importance * 0.4 + record.mention_count * 0.3
    if now - record.last_confirmed_at <= timedelta(days=7):
        score += 2
    if record.user_confirmed:
        score += 1
    return score


def build_memory_summary(memories: list[MemoryRecord], max_tokens: int) -> str:
    if not memories:
        return ""
    grouped: dict[str, list[MemoryRecord]] = {}
    for record in memories:
        grouped.setdefault(record.category, []).append(record)

    lines = ["## What I know about this user"]
    for category in _CATEGORY_ORDER:
        records = grouped.get(category)
        if not records:
            continue
        lines.append("")
        lines.append(f"### {CATEGORY_LABELS[category]}")
        lines.extend(f"- {r.content}" for r in records)
    summary = "\n".join(lines) + "\n"

    max_chars = max_tokens * _CHARS_PER_TOKEN
    if len(summary) <= max_chars:
        return summary
    return summary[: max(0, max_chars - len(_TRUNCATION_SUFFIX))] + _TRUNCATION_SUFFIX


def get_memory_context_for_reply(
    store: RecordStore,
    cache: ContextCache,
    user_id: str,
    *,
    max_tokens: int = 500,
    now: datetime | None = None,
) -> RetrievedMemoryContext:
    cached = cache.get_cached_context(user_id)
    if cached is not None and cached.is_valid and cached.max_tokens == max_tokens:
        return RetrievedMemoryContext(
            summary=cached.context_summary,
            memories=cached.memory_snapshot,
            token_estimate=estimate_tokens(cached.context_summary),
        )

    at = now or utcnow()
    active = store.get_active_memories(user_id)
    if not active:
        return RetrievedMemoryContext(summary="")
    ranked = sorted(active, key=lambda r: score_memory(r, at), reverse=True)[:_CONTEXT_MEMORY_LIMIT]
    summary = build_memory_summary(ranked, max_tokens)
    snapshot = [r.to_dict() for r in ranked]
    cache.update_context_cache(user_id, summary, snapshot, max_tokens=max_tokens)
    return RetrievedMemoryContext(summary=summary, memories=snapshot, token_estimate=estimate_tokens(summary))
