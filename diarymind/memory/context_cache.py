"""Per-user cache of the formatted memory context, plus the invalidation signal."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from diarymind.logging import get_logger
from diarymind.memory.io import MemoryIO
from diarymind.memory.types import format_ts, parse_ts, utcnow
from diarymind.utils.helpers import ensure_dir, user_filename

logger = get_logger(__name__)


@dataclass
class CachedContext:
    user_id: str
    context_summary: str
    memory_snapshot: list[dict[str, Any]]
    last_updated_at: datetime
    invalidated_at: datetime | None = None
    max_tokens: int | None = None

    @property
    def is_valid(self) -> bool:
        return self.invalidated_at is None


class ContextCache:
    """Stores the last rendered context per user.

    ``invalidate_context_cache`` is fire-and-forget and safe to deliver more
    than once; listeners are notified after the cache row is marked stale.
    """

    def __init__(self, workspace: Path, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.cache_dir = ensure_dir(workspace / "memory" / "context_cache")
        self._clock = clock
        self._io = MemoryIO()
        self._listeners: list[Callable[[str], None]] = []

    def _path(self, user_id: str) -> Path:
        return self.cache_dir / f"{user_filename(user_id)}.json"

    def subscribe(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def get_cached_context(self, user_id: str) -> CachedContext | None:
        try:
            data = self._io.read_json(self._path(user_id))
        except (OSError, ValueError):
            logger.warning("Context cache unreadable, treating as missing", user_id=user_id)
            return None
        if not isinstance(data, dict) or data.get("user_id") != user_id:
            return None
        return CachedContext(
            user_id=user_id,
            context_summary=str(data.get("context_summary") or ""),
            memory_snapshot=list(data.get("memory_snapshot") or []),
            last_updated_at=parse_ts(data.get("last_updated_at")) or self._clock(),
            invalidated_at=parse_ts(data.get("invalidated_at")),
            max_tokens=data.get("max_tokens"),
        )

    def update_context_cache(
        self,
        user_id: str,
        context_summary: str,
        memory_snapshot: list[dict[str, Any]],
        *,
        max_tokens: int | None = None,
    ) -> None:
        payload = {
            "user_id": user_id,
            "context_summary": context_summary,
            "memory_snapshot": memory_snapshot,
            "last_updated_at": format_ts(self._clock()),
            "invalidated_at": None,
            "max_tokens": max_tokens,
        }
        self._io.write_json(self._path(user_id), payload)

    def invalidate_context_cache(self, user_id: str) -> None:
        cached = self.get_cached_context(user_id)
        if cached is not None and cached.is_valid:
            payload = {
                "user_id": user_id,
                "context_summary": cached.context_summary,
                "memory_snapshot": cached.memory_snapshot,
                "last_updated_at": format_ts(cached.last_updated_at),
                "invalidated_at": format_ts(self._clock()),
                "max_tokens": cached.max_tokens,
            }
            self._io.write_json(self._path(user_id), payload)
        logger.debug("Context cache invalidated", user_id=user_id)
        for listener in list(self._listeners):
            try:
                listener(user_id)
            except Exception:
                logger.exception("Context cache listener failed", user_id=user_id)

    def is_context_cache_valid(self, user_id: str) -> bool:
        cached = self.get_cached_context(user_id)
        return cached is not None and cached.is_valid
