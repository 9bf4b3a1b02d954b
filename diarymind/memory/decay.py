"""Time-based decay of unconfirmed memories."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from diarymind.config.schema import MemoryConfig
    from diarymind.memory.types import MemoryRecord


@dataclass(frozen=True)
class DecayPolicy:
    window_days: int = 30
    interval_days: int = 7
    factor: float = 0.7
    importance_step: int = 1
    importance_floor: int = 1
    confidence_cutoff: float = 0.4
    importance_cutoff: int = 3

    @classmethod
    def from_config(cls, cfg: MemoryConfig) -> DecayPolicy:
        return cls(
            window_days=cfg.decay_window_days,
            interval_days=cfg.decay_interval_days,
            factor=cfg.decay_factor,
            importance_step=cfg.decay_importance_step,
            importance_floor=cfg.decay_importance_floor,
            confidence_cutoff=cfg.decay_confidence_cutoff,
            importance_cutoff=cfg.decay_importance_cutoff,
        )


@dataclass(frozen=True)
class DecayOutcome:
    confidence: float
    importance: int
    deactivate: bool


def is_decay_eligible(record: MemoryRecord, now: datetime, policy: DecayPolicy) -> bool:
    if not record.is_active or record.user_confirmed:
        return False
    if now - record.last_confirmed_at <= timedelta(days=policy.window_days):
        return False
    if record.last_decayed_at is not None:
        # Already decayed recently (also makes a re-run with the same `now` a no-op).
        if now - record.last_decayed_at < timedelta(days=max(1, policy.interval_days)):
            return False
    return True


def apply_decay(record: MemoryRecord, now: datetime, policy: DecayPolicy) -> DecayOutcome | None:
    """Return the decayed values for *record*, or None when it is not eligible."""
    if not is_decay_eligible(record, now, policy):
        return None
    confidence = round(max(0.0, min(1.0, record.confidence * policy.factor)), 4)
    importance = max(policy.importance_floor, record.importance - policy.importance_step)
    importance = max(1, min(10, importance))
    deactivate = confidence < policy.confidence_cutoff and importance < policy.importance_cutoff
    return DecayOutcome(confidence=confidence, importance=importance, deactivate=deactivate)
