"""Fact extraction: turn one journal entry into candidate lifecycle operations."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Protocol

from diarymind.entries import DiaryEntry
from diarymind.logging import get_logger
from diarymind.memory.errors import InvalidRecord, OracleError
from diarymind.memory.store import validate_record_fields
from diarymind.memory.types import MEMORY_CATEGORIES, MEMORY_TYPES, MemoryRecord
from diarymind.providers.base import LLMProvider

logger = get_logger(__name__)

CandidateAction = Literal["new", "update", "confirm"]
CANDIDATE_ACTIONS: tuple[str, ...] = ("new", "update", "confirm")

MIN_ENTRY_CHARS = 10
MAX_RECENT_ENTRIES = 5
MAX_EXISTING_MEMORIES = 15
EXPLICIT_MIN_IMPORTANCE = 7
_RECENT_DETAIL_CHARS = 100

_EXPLICIT_REQUEST_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bremember (this|that)\b",
        r"\bplease remember\b",
        r"\bdon'?t forget\b",
        r"\bdo not forget\b",
        r"\bmake a note\b",
        r"\bnote (this|that) down\b",
        r"\bkeep in mind\b",
        r"覚えておいて",
        r"覚えといて",
        r"忘れないで",
        r"メモして",
        r"記憶して",
    )
]


@dataclass
class LinkPreview:
    url: str
    title: str | None = None
    description: str | None = None


@dataclass
class ExtractionRequest:
    current_entry: DiaryEntry
    recent_entries: list[DiaryEntry] = field(default_factory=list)
    existing_memories: list[MemoryRecord] = field(default_factory=list)
    link_previews: list[LinkPreview] = field(default_factory=list)


@dataclass
class MemoryCandidate:
    """One proposed lifecycle operation. Field values are kept as the oracle sent them."""

    memory_type: Any
    category: Any
    content: Any
    confidence: Any
    importance: Any
    action: Any = "new"
    related_memory_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryCandidate:
        related = data.get("relatedMemoryId", data.get("related_memory_id"))
        return cls(
            memory_type=data.get("type", data.get("memory_type")),
            category=data.get("category", "general"),
            content=data.get("content"),
            confidence=data.get("confidence"),
            importance=data.get("importance"),
            action=data.get("action", "new"),
            related_memory_id=str(related) if related else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.memory_type,
            "category": self.category,
            "content": self.content,
            "confidence": self.confidence,
            "importance": self.importance,
            "action": self.action,
        }
        if self.related_memory_id:
            data["relatedMemoryId"] = self.related_memory_id
        return data


@dataclass
class ExtractionResult:
    is_explicit_request: bool = False
    candidates: list[MemoryCandidate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "isExplicitRequest": self.is_explicit_request,
            "candidates": [c.to_dict() for c in self.candidates],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExtractionResult:
        return cls(
            is_explicit_request=bool(data.get("isExplicitRequest", False)),
            candidates=[MemoryCandidate.from_dict(c) for c in data.get("candidates") or [] if isinstance(c, dict)],
        )


class FactExtractionOracle(Protocol):
    async def extract(self, request: ExtractionRequest) -> ExtractionResult: ...


def detect_explicit_request(text: str | None) -> bool:
    """True when the text asks, in so many words, for something to be remembered."""
    if not text:
        return False
    return any(p.search(text) for p in _EXPLICIT_REQUEST_PATTERNS)


def validate_candidate(candidate: MemoryCandidate) -> str | None:
    """Return why *candidate* must be dropped, or None when it can be applied."""
    if candidate.action not in CANDIDATE_ACTIONS:
        return f"unknown action: {candidate.action!r}"
    if candidate.action in ("update", "confirm") and not candidate.related_memory_id:
        return f"{candidate.action} requires relatedMemoryId"
    try:
        validate_record_fields(
            memory_type=candidate.memory_type,
            category=candidate.category,
            content=candidate.content,
            confidence=candidate.confidence,
            importance=candidate.importance,
        )
    except InvalidRecord as e:
        return str(e)
    return None


def _is_strong(candidate: MemoryCandidate) -> bool:
    return float(candidate.confidence) == 1.0 and candidate.importance >= EXPLICIT_MIN_IMPORTANCE


def _promote_explicit(candidates: list[MemoryCandidate]) -> list[MemoryCandidate]:
    """Make sure one applicable candidate carries the weight of an explicit request."""
    valid = [i for i, c in enumerate(candidates) if validate_candidate(c) is None]
    if not valid:
        raise OracleError("explicit memory request returned no valid candidates")
    if any(_is_strong(candidates[i]) for i in valid):
        return candidates
    # new and update first: confirm does not write confidence.
    index = max(
        valid,
        key=lambda i: (candidates[i].action != "confirm", candidates[i].importance, float(candidates[i].confidence)),
    )
    weak = candidates[index]
    promoted = replace(
        weak,
        confidence=1.0,
        importance=min(10, max(EXPLICIT_MIN_IMPORTANCE, weak.importance)),
    )
    logger.warning(
        "Explicit memory request without a strong candidate, promoting",
        index=index,
        confidence=weak.confidence,
        importance=weak.importance,
    )
    out = list(candidates)
    out[index] = promoted
    return out


async def extract_memories_from_entry(
    request: ExtractionRequest,
    oracle: FactExtractionOracle,
    *,
    min_chars: int = MIN_ENTRY_CHARS,
) -> ExtractionResult:
    """
    Ask the oracle for candidates from the current entry.

    Short entries never reach the oracle. An explicit "remember this" request
    always yields at least one candidate with confidence 1.0 and importance of
    at least 7; if the oracle returns no valid candidate for such a request the
    call fails with ``OracleError`` so the step is retried.
    """
    text = (request.current_entry.detail or "").strip()
    if len(text) < min_chars:
        logger.debug("Entry too short for extraction", entry_id=request.current_entry.id, chars=len(text))
        return ExtractionResult()

    result = await oracle.extract(request)
    explicit = result.is_explicit_request or detect_explicit_request(text)
    candidates = list(result.candidates)
    if explicit:
        if not candidates:
            raise OracleError("explicit memory request returned no candidates")
        candidates = _promote_explicit(candidates)
    return ExtractionResult(is_explicit_request=explicit, candidates=candidates)


_RECORD_MEMORIES_TOOL = [
    {
        "type": "function",
        "function": {
            "name": "record_memories",
            "description": "Record durable memories about the user extracted from the journal entry.",
            "parameters": {
                "type": "object",
                "properties": {
                    "isExplicitRequest": {
                        "type": "boolean",
                        "description": "True when the user explicitly asks to remember something "
                        "(\"remember this\", \"don't forget\", \"make a note\").",
                    },
                    "memories": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "type": {"type": "string", "enum": list(MEMORY_TYPES)},
                                "category": {"type": "string", "enum": list(MEMORY_CATEGORIES)},
                                "content": {"type": "string", "description": "Concise memory text."},
                                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                                "importance": {"type": "integer", "minimum": 1, "maximum": 10},
                                "action": {"type": "string", "enum": list(CANDIDATE_ACTIONS)},
                                "relatedMemoryId": {
                                    "type": "string",
                                    "description": "Existing memory id for update/confirm.",
                                },
                            },
                            "required": ["type", "category", "content", "confidence", "importance", "action"],
                        },
                    },
                },
                "required": ["isExplicitRequest", "memories"],
            },
        },
    }
]

_EXTRACTION_SYSTEM_PROMPT = """
You extract durable memories about a user from their journal.

Memory types: fact, preference, pattern, relationship, goal, emotion_trigger.
Categories: work, health, hobby, family, personal, general.

Rules:
1. Keep only what is genuinely worth remembering (at most 3 items).
2. Prefer lasting traits, recurring patterns and important facts; skip one-off moods and events.
3. Confidence: inferred 0.5-0.7, stated outright 0.8-1.0.
4. Importance: everyday 1-4, moderate 5-7, important 8-10.
5. Include concrete names from shared links when they are relevant.
6. If the user explicitly asks you to remember something, set isExplicitRequest=true,
   return at least one memory, with confidence 1.0 and importance 7 or higher.

Check the existing memories first and avoid duplicates:
- same or similar content -> action="confirm" with relatedMemoryId
- refines or corrects an existing memory -> action="update" with relatedMemoryId (write the merged sentence)
- entirely new -> action="new"
Prefer confirm/update over new. Respond only by calling record_memories.
""".strip()


def format_existing_memories(memories: list[MemoryRecord], limit: int = MAX_EXISTING_MEMORIES) -> str:
    if not memories:
        return "## Existing memories\nnone"
    lines = [f"- [{m.id}] {m.content} ({m.memory_type}, {m.category})" for m in memories[:limit]]
    return "## Existing memories\n" + "\n".join(lines)


def format_recent_entries(entries: list[DiaryEntry], limit: int = MAX_RECENT_ENTRIES) -> str:
    if not entries:
        return ""
    lines = []
    for e in entries[:limit]:
        detail = e.detail or ""
        shown = detail[:_RECENT_DETAIL_CHARS] if detail else "(no text)"
        ellipsis = "..." if len(detail) > _RECENT_DETAIL_CHARS else ""
        lines.append(f"- {e.entry_date}: {shown}{ellipsis}")
    return "## Recent entries (for reference)\n" + "\n".join(lines)


def format_link_previews(previews: list[LinkPreview]) -> str:
    if not previews:
        return ""
    lines = [
        f"- {p.url}: {p.title or '(untitled)'}" + (f" - {p.description}" if p.description else "")
        for p in previews
    ]
    return "## Shared links\n" + "\n".join(lines)


def build_extraction_prompt(request: ExtractionRequest) -> str:
    entry = request.current_entry
    sections = [
        f"## Today's entry ({entry.entry_date})",
        f"Mood: {entry.mood_label or 'not recorded'}",
        "Text:",
        '"""',
        (entry.detail or "").strip(),
        '"""',
        format_link_previews(request.link_previews),
        format_recent_entries(request.recent_entries),
        format_existing_memories(request.existing_memories),
        "Extract memories. Return an empty list when there is nothing worth keeping.",
    ]
    return "\n\n".join(s for s in sections if s)


class LLMFactExtractor:
    """Fact-extraction oracle backed by an ``LLMProvider`` tool call."""

    def __init__(self, provider: LLMProvider, model: str | None = None):
        self.provider = provider
        self.model = model or provider.get_default_model()

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        response = await self.provider.chat(
            messages=[
                {"role": "system", "content": _EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": build_extraction_prompt(request)},
            ],
            tools=_RECORD_MEMORIES_TOOL,
            model=self.model,
            temperature=0.0,
        )
        if response.finish_reason == "error":
            raise OracleError(response.content or "fact extraction call failed")
        call = next((tc for tc in response.tool_calls if tc.name == "record_memories"), None)
        if call is None:
            raise OracleError("fact extraction response has no record_memories call")
        memories = call.arguments.get("memories")
        if memories is None:
            memories = []
        if not isinstance(memories, list):
            raise OracleError(f"unexpected memories payload: {type(memories).__name__}")
        return ExtractionResult(
            is_explicit_request=bool(call.arguments.get("isExplicitRequest", False)),
            candidates=[MemoryCandidate.from_dict(m) for m in memories if isinstance(m, dict)],
        )
