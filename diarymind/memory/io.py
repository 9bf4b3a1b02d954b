"""Memory file I/O helpers with atomic semantics."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from diarymind.utils.helpers import atomic_write_text


class MemoryIO:
    """Thin I/O adapter so the stores can be tested (and failure-injected) independently."""

    @staticmethod
    def write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
        atomic_write_text(path, content, encoding=encoding)

    @staticmethod
    def read_json(path: Path) -> Any | None:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def write_json(self, path: Path, payload: Any) -> None:
        self.write_text(path, json.dumps(payload, ensure_ascii=False, indent=1))
