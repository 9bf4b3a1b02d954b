"""Filesystem helpers shared by the stores."""

from __future__ import annotations

import hashlib
import os
import re
import tempfile
from pathlib import Path

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def ensure_dir(path: Path) -> Path:
    """Create *path* (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: str) -> str:
    """Replace characters that are unsafe in file names with underscores."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name).strip().strip(".")
    return cleaned or "_"


def user_filename(user_id: str) -> str:
    """File stem for a per-user document: readable prefix plus a digest of the exact id."""
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:16]
    return f"{safe_filename(user_id)[:64]}-{digest}"


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to *path* via a temp file in the same directory and ``os.replace``."""
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append *content* to *path*, rewriting the whole file atomically."""
    existing = path.read_text(encoding=encoding) if path.exists() else ""
    atomic_write_text(path, existing + content, encoding=encoding)
