"""Configuration loading."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from diarymind.config.schema import Config
from diarymind.logging import get_logger

logger = get_logger(__name__)


def get_config_path() -> Path:
    return Path.home() / ".diarymind" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from *config_path* (default ``~/.diarymind/config.json``).

    Missing file means defaults. An unreadable or invalid file is logged and
    also falls back to defaults.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Config.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning("Failed to load config, using defaults", path=str(path), error=str(e))
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> Path:
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(by_alias=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return path
