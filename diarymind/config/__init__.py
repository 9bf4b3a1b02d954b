"""Configuration module for diarymind."""

from diarymind.config.loader import get_config_path, load_config
from diarymind.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
