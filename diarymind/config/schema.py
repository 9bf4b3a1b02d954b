"""Configuration schema using Pydantic."""

import os
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

_ENV_REF_RE = re.compile(r"^\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?$")


def _resolve_env(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` references; leave anything else untouched."""
    if not value:
        return value
    m = _ENV_REF_RE.match(value.strip())
    if not m:
        return value
    return os.environ.get(m.group(1), value)


class Base(BaseModel):
    """Base model accepting both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResilienceConfig(Base):
    """Timeout / retry / circuit-breaker settings for LLM calls."""

    timeout: int = 120
    max_retries: int = 3
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: int = 60


class ProviderConfig(Base):
    """LLM provider used by both oracles."""

    api_key: str = ""
    api_base: str | None = None
    model: str = "gemini/gemini-2.5-flash"
    extra_headers: dict[str, str] | None = None
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)

    @property
    def resolved_api_key(self) -> str:
        return _resolve_env(self.api_key)


class MemoryConfig(Base):
    """Record lifecycle tunables."""

    consolidation_threshold: int = 20
    consolidation_target: int = 15
    decay_window_days: int = 30
    decay_interval_days: int = 7
    decay_factor: float = 0.7
    decay_importance_step: int = 1
    decay_importance_floor: int = 1
    decay_confidence_cutoff: float = 0.4
    decay_importance_cutoff: int = 3
    recent_entries_limit: int = 5
    existing_memories_limit: int = 15
    min_entry_chars: int = 10
    persistence_retries: int = 2
    extraction_retention_days: int = 30

    @model_validator(mode="after")
    def _check_consolidation_bounds(self) -> "MemoryConfig":
        if self.consolidation_target >= self.consolidation_threshold:
            raise ValueError("consolidation_target must be lower than consolidation_threshold")
        if not 0.0 < self.decay_factor < 1.0:
            raise ValueError("decay_factor must be between 0 and 1")
        return self


class StepPolicyConfig(Base):
    """Retry policy for one durable workflow step."""

    retries: int = 2
    delay: float = 5.0
    backoff: float = 2.0
    timeout: float | None = None


def _step(retries: int, delay: float, timeout: float | None = None) -> StepPolicyConfig:
    return StepPolicyConfig(retries=retries, delay=delay, timeout=timeout)


class ExtractionWorkflowConfig(Base):
    gather_context: StepPolicyConfig = Field(default_factory=lambda: _step(2, 5.0))
    extract_memories: StepPolicyConfig = Field(default_factory=lambda: _step(2, 10.0, 180.0))
    store_memories: StepPolicyConfig = Field(default_factory=lambda: _step(2, 5.0))
    finalize: StepPolicyConfig = Field(default_factory=lambda: _step(2, 5.0))


class ConsolidationWorkflowConfig(Base):
    decay_memories: StepPolicyConfig = Field(default_factory=lambda: _step(2, 5.0))
    fetch_memories: StepPolicyConfig = Field(default_factory=lambda: _step(2, 5.0))
    generate_plan: StepPolicyConfig = Field(default_factory=lambda: _step(2, 10.0, 180.0))
    execute_plan: StepPolicyConfig = Field(default_factory=lambda: _step(1, 5.0))
    invalidate_cache: StepPolicyConfig = Field(default_factory=lambda: _step(2, 5.0))


class WorkflowsConfig(Base):
    extraction: ExtractionWorkflowConfig = Field(default_factory=ExtractionWorkflowConfig)
    consolidation: ConsolidationWorkflowConfig = Field(default_factory=ConsolidationWorkflowConfig)


class LoggingConfig(Base):
    json_output: bool = True
    level: str = "INFO"


class Config(Base):
    """Root configuration for diarymind."""

    workspace: str = "~/.diarymind/workspace"
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    workflows: WorkflowsConfig = Field(default_factory=WorkflowsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser()
