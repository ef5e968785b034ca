"""Configuration models for stage_recall."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .models import SurfaceStyle


class StagePolicy(BaseModel):
    """Static recall policy for one conversation stage."""

    threshold: float = Field(default=0.65, ge=0.0, le=1.0)
    max_cross_session: int = Field(default=0, ge=0)
    allow_cross_session: bool = False
    surface_style: SurfaceStyle = SurfaceStyle.SILENT
    # Turns at or below early_turn_limit use early_turn_max_cross_session
    early_turn_limit: int = 0
    early_turn_max_cross_session: int | None = None

    def max_cross_session_for(self, turn_count: int) -> int:
        if (
            self.early_turn_max_cross_session is not None
            and turn_count <= self.early_turn_limit
        ):
            return self.early_turn_max_cross_session
        return self.max_cross_session


def _default_stage_policies() -> dict[int, StagePolicy]:
    return {
        0: StagePolicy(
            threshold=0.60,
            max_cross_session=0,
            allow_cross_session=False,
            surface_style=SurfaceStyle.SILENT,
        ),
        1: StagePolicy(
            threshold=0.65,
            max_cross_session=3,
            allow_cross_session=False,
            surface_style=SurfaceStyle.SILENT,
            early_turn_limit=3,
            early_turn_max_cross_session=0,
        ),
        2: StagePolicy(
            threshold=0.55,
            max_cross_session=5,
            allow_cross_session=True,
            surface_style=SurfaceStyle.TENTATIVE,
        ),
        3: StagePolicy(
            threshold=0.50,
            max_cross_session=10,
            allow_cross_session=True,
            surface_style=SurfaceStyle.EXPLICIT,
        ),
        4: StagePolicy(
            threshold=0.50,
            max_cross_session=10,
            allow_cross_session=True,
            surface_style=SurfaceStyle.EXPLICIT,
        ),
    }


class IntentConfig(BaseModel):
    """Memory intent classification configuration."""

    stage_policies: dict[int, StagePolicy] = Field(
        default_factory=_default_stage_policies
    )
    fallback_policy: StagePolicy = Field(
        default_factory=lambda: StagePolicy(
            threshold=0.65,
            max_cross_session=0,
            allow_cross_session=False,
            surface_style=SurfaceStyle.SILENT,
        )
    )
    critical_intensity: float = 9.0
    high_intensity: float = 8.0
    early_witnessing_turns: int = 3
    witnessing_intensity_dampening: float = 6.0
    commitment_min_cross_session: int = 5

    @field_validator("stage_policies", mode="before")
    @classmethod
    def _merge_with_defaults(cls, value: Any) -> Any:
        # Partial overrides keep the defaults for stages they do not mention
        if isinstance(value, dict):
            return {**_default_stage_policies(), **value}
        return value


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker settings for fast external calls."""

    failure_threshold: int = Field(default=3, ge=1)
    cooldown_seconds: float = Field(default=30.0, gt=0)
    timeout_seconds: float = Field(default=2.0, gt=0)


class RetrievalConfig(BaseModel):
    """Semantic retrieval gateway configuration."""

    search_timeout_seconds: float = Field(default=1.5, gt=0)
    cross_session_top_k: int = 10
    same_session_top_k: int = 5
    reflection_top_k: int = 15
    max_same_session: int = 5
    linked_reflection_boost: float = 1.3
    dedup_prefix_chars: int = 50
    max_search_queries: int = 3
    detection_max_tokens: int = 512


class AssemblyConfig(BaseModel):
    """Context assembly configuration."""

    fetch_timeout_seconds: float = Field(default=2.0, gt=0)
    evidence_timeout_seconds: float = Field(default=5.0, gt=0)
    trend_window: int = 3
    trend_delta: float = 2.0
    notable_shift_delta: float = 3.0
    max_notable_shifts: int = 3


class BudgetConfig(BaseModel):
    """Token budget configuration."""

    ceiling_tokens: int = Field(default=40_000, ge=256)
    output_reservation: int = Field(default=4_000, ge=0)
    protected_turns: int = Field(default=8, ge=0)
    history_share: float = Field(default=0.6, ge=0.0, le=1.0)

    @property
    def evidence_share(self) -> float:
        return 1.0 - self.history_share


class SurfacingConfig(BaseModel):
    """Pattern surfacing configuration."""

    cooldown_turns: int = 5
    tentative_min_evidence: int = 2
    explicit_min_evidence: int = 3


class EmbeddingConfig(BaseModel):
    """Embedding model configuration."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    batch_size: int = 32
    trust_remote_code: bool = False


class StorageConfig(BaseModel):
    """SQLite reference store configuration."""

    db_path: str = "data/stage_recall.db"


class WorkQueueConfig(BaseModel):
    """Background work queue configuration."""

    max_size: int = Field(default=100, ge=1)
    worker_count: int = Field(default=1, ge=1)
    job_timeout_seconds: float = Field(default=60.0, gt=0)


class RecallConfig(BaseModel):
    """Top-level stage_recall configuration."""

    intent: IntentConfig = Field(default_factory=IntentConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    assembly: AssemblyConfig = Field(default_factory=AssemblyConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    surfacing: SurfacingConfig = Field(default_factory=SurfacingConfig)
    work_queue: WorkQueueConfig = Field(default_factory=WorkQueueConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    generation_max_tokens: int = 4096

    @model_validator(mode="after")
    def _validate_budget(self) -> "RecallConfig":
        if self.budget.output_reservation >= self.budget.ceiling_tokens:
            raise ValueError(
                "budget.output_reservation must be smaller than "
                f"budget.ceiling_tokens ({self.budget.ceiling_tokens})"
            )
        return self


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """Read a YAML file, substituting ``${ENV_VAR}`` references.

    Raises:
        FileNotFoundError: If the configuration file is not found.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        return yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = " -> ".join(str(loc) for loc in err["loc"])
        lines.append(f"  - '{location}': {err['msg']} (got {err.get('input', 'N/A')!r})")
    return "\n".join(lines)


def load_config(config_path: str | Path | None = None) -> RecallConfig:
    """Load a :class:`RecallConfig` from YAML, or defaults when no path is given.

    A top-level ``stage_recall`` key is unwrapped if present so the section can
    live inside a larger application config file.
    """
    if config_path is None:
        return RecallConfig()

    data = read_yaml(config_path)
    if "stage_recall" in data:
        data = data["stage_recall"] or {}

    try:
        config = RecallConfig.model_validate(data)
    except ValidationError as e:
        logger.error(
            f"Invalid stage_recall configuration in {config_path}:\n"
            f"{_format_validation_error(e)}"
        )
        raise

    logger.info(f"Loaded stage_recall config from {config_path}")
    return config
