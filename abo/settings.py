"""Engine settings and TOML configuration loader.

Loads engine-wide defaults from defaults.toml: expiration window, execution
claim lease, approval thresholds, content generation parameters, memory
digest caps and pattern analysis thresholds. Per-user agent configuration
lives in the database, not here.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from abo.schemas.agents import ConfidencePolicy

# Default config directory relative to the abo package
_CONFIG_DIR = Path(__file__).parent / "config"


class ExpirationSettings(BaseModel):
    max_age_hours: float = Field(default=48.0, gt=0.0)
    excluded_pattern: str = Field(
        default="refund", description="Case-insensitive substring exempt from expiration"
    )


class ExecutionSettings(BaseModel):
    claim_lease_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Age after which an unfinished execution claim may be taken over",
    )


class ApprovalSettings(BaseModel):
    """Confidence thresholds that let an action skip human review.

    The mapping from confidence to policy is a product decision, so both
    thresholds are configuration rather than constants.
    """

    auto_with_copy_min_confidence: float = Field(default=0.75, ge=0.0, le=1.0)
    full_auto_min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)

    def min_confidence(self, policy: ConfidencePolicy) -> float | None:
        """Threshold for ``policy``, or None when the policy always reviews."""
        if policy == ConfidencePolicy.FULL_AUTO:
            return self.full_auto_min_confidence
        if policy == ConfidencePolicy.AUTO_WITH_COPY:
            return self.auto_with_copy_min_confidence
        return None


class GenerationSettings(BaseModel):
    model: str = "groq/llama-3.3-70b-versatile"
    timeout: float = Field(default=30.0, gt=0.0)
    max_retries: int = Field(default=3, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, gt=0)


class MemorySettings(BaseModel):
    cache_ttl_seconds: float = Field(default=300.0, ge=0.0)
    cache_max_entries: int = Field(default=1024, gt=0)
    short_term_max_age_seconds: float = Field(default=1800.0, gt=0.0)
    subscriber_memory_limit: int = Field(default=20, gt=0)
    digest_max_chars: int = Field(default=1200, gt=0)
    digest_max_items_per_type: int = Field(default=5, gt=0)


class LearningSettings(BaseModel):
    min_pattern_sample: int = Field(default=3, ge=1)
    min_strategy_cases: int = Field(default=3, ge=1)
    batch_sample_limit: int = Field(default=100, gt=0)
    works_well_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    avoid_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    avoid_min_sample: int = Field(default=5, ge=1)
    similar_episode_limit: int = Field(default=15, ge=0)
    similar_min_similarity: float = Field(default=0.5, ge=0.0, le=1.0)


class EngineSettings(BaseModel):
    db_path: str = "~/.abo/abo.db"
    execute_auto_approved: bool = Field(
        default=True, description="Execute actions approved by policy immediately"
    )
    expiration: ExpirationSettings = Field(default_factory=ExpirationSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    approval: ApprovalSettings = Field(default_factory=ApprovalSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    learning: LearningSettings = Field(default_factory=LearningSettings)


def load_engine_settings(config_path: Path | None = None) -> EngineSettings:
    """Load engine settings from a TOML file.

    Args:
        config_path: Path to a settings file. Defaults to abo/config/defaults.toml.

    Returns:
        EngineSettings with values from the TOML file; missing keys keep
        their defaults.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If a section has the wrong shape or an invalid value.
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Engine config not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    engine_section = raw.get("engine", {})
    if not isinstance(engine_section, dict):
        raise ValueError(f"[engine] must be a table in {path}")

    data: dict = dict(engine_section)
    for section in ("expiration", "execution", "approval", "generation", "memory", "learning"):
        value = raw.get(section, {})
        if not isinstance(value, dict):
            raise ValueError(f"[{section}] must be a table in {path}")
        data[section] = value

    try:
        return EngineSettings(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid engine config in {path}: {e}") from e
