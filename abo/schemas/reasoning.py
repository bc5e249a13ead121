"""Reasoning trace schemas."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from abo.schemas.situation import ActionDetails, ActionTaken


class ReasoningStepType(StrEnum):
    """Fixed stages of the reasoning pipeline, in execution order."""

    MEMORY_RETRIEVAL = "memory_retrieval"
    OPTION_GENERATION = "option_generation"
    BRAND_SHAPING = "brand_shaping"
    EVALUATION = "evaluation"
    VALIDATION = "validation"


class ReasoningStep(BaseModel):
    """One traced step of a decision."""

    step_number: int = Field(ge=1)
    step_type: ReasoningStepType
    thought: str = Field(description="Human-readable rationale for this step")
    data: dict[str, Any] = Field(default_factory=dict)
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0)
    duration_ms: float = Field(default=0.0, ge=0.0)


class ActionOption(BaseModel):
    """A candidate action considered during reasoning."""

    action_type: str
    strategy: str
    details: ActionDetails = Field(default_factory=ActionDetails)
    prior: float = Field(default=0.5, ge=0.0, le=1.0)
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    reasons: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.action_type}_{self.strategy}"

    def to_action_taken(self) -> ActionTaken:
        return ActionTaken(type=self.action_type, strategy=self.strategy, details=self.details)


class ReasoningResult(BaseModel):
    """Decision, its confidence and the full trace that produced it."""

    decision: ActionTaken
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: list[ReasoningStep] = Field(default_factory=list)
    fallback: bool = Field(
        default=False, description="True when no preferred candidate was allowed by the rules"
    )
