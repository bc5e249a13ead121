"""Learning schemas: episodes, feedback, patterns and derived statistics."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from abo.schemas.agents import AgentType
from abo.schemas.situation import ActionTaken, Situation


class Outcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"


class FeedbackType(StrEnum):
    """Kinds of operator or system feedback."""

    APPROVED = "approved"
    REJECTED = "rejected"
    CONVERTED = "converted"
    RECOVERED = "recovered"
    CHURNED = "churned"
    MANUAL_RATING = "manual_rating"


# Feedback kinds that settle the linked episode.
FEEDBACK_OUTCOMES: dict[FeedbackType, Outcome] = {
    FeedbackType.APPROVED: Outcome.SUCCESS,
    FeedbackType.CONVERTED: Outcome.SUCCESS,
    FeedbackType.RECOVERED: Outcome.SUCCESS,
    FeedbackType.REJECTED: Outcome.FAILURE,
    FeedbackType.CHURNED: Outcome.FAILURE,
}


class Episode(BaseModel):
    """A (situation, action, outcome) record used for learning."""

    episode_id: str
    user_id: str
    agent_type: AgentType
    subscriber_id: str | None = None
    action_id: str | None = None
    situation: Situation
    action_taken: ActionTaken
    outcome: Outcome | None = Field(default=None, description="None until resolved")
    outcome_details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    resolved_at: datetime | None = None

    @property
    def trigger(self) -> str:
        return self.situation.trigger

    @property
    def resolved(self) -> bool:
        return self.outcome is not None


class Feedback(BaseModel):
    feedback_id: str
    user_id: str
    agent_type: AgentType
    subscriber_id: str | None = None
    action_id: str | None = None
    feedback_type: FeedbackType
    rating: int | None = Field(default=None, ge=1, le=5)
    comment: str | None = None
    created_at: datetime


class Pattern(BaseModel):
    """Aggregated success statistic for one (trigger, action key) pair.

    ``score`` is a confidence-weighted success estimate that shrinks toward
    zero for small samples. Rank by it, not by ``success_rate``.
    """

    trigger: str
    action_key: str = Field(description="'<action_type>_<strategy>'")
    successes: int = Field(default=0, ge=0)
    sample_size: int = Field(ge=0)
    success_rate: float = Field(ge=0.0, le=1.0)
    score: float = Field(ge=0.0, le=1.0)
    computed_at: datetime


class SimilarEpisode(BaseModel):
    """A resolved past case for the same trigger, ranked by subscriber similarity."""

    episode_id: str
    subscriber_id: str | None = None
    action_key: str
    outcome: Outcome
    similarity: float = Field(ge=0.0, le=1.0)
    resolved_at: datetime | None = None


class TriggerInsights(BaseModel):
    trigger: str
    total_cases: int = 0
    resolved_cases: int = 0
    success_rate: float = 0.0
    best_patterns: list[Pattern] = Field(default_factory=list)
    best_strategy: str | None = Field(
        default=None, description="Highest scoring action key with enough cases"
    )
    best_strategy_sample_size: int = 0
    avg_hours_to_resolution: float | None = None


class LearningStats(BaseModel):
    total_episodes: int = 0
    resolved_episodes: int = 0
    successes: int = 0
    failures: int = 0
    neutral: int = 0
    success_rate: float = 0.0
    top_patterns: list[Pattern] = Field(default_factory=list)
    feedback_counts: dict[str, int] = Field(default_factory=dict)
    average_rating: float | None = None


class BatchAnalysis(BaseModel):
    episodes_analyzed: int = 0
    patterns: list[Pattern] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
