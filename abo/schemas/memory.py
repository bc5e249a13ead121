"""Memory record schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from abo.schemas.learning import Feedback, Pattern, SimilarEpisode


class MemoryType(StrEnum):
    """Facts and interactions are append-only history. Preferences are
    upserted by key. Patterns are shared across subscribers."""

    FACT = "fact"
    INTERACTION = "interaction"
    PREFERENCE = "preference"
    PATTERN = "pattern"


class MemoryRecord(BaseModel):
    memory_id: str
    user_id: str
    subscriber_id: str | None = None
    agent_type: str | None = None
    memory_type: MemoryType
    key: str = ""
    content: dict[str, Any] = Field(default_factory=dict)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    created_at: datetime
    last_accessed_at: datetime | None = None


class MemorySnapshot(BaseModel):
    """Everything reasoning reads from memory for one decision.

    Passing the snapshot explicitly keeps the decision step a pure function
    of its inputs.
    """

    memories: list[MemoryRecord] = Field(default_factory=list)
    digest: str = ""
    patterns: list[Pattern] = Field(default_factory=list)
    feedback: list[Feedback] = Field(default_factory=list)
    similar_episodes: list[SimilarEpisode] = Field(
        default_factory=list, description="Most similar first"
    )

    def preferences(self) -> dict[str, Any]:
        return {
            m.key: m.content.get("value")
            for m in self.memories
            if m.memory_type == MemoryType.PREFERENCE
        }
