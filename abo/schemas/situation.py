"""Situation snapshot handed to the reasoning engine."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from abo.schemas.agents import Channel, MessageTone


class SubscriberSnapshot(BaseModel):
    """What the engine knows about a subscriber at decision time."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str = ""
    name: str | None = None
    plan: str | None = None
    mrr: int = Field(default=0, ge=0, description="Monthly recurring revenue in cents")
    tenure_months: int = Field(default=0, ge=0)
    previous_interactions: int = Field(default=0, ge=0)
    status: str | None = None
    country: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.id


class Situation(BaseModel):
    """Immutable input to a single decision. Never stored as its own row."""

    model_config = ConfigDict(frozen=True)

    subscriber: SubscriberSnapshot
    trigger: str = Field(description="Event type that caused the decision")
    context: dict[str, Any] = Field(default_factory=dict, description="Validated event payload")
    timestamp: datetime


class ActionDetails(BaseModel):
    """Structured parameters of a chosen action."""

    tone: MessageTone = MessageTone.FRIENDLY
    channel: Channel = Channel.EMAIL
    discount_percent: int | None = Field(default=None, ge=0, le=100)
    discount_months: int | None = Field(default=None, ge=0)
    pause_months: int | None = Field(default=None, ge=0)
    extension_days: int | None = Field(default=None, ge=0)
    refund_percent: int | None = Field(default=None, ge=0, le=100)
    downgrade_plan: str | None = None
    language: str = "en"
    note: str | None = None

    def offer_amount(self) -> float:
        """Size of the offer compared against a rule's auto-execute ceiling.

        Discounts and refunds count in percent, pauses in months, extensions in days.
        Plain messages carry no offer and return 0.
        """
        for amount in (
            self.discount_percent,
            self.refund_percent,
            self.pause_months,
            self.extension_days,
        ):
            if amount is not None:
                return float(amount)
        return 0.0


class ActionTaken(BaseModel):
    """The chosen action: type, strategy and parameters."""

    type: str
    strategy: str
    details: ActionDetails = Field(default_factory=ActionDetails)

    @property
    def key(self) -> str:
        """Grouping key used by pattern analysis."""
        return f"{self.type}_{self.strategy}"
