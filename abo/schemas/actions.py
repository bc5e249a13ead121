"""Action record and lifecycle schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from abo.schemas.agents import AgentType, MessageTone
from abo.schemas.situation import ActionDetails, Situation


class ActionStatus(StrEnum):
    """Lifecycle status of an AgentAction.

    pending_approval -> approved | rejected | expired
    approved -> executed
    """

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    EXECUTED = "executed"


# Legal successor states for each status. Terminal states map to nothing.
_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING_APPROVAL: frozenset(
        {ActionStatus.APPROVED, ActionStatus.REJECTED, ActionStatus.EXPIRED}
    ),
    ActionStatus.APPROVED: frozenset({ActionStatus.EXECUTED}),
    ActionStatus.REJECTED: frozenset(),
    ActionStatus.EXPIRED: frozenset(),
    ActionStatus.EXECUTED: frozenset(),
}


def can_transition(current: ActionStatus, target: ActionStatus) -> bool:
    return target in _TRANSITIONS[current]


class GeneratedContent(BaseModel):
    """Message produced by the content generator."""

    subject: str
    body: str
    generator: str = Field(default="", description="Which generator produced the content")


class ActionModifications(BaseModel):
    """Owner edits applied to a pending action before approval."""

    discount_percent: int | None = Field(default=None, ge=0, le=100)
    discount_months: int | None = Field(default=None, ge=0)
    pause_months: int | None = Field(default=None, ge=0)
    downgrade_plan: str | None = None
    tone: MessageTone | None = None
    custom_note: str | None = Field(default=None, max_length=2000)

    def apply(self, details: ActionDetails) -> ActionDetails:
        """Return a copy of ``details`` with these modifications applied."""
        updates: dict = {}
        for field in (
            "discount_percent", "discount_months", "pause_months", "downgrade_plan", "tone"
        ):
            value = getattr(self, field)
            if value is not None:
                updates[field] = value
        if self.custom_note:
            updates["note"] = self.custom_note
        return details.model_copy(update=updates)


class AgentAction(BaseModel):
    """The durable record of one agent decision."""

    action_id: str
    user_id: str
    subscriber_id: str
    agent_type: AgentType
    trigger: str
    action_type: str
    strategy: str
    description: str = ""
    details: ActionDetails = Field(default_factory=ActionDetails)
    content: GeneratedContent
    situation: Situation
    confidence: float = Field(ge=0.0, le=1.0)
    status: ActionStatus = ActionStatus.PENDING_APPROVAL
    created_at: datetime
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    expired_at: datetime | None = None
    executed_at: datetime | None = None
    approved_by: str | None = None
    rejection_reason: str | None = None
    modifications: ActionModifications | None = None
    delivery_attempts: int = 0
    last_error: str | None = None
    message_id: str | None = None
    episode_id: str | None = None


class SweepResult(BaseModel):
    """Counts reported by one expiration sweep."""

    expired: int = 0
    notified: int = 0
    action_ids: list[str] = Field(default_factory=list)


class BatchApproveResult(BaseModel):
    """Per-action outcome of a batch approval."""

    approved: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
