"""Inbound business event schemas.

Each known event type has a typed payload model. Payloads are validated
when the event enters the engine so that a malformed event is rejected at
the boundary rather than half-way through reasoning. Unknown keys are
ignored, wrong types are not.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from abo.schemas.actions import AgentAction
from abo.schemas.agents import AgentType
from abo.schemas.reasoning import ReasoningStep


class EventType(StrEnum):
    """Every event type the engine knows how to route."""

    PAYMENT_FAILED = "payment_failed"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    PAYMENT_REQUIRES_ACTION = "payment_requires_action"
    CANCEL_PENDING = "cancel_pending"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    DOWNGRADE = "downgrade"
    SUBSCRIPTION_EXPIRING = "subscription_expiring"
    INACTIVE_SUBSCRIBER = "inactive_subscriber"
    TRIAL_ENDING = "trial_ending"
    TRIAL_EXPIRED = "trial_expired"
    FREEMIUM_INACTIVE = "freemium_inactive"
    FREEMIUM_ACTIVE = "freemium_active"
    SIGNUP_NO_SUBSCRIPTION = "signup_no_subscription"


class Event(BaseModel):
    """A business event as delivered by the event source."""

    type: str = Field(description="Event type name, e.g. 'payment_failed'")
    subscriber_id: str = Field(min_length=1, description="Subscriber the event is about")
    data: dict[str, Any] = Field(default_factory=dict, description="Raw event payload")


# ── Typed payloads ───────────────────────────────────────────────


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class PaymentEventData(EventData):
    amount: int | None = Field(default=None, ge=0, description="Amount due in cents")
    currency: str | None = None
    attempt_count: int | None = Field(default=None, ge=0)
    invoice_id: str | None = None
    failure_reason: str | None = None


class CancellationEventData(EventData):
    reason: str | None = None
    cancel_at: datetime | None = None
    feedback: str | None = None


class DowngradeEventData(EventData):
    from_plan: str | None = None
    to_plan: str | None = None
    mrr_delta: int | None = Field(default=None, description="MRR change in cents")


class ExpiryEventData(EventData):
    days_until_expiry: int | None = Field(default=None, ge=0)


class InactivityEventData(EventData):
    days_inactive: int | None = Field(default=None, ge=0)
    last_login: datetime | None = None


class TrialEventData(EventData):
    days_remaining: int | None = Field(default=None, ge=0)
    trial_end: datetime | None = None


class SignupEventData(EventData):
    days_since_signup: int | None = Field(default=None, ge=0)
    features_used: list[str] = Field(default_factory=list)


EVENT_DATA_MODELS: dict[EventType, type[EventData]] = {
    EventType.PAYMENT_FAILED: PaymentEventData,
    EventType.INVOICE_PAYMENT_FAILED: PaymentEventData,
    EventType.PAYMENT_REQUIRES_ACTION: PaymentEventData,
    EventType.CANCEL_PENDING: CancellationEventData,
    EventType.SUBSCRIPTION_CANCELED: CancellationEventData,
    EventType.DOWNGRADE: DowngradeEventData,
    EventType.SUBSCRIPTION_EXPIRING: ExpiryEventData,
    EventType.INACTIVE_SUBSCRIBER: InactivityEventData,
    EventType.TRIAL_ENDING: TrialEventData,
    EventType.TRIAL_EXPIRED: TrialEventData,
    EventType.FREEMIUM_INACTIVE: InactivityEventData,
    EventType.FREEMIUM_ACTIVE: SignupEventData,
    EventType.SIGNUP_NO_SUBSCRIPTION: SignupEventData,
}


def parse_event_data(event_type: EventType, data: dict[str, Any]) -> EventData:
    """Validate a raw payload against the model for its event type.

    Raises:
        pydantic.ValidationError: If the payload does not fit the model.
    """
    return EVENT_DATA_MODELS[event_type].model_validate(data)


# ── Results ──────────────────────────────────────────────────────


class SkipReason(StrEnum):
    """Reason codes for events that did not produce an action.

    Limit violations use ``limit_exceeded:<which>`` with ``which`` taken
    from ``LimitKind``.
    """

    NO_MATCHING_AGENT = "no_matching_agent"
    MALFORMED_EVENT = "malformed_event"
    AGENT_INACTIVE = "agent_inactive"
    ALREADY_PENDING = "already_pending"
    UNKNOWN_SUBSCRIBER = "unknown_subscriber"
    NO_ALLOWED_ACTION = "no_allowed_action"


class LimitKind(StrEnum):
    MAX_ACTIONS_PER_DAY = "max_actions_per_day"
    MAX_EMAILS_PER_WEEK = "max_emails_per_week"
    MAX_OFFERS_PER_YEAR = "max_offers_per_year"
    SEND_HOURS = "send_hours"
    WEEKEND = "weekend"


class HandleResult(BaseModel):
    """Outcome of handling one event: an action, or the reason there is none."""

    event_type: str
    subscriber_id: str
    agent_type: AgentType | None = None
    action: AgentAction | None = None
    skipped_reason: str | None = None
    reasoning: list[ReasoningStep] = Field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.action is None
