"""Agent configuration schemas.

AgentConfig, ActionRule and BrandSettings are owned by the surrounding
application. The engine reads them but never edits them, apart from
lazily creating the conservative defaults on first use.
"""

from __future__ import annotations

from enum import StrEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentType(StrEnum):
    """Lifecycle category an agent is responsible for."""

    RECOVERY = "recovery"
    RETENTION = "retention"
    CONVERSION = "conversion"


class ConfidencePolicy(StrEnum):
    """How much the owner trusts the agent to act without review.

    REVIEW_ALL: every action waits for a human.
    AUTO_WITH_COPY: eligible actions run automatically, owner gets a copy.
    FULL_AUTO: eligible actions run automatically.
    """

    REVIEW_ALL = "review_all"
    AUTO_WITH_COPY = "auto_with_copy"
    FULL_AUTO = "full_auto"


class StrategyTemplate(StrEnum):
    """Preset that decides which candidate actions an agent considers."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"
    CUSTOM = "custom"


class BrandTone(StrEnum):
    """Voice of the business in outbound messages."""

    FORMAL = "formal"
    NEUTRAL = "neutral"
    CASUAL = "casual"
    FRIENDLY = "friendly"


class MessageTone(StrEnum):
    """Tone of a single outbound message."""

    FRIENDLY = "friendly"
    FORMAL = "formal"
    URGENT = "urgent"
    EMPATHETIC = "empathetic"


class Humor(StrEnum):
    NONE = "none"
    SUBTLE = "subtle"
    YES = "yes"


class Channel(StrEnum):
    EMAIL = "email"
    SMS = "sms"


class LimitsConfig(BaseModel):
    """Rate and time-window limits for one agent.

    Hours are evaluated in ``timezone``. A window whose end is lower than
    its start wraps past midnight (e.g. 22 to 6).
    """

    max_actions_day: int = Field(default=50, ge=0, description="Actions per user per local day")
    max_emails_subscriber_week: int = Field(
        default=3, ge=0, description="Emails per subscriber over the trailing 7 days"
    )
    max_offers_subscriber_year: int = Field(
        default=4, ge=0, description="Executed offers per subscriber over the trailing 365 days"
    )
    send_hour_start: int = Field(default=9, ge=0, le=23, description="First allowed local hour")
    send_hour_end: int = Field(default=19, ge=0, le=24, description="First forbidden local hour")
    timezone: str = Field(default="Europe/Paris", description="IANA timezone of the owner")
    no_weekend: bool = Field(default=False, description="Forbid actions on Saturday and Sunday")

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


class ActionRule(BaseModel):
    """One allowed action type for an agent."""

    action_type: str
    requires_approval: bool = True
    max_auto_amount: float | None = Field(
        default=None,
        ge=0.0,
        description="Largest offer amount (percent, months or days) that may auto-execute",
    )


class StrategyConfig(BaseModel):
    """Owner overrides for how the agent picks a strategy."""

    model_config = ConfigDict(extra="forbid")

    preferred_action: str | None = Field(
        default=None, description="Action type to consider first when allowed"
    )
    preferred_tone: MessageTone | None = Field(default=None, description="Tone override")
    custom_actions: list[str] = Field(
        default_factory=list,
        description="Candidate action types for the custom template, in priority order",
    )


class OffersConfig(BaseModel):
    """Ceilings on what the agent may offer a subscriber."""

    model_config = ConfigDict(extra="forbid")

    max_discount_percent: int = Field(default=30, ge=0, le=100)
    max_discount_months: int = Field(default=3, ge=0, le=24)
    max_pause_months: int = Field(default=3, ge=0, le=12)
    max_trial_extension_days: int = Field(default=7, ge=0, le=90)
    allow_downgrade: bool = True


class AgentConfig(BaseModel):
    """One agent's configuration for one user."""

    user_id: str
    agent_type: AgentType
    is_active: bool = Field(default=False, description="Inactive agents skip every event")
    confidence_policy: ConfidencePolicy = ConfidencePolicy.REVIEW_ALL
    strategy_template: StrategyTemplate = StrategyTemplate.CONSERVATIVE
    strategy_config: StrategyConfig = Field(default_factory=StrategyConfig)
    offers_config: OffersConfig = Field(default_factory=OffersConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    rules: list[ActionRule] = Field(
        default_factory=list, description="Allowed action types; nothing else may be produced"
    )
    notification_email: str | None = Field(
        default=None, description="Where owner notifications and copies are sent"
    )

    def rule_for(self, action_type: str) -> ActionRule | None:
        for rule in self.rules:
            if rule.action_type == action_type:
                return rule
        return None

    def allowed_action_types(self) -> list[str]:
        return [rule.action_type for rule in self.rules]


class BrandSettings(BaseModel):
    """Voice and vocabulary used for generated content."""

    company_name: str = ""
    tone: BrandTone = BrandTone.NEUTRAL
    humor: Humor = Humor.NONE
    language: str = "en"
    values: list[str] = Field(default_factory=list)
    never_say: list[str] = Field(default_factory=list)
    always_mention: list[str] = Field(default_factory=list)
    signature: str = ""
