"""Per-agent-type data: triggers, default rules and candidate actions.

Recovery, retention and conversion agents share one pipeline. What differs
between them is data, kept here as one AgentProfile per agent type. Nothing
in this module has behavior beyond lookups.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from abo.schemas.agents import (
    ActionRule,
    AgentType,
    Channel,
    MessageTone,
    StrategyConfig,
    StrategyTemplate,
)


@dataclass(frozen=True)
class CandidateAction:
    action_type: str
    strategy: str
    prior: float              # success estimate before any learned pattern
    label: str                # "payment reminder email"
    tone: MessageTone = MessageTone.FRIENDLY
    channel: Channel = Channel.EMAIL
    offer: str | None = None  # "discount", "pause", "downgrade", "extension", "refund"
    default_amount: int | None = None

    @property
    def key(self) -> str:
        return f"{self.action_type}_{self.strategy}"


@dataclass(frozen=True)
class AgentProfile:
    agent_type: AgentType
    triggers: tuple[str, ...]
    default_rules: tuple[str, ...]
    templates: dict[StrategyTemplate, tuple[CandidateAction, ...]] = field(default_factory=dict)

    def catalog(self) -> list[CandidateAction]:
        """Every distinct candidate across all templates, first occurrence wins."""
        seen: dict[str, CandidateAction] = {}
        for template in (
            StrategyTemplate.MODERATE,
            StrategyTemplate.CONSERVATIVE,
            StrategyTemplate.AGGRESSIVE,
        ):
            for candidate in self.templates.get(template, ()):
                seen.setdefault(candidate.action_type, candidate)
        return list(seen.values())

    def find(self, action_type: str) -> CandidateAction | None:
        for candidate in self.catalog():
            if candidate.action_type == action_type:
                return candidate
        return None


# ── Recovery ─────────────────────────────────────────────────────

_REMINDER = CandidateAction(
    "send_reminder_email", "friendly", 0.60, "payment reminder email"
)
_REMINDER_URGENT = CandidateAction(
    "send_reminder_email", "urgent", 0.55, "urgent payment reminder email",
    tone=MessageTone.URGENT,
)
_SMS_REMINDER = CandidateAction(
    "send_sms_reminder", "urgent", 0.50, "payment reminder text message",
    tone=MessageTone.URGENT, channel=Channel.SMS,
)
_PAYMENT_EXTENSION = CandidateAction(
    "offer_payment_extension", "empathetic", 0.55, "payment deadline extension",
    tone=MessageTone.EMPATHETIC, offer="extension", default_amount=7,
)
_UPDATE_PAYMENT = CandidateAction(
    "update_payment_method_request", "helpful", 0.55, "payment method update request"
)

# ── Retention ────────────────────────────────────────────────────

_WINBACK = CandidateAction(
    "send_winback_email", "empathetic", 0.55, "win-back email",
    tone=MessageTone.EMPATHETIC,
)
_DISCOUNT = CandidateAction(
    "offer_discount", "value_focused", 0.60, "retention discount",
    offer="discount", default_amount=20,
)
_DISCOUNT_DEEP = CandidateAction(
    "offer_discount", "value_focused", 0.65, "retention discount",
    offer="discount", default_amount=30,
)
_PAUSE = CandidateAction(
    "offer_pause", "flexible", 0.50, "subscription pause",
    offer="pause", default_amount=1,
)
_DOWNGRADE = CandidateAction(
    "offer_downgrade", "budget", 0.55, "plan downgrade offer",
    offer="downgrade",
)
_PARTIAL_REFUND = CandidateAction(
    "offer_partial_refund", "goodwill", 0.50, "partial refund",
    tone=MessageTone.EMPATHETIC, offer="refund", default_amount=50,
)

# ── Conversion ───────────────────────────────────────────────────

_UPGRADE = CandidateAction(
    "send_upgrade_email", "value_focused", 0.60, "upgrade email"
)
_UPGRADE_URGENT = CandidateAction(
    "send_upgrade_email", "urgent", 0.55, "last-chance upgrade email",
    tone=MessageTone.URGENT,
)
_FEATURE_HIGHLIGHT = CandidateAction(
    "send_feature_highlight", "educational", 0.55, "feature highlight email"
)
_TRIAL_EXTENSION = CandidateAction(
    "offer_trial_extension", "generous", 0.55, "trial extension",
    offer="extension", default_amount=7,
)
_FIRST_MONTH_DISCOUNT = CandidateAction(
    "offer_first_month_discount", "urgent", 0.60, "first month discount",
    tone=MessageTone.URGENT, offer="discount", default_amount=20,
)


AGENT_PROFILES: dict[AgentType, AgentProfile] = {
    AgentType.RECOVERY: AgentProfile(
        agent_type=AgentType.RECOVERY,
        triggers=("payment_failed", "invoice_payment_failed", "payment_requires_action"),
        default_rules=(
            "send_reminder_email",
            "send_sms_reminder",
            "offer_payment_extension",
            "update_payment_method_request",
        ),
        templates={
            StrategyTemplate.CONSERVATIVE: (_REMINDER, _UPDATE_PAYMENT),
            StrategyTemplate.MODERATE: (_REMINDER, _PAYMENT_EXTENSION, _SMS_REMINDER),
            StrategyTemplate.AGGRESSIVE: (_PAYMENT_EXTENSION, _REMINDER_URGENT, _SMS_REMINDER),
        },
    ),
    AgentType.RETENTION: AgentProfile(
        agent_type=AgentType.RETENTION,
        triggers=(
            "cancel_pending",
            "subscription_canceled",
            "downgrade",
            "subscription_expiring",
            "inactive_subscriber",
        ),
        default_rules=("send_winback_email", "offer_discount", "offer_pause", "offer_downgrade"),
        templates={
            StrategyTemplate.CONSERVATIVE: (_WINBACK, _PAUSE),
            StrategyTemplate.MODERATE: (_DISCOUNT, _WINBACK, _PAUSE),
            StrategyTemplate.AGGRESSIVE: (_DISCOUNT_DEEP, _DOWNGRADE, _PARTIAL_REFUND, _PAUSE),
        },
    ),
    AgentType.CONVERSION: AgentProfile(
        agent_type=AgentType.CONVERSION,
        triggers=(
            "trial_ending",
            "trial_expired",
            "freemium_inactive",
            "freemium_active",
            "signup_no_subscription",
        ),
        default_rules=(
            "send_upgrade_email",
            "offer_trial_extension",
            "offer_first_month_discount",
            "send_feature_highlight",
        ),
        templates={
            StrategyTemplate.CONSERVATIVE: (_FEATURE_HIGHLIGHT, _UPGRADE),
            StrategyTemplate.MODERATE: (_UPGRADE, _TRIAL_EXTENSION, _FEATURE_HIGHLIGHT),
            StrategyTemplate.AGGRESSIVE: (_FIRST_MONTH_DISCOUNT, _UPGRADE_URGENT, _TRIAL_EXTENSION),
        },
    ),
}

# Event type -> the one agent type that handles it
EVENT_AGENT_TYPES: dict[str, AgentType] = {
    trigger: profile.agent_type
    for profile in AGENT_PROFILES.values()
    for trigger in profile.triggers
}


def agent_type_for(event_type: str) -> AgentType | None:
    return EVENT_AGENT_TYPES.get(event_type)


def default_rules(agent_type: AgentType) -> list[ActionRule]:
    """Conservative starting rules: every default action needs approval."""
    return [
        ActionRule(action_type=action_type, requires_approval=True)
        for action_type in AGENT_PROFILES[agent_type].default_rules
    ]


def candidates_for(
    agent_type: AgentType,
    template: StrategyTemplate,
    strategy_config: StrategyConfig,
) -> list[CandidateAction]:
    """Ordered candidate actions for a template and owner overrides.

    The custom template uses ``strategy_config.custom_actions`` and falls
    back to the moderate template when that list is empty. An explicit
    ``preferred_action`` is moved (or added) to the front.
    """
    profile = AGENT_PROFILES[agent_type]

    if template == StrategyTemplate.CUSTOM and strategy_config.custom_actions:
        candidates = [
            profile.find(action_type)
            or CandidateAction(action_type, "custom", 0.5, action_type.replace("_", " "))
            for action_type in strategy_config.custom_actions
        ]
    elif template == StrategyTemplate.CUSTOM:
        candidates = list(profile.templates[StrategyTemplate.MODERATE])
    else:
        candidates = list(profile.templates[template])

    preferred = strategy_config.preferred_action
    if preferred:
        existing = [c for c in candidates if c.action_type == preferred]
        rest = [c for c in candidates if c.action_type != preferred]
        head = existing or [
            profile.find(preferred)
            or CandidateAction(preferred, "custom", 0.5, preferred.replace("_", " "))
        ]
        candidates = head + rest

    return candidates
