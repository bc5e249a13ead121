"""Reasoning engine: turns a situation into a traced, rule-compliant decision.

The engine loads a MemorySnapshot (subscriber memories, their digest, the
learned patterns for the trigger, the subscriber's feedback and resolved
cases from similar subscribers) and hands it to ``decide()``, a pure
function. Given identical inputs ``decide()`` returns the same decision
and confidence every time; only the step durations in the trace vary.

Steps, in order:
    1. memory_retrieval   summarize memories, patterns and similar cases
    2. option_generation  candidates from the strategy template and overrides
    3. brand_shaping      tone, language and offer ceilings per candidate
    4. evaluation         confidence per candidate
    5. validation         best candidate allowed by the action rules
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from abo.catalog import AGENT_PROFILES, CandidateAction, candidates_for
from abo.errors import NoAllowedAction
from abo.learning.engine import LearningModule
from abo.learning.scoring import sample_weight
from abo.memory.store import MemoryStore
from abo.schemas.agents import (
    AgentConfig,
    AgentType,
    BrandSettings,
    BrandTone,
    MessageTone,
)
from abo.schemas.learning import FeedbackType, Outcome, Pattern
from abo.schemas.memory import MemorySnapshot, MemoryType
from abo.schemas.reasoning import (
    ActionOption,
    ReasoningResult,
    ReasoningStep,
    ReasoningStepType,
)
from abo.schemas.situation import ActionDetails, ActionTaken, Situation, SubscriberSnapshot
from abo.settings import MemorySettings

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.05
MAX_CONFIDENCE = 0.95
FALLBACK_CONFIDENCE = 0.3

# Pseudo-count for blending a candidate's prior with an observed pattern rate
_PATTERN_PRIOR_WEIGHT = 5.0
# Pseudo-count damping the pull of a handful of similar past cases
_SIMILAR_PRIOR_WEIGHT = 3.0

_POSITIVE_FEEDBACK = frozenset({
    FeedbackType.APPROVED,
    FeedbackType.CONVERTED,
    FeedbackType.RECOVERED,
})
_NEGATIVE_FEEDBACK = frozenset({FeedbackType.REJECTED, FeedbackType.CHURNED})


def digest_key(user_id: str, subscriber_id: str) -> str:
    """Short-term memory key under which reasoning leaves the memory digest."""
    return f"digest:{user_id}:{subscriber_id}"


def _clamp(value: float, low: float = MIN_CONFIDENCE, high: float = MAX_CONFIDENCE) -> float:
    return max(low, min(high, value))


class _Trace:
    """Collects numbered, timed reasoning steps."""

    def __init__(self, timer: Callable[[], float]) -> None:
        self._timer = timer
        self.steps: list[ReasoningStep] = []
        self._started = 0.0

    def start(self) -> None:
        self._started = self._timer()

    def record(
        self,
        step_type: ReasoningStepType,
        thought: str,
        data: dict[str, Any] | None = None,
        confidence: float | None = None,
    ) -> None:
        self.steps.append(
            ReasoningStep(
                step_number=len(self.steps) + 1,
                step_type=step_type,
                thought=thought,
                data=data or {},
                confidence_score=confidence,
                duration_ms=max(0.0, (self._timer() - self._started) * 1000),
            )
        )


# ── Step 3 helpers ───────────────────────────────────────────────


def _choose_tone(
    candidate: CandidateAction,
    config: AgentConfig,
    brand: BrandSettings,
    preferences: dict[str, Any],
) -> MessageTone:
    if config.strategy_config.preferred_tone is not None:
        return config.strategy_config.preferred_tone
    learned = preferences.get("preferred_tone")
    if learned in {tone.value for tone in MessageTone}:
        return MessageTone(learned)
    if brand.tone == BrandTone.FORMAL and candidate.tone == MessageTone.FRIENDLY:
        return MessageTone.FORMAL
    return candidate.tone


def shape_details(
    candidate: CandidateAction,
    config: AgentConfig,
    brand: BrandSettings,
    preferences: dict[str, Any],
) -> tuple[ActionDetails | None, str]:
    """Concrete parameters for a candidate under the owner's offer ceilings.

    Returns:
        (details, note). ``details`` is None when the offers config rules
        the candidate out entirely; ``note`` then says why.
    """
    offers = config.offers_config
    fields: dict[str, Any] = {
        "tone": _choose_tone(candidate, config, brand, preferences),
        "channel": candidate.channel,
        "language": brand.language,
    }
    amount = candidate.default_amount or 0

    if candidate.offer == "discount":
        percent = min(amount, offers.max_discount_percent)
        months = 1 if "first_month" in candidate.action_type else min(3, offers.max_discount_months)
        if percent <= 0 or months <= 0:
            return None, "discounts disabled"
        fields.update(discount_percent=percent, discount_months=months)
    elif candidate.offer == "pause":
        months = min(amount, offers.max_pause_months)
        if months <= 0:
            return None, "pauses disabled"
        fields["pause_months"] = months
    elif candidate.offer == "extension":
        days = min(amount, offers.max_trial_extension_days)
        if days <= 0:
            return None, "extensions disabled"
        fields["extension_days"] = days
    elif candidate.offer == "downgrade":
        if not offers.allow_downgrade:
            return None, "downgrades disabled"
    elif candidate.offer == "refund":
        fields["refund_percent"] = min(amount, 100)

    return ActionDetails(**fields), ""


# ── Step 4 helpers ───────────────────────────────────────────────


def _pattern_for(patterns: list[Pattern], trigger: str, key: str) -> Pattern | None:
    for pattern in patterns:
        if pattern.trigger == trigger and pattern.action_key == key:
            return pattern
    return None


def score_option(
    option: ActionOption,
    candidate: CandidateAction,
    situation: Situation,
    config: AgentConfig,
    snapshot: MemorySnapshot,
) -> ActionOption:
    """Confidence for one option, with the reasons that moved it."""
    reasons: list[str] = []
    pattern = _pattern_for(snapshot.patterns, situation.trigger, option.key)
    if pattern is not None:
        weight = sample_weight(pattern.sample_size, _PATTERN_PRIOR_WEIGHT)
        score = (1 - weight) * candidate.prior + weight * pattern.success_rate
        reasons.append(
            f"learned {pattern.success_rate:.0%} success over {pattern.sample_size} cases "
            f"(weight {weight:.2f})"
        )
    else:
        score = candidate.prior
        reasons.append(f"no learned pattern, prior {candidate.prior:.0%}")

    subscriber = situation.subscriber
    if subscriber.previous_interactions == 0:
        score -= 0.05
        reasons.append("no prior interactions")
    elif subscriber.previous_interactions >= 3:
        score += 0.05
        reasons.append(f"{subscriber.previous_interactions} prior interactions")

    if subscriber.tenure_months >= 12:
        score += 0.03
        reasons.append(f"long tenure ({subscriber.tenure_months} months)")

    preferences = snapshot.preferences()
    prefers_discount = preferences.get("prefers_discount")
    if candidate.offer == "discount" and prefers_discount is True:
        score += 0.08
        reasons.append("subscriber responded to discounts before")
    elif candidate.offer == "discount" and prefers_discount is False:
        score -= 0.08
        reasons.append("subscriber ignored discounts before")

    net_feedback = 0
    for feedback in snapshot.feedback:
        if feedback.feedback_type in _POSITIVE_FEEDBACK or (feedback.rating or 0) >= 4:
            net_feedback += 1
        elif feedback.feedback_type in _NEGATIVE_FEEDBACK or (
            feedback.rating is not None and feedback.rating <= 2
        ):
            net_feedback -= 1
    if net_feedback:
        adjustment = max(-0.1, min(0.1, 0.03 * net_feedback))
        score += adjustment
        reasons.append(f"feedback balance {net_feedback:+d}")

    similar = [e for e in snapshot.similar_episodes if e.action_key == option.key]
    if similar:
        weight = sum(e.similarity for e in similar)
        wins = sum(e.similarity for e in similar if e.outcome == Outcome.SUCCESS)
        rate = wins / weight if weight else 0.0
        adjustment = 0.2 * (rate - 0.5) * weight / (weight + _SIMILAR_PRIOR_WEIGHT)
        adjustment = max(-0.1, min(0.1, adjustment))
        if adjustment:
            score += adjustment
            reasons.append(f"{rate:.0%} success over {len(similar)} similar cases")

    if config.strategy_config.preferred_action == option.action_type:
        score += 0.05
        reasons.append("owner's preferred action")

    return option.model_copy(update={"score": round(_clamp(score), 4), "reasons": reasons})


# ── Pipeline ─────────────────────────────────────────────────────


def decide(
    situation: Situation,
    config: AgentConfig,
    brand: BrandSettings,
    snapshot: MemorySnapshot,
    *,
    timer: Callable[[], float] = time.perf_counter,
) -> ReasoningResult:
    """Run the five reasoning steps over an explicit memory snapshot.

    Raises:
        NoAllowedAction: The config has no action rules at all.
    """
    if not config.rules:
        raise NoAllowedAction(f"{config.agent_type} agent of {config.user_id} has no action rules")

    trace = _Trace(timer)
    profile = AGENT_PROFILES[config.agent_type]
    preferences = snapshot.preferences()

    # 1. Memory retrieval
    trace.start()
    type_counts = {
        t.value: sum(1 for m in snapshot.memories if m.memory_type == t) for t in MemoryType
    }
    thought = (
        f"Found {len(snapshot.memories)} memories for {situation.subscriber.display_name} "
        f"and {len(snapshot.patterns)} learned patterns for {situation.trigger}."
    )
    if snapshot.patterns:
        top = snapshot.patterns[0]
        thought += (
            f" Best known: {top.action_key} at {top.success_rate:.0%} "
            f"over {top.sample_size} cases."
        )
    if snapshot.similar_episodes:
        wins = sum(1 for e in snapshot.similar_episodes if e.outcome == Outcome.SUCCESS)
        thought += (
            f" {len(snapshot.similar_episodes)} similar past cases, {wins} successful."
        )
    trace.record(
        ReasoningStepType.MEMORY_RETRIEVAL,
        thought,
        {
            "memory_counts": type_counts,
            "digest": snapshot.digest,
            "patterns": [
                {
                    "action_key": p.action_key,
                    "success_rate": p.success_rate,
                    "sample_size": p.sample_size,
                    "score": p.score,
                }
                for p in snapshot.patterns
            ],
            "feedback_count": len(snapshot.feedback),
            "similar_cases": [
                {
                    "action_key": e.action_key,
                    "outcome": e.outcome.value,
                    "similarity": e.similarity,
                }
                for e in snapshot.similar_episodes[:5]
            ],
            "similar_case_count": len(snapshot.similar_episodes),
        },
    )

    # 2. Option generation
    trace.start()
    candidates = candidates_for(config.agent_type, config.strategy_template, config.strategy_config)
    trace.record(
        ReasoningStepType.OPTION_GENERATION,
        f"Strategy template '{config.strategy_template}' proposes "
        + ", ".join(c.key for c in candidates)
        + ".",
        {"candidates": [c.key for c in candidates], "template": config.strategy_template.value},
    )

    # 3. Brand shaping
    trace.start()
    shaped: list[tuple[CandidateAction, ActionOption]] = []
    dropped: dict[str, str] = {}
    for candidate in candidates:
        details, note = shape_details(candidate, config, brand, preferences)
        if details is None:
            dropped[candidate.key] = note
            continue
        shaped.append(
            (
                candidate,
                ActionOption(
                    action_type=candidate.action_type,
                    strategy=candidate.strategy,
                    details=details,
                    prior=candidate.prior,
                ),
            )
        )
    thought = (
        f"Applied '{brand.tone}' brand voice in '{brand.language}'; "
        f"discounts capped at {config.offers_config.max_discount_percent}%."
    )
    if dropped:
        thought += " Dropped: " + ", ".join(f"{k} ({v})" for k, v in dropped.items()) + "."
    trace.record(
        ReasoningStepType.BRAND_SHAPING,
        thought,
        {
            "options": {o.key: o.details.model_dump(exclude_none=True) for _, o in shaped},
            "dropped": dropped,
        },
    )

    # 4. Evaluation
    trace.start()
    scored = [
        (index, score_option(option, candidate, situation, config, snapshot))
        for index, (candidate, option) in enumerate(shaped)
    ]
    # Highest score first; candidate order breaks ties
    scored.sort(key=lambda item: (-item[1].score, item[0]))
    ranked = [option for _, option in scored]
    trace.record(
        ReasoningStepType.EVALUATION,
        "Scored options: " + ", ".join(f"{o.key} {o.score:.0%}" for o in ranked) + "."
        if ranked
        else "No options left to score.",
        {"scores": [{"option": o.key, "score": o.score, "reasons": o.reasons} for o in ranked]},
        confidence=ranked[0].score if ranked else None,
    )

    # 5. Validation against action rules
    trace.start()
    allowed = set(config.allowed_action_types())
    rejected = [o.key for o in ranked if o.action_type not in allowed]
    chosen = next((o for o in ranked if o.action_type in allowed), None)
    fallback = chosen is None

    if chosen is not None:
        confidence = chosen.score
        thought = f"Chose {chosen.key} at {confidence:.0%} confidence."
        if rejected:
            thought += " Not allowed by rules: " + ", ".join(rejected) + "."
    else:
        chosen = _fallback_option(config, brand, preferences)
        confidence = FALLBACK_CONFIDENCE
        thought = (
            f"No proposed option is allowed by the rules; falling back to "
            f"{chosen.key} at {confidence:.0%} confidence."
        )
    trace.record(
        ReasoningStepType.VALIDATION,
        thought,
        {
            "allowed": sorted(allowed),
            "rejected": rejected,
            "chosen": chosen.key,
            "fallback": fallback,
            "catalog": [c.action_type for c in profile.catalog()],
        },
        confidence=confidence,
    )

    return ReasoningResult(
        decision=chosen.to_action_taken(),
        confidence=confidence,
        reasoning=trace.steps,
        fallback=fallback,
    )


def _fallback_option(
    config: AgentConfig,
    brand: BrandSettings,
    preferences: dict[str, Any],
) -> ActionOption:
    """First rule action, with catalog parameters where the catalog knows it."""
    profile = AGENT_PROFILES[config.agent_type]
    rule = config.rules[0]
    candidate = profile.find(rule.action_type) or CandidateAction(
        rule.action_type, "default", FALLBACK_CONFIDENCE, rule.action_type.replace("_", " ")
    )
    details, _ = shape_details(candidate, config, brand, preferences)
    return ActionOption(
        action_type=candidate.action_type,
        strategy=candidate.strategy,
        details=details or ActionDetails(tone=candidate.tone, language=brand.language),
        prior=candidate.prior,
        score=FALLBACK_CONFIDENCE,
        reasons=["fallback"],
    )


def describe_action(
    agent_type: AgentType, action: ActionTaken, subscriber: SubscriberSnapshot
) -> str:
    """One-line, human-readable summary of an action for reviewers."""
    candidate = AGENT_PROFILES[agent_type].find(action.type)
    label = candidate.label if candidate else action.type.replace("_", " ")
    details = action.details
    text = f"Send {details.tone} {label} to {subscriber.display_name}"
    if subscriber.plan:
        text += f" ({subscriber.plan})"
    if details.discount_percent:
        months = details.discount_months or 1
        text += f": {details.discount_percent}% off for {months} month{'s' if months > 1 else ''}"
    elif details.refund_percent:
        text += f": refund {details.refund_percent}%"
    elif details.pause_months:
        text += f": pause for {details.pause_months} month{'s' if details.pause_months > 1 else ''}"
    elif details.extension_days:
        text += f": extend by {details.extension_days} days"
    elif details.downgrade_plan:
        text += f": move to {details.downgrade_plan}"
    return text


class ReasoningEngine:
    """Loads the memory snapshot for a decision and runs ``decide()`` on it."""

    def __init__(
        self,
        memory: MemoryStore,
        learning: LearningModule,
        settings: MemorySettings | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._memory = memory
        self._learning = learning
        self._settings = settings or MemorySettings()
        self._timer = timer

    async def load_snapshot(
        self, user_id: str, agent_type: AgentType, situation: Situation
    ) -> MemorySnapshot:
        subscriber_id = situation.subscriber.id
        memories = await self._memory.get_subscriber_memories(
            user_id, subscriber_id, self._settings.subscriber_memory_limit
        )
        digest = MemoryStore.summarize_memories(
            memories,
            max_chars=self._settings.digest_max_chars,
            max_items_per_type=self._settings.digest_max_items_per_type,
        )
        patterns = await self._memory.get_patterns(user_id, agent_type.value, situation.trigger)
        feedback = await self._learning.get_subscriber_feedback(user_id, subscriber_id)
        similar = await self._learning.find_similar_episodes(user_id, agent_type, situation)
        return MemorySnapshot(
            memories=memories,
            digest=digest,
            patterns=patterns,
            feedback=feedback,
            similar_episodes=similar,
        )

    async def reason(
        self,
        situation: Situation,
        config: AgentConfig,
        brand: BrandSettings,
    ) -> ReasoningResult:
        """Decide what to do about ``situation``.

        Raises:
            NoAllowedAction: The config has no action rules at all.
        """
        snapshot = await self.load_snapshot(config.user_id, config.agent_type, situation)
        self._memory.set_short_term(
            digest_key(config.user_id, situation.subscriber.id), snapshot.digest
        )
        result = decide(situation, config, brand, snapshot, timer=self._timer)
        logger.debug(
            "Reasoned %s for %s/%s: %s at %.2f",
            situation.trigger,
            config.user_id,
            situation.subscriber.id,
            result.decision.key,
            result.confidence,
        )
        return result
