"""Initial status of a new action under the agent's confidence policy."""

from __future__ import annotations

from dataclasses import dataclass

from abo.schemas.actions import ActionStatus
from abo.schemas.agents import AgentConfig, ConfidencePolicy
from abo.schemas.situation import ActionTaken
from abo.settings import ApprovalSettings


@dataclass(frozen=True)
class ApprovalDecision:
    status: ActionStatus
    notify_owner: bool
    reason: str


class ApprovalPolicy:
    """Decides whether a decision may skip human review.

    ``review_all`` always waits for a human. ``full_auto`` and
    ``auto_with_copy`` approve an action only when its rule does not
    require approval, the confidence reaches the policy's threshold and
    the offer stays within the rule's ``max_auto_amount``. Under
    ``auto_with_copy`` the owner is also sent a copy.
    """

    def __init__(self, settings: ApprovalSettings | None = None) -> None:
        self._settings = settings or ApprovalSettings()

    def decide(
        self, config: AgentConfig, decision: ActionTaken, confidence: float
    ) -> ApprovalDecision:
        pending = ActionStatus.PENDING_APPROVAL
        threshold = self._settings.min_confidence(config.confidence_policy)
        if threshold is None:
            return ApprovalDecision(pending, False, "review_all policy")

        rule = config.rule_for(decision.type)
        if rule is None or rule.requires_approval:
            return ApprovalDecision(pending, False, f"{decision.type} requires approval")
        if confidence < threshold:
            return ApprovalDecision(
                pending, False, f"confidence {confidence:.2f} below {threshold:.2f}"
            )
        amount = decision.details.offer_amount()
        if rule.max_auto_amount is not None and amount > rule.max_auto_amount:
            return ApprovalDecision(
                pending, False, f"amount {amount:g} above auto limit {rule.max_auto_amount:g}"
            )

        notify = config.confidence_policy == ConfidencePolicy.AUTO_WITH_COPY
        return ApprovalDecision(ActionStatus.APPROVED, notify, f"{config.confidence_policy} policy")
