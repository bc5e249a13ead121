"""Event entry point: turns a business event into a vetted AgentAction.

Runs the fixed decision sequence for one event:
route -> validate -> config -> limits -> dedup -> situation -> reason
-> generate -> atomic insert -> trace and episode -> approval policy.

Expected refusals (unknown event, inactive agent, limit, duplicate, ...)
come back as a HandleResult with ``skipped_reason``; they are never
raised to the caller. Infrastructure failures such as a generation
timeout propagate, and no action is created for that event.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

from pydantic import ValidationError

from abo.approval import ApprovalDecision, ApprovalPolicy
from abo.catalog import agent_type_for
from abo.errors import (
    AgentInactive,
    AlreadyPending,
    DeliveryFailed,
    InfrastructureError,
    MalformedEvent,
    NoMatchingAgent,
    PolicySkip,
    UnknownSubscriber,
)
from abo.learning.engine import LearningModule
from abo.lifecycle import ActionLifecycle
from abo.limits import LimitChecker, local_day
from abo.memory.store import MemoryStore
from abo.persistence.actions import ActionStore
from abo.persistence.configs import ConfigStore
from abo.persistence.subscribers import SubscriberStore
from abo.providers.base import ContentGenerator, GenerationRequest, OwnerNotifier
from abo.reasoning.engine import ReasoningEngine, describe_action, digest_key
from abo.schemas.actions import ActionStatus, AgentAction
from abo.schemas.agents import AgentType
from abo.schemas.events import Event, EventType, HandleResult, parse_event_data
from abo.schemas.situation import Situation
from abo.settings import EngineSettings

logger = logging.getLogger(__name__)


class AgentOrchestrator:
    """Routes events to the right agent and records what it decides."""

    def __init__(
        self,
        *,
        configs: ConfigStore,
        subscribers: SubscriberStore,
        actions: ActionStore,
        memory: MemoryStore,
        learning: LearningModule,
        reasoning: ReasoningEngine,
        lifecycle: ActionLifecycle,
        generator: ContentGenerator,
        notifier: OwnerNotifier,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._configs = configs
        self._subscribers = subscribers
        self._actions = actions
        self._memory = memory
        self._learning = learning
        self._reasoning = reasoning
        self._lifecycle = lifecycle
        self._generator = generator
        self._notifier = notifier
        self._settings = settings or EngineSettings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._limits = LimitChecker(actions, subscribers)
        self._approval = ApprovalPolicy(self._settings.approval)

    async def handle_event(self, user_id: str, event: Event) -> HandleResult:
        """Handle one event for one business owner.

        Returns:
            HandleResult with the created action, or with ``skipped_reason``
            set when no action was created.

        Raises:
            InfrastructureError: Content generation failed. Safe to retry.
        """
        agent_type = agent_type_for(event.type)
        try:
            if agent_type is None:
                raise NoMatchingAgent(f"No agent handles '{event.type}'")
            result = await self._handle(user_id, event, agent_type)
        except PolicySkip as skip:
            logger.info(
                "Skipped %s for %s/%s (agent: %s): %s",
                event.type, user_id, event.subscriber_id, agent_type, skip.reason,
            )
            return HandleResult(
                event_type=event.type,
                subscriber_id=event.subscriber_id,
                agent_type=agent_type,
                skipped_reason=skip.reason,
            )
        except InfrastructureError as e:
            logger.warning(
                "Failed %s for %s/%s (agent: %s): %s",
                event.type, user_id, event.subscriber_id, agent_type, type(e).__name__,
            )
            raise

        action = result.action
        logger.info(
            "Handled %s for %s/%s (agent: %s): %s %s at %.2f -> %s",
            event.type,
            user_id,
            event.subscriber_id,
            agent_type,
            action.action_type,
            action.action_id,
            action.confidence,
            action.status,
        )
        return result

    async def handle_events(self, user_id: str, events: list[Event]) -> list[HandleResult]:
        """Handle events one after another, in order."""
        return [await self.handle_event(user_id, event) for event in events]

    async def _handle(self, user_id: str, event: Event, agent_type: AgentType) -> HandleResult:
        now = self._clock()
        self._memory.cleanup_short_term(self._settings.memory.short_term_max_age_seconds)

        try:
            payload = parse_event_data(EventType(event.type), event.data)
        except ValidationError as e:
            raise MalformedEvent(
                f"Invalid '{event.type}' payload: {e.error_count()} error(s)"
            ) from e

        config = await self._configs.get_config(user_id, agent_type)
        if not config.is_active:
            raise AgentInactive(f"{agent_type} agent is inactive")

        await self._limits.check(user_id, event.subscriber_id, config.limits, now)

        if await self._actions.find_pending(user_id, event.subscriber_id, event.type):
            raise AlreadyPending()

        subscriber = await self._subscribers.get_snapshot(user_id, event.subscriber_id, now)
        if subscriber is None:
            raise UnknownSubscriber(f"Subscriber {event.subscriber_id} is unknown")

        situation = Situation(
            subscriber=subscriber,
            trigger=event.type,
            context=payload.model_dump(mode="json", exclude_none=True),
            timestamp=now,
        )
        brand = await self._configs.get_brand_settings(user_id)
        reasoned = await self._reasoning.reason(situation, config, brand)
        decision = reasoned.decision
        description = describe_action(agent_type, decision, subscriber)

        content = await self._generator.generate(
            GenerationRequest(
                agent_type=agent_type,
                trigger=event.type,
                action_type=decision.type,
                strategy=decision.strategy,
                description=description,
                subscriber=subscriber,
                details=decision.details,
                brand=brand,
                context=situation.context,
                memory_digest=self._memory.get_short_term(
                    digest_key(user_id, subscriber.id), ""
                ),
            )
        )

        approval = self._approval.decide(config, decision, reasoned.confidence)
        auto_approved = approval.status == ActionStatus.APPROVED
        action_id = str(uuid4())
        episode = self._learning.new_episode(
            user_id, agent_type, situation, decision, action_id=action_id
        )
        action = AgentAction(
            action_id=action_id,
            user_id=user_id,
            subscriber_id=subscriber.id,
            agent_type=agent_type,
            trigger=event.type,
            action_type=decision.type,
            strategy=decision.strategy,
            description=description,
            details=decision.details,
            content=content,
            situation=situation,
            confidence=reasoned.confidence,
            status=approval.status,
            created_at=now,
            approved_at=now if auto_approved else None,
            approved_by=f"policy:{config.confidence_policy}" if auto_approved else None,
            episode_id=episode.episode_id,
        )
        await self._actions.create(
            action,
            day=local_day(now, config.limits.timezone),
            max_actions_day=config.limits.max_actions_day,
            reasoning=reasoned.reasoning,
            episode=episode,
        )
        logger.debug("Approval for %s: %s", action.action_id, approval.reason)

        if auto_approved:
            action = await self._after_auto_approval(action, config.notification_email, approval)

        return HandleResult(
            event_type=event.type,
            subscriber_id=subscriber.id,
            agent_type=agent_type,
            action=action,
            reasoning=reasoned.reasoning,
        )

    async def _after_auto_approval(
        self, action: AgentAction, recipient: str | None, approval: ApprovalDecision
    ) -> AgentAction:
        if self._settings.execute_auto_approved:
            try:
                await self._lifecycle.execute_action(action.action_id)
            except DeliveryFailed:
                # Stays approved with last_error set; execute_action can be retried
                logger.info("Auto-approved action %s left unsent", action.action_id)

        refreshed = await self._actions.get(action.action_id) or action
        if approval.notify_owner:
            try:
                await self._notifier.action_auto_approved(action.user_id, recipient, refreshed)
            except Exception:
                logger.warning(
                    "Owner copy failed for action %s", action.action_id, exc_info=True
                )
        return refreshed
