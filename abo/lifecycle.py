"""Action lifecycle: approval, rejection, modification, execution and expiry.

Status machine:

    pending_approval -> approved -> executed
    pending_approval -> rejected
    pending_approval -> expired

Every transition is a conditional update on the expected current status,
so concurrent callers cannot both win. Execution additionally claims a
one-time token, so replayed execute calls send at most once. A failed or
cancelled send releases the claim and leaves the action approved with
``last_error`` set. A claim older than the configured lease is treated as
left behind by a crashed executor and can be taken over.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import NoReturn
from uuid import uuid4

from abo.errors import (
    AboError,
    ActionNotFound,
    DeliveryFailed,
    InvalidTransition,
    Unauthorized,
)
from abo.memory.store import MemoryStore
from abo.persistence.actions import ActionStore
from abo.persistence.configs import ConfigStore
from abo.providers.base import (
    ContentGenerator,
    DeliveryChannel,
    GenerationRequest,
    OutboundMessage,
    OwnerNotifier,
)
from abo.reasoning.engine import describe_action, digest_key
from abo.schemas.actions import (
    ActionModifications,
    ActionStatus,
    AgentAction,
    BatchApproveResult,
    SweepResult,
)
from abo.schemas.agents import AgentType, Channel
from abo.schemas.situation import ActionTaken
from abo.settings import ExecutionSettings, ExpirationSettings

logger = logging.getLogger(__name__)


def _merge_modifications(
    previous: ActionModifications | None, new: ActionModifications
) -> ActionModifications:
    if previous is None:
        return new
    return previous.model_copy(update=new.model_dump(exclude_none=True))


class ActionLifecycle:
    """Drives AgentActions through their status machine and sends them."""

    def __init__(
        self,
        actions: ActionStore,
        configs: ConfigStore,
        memory: MemoryStore,
        *,
        generator: ContentGenerator,
        delivery: DeliveryChannel,
        notifier: OwnerNotifier,
        expiration: ExpirationSettings | None = None,
        execution: ExecutionSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._actions = actions
        self._configs = configs
        self._memory = memory
        self._generator = generator
        self._delivery = delivery
        self._notifier = notifier
        self._expiration = expiration or ExpirationSettings()
        self._execution = execution or ExecutionSettings()
        self._clock = clock or (lambda: datetime.now(UTC))

    # ── Owner decisions ──────────────────────────────────────────

    async def approve_action(self, action_id: str, approver_id: str) -> AgentAction:
        """Approve a pending action and execute it.

        Raises:
            ActionNotFound: No such action.
            Unauthorized: ``approver_id`` does not own the action.
            InvalidTransition: The action is no longer pending.
            DeliveryFailed: Approved, but the send failed; the action stays approved.
        """
        await self._load_owned(action_id, approver_id)
        moved = await self._actions.transition(
            action_id,
            ActionStatus.PENDING_APPROVAL,
            ActionStatus.APPROVED,
            approved_at=self._clock(),
            approved_by=approver_id,
        )
        if not moved:
            await self._refuse(action_id, ActionStatus.APPROVED)
        logger.info("Action %s approved by %s", action_id, approver_id)
        return await self.execute_action(action_id)

    async def reject_action(
        self, action_id: str, approver_id: str, reason: str | None = None
    ) -> AgentAction:
        """Reject a pending action.

        Raises:
            ActionNotFound: No such action.
            Unauthorized: ``approver_id`` does not own the action.
            InvalidTransition: The action is no longer pending.
        """
        await self._load_owned(action_id, approver_id)
        moved = await self._actions.transition(
            action_id,
            ActionStatus.PENDING_APPROVAL,
            ActionStatus.REJECTED,
            rejected_at=self._clock(),
            rejection_reason=reason,
        )
        if not moved:
            await self._refuse(action_id, ActionStatus.REJECTED)
        logger.info("Action %s rejected by %s", action_id, approver_id)
        return await self._get(action_id)

    async def modify_action(
        self,
        action_id: str,
        approver_id: str,
        modifications: ActionModifications,
    ) -> AgentAction:
        """Apply owner edits to a pending action and regenerate its content.

        The status does not change; the action still needs approval.

        Raises:
            ActionNotFound: No such action.
            Unauthorized: ``approver_id`` does not own the action.
            InvalidTransition: The action is not pending.
        """
        action = await self._load_owned(action_id, approver_id)
        if action.status != ActionStatus.PENDING_APPROVAL:
            logger.warning("Refused to modify %s action %s", action.status, action_id)
            raise InvalidTransition(
                action_id, action.status, action.status, "only pending actions can be modified"
            )

        merged = _merge_modifications(action.modifications, modifications)
        details = modifications.apply(action.details)
        subscriber = action.situation.subscriber
        description = describe_action(
            action.agent_type,
            ActionTaken(type=action.action_type, strategy=action.strategy, details=details),
            subscriber,
        )
        brand = await self._configs.get_brand_settings(action.user_id)
        content = await self._generator.generate(
            GenerationRequest(
                agent_type=action.agent_type,
                trigger=action.trigger,
                action_type=action.action_type,
                strategy=action.strategy,
                description=description,
                subscriber=subscriber,
                details=details,
                brand=brand,
                context=action.situation.context,
                memory_digest=self._memory.get_short_term(
                    digest_key(action.user_id, subscriber.id), ""
                ),
                modifications=merged,
            )
        )

        updated = await self._actions.update_content(
            action_id, content, details, merged, description
        )
        if not updated:
            await self._refuse(action_id, ActionStatus.PENDING_APPROVAL)
        logger.info("Action %s modified by %s", action_id, approver_id)
        return await self._get(action_id)

    async def batch_approve(self, action_ids: list[str], approver_id: str) -> BatchApproveResult:
        """Approve several actions; one failure does not stop the others."""
        result = BatchApproveResult()
        for action_id in action_ids:
            try:
                await self.approve_action(action_id, approver_id)
            except AboError as e:
                result.failed[action_id] = str(e)
            else:
                result.approved.append(action_id)
        return result

    # ── Execution ────────────────────────────────────────────────

    async def execute_action(self, action_id: str) -> AgentAction:
        """Send an approved action. This is the only path to ``executed``.

        Raises:
            ActionNotFound: No such action.
            InvalidTransition: The action is not approved, or another
                executor already claimed it.
            DeliveryFailed: The send failed; the action stays approved.
        """
        action = await self._get(action_id)
        token = uuid4().hex
        claimed_at = self._clock()
        stale_before = claimed_at - timedelta(seconds=self._execution.claim_lease_seconds)
        if not await self._actions.claim_execution(
            action_id, token, claimed_at=claimed_at, stale_before=stale_before
        ):
            await self._refuse(
                action_id, ActionStatus.EXECUTED, "not approved or already being executed"
            )

        subscriber = action.situation.subscriber
        try:
            if action.details.channel == Channel.EMAIL and not subscriber.email:
                raise DeliveryFailed(action_id, "subscriber has no email address")
            brand = await self._configs.get_brand_settings(action.user_id)
            receipt = await self._delivery.send(
                OutboundMessage(
                    to=subscriber.email,
                    subject=action.content.subject,
                    body=action.content.body,
                    channel=action.details.channel,
                    from_name=brand.company_name,
                    tags={
                        "action_id": action_id,
                        "agent_type": action.agent_type.value,
                        "trigger": action.trigger,
                    },
                )
            )
        except DeliveryFailed as e:
            await self._actions.record_delivery_failure(action_id, token, e.detail)
            logger.warning("Delivery failed for action %s: %s", action_id, e.detail)
            raise
        except Exception as e:
            await self._actions.record_delivery_failure(action_id, token, str(e))
            logger.warning("Delivery failed for action %s: %s", action_id, e)
            raise DeliveryFailed(action_id, str(e)) from e
        except BaseException as e:
            # Cancelled mid-send: release the claim so the action can be retried
            await self._actions.record_delivery_failure(
                action_id, token, f"send interrupted ({type(e).__name__})"
            )
            logger.warning("Delivery interrupted for action %s", action_id)
            raise

        executed_at = self._clock()
        if not await self._actions.mark_executed(
            action, token, executed_at=executed_at, message_id=receipt.message_id
        ):
            await self._refuse(action_id, ActionStatus.EXECUTED)

        await self._memory.store_interaction(
            action.user_id,
            subscriber.id,
            f"{action.details.channel}_sent",
            subject=action.content.subject,
            details={
                "action": f"{action.action_type}_{action.strategy}",
                "trigger": action.trigger,
                "message_id": receipt.message_id,
            },
            agent_type=action.agent_type.value,
        )
        logger.info(
            "Executed action %s (%s) for %s/%s",
            action_id, action.action_type, action.user_id, subscriber.id,
        )
        return await self._get(action_id)

    # ── Expiration ───────────────────────────────────────────────

    async def sweep_expired(self, now: datetime | None = None) -> SweepResult:
        """Expire pending actions older than the configured age.

        Refund-type actions are never expired. Only transitions this call
        performed are counted, so a second sweep reports zero. Owners are
        notified best-effort; a notification failure never undoes expiry.
        """
        now = now or self._clock()
        cutoff = now - timedelta(hours=self._expiration.max_age_hours)
        candidates = await self._actions.list_expirable(cutoff, self._expiration.excluded_pattern)

        expired: list[AgentAction] = []
        for action in candidates:
            if await self._actions.transition(
                action.action_id,
                ActionStatus.PENDING_APPROVAL,
                ActionStatus.EXPIRED,
                expired_at=now,
            ):
                expired.append(action)

        groups: dict[tuple[str, AgentType], list[AgentAction]] = defaultdict(list)
        for action in expired:
            groups[(action.user_id, action.agent_type)].append(action)

        notified = 0
        for (user_id, agent_type), group in groups.items():
            try:
                config = await self._configs.get_config(user_id, agent_type)
                await self._notifier.actions_expired(user_id, config.notification_email, group)
            except Exception:
                logger.warning(
                    "Expiration notice failed for %s (%d actions)",
                    user_id, len(group), exc_info=True,
                )
            else:
                notified += len(group)

        if expired:
            logger.info("Expired %d pending action(s), notified %d", len(expired), notified)
        return SweepResult(
            expired=len(expired),
            notified=notified,
            action_ids=[a.action_id for a in expired],
        )

    # ── Helpers ──────────────────────────────────────────────────

    async def _get(self, action_id: str) -> AgentAction:
        action = await self._actions.get(action_id)
        if action is None:
            raise ActionNotFound(action_id)
        return action

    async def _load_owned(self, action_id: str, caller_id: str) -> AgentAction:
        action = await self._get(action_id)
        if action.user_id != caller_id:
            logger.warning("User %s is not allowed to act on action %s", caller_id, action_id)
            raise Unauthorized(action_id, caller_id)
        return action

    async def _refuse(
        self, action_id: str, target: ActionStatus, detail: str = ""
    ) -> NoReturn:
        current = await self._get(action_id)
        logger.warning(
            "Invalid transition for action %s: %s -> %s", action_id, current.status, target
        )
        raise InvalidTransition(action_id, current.status, target, detail)
