"""In-process delivery and notification implementations for local runs."""

from __future__ import annotations

import itertools
import logging

from abo.errors import DeliveryFailed
from abo.prompts import render_message
from abo.providers.base import DeliveryChannel, DeliveryReceipt, OutboundMessage, OwnerNotifier
from abo.schemas.actions import AgentAction

logger = logging.getLogger(__name__)


class RecordingDeliveryChannel(DeliveryChannel):
    """Keeps sent messages in memory instead of sending them.

    ``fail_with`` makes every send raise DeliveryFailed with that detail.
    """

    def __init__(self, fail_with: str | None = None) -> None:
        self.sent: list[OutboundMessage] = []
        self.fail_with = fail_with
        self._ids = itertools.count(1)

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        if self.fail_with:
            raise DeliveryFailed(message.tags.get("action_id", ""), self.fail_with)
        self.sent.append(message)
        return DeliveryReceipt(message_id=f"local-{next(self._ids)}", provider="recording")


class DeliveryOwnerNotifier(OwnerNotifier):
    """Emails owner notices through a DeliveryChannel."""

    def __init__(
        self, channel: DeliveryChannel, *, max_age_hours: float = 48.0, from_name: str = "Agents"
    ) -> None:
        self._channel = channel
        self._max_age_hours = max_age_hours
        self._from_name = from_name

    async def actions_expired(
        self, user_id: str, recipient: str | None, actions: list[AgentAction]
    ) -> None:
        if not recipient:
            logger.info("No notification address for %s, skipping expiration notice", user_id)
            return
        subject, body = render_message(
            "owner_expired",
            count=len(actions),
            actions=actions,
            max_age_hours=self._max_age_hours,
        )
        await self._channel.send(
            OutboundMessage(
                to=recipient,
                subject=subject,
                body=body,
                from_name=self._from_name,
                tags={"kind": "expired", "user_id": user_id},
            )
        )

    async def action_auto_approved(
        self, user_id: str, recipient: str | None, action: AgentAction
    ) -> None:
        if not recipient:
            logger.info("No notification address for %s, skipping copy", user_id)
            return
        subject, body = render_message("owner_copy", action=action)
        await self._channel.send(
            OutboundMessage(
                to=recipient,
                subject=subject,
                body=body,
                from_name=self._from_name,
                tags={"kind": "copy", "user_id": user_id, "action_id": action.action_id},
            )
        )


class LoggingOwnerNotifier(OwnerNotifier):
    """Logs owner notices instead of sending them."""

    async def actions_expired(
        self, user_id: str, recipient: str | None, actions: list[AgentAction]
    ) -> None:
        logger.info(
            "Expired %d action(s) for %s: %s",
            len(actions),
            user_id,
            ", ".join(a.action_id for a in actions),
        )

    async def action_auto_approved(
        self, user_id: str, recipient: str | None, action: AgentAction
    ) -> None:
        logger.info(
            "Auto-approved %s for %s (%s, confidence %.2f)",
            action.action_id,
            user_id,
            action.action_type,
            action.confidence,
        )
