"""Links real-world results (a payment recovered, a cancellation) back to actions.

Billing sync reports what happened to a subscriber; the detector finds the
most recent executed action of the relevant agent within a window and
resolves its episode.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from abo.learning.engine import LearningModule
from abo.persistence.actions import ActionStore
from abo.schemas.agents import AgentType
from abo.schemas.learning import Episode, Outcome

logger = logging.getLogger(__name__)

# How far back an outcome may be attributed to an action
SUCCESS_WINDOW_HOURS = 72
FAILURE_WINDOW_HOURS = 336


class OutcomeDetector:
    def __init__(
        self,
        actions: ActionStore,
        learning: LearningModule,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._actions = actions
        self._learning = learning
        self._clock = clock or (lambda: datetime.now(UTC))

    async def record_outcome(
        self,
        user_id: str,
        subscriber_id: str,
        agent_type: AgentType,
        outcome: Outcome,
        details: dict[str, Any] | None = None,
        *,
        window_hours: float | None = None,
    ) -> Episode | None:
        """Resolve the episode of the newest matching executed action.

        Actions whose episode is already resolved are skipped. Returns the
        resolved episode, or None when no action qualifies.
        """
        if window_hours is None:
            window_hours = (
                SUCCESS_WINDOW_HOURS if outcome == Outcome.SUCCESS else FAILURE_WINDOW_HOURS
            )
        now = self._clock()
        recent = await self._actions.list_recent_executed(
            user_id, subscriber_id, agent_type, now - timedelta(hours=window_hours)
        )
        for action in recent:
            hours = round((now - action.created_at).total_seconds() / 3600, 1)
            episode = await self._learning.resolve_action_outcome(
                action.action_id,
                outcome,
                {**(details or {}), "hours_since_action": hours},
            )
            if episode is not None:
                return episode

        logger.info(
            "No open %s action for %s/%s to attribute %s to",
            agent_type, user_id, subscriber_id, outcome,
        )
        return None
