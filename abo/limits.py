"""Policy limit checks run before any reasoning happens.

Checks run in a fixed order and the first violation wins:
daily actions, weekly emails, yearly offers, send hours, weekend.
Time-of-day checks use the owner's configured timezone.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from abo.errors import LimitExceeded
from abo.persistence.actions import ActionStore
from abo.persistence.subscribers import SubscriberStore
from abo.schemas.agents import Channel, LimitsConfig
from abo.schemas.events import LimitKind

logger = logging.getLogger(__name__)


def local_time(now: datetime, timezone: str) -> datetime:
    return now.astimezone(ZoneInfo(timezone))


def local_day(now: datetime, timezone: str) -> str:
    """Counter key for the daily action cap: the owner's local date."""
    return local_time(now, timezone).date().isoformat()


def within_send_hours(hour: int, start: int, end: int) -> bool:
    """Whether ``hour`` falls in [start, end). A window with end < start wraps midnight."""
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


class LimitChecker:
    """Evaluates an agent's LimitsConfig for one subscriber at one instant."""

    def __init__(self, actions: ActionStore, subscribers: SubscriberStore) -> None:
        self._actions = actions
        self._subscribers = subscribers

    async def check(
        self,
        user_id: str,
        subscriber_id: str,
        limits: LimitsConfig,
        now: datetime,
    ) -> None:
        """Raise on the first limit the next action would break.

        Raises:
            LimitExceeded: With the violated LimitKind as ``which``.
        """
        day = local_day(now, limits.timezone)
        if await self._actions.count_for_day(user_id, day) >= limits.max_actions_day:
            raise LimitExceeded(LimitKind.MAX_ACTIONS_PER_DAY)

        emails = await self._subscribers.count_communications(
            user_id, subscriber_id, now - timedelta(days=7), channel=Channel.EMAIL.value
        )
        if emails >= limits.max_emails_subscriber_week:
            raise LimitExceeded(LimitKind.MAX_EMAILS_PER_WEEK)

        offers = await self._actions.count_executed_offers(
            user_id, subscriber_id, now - timedelta(days=365)
        )
        if offers >= limits.max_offers_subscriber_year:
            raise LimitExceeded(LimitKind.MAX_OFFERS_PER_YEAR)

        local = local_time(now, limits.timezone)
        if not within_send_hours(local.hour, limits.send_hour_start, limits.send_hour_end):
            raise LimitExceeded(
                LimitKind.SEND_HOURS,
                f"{local:%H:%M} {limits.timezone} is outside "
                f"{limits.send_hour_start}:00-{limits.send_hour_end}:00",
            )

        # Monday is 0
        if limits.no_weekend and local.weekday() >= 5:
            raise LimitExceeded(LimitKind.WEEKEND)
