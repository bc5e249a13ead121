"""Subscriber snapshots and communication history.

Subscriber rows are written by billing sync in the surrounding
application; ``upsert_subscriber`` stands in for it. The engine reads a
snapshot per decision and counts past communications for limit checks.
"""

from __future__ import annotations

from datetime import datetime

import aiosqlite

from abo.persistence.database import from_db_time, to_db_time, transaction
from abo.schemas.situation import SubscriberSnapshot


def tenure_months(subscribed_at: datetime | None, now: datetime) -> int:
    """Whole calendar months between subscription start and ``now``."""
    if subscribed_at is None or subscribed_at > now:
        return 0
    months = (now.year - subscribed_at.year) * 12 + (now.month - subscribed_at.month)
    if now.day < subscribed_at.day:
        months -= 1
    return max(months, 0)


class SubscriberStore:
    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def upsert_subscriber(
        self,
        user_id: str,
        subscriber_id: str,
        *,
        email: str = "",
        name: str | None = None,
        plan: str | None = None,
        mrr: int = 0,
        status: str | None = None,
        country: str | None = None,
        subscribed_at: datetime | None = None,
    ) -> None:
        async with transaction(self._db):
            await self._db.execute(
                """
                INSERT OR REPLACE INTO subscribers
                    (user_id, subscriber_id, email, name, plan, mrr, status,
                     country, subscribed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    subscriber_id,
                    email,
                    name,
                    plan,
                    mrr,
                    status,
                    country,
                    to_db_time(subscribed_at) if subscribed_at else None,
                ),
            )

    async def get_snapshot(
        self, user_id: str, subscriber_id: str, now: datetime
    ) -> SubscriberSnapshot | None:
        """Build a snapshot of the subscriber as of ``now``, or None if unknown."""
        cursor = await self._db.execute(
            "SELECT * FROM subscribers WHERE user_id = ? AND subscriber_id = ?",
            (user_id, subscriber_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        cursor = await self._db.execute(
            "SELECT COUNT(*) FROM communications WHERE user_id = ? AND subscriber_id = ?",
            (user_id, subscriber_id),
        )
        (interactions,) = await cursor.fetchone()

        return SubscriberSnapshot(
            id=subscriber_id,
            email=row["email"],
            name=row["name"],
            plan=row["plan"],
            mrr=row["mrr"],
            tenure_months=tenure_months(from_db_time(row["subscribed_at"]), now),
            previous_interactions=interactions,
            status=row["status"],
            country=row["country"],
        )

    async def count_communications(
        self,
        user_id: str,
        subscriber_id: str,
        since: datetime,
        channel: str | None = None,
    ) -> int:
        query = (
            "SELECT COUNT(*) FROM communications "
            "WHERE user_id = ? AND subscriber_id = ? AND sent_at >= ?"
        )
        params: list = [user_id, subscriber_id, to_db_time(since)]
        if channel:
            query += " AND channel = ?"
            params.append(channel)
        cursor = await self._db.execute(query, params)
        (count,) = await cursor.fetchone()
        return count
