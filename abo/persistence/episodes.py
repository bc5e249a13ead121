"""Episode rows, shared by the learning module and atomic action creation."""

from __future__ import annotations

import aiosqlite

from abo.persistence.database import to_db_time
from abo.schemas.learning import Episode


async def insert_episode(db: aiosqlite.Connection, episode: Episode) -> None:
    """Insert an unresolved episode. The caller owns the transaction."""
    await db.execute(
        """
        INSERT INTO episodes
            (episode_id, user_id, agent_type, subscriber_id, action_id, trigger,
             action_key, situation_json, action_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            episode.episode_id,
            episode.user_id,
            episode.agent_type.value,
            episode.subscriber_id,
            episode.action_id,
            episode.trigger,
            episode.action_taken.key,
            episode.situation.model_dump_json(),
            episode.action_taken.model_dump_json(),
            to_db_time(episode.created_at),
        ),
    )
