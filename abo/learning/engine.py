"""Learning module: episodes, feedback and pattern analysis.

An episode is recorded when an action is created and resolved exactly once
when the real-world result is known. Patterns are never updated in place;
``batch_analyze_episodes`` recomputes them from the most recent resolved
episodes and swaps the stored set atomically, so running it twice on the
same data yields the same patterns. Resolved episodes from comparable
subscribers are also offered to reasoning as similar past cases.
"""

from __future__ import annotations

import json
import logging
from collections import Counter, defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import aiosqlite

from abo.errors import InvalidEpisodeState
from abo.learning.scoring import situation_similarity, wilson_lower_bound
from abo.memory.store import MemoryStore
from abo.persistence.database import from_db_time, to_db_time, transaction
from abo.persistence.episodes import insert_episode
from abo.schemas.agents import AgentType, MessageTone
from abo.schemas.learning import (
    FEEDBACK_OUTCOMES,
    BatchAnalysis,
    Episode,
    Feedback,
    FeedbackType,
    LearningStats,
    Outcome,
    Pattern,
    SimilarEpisode,
    TriggerInsights,
)
from abo.schemas.situation import ActionTaken, Situation
from abo.settings import LearningSettings

logger = logging.getLogger(__name__)

_OUTCOME_IMPORTANCE = {Outcome.SUCCESS: 0.8, Outcome.FAILURE: 0.6, Outcome.NEUTRAL: 0.5}


def _row_to_episode(row: aiosqlite.Row) -> Episode:
    outcome = row["outcome"]
    return Episode(
        episode_id=row["episode_id"],
        user_id=row["user_id"],
        agent_type=AgentType(row["agent_type"]),
        subscriber_id=row["subscriber_id"],
        action_id=row["action_id"],
        situation=Situation.model_validate_json(row["situation_json"]),
        action_taken=ActionTaken.model_validate_json(row["action_json"]),
        outcome=Outcome(outcome) if outcome else None,
        outcome_details=json.loads(row["outcome_details_json"]),
        created_at=from_db_time(row["created_at"]),
        resolved_at=from_db_time(row["resolved_at"]),
    )


def _row_to_feedback(row: aiosqlite.Row) -> Feedback:
    return Feedback(
        feedback_id=row["feedback_id"],
        user_id=row["user_id"],
        agent_type=AgentType(row["agent_type"]),
        subscriber_id=row["subscriber_id"],
        action_id=row["action_id"],
        feedback_type=FeedbackType(row["feedback_type"]),
        rating=row["rating"],
        comment=row["comment"],
        created_at=from_db_time(row["created_at"]),
    )


def detect_preferences(action_taken: ActionTaken) -> dict[str, Any]:
    """Preferences implied by an action that worked for a subscriber."""
    preferences: dict[str, Any] = {}
    strategy = action_taken.strategy
    if "urgent" in strategy:
        preferences["preferred_tone"] = MessageTone.URGENT.value
    elif "formal" in strategy:
        preferences["preferred_tone"] = MessageTone.FORMAL.value
    elif "friendly" in strategy or "warm" in strategy:
        preferences["preferred_tone"] = MessageTone.FRIENDLY.value
    else:
        preferences["preferred_tone"] = action_taken.details.tone.value

    if action_taken.details.discount_percent:
        preferences["prefers_discount"] = True
    return preferences


class LearningModule:
    """Records decision episodes and turns their outcomes into patterns."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        memory: MemoryStore,
        settings: LearningSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._memory = memory
        self._settings = settings or LearningSettings()
        self._clock = clock or (lambda: datetime.now(UTC))

    # ── Episodes ─────────────────────────────────────────────────

    def new_episode(
        self,
        user_id: str,
        agent_type: AgentType,
        situation: Situation,
        action_taken: ActionTaken,
        *,
        action_id: str | None = None,
    ) -> Episode:
        """Build an unresolved episode without storing it.

        Used when the episode is written together with its action.
        """
        return Episode(
            episode_id=str(uuid4()),
            user_id=user_id,
            agent_type=agent_type,
            subscriber_id=situation.subscriber.id,
            action_id=action_id,
            situation=situation,
            action_taken=action_taken,
            created_at=self._clock(),
        )

    async def record_episode(
        self,
        user_id: str,
        agent_type: AgentType,
        situation: Situation,
        action_taken: ActionTaken,
        *,
        action_id: str | None = None,
    ) -> Episode:
        """Create and store an unresolved episode for a decision."""
        episode = self.new_episode(
            user_id, agent_type, situation, action_taken, action_id=action_id
        )
        async with transaction(self._db):
            await insert_episode(self._db, episode)
        return episode

    async def get_episode(self, episode_id: str) -> Episode | None:
        cursor = await self._db.execute(
            "SELECT * FROM episodes WHERE episode_id = ?", (episode_id,)
        )
        row = await cursor.fetchone()
        return _row_to_episode(row) if row else None

    async def get_episode_for_action(self, action_id: str) -> Episode | None:
        cursor = await self._db.execute(
            "SELECT * FROM episodes WHERE action_id = ? ORDER BY created_at DESC LIMIT 1",
            (action_id,),
        )
        row = await cursor.fetchone()
        return _row_to_episode(row) if row else None

    async def resolve_episode(
        self,
        episode_id: str,
        outcome: Outcome,
        details: dict[str, Any] | None = None,
    ) -> Episode:
        """Settle an episode's outcome. Allowed once per episode.

        On resolution the outcome is remembered as an interaction for the
        subscriber, and a success also records the preferences it implies.

        Raises:
            InvalidEpisodeState: The episode does not exist or is already resolved.
        """
        resolved_at = self._clock()
        async with transaction(self._db):
            cursor = await self._db.execute(
                """
                UPDATE episodes
                SET outcome = ?, outcome_details_json = ?, resolved_at = ?
                WHERE episode_id = ? AND outcome IS NULL
                """,
                (
                    outcome.value,
                    json.dumps(details or {}, default=str),
                    to_db_time(resolved_at),
                    episode_id,
                ),
            )
            updated = cursor.rowcount == 1

        episode = await self.get_episode(episode_id)
        if episode is None:
            raise InvalidEpisodeState(episode_id, "no such episode")
        if not updated:
            logger.warning(
                "Episode %s already resolved as %s; refusing to overwrite with %s",
                episode_id, episode.outcome, outcome,
            )
            raise InvalidEpisodeState(episode_id, f"already resolved as '{episode.outcome}'")

        if episode.subscriber_id:
            await self._memory.store_interaction(
                episode.user_id,
                episode.subscriber_id,
                "outcome",
                response=outcome.value,
                details={"action": episode.action_taken.key, "trigger": episode.trigger},
                importance=_OUTCOME_IMPORTANCE[outcome],
                agent_type=episode.agent_type.value,
            )
            if outcome == Outcome.SUCCESS:
                for key, value in detect_preferences(episode.action_taken).items():
                    await self._memory.store_preference(
                        episode.user_id,
                        episode.subscriber_id,
                        key,
                        value,
                        agent_type=episode.agent_type.value,
                    )

        logger.info(
            "Resolved episode %s (%s/%s) as %s",
            episode_id, episode.trigger, episode.action_taken.key, outcome,
        )
        return episode

    async def resolve_action_outcome(
        self,
        action_id: str,
        outcome: Outcome,
        details: dict[str, Any] | None = None,
    ) -> Episode | None:
        """Resolve the open episode linked to an action, if there is one."""
        episode = await self.get_episode_for_action(action_id)
        if episode is None or episode.resolved:
            return None
        return await self.resolve_episode(episode.episode_id, outcome, details)

    # ── Feedback ─────────────────────────────────────────────────

    async def record_feedback(
        self,
        user_id: str,
        agent_type: AgentType,
        feedback_type: FeedbackType,
        *,
        subscriber_id: str | None = None,
        action_id: str | None = None,
        rating: int | None = None,
        comment: str | None = None,
    ) -> Feedback:
        """Store feedback. Outcome-bearing feedback on an action also
        resolves that action's open episode."""
        feedback = Feedback(
            feedback_id=str(uuid4()),
            user_id=user_id,
            agent_type=agent_type,
            subscriber_id=subscriber_id,
            action_id=action_id,
            feedback_type=feedback_type,
            rating=rating,
            comment=comment,
            created_at=self._clock(),
        )
        async with transaction(self._db):
            await self._db.execute(
                """
                INSERT INTO feedback
                    (feedback_id, user_id, agent_type, subscriber_id, action_id,
                     feedback_type, rating, comment, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    feedback.feedback_id,
                    user_id,
                    agent_type.value,
                    subscriber_id,
                    action_id,
                    feedback_type.value,
                    rating,
                    comment,
                    to_db_time(feedback.created_at),
                ),
            )

        outcome = FEEDBACK_OUTCOMES.get(feedback_type)
        if action_id and outcome is not None:
            await self.resolve_action_outcome(
                action_id, outcome, {"source": "feedback", "feedback_type": feedback_type.value}
            )
        return feedback

    async def get_subscriber_feedback(
        self, user_id: str, subscriber_id: str, limit: int = 20
    ) -> list[Feedback]:
        cursor = await self._db.execute(
            """
            SELECT * FROM feedback WHERE user_id = ? AND subscriber_id = ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (user_id, subscriber_id, limit),
        )
        return [_row_to_feedback(r) for r in await cursor.fetchall()]

    # ── Similar cases ────────────────────────────────────────────

    async def find_similar_episodes(
        self,
        user_id: str,
        agent_type: AgentType,
        situation: Situation,
        limit: int | None = None,
    ) -> list[SimilarEpisode]:
        """Resolved episodes for the same trigger from comparable subscribers.

        Looks at the most recent ``batch_sample_limit`` resolved episodes,
        keeps those at or above ``similar_min_similarity`` and returns the
        most similar first, newest first among equals.
        """
        limit = self._settings.similar_episode_limit if limit is None else limit
        if limit <= 0:
            return []
        cursor = await self._db.execute(
            """
            SELECT episode_id, subscriber_id, action_key, outcome, situation_json, resolved_at
            FROM episodes
            WHERE user_id = ? AND agent_type = ? AND trigger = ? AND outcome IS NOT NULL
            ORDER BY resolved_at DESC, episode_id
            LIMIT ?
            """,
            (user_id, agent_type.value, situation.trigger, self._settings.batch_sample_limit),
        )
        matches: list[SimilarEpisode] = []
        for row in await cursor.fetchall():
            past = Situation.model_validate_json(row["situation_json"])
            similarity = situation_similarity(situation.subscriber, past.subscriber)
            if similarity < self._settings.similar_min_similarity:
                continue
            matches.append(
                SimilarEpisode(
                    episode_id=row["episode_id"],
                    subscriber_id=row["subscriber_id"],
                    action_key=row["action_key"],
                    outcome=Outcome(row["outcome"]),
                    similarity=similarity,
                    resolved_at=from_db_time(row["resolved_at"]),
                )
            )
        # Stable sort keeps the newest-first order among equal similarities
        matches.sort(key=lambda m: -m.similarity)
        return matches[:limit]

    # ── Statistics ───────────────────────────────────────────────

    async def get_learning_stats(self, user_id: str, agent_type: AgentType) -> LearningStats:
        cursor = await self._db.execute(
            """
            SELECT outcome, COUNT(*) AS n FROM episodes
            WHERE user_id = ? AND agent_type = ?
            GROUP BY outcome
            """,
            (user_id, agent_type.value),
        )
        counts = {row["outcome"]: row["n"] for row in await cursor.fetchall()}
        successes = counts.get(Outcome.SUCCESS.value, 0)
        failures = counts.get(Outcome.FAILURE.value, 0)
        neutral = counts.get(Outcome.NEUTRAL.value, 0)
        resolved = successes + failures + neutral

        cursor = await self._db.execute(
            """
            SELECT feedback_type, COUNT(*) AS n FROM feedback
            WHERE user_id = ? AND agent_type = ?
            GROUP BY feedback_type
            """,
            (user_id, agent_type.value),
        )
        feedback_rows = await cursor.fetchall()
        cursor = await self._db.execute(
            "SELECT AVG(rating) FROM feedback WHERE user_id = ? AND agent_type = ? "
            "AND rating IS NOT NULL",
            (user_id, agent_type.value),
        )
        (average_rating,) = await cursor.fetchone()

        patterns = await self._memory.get_patterns(user_id, agent_type.value)
        return LearningStats(
            total_episodes=sum(counts.values()),
            resolved_episodes=resolved,
            successes=successes,
            failures=failures,
            neutral=neutral,
            success_rate=successes / resolved if resolved else 0.0,
            top_patterns=patterns[:5],
            feedback_counts={r["feedback_type"]: r["n"] for r in feedback_rows},
            average_rating=average_rating,
        )

    async def get_trigger_insights(
        self, user_id: str, agent_type: AgentType, trigger: str
    ) -> TriggerInsights:
        """Best-known actions for a trigger together with the evidence behind them."""
        cursor = await self._db.execute(
            """
            SELECT * FROM episodes
            WHERE user_id = ? AND agent_type = ? AND trigger = ?
            """,
            (user_id, agent_type.value, trigger),
        )
        episodes = [_row_to_episode(r) for r in await cursor.fetchall()]
        resolved = [e for e in episodes if e.resolved]
        successes = sum(1 for e in resolved if e.outcome == Outcome.SUCCESS)

        by_key: dict[str, list[Episode]] = defaultdict(list)
        for episode in resolved:
            by_key[episode.action_taken.key].append(episode)

        best_strategy: str | None = None
        best_n = 0
        best_score = -1.0
        for key in sorted(by_key):
            group = by_key[key]
            if len(group) < self._settings.min_strategy_cases:
                continue
            wins = sum(1 for e in group if e.outcome == Outcome.SUCCESS)
            score = wilson_lower_bound(wins, len(group))
            if score > best_score:
                best_strategy, best_n, best_score = key, len(group), score

        hours = [
            (e.resolved_at - e.created_at).total_seconds() / 3600
            for e in resolved
            if e.resolved_at is not None
        ]

        patterns = await self._memory.get_patterns(user_id, agent_type.value, trigger)
        return TriggerInsights(
            trigger=trigger,
            total_cases=len(episodes),
            resolved_cases=len(resolved),
            success_rate=successes / len(resolved) if resolved else 0.0,
            best_patterns=patterns[:3],
            best_strategy=best_strategy,
            best_strategy_sample_size=best_n,
            avg_hours_to_resolution=sum(hours) / len(hours) if hours else None,
        )

    # ── Batch analysis ───────────────────────────────────────────

    async def batch_analyze_episodes(
        self,
        user_id: str,
        agent_type: AgentType,
        sample_limit: int | None = None,
    ) -> BatchAnalysis:
        """Recompute patterns from the most recent resolved episodes.

        Groups by (trigger, action key), keeps groups with at least
        ``min_pattern_sample`` cases, scores each by the Wilson lower bound
        and replaces the stored pattern set in one transaction.
        """
        limit = self._settings.batch_sample_limit if sample_limit is None else sample_limit
        cursor = await self._db.execute(
            """
            SELECT trigger, action_key, outcome FROM episodes
            WHERE user_id = ? AND agent_type = ? AND outcome IS NOT NULL
            ORDER BY resolved_at DESC, episode_id
            LIMIT ?
            """,
            (user_id, agent_type.value, limit),
        )
        rows = await cursor.fetchall()

        groups: dict[tuple[str, str], Counter] = defaultdict(Counter)
        for row in rows:
            groups[(row["trigger"], row["action_key"])][row["outcome"]] += 1

        now = self._clock()
        patterns: list[Pattern] = []
        for (trigger, action_key), outcomes in groups.items():
            total = sum(outcomes.values())
            if total < self._settings.min_pattern_sample:
                continue
            wins = outcomes[Outcome.SUCCESS.value]
            patterns.append(
                Pattern(
                    trigger=trigger,
                    action_key=action_key,
                    successes=wins,
                    sample_size=total,
                    success_rate=wins / total,
                    score=wilson_lower_bound(wins, total),
                    computed_at=now,
                )
            )
        patterns.sort(key=lambda p: (-p.score, -p.sample_size, p.trigger, p.action_key))

        await self._memory.replace_patterns(user_id, agent_type.value, patterns)

        insights = self._insights(patterns)
        logger.info(
            "Batch analysis for %s/%s: %d episodes, %d patterns",
            user_id, agent_type, len(rows), len(patterns),
        )
        return BatchAnalysis(episodes_analyzed=len(rows), patterns=patterns, insights=insights)

    def _insights(self, patterns: list[Pattern]) -> list[str]:
        insights: list[str] = []
        for p in patterns:
            if p.success_rate >= self._settings.works_well_threshold:
                insights.append(
                    f"'{p.action_key}' works well for {p.trigger} "
                    f"({p.success_rate:.0%} over {p.sample_size} cases)"
                )
            elif (
                p.success_rate <= self._settings.avoid_threshold
                and p.sample_size >= self._settings.avoid_min_sample
            ):
                insights.append(
                    f"Avoid '{p.action_key}' for {p.trigger} "
                    f"({p.success_rate:.0%} over {p.sample_size} cases)"
                )
        return insights
