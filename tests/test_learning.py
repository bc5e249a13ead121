"""Tests for abo.learning: episodes, feedback, pattern analysis,
small-sample scoring and outcome attribution."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from abo.errors import InvalidEpisodeState
from abo.learning.engine import LearningModule, detect_preferences
from abo.learning.outcomes import OutcomeDetector
from abo.learning.scoring import sample_weight, situation_similarity, wilson_lower_bound
from abo.memory.store import MemoryStore
from abo.persistence.actions import ActionStore
from abo.persistence.database import close_db, init_db
from abo.schemas.actions import ActionStatus, AgentAction, GeneratedContent
from abo.schemas.agents import AgentType, MessageTone
from abo.schemas.learning import FeedbackType, Outcome
from abo.schemas.memory import MemoryType
from abo.schemas.situation import ActionDetails, ActionTaken, Situation, SubscriberSnapshot
from abo.settings import LearningSettings

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)

_REMINDER = ActionTaken(type="send_reminder_email", strategy="friendly")
_EXTENSION = ActionTaken(
    type="offer_payment_extension",
    strategy="empathetic",
    details=ActionDetails(tone=MessageTone.EMPATHETIC, extension_days=7),
)


class _Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _situation(subscriber_id: str = "sub-1", trigger: str = "payment_failed") -> Situation:
    return Situation(
        subscriber=SubscriberSnapshot(id=subscriber_id, email=f"{subscriber_id}@example.com"),
        trigger=trigger,
        timestamp=NOW,
    )


async def _setup(clock: _Clock | None = None, **settings):
    db = await init_db(":memory:")
    clock = clock or _Clock()
    memory = MemoryStore(db, cache_ttl=0, clock=clock)
    learning = LearningModule(db, memory, LearningSettings(**settings), clock=clock)
    return db, memory, learning


async def _resolved(
    learning: LearningModule,
    action: ActionTaken,
    outcome: Outcome,
    *,
    subscriber_id: str = "sub-1",
    trigger: str = "payment_failed",
) -> None:
    episode = await learning.record_episode(
        "user-1", AgentType.RECOVERY, _situation(subscriber_id, trigger), action
    )
    await learning.resolve_episode(episode.episode_id, outcome)


# ── Scoring ───────────────────────────────────────────────────────


class TestScoring:
    def test_wilson_small_sample_is_cautious(self):
        assert wilson_lower_bound(1, 1) == pytest.approx(0.2065, abs=1e-4)
        assert wilson_lower_bound(0, 0) == 0.0
        assert wilson_lower_bound(0, 10) == 0.0

    def test_wilson_grows_with_evidence(self):
        assert wilson_lower_bound(8, 10) < wilson_lower_bound(80, 100) < 0.8

    def test_sample_weight(self):
        assert sample_weight(0) == 0.0
        assert sample_weight(5, 5) == 0.5
        assert sample_weight(95, 5) == 0.95


# ── Episodes ──────────────────────────────────────────────────────


class TestEpisodes:
    @pytest.mark.asyncio
    async def test_resolve_exactly_once(self):
        db, _, learning = await _setup()
        episode = await learning.record_episode(
            "user-1", AgentType.RECOVERY, _situation(), _REMINDER
        )
        assert not episode.resolved

        resolved = await learning.resolve_episode(
            episode.episode_id, Outcome.SUCCESS, {"source": "test"}
        )
        assert resolved.outcome == Outcome.SUCCESS
        assert resolved.outcome_details == {"source": "test"}

        with pytest.raises(InvalidEpisodeState, match="already resolved"):
            await learning.resolve_episode(episode.episode_id, Outcome.FAILURE)
        stored = await learning.get_episode(episode.episode_id)
        assert stored.outcome == Outcome.SUCCESS
        await close_db(db)

    @pytest.mark.asyncio
    async def test_resolve_unknown_episode(self):
        db, _, learning = await _setup()
        with pytest.raises(InvalidEpisodeState, match="no such episode"):
            await learning.resolve_episode("missing", Outcome.SUCCESS)
        await close_db(db)

    @pytest.mark.asyncio
    async def test_success_records_outcome_and_preferences(self):
        db, memory, learning = await _setup()
        action = ActionTaken(
            type="offer_discount",
            strategy="value_focused",
            details=ActionDetails(tone=MessageTone.FORMAL, discount_percent=20),
        )
        await _resolved(learning, action, Outcome.SUCCESS)

        interactions = await memory.get_memories_by_type(
            "user-1", "sub-1", MemoryType.INTERACTION
        )
        assert interactions[0].content["response"] == "success"
        assert await memory.get_preferences("user-1", "sub-1") == {
            "preferred_tone": "formal",
            "prefers_discount": True,
        }
        await close_db(db)

    @pytest.mark.asyncio
    async def test_failure_records_no_preferences(self):
        db, memory, learning = await _setup()
        await _resolved(learning, _REMINDER, Outcome.FAILURE)
        assert await memory.get_preferences("user-1", "sub-1") == {}
        await close_db(db)

    def test_detect_preferences_from_strategy(self):
        assert detect_preferences(_REMINDER) == {"preferred_tone": "friendly"}
        urgent = ActionTaken(type="send_reminder_email", strategy="urgent")
        assert detect_preferences(urgent)["preferred_tone"] == "urgent"
        assert detect_preferences(_EXTENSION) == {"preferred_tone": "empathetic"}


# ── Feedback ──────────────────────────────────────────────────────


class TestFeedback:
    @pytest.mark.asyncio
    async def test_outcome_feedback_resolves_action_episode(self):
        db, _, learning = await _setup()
        episode = await learning.record_episode(
            "user-1", AgentType.RECOVERY, _situation(), _REMINDER, action_id="act-1"
        )

        await learning.record_feedback(
            "user-1",
            AgentType.RECOVERY,
            FeedbackType.RECOVERED,
            subscriber_id="sub-1",
            action_id="act-1",
        )

        stored = await learning.get_episode(episode.episode_id)
        assert stored.outcome == Outcome.SUCCESS
        assert stored.outcome_details["feedback_type"] == "recovered"
        await close_db(db)

    @pytest.mark.asyncio
    async def test_rating_feedback_leaves_episode_open(self):
        db, _, learning = await _setup()
        episode = await learning.record_episode(
            "user-1", AgentType.RECOVERY, _situation(), _REMINDER, action_id="act-1"
        )

        await learning.record_feedback(
            "user-1",
            AgentType.RECOVERY,
            FeedbackType.MANUAL_RATING,
            subscriber_id="sub-1",
            action_id="act-1",
            rating=4,
        )

        assert not (await learning.get_episode(episode.episode_id)).resolved
        feedback = await learning.get_subscriber_feedback("user-1", "sub-1")
        assert [f.rating for f in feedback] == [4]
        await close_db(db)

    @pytest.mark.asyncio
    async def test_second_outcome_feedback_is_ignored(self):
        db, _, learning = await _setup()
        episode = await learning.record_episode(
            "user-1", AgentType.RECOVERY, _situation(), _REMINDER, action_id="act-1"
        )
        for kind in (FeedbackType.CONVERTED, FeedbackType.CHURNED):
            await learning.record_feedback(
                "user-1", AgentType.RECOVERY, kind, action_id="act-1"
            )

        assert (await learning.get_episode(episode.episode_id)).outcome == Outcome.SUCCESS
        await close_db(db)


# ── Analysis ──────────────────────────────────────────────────────


class TestBatchAnalysis:
    async def _seed(self, learning: LearningModule) -> None:
        for outcome in (Outcome.SUCCESS, Outcome.SUCCESS, Outcome.SUCCESS, Outcome.FAILURE):
            await _resolved(learning, _REMINDER, outcome)
        for outcome in (Outcome.SUCCESS,) + (Outcome.FAILURE,) * 4:
            await _resolved(learning, _EXTENSION, outcome)
        # Below the minimum sample: no pattern
        rare = ActionTaken(type="send_sms_reminder", strategy="urgent")
        await _resolved(learning, rare, Outcome.SUCCESS)
        await _resolved(learning, rare, Outcome.SUCCESS)
        # Still open: not analyzed
        await learning.record_episode("user-1", AgentType.RECOVERY, _situation(), _REMINDER)

    @pytest.mark.asyncio
    async def test_patterns_and_insights(self):
        db, memory, learning = await _setup()
        await self._seed(learning)

        analysis = await learning.batch_analyze_episodes("user-1", AgentType.RECOVERY)

        assert analysis.episodes_analyzed == 11
        keys = [p.action_key for p in analysis.patterns]
        assert keys == ["send_reminder_email_friendly", "offer_payment_extension_empathetic"]
        reminder = analysis.patterns[0]
        assert reminder.successes == 3
        assert reminder.sample_size == 4
        assert reminder.success_rate == 0.75
        assert reminder.score == pytest.approx(wilson_lower_bound(3, 4))
        assert any("works well" in i and "send_reminder_email" in i for i in analysis.insights)
        assert any(i.startswith("Avoid 'offer_payment_extension") for i in analysis.insights)

        stored = await memory.get_patterns("user-1", "recovery", "payment_failed")
        assert stored == analysis.patterns
        await close_db(db)

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self):
        db, memory, learning = await _setup()
        await self._seed(learning)

        first = await learning.batch_analyze_episodes("user-1", AgentType.RECOVERY)
        second = await learning.batch_analyze_episodes("user-1", AgentType.RECOVERY)

        assert first == second
        assert len(await memory.get_patterns("user-1", "recovery")) == 2
        await close_db(db)

    @pytest.mark.asyncio
    async def test_sample_limit_uses_most_recent(self):
        clock = _Clock()
        db, _, learning = await _setup(clock)
        for outcome in (Outcome.FAILURE,) * 3:
            await _resolved(learning, _REMINDER, outcome)
        clock.now += timedelta(hours=1)
        for outcome in (Outcome.SUCCESS,) * 3:
            await _resolved(learning, _REMINDER, outcome)

        analysis = await learning.batch_analyze_episodes("user-1", AgentType.RECOVERY, 3)

        (pattern,) = analysis.patterns
        assert pattern.success_rate == 1.0
        await close_db(db)

    @pytest.mark.asyncio
    async def test_zero_sample_limit_analyzes_nothing(self):
        db, memory, learning = await _setup()
        await self._seed(learning)

        analysis = await learning.batch_analyze_episodes("user-1", AgentType.RECOVERY, 0)

        assert analysis.episodes_analyzed == 0
        assert analysis.patterns == []
        assert await memory.get_patterns("user-1", "recovery") == []
        await close_db(db)

    @pytest.mark.asyncio
    async def test_stats_and_trigger_insights(self):
        clock = _Clock()
        db, _, learning = await _setup(clock)
        await self._seed(learning)
        await learning.record_feedback(
            "user-1", AgentType.RECOVERY, FeedbackType.MANUAL_RATING, rating=2
        )
        await learning.record_feedback(
            "user-1", AgentType.RECOVERY, FeedbackType.MANUAL_RATING, rating=4
        )
        await learning.batch_analyze_episodes("user-1", AgentType.RECOVERY)

        stats = await learning.get_learning_stats("user-1", AgentType.RECOVERY)
        assert stats.total_episodes == 12
        assert stats.resolved_episodes == 11
        assert stats.successes == 6
        assert stats.failures == 5
        assert stats.success_rate == pytest.approx(6 / 11)
        assert stats.feedback_counts == {"manual_rating": 2}
        assert stats.average_rating == 3.0
        assert len(stats.top_patterns) == 2

        insights = await learning.get_trigger_insights(
            "user-1", AgentType.RECOVERY, "payment_failed"
        )
        assert insights.total_cases == 12
        assert insights.resolved_cases == 11
        assert insights.best_strategy == "send_reminder_email_friendly"
        assert insights.best_strategy_sample_size == 4
        assert insights.avg_hours_to_resolution == 0.0
        await close_db(db)

    @pytest.mark.asyncio
    async def test_insights_need_enough_cases(self):
        db, _, learning = await _setup(min_strategy_cases=10)
        await self._seed(learning)

        insights = await learning.get_trigger_insights(
            "user-1", AgentType.RECOVERY, "payment_failed"
        )
        assert insights.best_strategy is None
        await close_db(db)


# ── Similar cases ─────────────────────────────────────────────────


def _profiled(
    subscriber_id: str, plan: str, mrr: int, tenure: int, trigger: str = "payment_failed"
) -> Situation:
    return Situation(
        subscriber=SubscriberSnapshot(
            id=subscriber_id, plan=plan, mrr=mrr, tenure_months=tenure
        ),
        trigger=trigger,
        timestamp=NOW,
    )


class TestSimilarEpisodes:
    async def _resolve(self, learning: LearningModule, situation: Situation, outcome: Outcome):
        episode = await learning.record_episode(
            "user-1", AgentType.RECOVERY, situation, _REMINDER
        )
        await learning.resolve_episode(episode.episode_id, outcome)
        return episode

    def test_similarity_bands(self):
        pro = SubscriberSnapshot(id="a", plan="Pro", mrr=2900, tenure_months=7)
        assert situation_similarity(pro, pro) == 1.0
        same_plan = SubscriberSnapshot(id="b", plan="pro", mrr=25000, tenure_months=1)
        assert situation_similarity(pro, same_plan) == 0.4
        no_plan = SubscriberSnapshot(id="c", mrr=4900, tenure_months=11)
        assert situation_similarity(pro, no_plan) == 0.6

    @pytest.mark.asyncio
    async def test_finds_resolved_cases_from_comparable_subscribers(self):
        clock = _Clock()
        db, _, learning = await _setup(clock)
        alike = await self._resolve(learning, _profiled("sub-2", "Pro", 2900, 8), Outcome.SUCCESS)
        clock.now += timedelta(hours=1)
        partly = await self._resolve(
            learning, _profiled("sub-3", "Pro", 2500, 30), Outcome.FAILURE
        )
        # Different plan, revenue and tenure
        await self._resolve(learning, _profiled("sub-4", "Basic", 500, 30), Outcome.SUCCESS)
        # Other trigger
        await self._resolve(
            learning, _profiled("sub-5", "Pro", 2900, 8, "trial_ending"), Outcome.SUCCESS
        )
        # Still open
        await learning.record_episode(
            "user-1", AgentType.RECOVERY, _profiled("sub-6", "Pro", 2900, 8), _REMINDER
        )

        similar = await learning.find_similar_episodes(
            "user-1", AgentType.RECOVERY, _profiled("sub-1", "Pro", 2900, 10)
        )

        assert [(s.episode_id, s.similarity) for s in similar] == [
            (alike.episode_id, 1.0),
            (partly.episode_id, 0.7),
        ]
        assert similar[0].action_key == "send_reminder_email_friendly"
        assert similar[0].outcome == Outcome.SUCCESS
        assert similar[1].subscriber_id == "sub-3"
        await close_db(db)

    @pytest.mark.asyncio
    async def test_limit_and_threshold(self):
        db, _, learning = await _setup(similar_min_similarity=0.8)
        for i in range(3):
            await self._resolve(learning, _profiled(f"sub-{i}", "Pro", 2900, 8), Outcome.SUCCESS)
        await self._resolve(learning, _profiled("sub-9", "Pro", 2900, 30), Outcome.SUCCESS)
        situation = _profiled("sub-1", "Pro", 2900, 10)

        assert len(await learning.find_similar_episodes(
            "user-1", AgentType.RECOVERY, situation
        )) == 3
        assert len(await learning.find_similar_episodes(
            "user-1", AgentType.RECOVERY, situation, 2
        )) == 2
        assert await learning.find_similar_episodes(
            "user-1", AgentType.RECOVERY, situation, 0
        ) == []
        await close_db(db)


# ── Outcome attribution ───────────────────────────────────────────


def _executed_action(action_id: str, created_at: datetime) -> AgentAction:
    return AgentAction(
        action_id=action_id,
        user_id="user-1",
        subscriber_id="sub-1",
        agent_type=AgentType.RECOVERY,
        trigger="payment_failed",
        action_type="send_reminder_email",
        strategy="friendly",
        content=GeneratedContent(subject="s", body="b"),
        situation=_situation(),
        confidence=0.6,
        status=ActionStatus.APPROVED,
        created_at=created_at,
    )


async def _execute(store: ActionStore, learning: LearningModule, action: AgentAction) -> str:
    await store.create(action, day=action.created_at.date().isoformat(), max_actions_day=50)
    await store.claim_execution(action.action_id, "tok")
    await store.mark_executed(action, "tok", executed_at=action.created_at, message_id=None)
    episode = await learning.record_episode(
        "user-1", AgentType.RECOVERY, action.situation, _REMINDER, action_id=action.action_id
    )
    return episode.episode_id


class TestOutcomeDetector:
    @pytest.mark.asyncio
    async def test_resolves_newest_open_action(self):
        clock = _Clock()
        db, _, learning = await _setup(clock)
        store = ActionStore(db)
        older = await _execute(store, learning, _executed_action("a", NOW - timedelta(hours=30)))
        newer = await _execute(store, learning, _executed_action("b", NOW - timedelta(hours=6)))
        detector = OutcomeDetector(store, learning, clock)

        episode = await detector.record_outcome(
            "user-1", "sub-1", AgentType.RECOVERY, Outcome.SUCCESS, {"invoice": "in_1"}
        )

        assert episode.episode_id == newer
        assert episode.outcome_details == {"invoice": "in_1", "hours_since_action": 6.0}
        assert not (await learning.get_episode(older)).resolved

        # The newest is settled now, so the next outcome goes to the older one
        second = await detector.record_outcome(
            "user-1", "sub-1", AgentType.RECOVERY, Outcome.FAILURE
        )
        assert second.episode_id == older
        await close_db(db)

    @pytest.mark.asyncio
    async def test_success_window_is_shorter_than_failure_window(self):
        clock = _Clock()
        db, _, learning = await _setup(clock)
        store = ActionStore(db)
        await _execute(store, learning, _executed_action("a", NOW - timedelta(hours=100)))
        detector = OutcomeDetector(store, learning, clock)

        assert await detector.record_outcome(
            "user-1", "sub-1", AgentType.RECOVERY, Outcome.SUCCESS
        ) is None
        failure = await detector.record_outcome(
            "user-1", "sub-1", AgentType.RECOVERY, Outcome.FAILURE
        )
        assert failure is not None
        await close_db(db)

    @pytest.mark.asyncio
    async def test_ignores_other_agents(self):
        clock = _Clock()
        db, _, learning = await _setup(clock)
        store = ActionStore(db)
        await _execute(store, learning, _executed_action("a", NOW - timedelta(hours=1)))
        detector = OutcomeDetector(store, learning, clock)

        assert await detector.record_outcome(
            "user-1", "sub-1", AgentType.RETENTION, Outcome.SUCCESS
        ) is None
        await close_db(db)
