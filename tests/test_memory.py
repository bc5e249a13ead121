"""Tests for abo.memory: the SQLite memory store, its TTL cache,
digests and the short-term scratchpad."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from abo.memory.short_term import ShortTermMemory
from abo.memory.store import MemoryStore, pattern_importance
from abo.persistence.database import close_db, init_db
from abo.schemas.learning import Pattern
from abo.schemas.memory import MemoryRecord, MemoryType

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)


class _Monotonic:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def _make_pattern(trigger: str, action_key: str, rate: float, n: int, score: float) -> Pattern:
    return Pattern(
        trigger=trigger,
        action_key=action_key,
        successes=round(rate * n),
        sample_size=n,
        success_rate=rate,
        score=score,
        computed_at=NOW,
    )


def _make_record(memory_type: MemoryType, key: str, content: dict) -> MemoryRecord:
    return MemoryRecord(
        memory_id=f"{memory_type}-{key}",
        user_id="user-1",
        subscriber_id="sub-1",
        memory_type=memory_type,
        key=key,
        content=content,
        created_at=NOW,
    )


# ── Writes and reads ──────────────────────────────────────────────


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_memories_ordered_by_importance(self):
        db = await init_db(":memory:")
        store = MemoryStore(db, cache_ttl=0, clock=lambda: NOW)

        await store.store_interaction("user-1", "sub-1", "email_sent", subject="Hi")
        await store.store_fact("user-1", "sub-1", "company_size", {"employees": 12})
        await store.store_fact("user-2", "sub-1", "other_user", {"x": 1})

        memories = await store.get_subscriber_memories("user-1", "sub-1")

        assert [m.memory_type for m in memories] == [MemoryType.FACT, MemoryType.INTERACTION]
        assert memories[1].content == {"type": "email_sent", "subject": "Hi"}
        await close_db(db)

    @pytest.mark.asyncio
    async def test_preference_upsert_keeps_one_row(self):
        db = await init_db(":memory:")
        store = MemoryStore(db, clock=lambda: NOW)

        first = await store.store_preference("user-1", "sub-1", "preferred_tone", "friendly")
        second = await store.store_preference("user-1", "sub-1", "preferred_tone", "formal")

        assert first.memory_id == second.memory_id
        assert await store.get_preferences("user-1", "sub-1") == {"preferred_tone": "formal"}
        prefs = await store.get_memories_by_type("user-1", "sub-1", MemoryType.PREFERENCE)
        assert len(prefs) == 1
        await close_db(db)

    @pytest.mark.asyncio
    async def test_cache_serves_reads_until_ttl(self):
        db = await init_db(":memory:")
        monotonic = _Monotonic()
        store = MemoryStore(db, cache_ttl=300, clock=lambda: NOW, monotonic=monotonic)
        other = MemoryStore(db, cache_ttl=300, clock=lambda: NOW, monotonic=monotonic)

        assert await store.get_subscriber_memories("user-1", "sub-1") == []
        # Written through another store, so this one's cache is not invalidated
        await other.store_fact("user-1", "sub-1", "k", {"v": 1})
        assert await store.get_subscriber_memories("user-1", "sub-1") == []

        monotonic.value += 301
        assert len(await store.get_subscriber_memories("user-1", "sub-1")) == 1
        await close_db(db)

    @pytest.mark.asyncio
    async def test_expired_cache_entries_are_dropped(self):
        db = await init_db(":memory:")
        monotonic = _Monotonic()
        store = MemoryStore(db, cache_ttl=300, clock=lambda: NOW, monotonic=monotonic)

        await store.get_subscriber_memories("user-1", "sub-1")
        monotonic.value += 301
        await store.get_subscriber_memories("user-1", "sub-2")

        assert list(store._cache) == [("user-1", "sub-2", 20)]
        await close_db(db)

    @pytest.mark.asyncio
    async def test_cache_is_capped(self):
        db = await init_db(":memory:")
        monotonic = _Monotonic()
        store = MemoryStore(
            db, cache_ttl=300, cache_max_entries=2, clock=lambda: NOW, monotonic=monotonic
        )

        for subscriber_id in ("sub-1", "sub-2", "sub-3"):
            await store.get_subscriber_memories("user-1", subscriber_id)
            monotonic.value += 1

        assert len(store._cache) == 2
        assert ("user-1", "sub-1", 20) not in store._cache
        await close_db(db)

    @pytest.mark.asyncio
    async def test_writes_invalidate_cache(self):
        db = await init_db(":memory:")
        store = MemoryStore(db, cache_ttl=300, clock=lambda: NOW)

        assert await store.get_subscriber_memories("user-1", "sub-1") == []
        await store.store_interaction("user-1", "sub-1", "email_sent")

        assert len(await store.get_subscriber_memories("user-1", "sub-1")) == 1
        await close_db(db)

    @pytest.mark.asyncio
    async def test_reinforce_clamps_importance(self):
        db = await init_db(":memory:")
        store = MemoryStore(db, clock=lambda: NOW)
        record = await store.store_fact("user-1", "sub-1", "k", {})

        await store.reinforce(record.memory_id, 0.5)
        (memory,) = await store.get_subscriber_memories("user-1", "sub-1")
        assert memory.importance == 1.0

        await store.weaken(record.memory_id, 2.0)
        (memory,) = await store.get_subscriber_memories("user-1", "sub-1")
        assert memory.importance == 0.0
        await close_db(db)

    @pytest.mark.asyncio
    async def test_cleanup_keeps_patterns(self):
        db = await init_db(":memory:")
        clock = {"now": NOW - timedelta(days=400)}
        store = MemoryStore(db, clock=lambda: clock["now"])
        await store.store_fact("user-1", "sub-1", "ancient", {})
        clock["now"] = NOW
        await store.store_interaction("user-1", "sub-1", "noise", importance=0.05)
        keep = await store.store_fact("user-1", "sub-1", "recent", {})
        await store.store_pattern(
            "user-1", "recovery", _make_pattern("payment_failed", "a_b", 0.1, 5, 0.0)
        )

        deleted = await store.cleanup_memories("user-1")

        assert deleted == 2
        memories = await store.get_subscriber_memories("user-1", "sub-1")
        assert [m.memory_id for m in memories] == [keep.memory_id]
        assert len(await store.get_patterns("user-1", "recovery")) == 1
        await close_db(db)


# ── Patterns ──────────────────────────────────────────────────────


class TestPatterns:
    @pytest.mark.asyncio
    async def test_replace_patterns_swaps_whole_set(self):
        db = await init_db(":memory:")
        store = MemoryStore(db, clock=lambda: NOW)
        await store.replace_patterns(
            "user-1", "recovery", [_make_pattern("payment_failed", "old_one", 0.5, 4, 0.2)]
        )

        await store.replace_patterns(
            "user-1",
            "recovery",
            [
                _make_pattern("payment_failed", "low", 0.4, 10, 0.17),
                _make_pattern("payment_failed", "high", 0.8, 10, 0.49),
                _make_pattern("invoice_payment_failed", "other", 0.9, 10, 0.6),
            ],
        )

        patterns = await store.get_patterns("user-1", "recovery", "payment_failed")
        assert [p.action_key for p in patterns] == ["high", "low"]
        assert len(await store.get_patterns("user-1", "recovery")) == 3
        assert await store.get_patterns("user-1", "retention") == []
        await close_db(db)

    @pytest.mark.asyncio
    async def test_store_pattern_overwrites_same_key(self):
        db = await init_db(":memory:")
        store = MemoryStore(db, clock=lambda: NOW)
        await store.store_pattern("user-1", "recovery", _make_pattern("t", "k", 0.5, 4, 0.2))
        await store.store_pattern("user-1", "recovery", _make_pattern("t", "k", 0.75, 8, 0.4))

        (pattern,) = await store.get_patterns("user-1", "recovery")
        assert pattern.sample_size == 8
        await close_db(db)

    def test_pattern_importance_is_capped(self):
        assert pattern_importance(0.0) == 0.5
        assert pattern_importance(1.0) == 0.9


# ── Digests ───────────────────────────────────────────────────────


class TestSummarizeMemories:
    def test_empty(self):
        assert MemoryStore.summarize_memories([]) == "No memories recorded for this subscriber."

    def test_mentions_each_kind_and_outcomes(self):
        memories = [
            _make_record(MemoryType.FACT, "size", {"employees": 12}),
            _make_record(MemoryType.PREFERENCE, "preferred_tone", {"value": "formal"}),
            _make_record(
                MemoryType.INTERACTION, "outcome", {"type": "outcome", "response": "success"}
            ),
            _make_record(
                MemoryType.INTERACTION, "outcome2", {"type": "outcome", "response": "failure"}
            ),
        ]
        digest = MemoryStore.summarize_memories(memories)

        assert "Facts:" in digest
        assert "prefers preferred_tone=formal" in digest
        assert "History: 1/2 successful outcomes" in digest

    def test_bounded_by_items_and_chars(self):
        memories = [
            _make_record(MemoryType.FACT, f"fact-{i}", {"text": "x" * 100, "i": i})
            for i in range(200)
        ]

        digest = MemoryStore.summarize_memories(memories, max_chars=300, max_items_per_type=3)

        assert len(digest) <= 300
        assert '"i": 3' not in digest

    def test_tiny_limit(self):
        digest = MemoryStore.summarize_memories(
            [_make_record(MemoryType.FACT, "k", {"a": 1})], max_chars=1
        )
        assert len(digest) == 1


# ── Short-term ────────────────────────────────────────────────────


class TestShortTermMemory:
    def test_set_get_delete(self):
        memory = ShortTermMemory()
        memory.set("k", {"v": 1})
        assert memory.has("k")
        assert memory.get("k") == {"v": 1}
        memory.delete("k")
        memory.delete("k")
        assert memory.get("k", "default") == "default"

    def test_cleanup_drops_only_stale(self):
        monotonic = _Monotonic()
        memory = ShortTermMemory(monotonic)
        memory.set("old", 1)
        monotonic.value += 100
        memory.set("new", 2)
        monotonic.value += 50

        assert memory.cleanup(120) == 1
        assert not memory.has("old")
        assert memory.has("new")
        assert len(memory) == 1

    def test_clear(self):
        memory = ShortTermMemory()
        memory.set("a", 1)
        memory.clear()
        assert len(memory) == 0
