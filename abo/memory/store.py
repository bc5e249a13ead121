"""Memory store: per-subscriber history and shared patterns.

Facts and interactions are append-only. Preferences are upserted by key.
Patterns are scoped to a (user, agent type), not to a subscriber, and are
only ever written wholesale by batch analysis. Subscriber reads go through
a short, size-capped TTL cache that every write for that subscriber
invalidates.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import aiosqlite

from abo.memory.short_term import ShortTermMemory
from abo.persistence.database import from_db_time, to_db_time, transaction
from abo.schemas.learning import Pattern
from abo.schemas.memory import MemoryRecord, MemoryType

logger = logging.getLogger(__name__)

# Default importance per memory kind
_FACT_IMPORTANCE = 0.8
_INTERACTION_IMPORTANCE = 0.6
_PREFERENCE_IMPORTANCE = 0.7

_NO_MEMORIES = "No memories recorded for this subscriber."


def pattern_importance(success_rate: float) -> float:
    return min(0.9, 0.5 + success_rate * 0.4)


def _row_to_memory(row: aiosqlite.Row) -> MemoryRecord:
    return MemoryRecord(
        memory_id=row["memory_id"],
        user_id=row["user_id"],
        subscriber_id=row["subscriber_id"],
        agent_type=row["agent_type"],
        memory_type=MemoryType(row["memory_type"]),
        key=row["memory_key"],
        content=json.loads(row["content_json"]),
        importance=row["importance"],
        created_at=from_db_time(row["created_at"]),
        last_accessed_at=from_db_time(row["last_accessed_at"]),
    )


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 1:
        return text[:limit]
    return text[: limit - 1] + "…"


class MemoryStore:
    """SQLite-backed agent memory with a TTL cache and a short-term scratchpad."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        cache_ttl: float = 300.0,
        cache_max_entries: int = 1024,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._cache_ttl = cache_ttl
        self._cache_max_entries = cache_max_entries
        self._clock = clock or (lambda: datetime.now(UTC))
        self._monotonic = monotonic
        self._cache: dict[tuple[str, str, int], tuple[float, list[MemoryRecord]]] = {}
        self.short_term = ShortTermMemory(monotonic)

    # ── Writes ───────────────────────────────────────────────────

    async def store_fact(
        self,
        user_id: str,
        subscriber_id: str,
        key: str,
        content: dict[str, Any],
        *,
        agent_type: str | None = None,
    ) -> MemoryRecord:
        return await self._append(
            user_id, subscriber_id, MemoryType.FACT, key, content, _FACT_IMPORTANCE, agent_type
        )

    async def store_interaction(
        self,
        user_id: str,
        subscriber_id: str,
        interaction_type: str,
        *,
        subject: str | None = None,
        response: str | None = None,
        details: dict[str, Any] | None = None,
        importance: float = _INTERACTION_IMPORTANCE,
        agent_type: str | None = None,
    ) -> MemoryRecord:
        """Append an interaction such as 'email_sent' or 'outcome'."""
        content: dict[str, Any] = {"type": interaction_type}
        if subject:
            content["subject"] = subject
        if response:
            content["response"] = response
        if details:
            content["details"] = details
        return await self._append(
            user_id,
            subscriber_id,
            MemoryType.INTERACTION,
            interaction_type,
            content,
            importance,
            agent_type,
        )

    async def store_preference(
        self,
        user_id: str,
        subscriber_id: str,
        key: str,
        value: Any,
        *,
        agent_type: str | None = None,
    ) -> MemoryRecord:
        """Insert or overwrite the subscriber's preference ``key``."""
        now = to_db_time(self._clock())
        content_json = json.dumps({"value": value})
        async with transaction(self._db):
            cursor = await self._db.execute(
                """
                SELECT memory_id FROM memories
                WHERE user_id = ? AND subscriber_id = ? AND memory_key = ?
                  AND memory_type = 'preference'
                """,
                (user_id, subscriber_id, key),
            )
            row = await cursor.fetchone()
            if row is None:
                memory_id = str(uuid4())
                await self._db.execute(
                    """
                    INSERT INTO memories
                        (memory_id, user_id, subscriber_id, agent_type, memory_type,
                         memory_key, content_json, importance, created_at)
                    VALUES (?, ?, ?, ?, 'preference', ?, ?, ?, ?)
                    """,
                    (
                        memory_id, user_id, subscriber_id, agent_type, key,
                        content_json, _PREFERENCE_IMPORTANCE, now,
                    ),
                )
            else:
                memory_id = row["memory_id"]
                await self._db.execute(
                    """
                    UPDATE memories SET content_json = ?, last_accessed_at = ?
                    WHERE memory_id = ?
                    """,
                    (content_json, now, memory_id),
                )
        self.invalidate(user_id, subscriber_id)
        return await self._get(memory_id)

    async def store_pattern(self, user_id: str, agent_type: str, pattern: Pattern) -> None:
        """Insert or overwrite one pattern for (user, agent type)."""
        async with transaction(self._db):
            await self._upsert_pattern(user_id, agent_type, pattern)

    async def replace_patterns(
        self, user_id: str, agent_type: str, patterns: list[Pattern]
    ) -> None:
        """Swap the full pattern set for (user, agent type) in one transaction."""
        async with transaction(self._db):
            await self._db.execute(
                """
                DELETE FROM memories
                WHERE user_id = ? AND agent_type = ? AND memory_type = 'pattern'
                """,
                (user_id, agent_type),
            )
            for pattern in patterns:
                await self._upsert_pattern(user_id, agent_type, pattern)

    async def reinforce(self, memory_id: str, boost: float = 0.1) -> None:
        """Raise (or with a negative boost, lower) a memory's importance."""
        async with transaction(self._db):
            await self._db.execute(
                """
                UPDATE memories
                SET importance = MIN(1.0, MAX(0.0, importance + ?)), last_accessed_at = ?
                WHERE memory_id = ?
                """,
                (boost, to_db_time(self._clock()), memory_id),
            )
        self._cache.clear()

    async def weaken(self, memory_id: str, penalty: float = 0.05) -> None:
        await self.reinforce(memory_id, -penalty)

    async def cleanup_memories(
        self, user_id: str, *, min_importance: float = 0.1, max_age_days: int = 365
    ) -> int:
        """Delete stale or unimportant subscriber memories. Patterns are kept.

        Returns:
            Number of memories deleted.
        """
        cutoff = self._clock() - timedelta(days=max_age_days)
        async with transaction(self._db):
            cursor = await self._db.execute(
                """
                DELETE FROM memories
                WHERE user_id = ? AND memory_type != 'pattern'
                  AND (importance < ? OR created_at < ?)
                """,
                (user_id, min_importance, to_db_time(cutoff)),
            )
            deleted = cursor.rowcount
        self._cache.clear()
        if deleted:
            logger.info("Cleaned up %d memories for user %s", deleted, user_id)
        return deleted

    # ── Reads ────────────────────────────────────────────────────

    async def get_subscriber_memories(
        self, user_id: str, subscriber_id: str, limit: int = 20
    ) -> list[MemoryRecord]:
        """Most important memories first, newest first among equals."""
        cache_key = (user_id, subscriber_id, limit)
        cached = self._cache.get(cache_key)
        now = self._monotonic()
        if cached and cached[0] > now:
            return list(cached[1])

        cursor = await self._db.execute(
            """
            SELECT * FROM memories
            WHERE user_id = ? AND subscriber_id = ?
            ORDER BY importance DESC, created_at DESC
            LIMIT ?
            """,
            (user_id, subscriber_id, limit),
        )
        memories = [_row_to_memory(r) for r in await cursor.fetchall()]
        if self._cache_ttl > 0:
            self._prune_cache(now)
            self._cache[cache_key] = (now + self._cache_ttl, memories)
        return list(memories)

    async def get_memories_by_type(
        self,
        user_id: str,
        subscriber_id: str,
        memory_type: MemoryType,
        limit: int = 20,
    ) -> list[MemoryRecord]:
        cursor = await self._db.execute(
            """
            SELECT * FROM memories
            WHERE user_id = ? AND subscriber_id = ? AND memory_type = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (user_id, subscriber_id, memory_type.value, limit),
        )
        return [_row_to_memory(r) for r in await cursor.fetchall()]

    async def get_preferences(self, user_id: str, subscriber_id: str) -> dict[str, Any]:
        memories = await self.get_memories_by_type(
            user_id, subscriber_id, MemoryType.PREFERENCE, limit=100
        )
        return {m.key: m.content.get("value") for m in memories}

    async def get_patterns(
        self, user_id: str, agent_type: str, trigger: str | None = None
    ) -> list[Pattern]:
        """Stored patterns, best score first."""
        query = (
            "SELECT content_json FROM memories "
            "WHERE user_id = ? AND agent_type = ? AND memory_type = 'pattern'"
        )
        params: list = [user_id, agent_type]
        if trigger:
            query += " AND memory_key LIKE ?"
            params.append(f"{trigger}::%")
        cursor = await self._db.execute(query, params)
        patterns = [Pattern.model_validate_json(r["content_json"]) for r in await cursor.fetchall()]
        if trigger:
            patterns = [p for p in patterns if p.trigger == trigger]
        patterns.sort(key=lambda p: (-p.score, -p.sample_size, p.action_key))
        return patterns

    def invalidate(self, user_id: str, subscriber_id: str) -> None:
        for key in [k for k in self._cache if k[0] == user_id and k[1] == subscriber_id]:
            del self._cache[key]

    def _prune_cache(self, now: float) -> None:
        """Drop expired entries, then the soonest to expire, to make room for one more."""
        for key in [k for k, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]
        overflow = len(self._cache) - self._cache_max_entries + 1
        if overflow > 0:
            oldest = sorted(self._cache, key=lambda k: self._cache[k][0])[:overflow]
            for key in oldest:
                del self._cache[key]

    # ── Short-term scratchpad ────────────────────────────────────

    def set_short_term(self, key: str, value: Any) -> None:
        self.short_term.set(key, value)

    def get_short_term(self, key: str, default: Any = None) -> Any:
        return self.short_term.get(key, default)

    def has_short_term(self, key: str) -> bool:
        return self.short_term.has(key)

    def delete_short_term(self, key: str) -> None:
        self.short_term.delete(key)

    def clear_short_term(self) -> None:
        self.short_term.clear()

    def cleanup_short_term(self, max_age_seconds: float = 1800.0) -> int:
        return self.short_term.cleanup(max_age_seconds)

    # ── Digests ──────────────────────────────────────────────────

    @staticmethod
    def summarize_memory(memory: MemoryRecord) -> str:
        content = memory.content
        if memory.memory_type == MemoryType.INTERACTION:
            return f"{content.get('type', memory.key)}: {content.get('response') or 'no response'}"
        if memory.memory_type == MemoryType.PREFERENCE:
            return f"prefers {memory.key}={content.get('value')}"
        if memory.memory_type == MemoryType.PATTERN:
            rate = float(content.get("success_rate", 0.0))
            return (
                f"{content.get('trigger')} -> {content.get('action_key')} "
                f"({rate:.0%} over {content.get('sample_size', 0)})"
            )
        return json.dumps(content, sort_keys=True, default=str)

    @classmethod
    def summarize_memories(
        cls,
        memories: list[MemoryRecord],
        *,
        max_chars: int = 1200,
        max_items_per_type: int = 5,
    ) -> str:
        """Bounded text digest of memories for prompts and reasoning traces.

        At most ``max_items_per_type`` entries of each kind are included and
        the result never exceeds ``max_chars`` characters, however many
        memories are passed in.
        """
        if not memories:
            return _truncate(_NO_MEMORIES, max_chars)

        by_type: dict[MemoryType, list[MemoryRecord]] = {}
        for memory in memories:
            by_type.setdefault(memory.memory_type, []).append(memory)

        labels = [
            (MemoryType.FACT, "Facts"),
            (MemoryType.PREFERENCE, "Preferences"),
            (MemoryType.INTERACTION, "Recent interactions"),
            (MemoryType.PATTERN, "Known patterns"),
        ]
        parts: list[str] = []
        for memory_type, label in labels:
            items = by_type.get(memory_type, [])[:max_items_per_type]
            if not items:
                continue
            summary = ", ".join(_truncate(cls.summarize_memory(m), 160) for m in items)
            parts.append(f"{label}: {summary}")

        outcomes = [
            m for m in by_type.get(MemoryType.INTERACTION, []) if m.content.get("type") == "outcome"
        ]
        if outcomes:
            positive = sum(1 for m in outcomes if m.content.get("response") == "success")
            parts.append(f"History: {positive}/{len(outcomes)} successful outcomes")

        return _truncate(". ".join(parts), max_chars)

    # ── Internals ────────────────────────────────────────────────

    async def _append(
        self,
        user_id: str,
        subscriber_id: str,
        memory_type: MemoryType,
        key: str,
        content: dict[str, Any],
        importance: float,
        agent_type: str | None,
    ) -> MemoryRecord:
        record = MemoryRecord(
            memory_id=str(uuid4()),
            user_id=user_id,
            subscriber_id=subscriber_id,
            agent_type=agent_type,
            memory_type=memory_type,
            key=key,
            content=content,
            importance=importance,
            created_at=self._clock(),
        )
        async with transaction(self._db):
            await self._db.execute(
                """
                INSERT INTO memories
                    (memory_id, user_id, subscriber_id, agent_type, memory_type,
                     memory_key, content_json, importance, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.memory_id,
                    user_id,
                    subscriber_id,
                    agent_type,
                    memory_type.value,
                    key,
                    json.dumps(content, default=str),
                    importance,
                    to_db_time(record.created_at),
                ),
            )
        self.invalidate(user_id, subscriber_id)
        return record

    async def _upsert_pattern(self, user_id: str, agent_type: str, pattern: Pattern) -> None:
        key = f"{pattern.trigger}::{pattern.action_key}"
        await self._db.execute(
            """
            DELETE FROM memories
            WHERE user_id = ? AND agent_type = ? AND memory_key = ? AND memory_type = 'pattern'
            """,
            (user_id, agent_type, key),
        )
        await self._db.execute(
            """
            INSERT INTO memories
                (memory_id, user_id, subscriber_id, agent_type, memory_type,
                 memory_key, content_json, importance, created_at)
            VALUES (?, ?, NULL, ?, 'pattern', ?, ?, ?, ?)
            """,
            (
                str(uuid4()),
                user_id,
                agent_type,
                key,
                pattern.model_dump_json(),
                pattern_importance(pattern.success_rate),
                to_db_time(pattern.computed_at),
            ),
        )

    async def _get(self, memory_id: str) -> MemoryRecord:
        cursor = await self._db.execute("SELECT * FROM memories WHERE memory_id = ?", (memory_id,))
        row = await cursor.fetchone()
        return _row_to_memory(row)
