"""Action store: the durable AgentAction records and their reasoning traces.

Every status change is a conditional UPDATE on the expected current status,
so two racing callers cannot both win a transition. Creation re-checks the
pending-action dedup rule and the daily cap and writes the action, its
trace, its episode and the counter in one write transaction; a partial
unique index backs the dedup rule up at the storage level.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

import aiosqlite

from abo.errors import AlreadyPending, LimitExceeded
from abo.persistence.database import from_db_time, to_db_time, transaction
from abo.persistence.episodes import insert_episode
from abo.schemas.actions import (
    ActionModifications,
    ActionStatus,
    AgentAction,
    GeneratedContent,
)
from abo.schemas.agents import AgentType
from abo.schemas.events import LimitKind
from abo.schemas.learning import Episode
from abo.schemas.reasoning import ReasoningStep, ReasoningStepType
from abo.schemas.situation import ActionDetails, Situation

logger = logging.getLogger(__name__)

# Columns a transition may set alongside the status
_TRANSITION_COLUMNS = frozenset({
    "approved_at",
    "approved_by",
    "rejected_at",
    "rejection_reason",
    "expired_at",
})


def _row_to_action(row: aiosqlite.Row) -> AgentAction:
    modifications = row["modifications_json"]
    return AgentAction(
        action_id=row["action_id"],
        user_id=row["user_id"],
        subscriber_id=row["subscriber_id"],
        agent_type=AgentType(row["agent_type"]),
        trigger=row["trigger"],
        action_type=row["action_type"],
        strategy=row["strategy"],
        description=row["description"],
        details=ActionDetails.model_validate_json(row["details_json"]),
        content=GeneratedContent.model_validate_json(row["content_json"]),
        situation=Situation.model_validate_json(row["situation_json"]),
        confidence=row["confidence"],
        status=ActionStatus(row["status"]),
        created_at=from_db_time(row["created_at"]),
        approved_at=from_db_time(row["approved_at"]),
        rejected_at=from_db_time(row["rejected_at"]),
        expired_at=from_db_time(row["expired_at"]),
        executed_at=from_db_time(row["executed_at"]),
        approved_by=row["approved_by"],
        rejection_reason=row["rejection_reason"],
        modifications=(
            ActionModifications.model_validate_json(modifications) if modifications else None
        ),
        delivery_attempts=row["delivery_attempts"],
        last_error=row["last_error"],
        message_id=row["message_id"],
        episode_id=row["episode_id"],
    )


class ActionStore:
    """Persistent AgentAction store backed by SQLite."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    # ── Creation ─────────────────────────────────────────────────

    async def create(
        self,
        action: AgentAction,
        *,
        day: str,
        max_actions_day: int,
        reasoning: list[ReasoningStep] | None = None,
        episode: Episode | None = None,
    ) -> None:
        """Insert a new action if the dedup rule and daily cap still allow it.

        The pending check, the cap check, the insert, the reasoning trace,
        the episode and the counter increment run in one transaction; if
        any of them fails nothing is written.

        Args:
            action: The action to insert.
            day: The user's local date (YYYY-MM-DD) used as the counter key.
            max_actions_day: Daily cap for the user.
            reasoning: Trace steps to store with the action.
            episode: Learning episode recorded for the decision.

        Raises:
            AlreadyPending: A pending action exists for the subscriber and trigger.
            LimitExceeded: The user's daily action count has reached the cap.
        """
        async with transaction(self._db):
            cursor = await self._db.execute(
                """
                SELECT action_id FROM agent_actions
                WHERE user_id = ? AND subscriber_id = ? AND trigger = ?
                  AND status = 'pending_approval'
                """,
                (action.user_id, action.subscriber_id, action.trigger),
            )
            if await cursor.fetchone() is not None:
                raise AlreadyPending()

            cursor = await self._db.execute(
                "SELECT count FROM daily_action_counters WHERE user_id = ? AND day = ?",
                (action.user_id, day),
            )
            row = await cursor.fetchone()
            if row is not None and row["count"] >= max_actions_day:
                raise LimitExceeded(LimitKind.MAX_ACTIONS_PER_DAY)

            try:
                await self._insert(action)
            except aiosqlite.IntegrityError as e:
                raise AlreadyPending() from e

            if reasoning:
                await self._insert_reasoning(action.action_id, reasoning)
            if episode is not None:
                await insert_episode(self._db, episode)

            await self._db.execute(
                """
                INSERT INTO daily_action_counters (user_id, day, count) VALUES (?, ?, 1)
                ON CONFLICT(user_id, day) DO UPDATE SET count = count + 1
                """,
                (action.user_id, day),
            )

    async def _insert(self, action: AgentAction) -> None:
        await self._db.execute(
            """
            INSERT INTO agent_actions
                (action_id, user_id, subscriber_id, agent_type, trigger, action_type,
                 strategy, description, details_json, content_json, situation_json,
                 confidence, status, created_at, approved_at, approved_by, episode_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                action.action_id,
                action.user_id,
                action.subscriber_id,
                action.agent_type.value,
                action.trigger,
                action.action_type,
                action.strategy,
                action.description,
                action.details.model_dump_json(),
                action.content.model_dump_json(),
                action.situation.model_dump_json(),
                action.confidence,
                action.status.value,
                to_db_time(action.created_at),
                to_db_time(action.approved_at) if action.approved_at else None,
                action.approved_by,
                action.episode_id,
            ),
        )

    # ── Reads ────────────────────────────────────────────────────

    async def get(self, action_id: str) -> AgentAction | None:
        cursor = await self._db.execute(
            "SELECT * FROM agent_actions WHERE action_id = ?", (action_id,)
        )
        row = await cursor.fetchone()
        return _row_to_action(row) if row else None

    async def find_pending(
        self, user_id: str, subscriber_id: str, trigger: str
    ) -> AgentAction | None:
        cursor = await self._db.execute(
            """
            SELECT * FROM agent_actions
            WHERE user_id = ? AND subscriber_id = ? AND trigger = ?
              AND status = 'pending_approval'
            """,
            (user_id, subscriber_id, trigger),
        )
        row = await cursor.fetchone()
        return _row_to_action(row) if row else None

    async def list_actions(
        self,
        user_id: str,
        *,
        status: ActionStatus | None = None,
        agent_type: AgentType | None = None,
        subscriber_id: str | None = None,
        limit: int = 50,
    ) -> list[AgentAction]:
        """List a user's actions, newest first."""
        conditions = ["user_id = ?"]
        params: list = [user_id]
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        if agent_type:
            conditions.append("agent_type = ?")
            params.append(agent_type.value)
        if subscriber_id:
            conditions.append("subscriber_id = ?")
            params.append(subscriber_id)

        where = " AND ".join(conditions)
        params.append(limit)
        cursor = await self._db.execute(
            f"SELECT * FROM agent_actions WHERE {where} "  # noqa: S608
            "ORDER BY created_at DESC LIMIT ?",
            params,
        )
        return [_row_to_action(r) for r in await cursor.fetchall()]

    async def count_for_day(self, user_id: str, day: str) -> int:
        cursor = await self._db.execute(
            "SELECT count FROM daily_action_counters WHERE user_id = ? AND day = ?",
            (user_id, day),
        )
        row = await cursor.fetchone()
        return row["count"] if row else 0

    async def count_executed_offers(
        self, user_id: str, subscriber_id: str, since: datetime
    ) -> int:
        """Executed offer_* actions for a subscriber since ``since``."""
        cursor = await self._db.execute(
            """
            SELECT COUNT(*) FROM agent_actions
            WHERE user_id = ? AND subscriber_id = ? AND status = 'executed'
              AND action_type LIKE 'offer\\_%' ESCAPE '\\' AND executed_at >= ?
            """,
            (user_id, subscriber_id, to_db_time(since)),
        )
        (count,) = await cursor.fetchone()
        return count

    async def list_recent_executed(
        self,
        user_id: str,
        subscriber_id: str,
        agent_type: AgentType,
        since: datetime,
    ) -> list[AgentAction]:
        """Executed actions of one agent for a subscriber created since ``since``, newest first."""
        cursor = await self._db.execute(
            """
            SELECT * FROM agent_actions
            WHERE user_id = ? AND subscriber_id = ? AND agent_type = ?
              AND status = 'executed' AND created_at >= ?
            ORDER BY created_at DESC
            """,
            (user_id, subscriber_id, agent_type.value, to_db_time(since)),
        )
        return [_row_to_action(r) for r in await cursor.fetchall()]

    async def list_expirable(
        self, cutoff: datetime, excluded_pattern: str
    ) -> list[AgentAction]:
        """Pending actions created before ``cutoff`` whose type does not
        contain ``excluded_pattern`` (case-insensitive)."""
        cursor = await self._db.execute(
            """
            SELECT * FROM agent_actions
            WHERE status = 'pending_approval' AND created_at < ?
              AND LOWER(action_type) NOT LIKE ?
            ORDER BY created_at
            """,
            (to_db_time(cutoff), f"%{excluded_pattern.lower()}%"),
        )
        return [_row_to_action(r) for r in await cursor.fetchall()]

    # ── Status transitions ───────────────────────────────────────

    async def transition(
        self,
        action_id: str,
        expected: ActionStatus,
        target: ActionStatus,
        **fields: object,
    ) -> bool:
        """Move an action from ``expected`` to ``target`` if it is still there.

        Returns:
            True if this call performed the transition, False if the action
            was not in ``expected`` (or does not exist).
        """
        unknown = set(fields) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot set columns on transition: {sorted(unknown)}")

        assignments = ["status = ?"]
        params: list = [target.value]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(to_db_time(value) if isinstance(value, datetime) else value)
        params.extend([action_id, expected.value])

        async with transaction(self._db):
            cursor = await self._db.execute(
                f"UPDATE agent_actions SET {', '.join(assignments)} "  # noqa: S608
                "WHERE action_id = ? AND status = ?",
                params,
            )
            return cursor.rowcount == 1

    async def update_content(
        self,
        action_id: str,
        content: GeneratedContent,
        details: ActionDetails,
        modifications: ActionModifications,
        description: str,
    ) -> bool:
        """Replace the generated content of a still-pending action."""
        async with transaction(self._db):
            cursor = await self._db.execute(
                """
                UPDATE agent_actions
                SET content_json = ?, details_json = ?, modifications_json = ?, description = ?
                WHERE action_id = ? AND status = 'pending_approval'
                """,
                (
                    content.model_dump_json(),
                    details.model_dump_json(),
                    modifications.model_dump_json(),
                    description,
                    action_id,
                ),
            )
            return cursor.rowcount == 1

    # ── Execution ────────────────────────────────────────────────

    async def claim_execution(
        self,
        action_id: str,
        token: str,
        *,
        claimed_at: datetime | None = None,
        stale_before: datetime | None = None,
    ) -> bool:
        """Reserve an approved action for one executor.

        A claim taken before ``stale_before`` is considered abandoned by an
        executor that died mid-send, and is taken over. Without
        ``stale_before`` an existing claim is never taken over.

        Returns:
            True if the caller now holds the claim. False if the action is
            not approved or another executor holds a live claim.
        """
        async with transaction(self._db):
            cursor = await self._db.execute(
                "SELECT execution_token, claimed_at FROM agent_actions "
                "WHERE action_id = ? AND status = 'approved'",
                (action_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                return False
            previous = from_db_time(row["claimed_at"])
            if row["execution_token"] is not None:
                if stale_before is None or (previous is not None and previous >= stale_before):
                    return False
                logger.warning(
                    "Taking over stale execution claim on action %s (claimed at %s)",
                    action_id, previous,
                )
            await self._db.execute(
                "UPDATE agent_actions SET execution_token = ?, claimed_at = ? "
                "WHERE action_id = ?",
                (token, to_db_time(claimed_at or datetime.now(UTC)), action_id),
            )
            return True

    async def mark_executed(
        self,
        action: AgentAction,
        token: str,
        *,
        executed_at: datetime,
        message_id: str | None,
    ) -> bool:
        """Record a confirmed delivery and log the communication."""
        async with transaction(self._db):
            cursor = await self._db.execute(
                """
                UPDATE agent_actions
                SET status = 'executed', executed_at = ?, message_id = ?,
                    delivery_attempts = delivery_attempts + 1, last_error = NULL
                WHERE action_id = ? AND status = 'approved' AND execution_token = ?
                """,
                (to_db_time(executed_at), message_id, action.action_id, token),
            )
            if cursor.rowcount != 1:
                return False
            await self._db.execute(
                """
                INSERT INTO communications
                    (user_id, subscriber_id, action_id, channel, subject, message_id, sent_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    action.user_id,
                    action.subscriber_id,
                    action.action_id,
                    action.details.channel.value,
                    action.content.subject,
                    message_id,
                    to_db_time(executed_at),
                ),
            )
            return True

    async def record_delivery_failure(self, action_id: str, token: str, error: str) -> None:
        """Release the claim and keep the action approved for a retry."""
        async with transaction(self._db):
            await self._db.execute(
                """
                UPDATE agent_actions
                SET execution_token = NULL, claimed_at = NULL, last_error = ?,
                    delivery_attempts = delivery_attempts + 1
                WHERE action_id = ? AND execution_token = ?
                """,
                (error[:500], action_id, token),
            )

    # ── Reasoning trace ──────────────────────────────────────────

    async def save_reasoning(self, action_id: str, steps: list[ReasoningStep]) -> None:
        """Replace the stored trace of an action."""
        async with transaction(self._db):
            await self._db.execute(
                "DELETE FROM reasoning_logs WHERE action_id = ?", (action_id,)
            )
            await self._insert_reasoning(action_id, steps)

    async def _insert_reasoning(self, action_id: str, steps: list[ReasoningStep]) -> None:
        for step in steps:
            await self._db.execute(
                """
                INSERT INTO reasoning_logs
                    (action_id, step_number, step_type, thought, data_json,
                     confidence_score, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    action_id,
                    step.step_number,
                    step.step_type.value,
                    step.thought,
                    json.dumps(step.data, default=str),
                    step.confidence_score,
                    step.duration_ms,
                ),
            )

    async def get_reasoning(self, action_id: str) -> list[ReasoningStep]:
        cursor = await self._db.execute(
            """
            SELECT step_number, step_type, thought, data_json, confidence_score, duration_ms
            FROM reasoning_logs WHERE action_id = ? ORDER BY step_number
            """,
            (action_id,),
        )
        return [
            ReasoningStep(
                step_number=r["step_number"],
                step_type=ReasoningStepType(r["step_type"]),
                thought=r["thought"],
                data=json.loads(r["data_json"]),
                confidence_score=r["confidence_score"],
                duration_ms=r["duration_ms"],
            )
            for r in await cursor.fetchall()
        ]
