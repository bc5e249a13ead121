"""SQLite database layer for the agent engine.

Manages the connection, schema creation and write transactions. Uses
aiosqlite in autocommit mode with WAL enabled. Every write that must be
atomic goes through ``transaction()``, which serializes writers sharing a
connection and wraps the work in BEGIN IMMEDIATE / COMMIT.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS agent_configs (
    user_id     TEXT NOT NULL,
    agent_type  TEXT NOT NULL,
    config_json TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    PRIMARY KEY (user_id, agent_type)
);

CREATE TABLE IF NOT EXISTS action_rules (
    user_id           TEXT NOT NULL,
    agent_type        TEXT NOT NULL,
    action_type       TEXT NOT NULL,
    requires_approval INTEGER NOT NULL DEFAULT 1,
    max_auto_amount   REAL,
    PRIMARY KEY (user_id, agent_type, action_type)
);

CREATE TABLE IF NOT EXISTS brand_settings (
    user_id       TEXT PRIMARY KEY,
    settings_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subscribers (
    user_id       TEXT NOT NULL,
    subscriber_id TEXT NOT NULL,
    email         TEXT NOT NULL DEFAULT '',
    name          TEXT,
    plan          TEXT,
    mrr           INTEGER NOT NULL DEFAULT 0,
    status        TEXT,
    country       TEXT,
    subscribed_at TEXT,
    PRIMARY KEY (user_id, subscriber_id)
);

CREATE TABLE IF NOT EXISTS communications (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id       TEXT NOT NULL,
    subscriber_id TEXT NOT NULL,
    action_id     TEXT,
    channel       TEXT NOT NULL,
    subject       TEXT NOT NULL DEFAULT '',
    message_id    TEXT,
    sent_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_actions (
    action_id          TEXT PRIMARY KEY,
    user_id            TEXT NOT NULL,
    subscriber_id      TEXT NOT NULL,
    agent_type         TEXT NOT NULL,
    trigger            TEXT NOT NULL,
    action_type        TEXT NOT NULL,
    strategy           TEXT NOT NULL,
    description        TEXT NOT NULL DEFAULT '',
    details_json       TEXT NOT NULL,
    content_json       TEXT NOT NULL,
    situation_json     TEXT NOT NULL,
    confidence         REAL NOT NULL,
    status             TEXT NOT NULL,
    created_at         TEXT NOT NULL,
    approved_at        TEXT,
    rejected_at        TEXT,
    expired_at         TEXT,
    executed_at        TEXT,
    approved_by        TEXT,
    rejection_reason   TEXT,
    modifications_json TEXT,
    delivery_attempts  INTEGER NOT NULL DEFAULT 0,
    last_error         TEXT,
    message_id         TEXT,
    execution_token    TEXT,
    claimed_at         TEXT,
    episode_id         TEXT
);

CREATE TABLE IF NOT EXISTS reasoning_logs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    action_id        TEXT NOT NULL REFERENCES agent_actions(action_id) ON DELETE CASCADE,
    step_number      INTEGER NOT NULL,
    step_type        TEXT NOT NULL,
    thought          TEXT NOT NULL DEFAULT '',
    data_json        TEXT NOT NULL DEFAULT '{}',
    confidence_score REAL,
    duration_ms      REAL NOT NULL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS daily_action_counters (
    user_id TEXT NOT NULL,
    day     TEXT NOT NULL,
    count   INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, day)
);

CREATE TABLE IF NOT EXISTS memories (
    memory_id        TEXT PRIMARY KEY,
    user_id          TEXT NOT NULL,
    subscriber_id    TEXT,
    agent_type       TEXT,
    memory_type      TEXT NOT NULL,
    memory_key       TEXT NOT NULL DEFAULT '',
    content_json     TEXT NOT NULL DEFAULT '{}',
    importance       REAL NOT NULL DEFAULT 0.5,
    created_at       TEXT NOT NULL,
    last_accessed_at TEXT
);

CREATE TABLE IF NOT EXISTS episodes (
    episode_id           TEXT PRIMARY KEY,
    user_id              TEXT NOT NULL,
    agent_type           TEXT NOT NULL,
    subscriber_id        TEXT,
    action_id            TEXT,
    trigger              TEXT NOT NULL,
    action_key           TEXT NOT NULL,
    situation_json       TEXT NOT NULL,
    action_json          TEXT NOT NULL,
    outcome              TEXT,
    outcome_details_json TEXT NOT NULL DEFAULT '{}',
    created_at           TEXT NOT NULL,
    resolved_at          TEXT
);

CREATE TABLE IF NOT EXISTS feedback (
    feedback_id   TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL,
    agent_type    TEXT NOT NULL,
    subscriber_id TEXT,
    action_id     TEXT,
    feedback_type TEXT NOT NULL,
    rating        INTEGER,
    comment       TEXT,
    created_at    TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_actions_one_pending
    ON agent_actions(user_id, subscriber_id, trigger)
    WHERE status = 'pending_approval';
CREATE INDEX IF NOT EXISTS idx_actions_status_created ON agent_actions(status, created_at);
CREATE INDEX IF NOT EXISTS idx_actions_subscriber ON agent_actions(user_id, subscriber_id);
CREATE INDEX IF NOT EXISTS idx_reasoning_action ON reasoning_logs(action_id);
CREATE INDEX IF NOT EXISTS idx_comms_subscriber ON communications(user_id, subscriber_id, sent_at);
CREATE INDEX IF NOT EXISTS idx_memories_subscriber ON memories(user_id, subscriber_id, memory_type);
CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_preference
    ON memories(user_id, subscriber_id, memory_key)
    WHERE memory_type = 'preference';
CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_pattern
    ON memories(user_id, agent_type, memory_key)
    WHERE memory_type = 'pattern';
CREATE INDEX IF NOT EXISTS idx_episodes_user_agent ON episodes(user_id, agent_type, resolved_at);
CREATE INDEX IF NOT EXISTS idx_episodes_action ON episodes(action_id);
CREATE INDEX IF NOT EXISTS idx_feedback_subscriber ON feedback(user_id, subscriber_id);
"""

# One writer lock per open connection
_write_locks: weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock] = (
    weakref.WeakKeyDictionary()
)


# Columns added after the first release; older databases get them on open
_ADDED_COLUMNS: tuple[tuple[str, str, str], ...] = (
    ("agent_actions", "claimed_at", "TEXT"),
)


async def _add_missing_columns(db: aiosqlite.Connection) -> None:
    for table, column, decl in _ADDED_COLUMNS:
        cursor = await db.execute(f"PRAGMA table_info({table})")
        if column not in {row["name"] for row in await cursor.fetchall()}:
            await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
            logger.info("Added column %s.%s", table, column)


async def init_db(db_path: str) -> aiosqlite.Connection:
    """Initialize the database connection and create tables if needed.

    Creates parent directories if they don't exist, enables WAL mode
    and foreign keys, then runs the schema DDL and adds columns that
    older databases lack.

    Args:
        db_path: Path to the SQLite database file. Supports ~ expansion
                 and ':memory:'.

    Returns:
        An open aiosqlite connection in autocommit mode.
    """
    if db_path == ":memory:":
        target = db_path
    else:
        resolved = Path(db_path).expanduser()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        target = str(resolved)

    db = await aiosqlite.connect(target, isolation_level=None)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await db.execute("PRAGMA busy_timeout=5000")
    await db.executescript(_SCHEMA)
    await _add_missing_columns(db)

    logger.info("Agent database initialized at %s", target)
    return db


async def close_db(db: aiosqlite.Connection) -> None:
    """Close the database connection."""
    _write_locks.pop(db, None)
    await db.close()


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Run a block of writes atomically.

    Writers on the same connection are serialized by an asyncio lock;
    writers on other connections are serialized by SQLite's reserved lock
    taken by BEGIN IMMEDIATE. Any exception rolls the block back.
    """
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks.setdefault(db, asyncio.Lock())

    async with lock:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        await db.execute("COMMIT")


def to_db_time(value: datetime) -> str:
    """Serialize a timestamp so that string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
