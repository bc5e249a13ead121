"""Configuration store: agent configs, action rules and brand settings.

The engine only reads these. ``get_config`` creates the conservative
default on first access (inactive, review_all, default rules all requiring
approval); the save methods exist for the surrounding application.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

import aiosqlite

from abo.catalog import default_rules
from abo.persistence.database import to_db_time, transaction
from abo.schemas.agents import ActionRule, AgentConfig, AgentType, BrandSettings

logger = logging.getLogger(__name__)


class ConfigStore:
    """Agent configuration backed by SQLite."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or (lambda: datetime.now(UTC))

    async def get_config(self, user_id: str, agent_type: AgentType) -> AgentConfig:
        """Return the user's config for an agent type, creating defaults if absent."""
        config = await self._load_config(user_id, agent_type)
        if config is not None:
            return config

        default = AgentConfig(user_id=user_id, agent_type=agent_type)
        async with transaction(self._db):
            await self._db.execute(
                """
                INSERT OR IGNORE INTO agent_configs (user_id, agent_type, config_json, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    user_id,
                    agent_type.value,
                    default.model_dump_json(exclude={"rules"}),
                    to_db_time(self._clock()),
                ),
            )
            cursor = await self._db.execute(
                "SELECT COUNT(*) FROM action_rules WHERE user_id = ? AND agent_type = ?",
                (user_id, agent_type.value),
            )
            (rule_count,) = await cursor.fetchone()
            if rule_count == 0:
                await self._insert_rules(user_id, agent_type, default_rules(agent_type))

        logger.info("Created default %s config for user %s", agent_type, user_id)
        loaded = await self._load_config(user_id, agent_type)
        if loaded is None:
            raise RuntimeError(f"Config {user_id}/{agent_type} missing after creation")
        return loaded

    async def save_config(self, config: AgentConfig) -> None:
        """Insert or replace a config and its rule set."""
        async with transaction(self._db):
            await self._db.execute(
                """
                INSERT OR REPLACE INTO agent_configs (user_id, agent_type, config_json, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    config.user_id,
                    config.agent_type.value,
                    config.model_dump_json(exclude={"rules"}),
                    to_db_time(self._clock()),
                ),
            )
            await self._db.execute(
                "DELETE FROM action_rules WHERE user_id = ? AND agent_type = ?",
                (config.user_id, config.agent_type.value),
            )
            await self._insert_rules(config.user_id, config.agent_type, config.rules)

    async def save_rules(
        self, user_id: str, agent_type: AgentType, rules: list[ActionRule]
    ) -> None:
        """Replace the rule set of an existing (or default) config."""
        config = await self.get_config(user_id, agent_type)
        await self.save_config(config.model_copy(update={"rules": list(rules)}))

    async def deactivate(self, user_id: str, agent_type: AgentType) -> None:
        config = await self.get_config(user_id, agent_type)
        await self.save_config(config.model_copy(update={"is_active": False}))

    async def get_brand_settings(self, user_id: str) -> BrandSettings:
        cursor = await self._db.execute(
            "SELECT settings_json FROM brand_settings WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return BrandSettings()
        return BrandSettings.model_validate_json(row["settings_json"])

    async def save_brand_settings(self, user_id: str, settings: BrandSettings) -> None:
        async with transaction(self._db):
            await self._db.execute(
                "INSERT OR REPLACE INTO brand_settings (user_id, settings_json) VALUES (?, ?)",
                (user_id, settings.model_dump_json()),
            )

    # ── Internals ────────────────────────────────────────────────

    async def _load_config(self, user_id: str, agent_type: AgentType) -> AgentConfig | None:
        cursor = await self._db.execute(
            "SELECT config_json FROM agent_configs WHERE user_id = ? AND agent_type = ?",
            (user_id, agent_type.value),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        cursor = await self._db.execute(
            """
            SELECT action_type, requires_approval, max_auto_amount
            FROM action_rules
            WHERE user_id = ? AND agent_type = ?
            ORDER BY rowid
            """,
            (user_id, agent_type.value),
        )
        rules = [
            ActionRule(
                action_type=r["action_type"],
                requires_approval=bool(r["requires_approval"]),
                max_auto_amount=r["max_auto_amount"],
            )
            for r in await cursor.fetchall()
        ]
        config = AgentConfig.model_validate_json(row["config_json"])
        return config.model_copy(update={"rules": rules})

    async def _insert_rules(
        self, user_id: str, agent_type: AgentType, rules: list[ActionRule]
    ) -> None:
        for rule in rules:
            await self._db.execute(
                """
                INSERT OR REPLACE INTO action_rules
                    (user_id, agent_type, action_type, requires_approval, max_auto_amount)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    agent_type.value,
                    rule.action_type,
                    int(rule.requires_approval),
                    rule.max_auto_amount,
                ),
            )
