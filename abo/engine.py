"""Wires the stores, modules and collaborators into one Engine."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import aiosqlite

from abo.learning.engine import LearningModule
from abo.learning.outcomes import OutcomeDetector
from abo.lifecycle import ActionLifecycle
from abo.memory.store import MemoryStore
from abo.orchestrator import AgentOrchestrator
from abo.persistence.actions import ActionStore
from abo.persistence.configs import ConfigStore
from abo.persistence.database import close_db, init_db
from abo.persistence.subscribers import SubscriberStore
from abo.providers.base import ContentGenerator, DeliveryChannel, OwnerNotifier
from abo.providers.local import LoggingOwnerNotifier, RecordingDeliveryChannel
from abo.providers.template_generator import TemplateContentGenerator
from abo.reasoning.engine import ReasoningEngine
from abo.settings import EngineSettings


@dataclass
class Engine:
    db: aiosqlite.Connection
    settings: EngineSettings
    configs: ConfigStore
    subscribers: SubscriberStore
    actions: ActionStore
    memory: MemoryStore
    learning: LearningModule
    outcomes: OutcomeDetector
    reasoning: ReasoningEngine
    lifecycle: ActionLifecycle
    orchestrator: AgentOrchestrator
    delivery: DeliveryChannel

    async def close(self) -> None:
        await self.delivery.aclose()
        await close_db(self.db)


def build_engine(
    db: aiosqlite.Connection,
    *,
    settings: EngineSettings | None = None,
    generator: ContentGenerator | None = None,
    delivery: DeliveryChannel | None = None,
    notifier: OwnerNotifier | None = None,
    clock: Callable[[], datetime] | None = None,
    monotonic: Callable[[], float] = time.monotonic,
) -> Engine:
    """Build an Engine on an open connection.

    Collaborators default to offline implementations: template content,
    in-memory delivery and logged owner notices.
    """
    settings = settings or EngineSettings()
    generator = generator or TemplateContentGenerator()
    delivery = delivery or RecordingDeliveryChannel()
    notifier = notifier or LoggingOwnerNotifier()

    configs = ConfigStore(db, clock=clock)
    subscribers = SubscriberStore(db)
    actions = ActionStore(db)
    memory = MemoryStore(
        db,
        cache_ttl=settings.memory.cache_ttl_seconds,
        cache_max_entries=settings.memory.cache_max_entries,
        clock=clock,
        monotonic=monotonic,
    )
    learning = LearningModule(db, memory, settings.learning, clock=clock)
    reasoning = ReasoningEngine(memory, learning, settings.memory)
    lifecycle = ActionLifecycle(
        actions,
        configs,
        memory,
        generator=generator,
        delivery=delivery,
        notifier=notifier,
        expiration=settings.expiration,
        execution=settings.execution,
        clock=clock,
    )
    orchestrator = AgentOrchestrator(
        configs=configs,
        subscribers=subscribers,
        actions=actions,
        memory=memory,
        learning=learning,
        reasoning=reasoning,
        lifecycle=lifecycle,
        generator=generator,
        notifier=notifier,
        settings=settings,
        clock=clock,
    )
    return Engine(
        db=db,
        settings=settings,
        configs=configs,
        subscribers=subscribers,
        actions=actions,
        memory=memory,
        learning=learning,
        outcomes=OutcomeDetector(actions, learning, clock=clock),
        reasoning=reasoning,
        lifecycle=lifecycle,
        orchestrator=orchestrator,
        delivery=delivery,
    )


async def open_engine(
    settings: EngineSettings | None = None,
    *,
    db_path: str | None = None,
    **collaborators,
) -> Engine:
    """Open the configured database and build an Engine on it."""
    settings = settings or EngineSettings()
    db = await init_db(db_path or settings.db_path)
    return build_engine(db, settings=settings, **collaborators)
