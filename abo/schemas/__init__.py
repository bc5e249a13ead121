"""Schema definitions for the agent decision engine.

All Pydantic v2 models shared by the orchestrator, reasoning, learning,
memory and action lifecycle.
"""

from abo.schemas.actions import (
    ActionModifications,
    ActionStatus,
    AgentAction,
    BatchApproveResult,
    GeneratedContent,
    SweepResult,
    can_transition,
)
from abo.schemas.agents import (
    ActionRule,
    AgentConfig,
    AgentType,
    BrandSettings,
    BrandTone,
    Channel,
    ConfidencePolicy,
    Humor,
    LimitsConfig,
    MessageTone,
    OffersConfig,
    StrategyConfig,
    StrategyTemplate,
)
from abo.schemas.events import (
    Event,
    EventData,
    EventType,
    HandleResult,
    LimitKind,
    SkipReason,
    parse_event_data,
)
from abo.schemas.learning import (
    BatchAnalysis,
    Episode,
    Feedback,
    FeedbackType,
    LearningStats,
    Outcome,
    Pattern,
    TriggerInsights,
)
from abo.schemas.memory import MemoryRecord, MemorySnapshot, MemoryType
from abo.schemas.reasoning import (
    ActionOption,
    ReasoningResult,
    ReasoningStep,
    ReasoningStepType,
)
from abo.schemas.situation import (
    ActionDetails,
    ActionTaken,
    Situation,
    SubscriberSnapshot,
)

__all__ = [
    "ActionDetails",
    "ActionModifications",
    "ActionOption",
    "ActionRule",
    "ActionStatus",
    "ActionTaken",
    "AgentAction",
    "AgentConfig",
    "AgentType",
    "BatchAnalysis",
    "BatchApproveResult",
    "BrandSettings",
    "BrandTone",
    "Channel",
    "ConfidencePolicy",
    "Episode",
    "Event",
    "EventData",
    "EventType",
    "Feedback",
    "FeedbackType",
    "GeneratedContent",
    "HandleResult",
    "Humor",
    "LearningStats",
    "LimitKind",
    "LimitsConfig",
    "MemoryRecord",
    "MemorySnapshot",
    "MemoryType",
    "MessageTone",
    "OffersConfig",
    "Outcome",
    "Pattern",
    "ReasoningResult",
    "ReasoningStep",
    "ReasoningStepType",
    "Situation",
    "SkipReason",
    "StrategyConfig",
    "StrategyTemplate",
    "SubscriberSnapshot",
    "SweepResult",
    "TriggerInsights",
    "can_transition",
    "parse_event_data",
]
