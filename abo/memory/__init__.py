"""Agent memory: durable per-subscriber history plus an in-process scratchpad."""

from abo.memory.short_term import ShortTermMemory
from abo.memory.store import MemoryStore, pattern_importance

__all__ = ["MemoryStore", "ShortTermMemory", "pattern_importance"]
