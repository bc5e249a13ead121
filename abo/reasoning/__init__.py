"""Deterministic, traced decision making."""

from abo.reasoning.engine import ReasoningEngine, decide, describe_action, digest_key

__all__ = ["ReasoningEngine", "decide", "describe_action", "digest_key"]
