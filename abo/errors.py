"""Exception hierarchy for the agent decision engine.

Three families, handled differently by callers:

- ``PolicySkip`` subclasses are expected outcomes of event handling. The
  orchestrator turns them into a ``skipped_reason`` on the result instead of
  letting them escape.
- ``StateError`` subclasses signal a caller or concurrency bug (an illegal
  status transition, a double episode resolution).
- ``InfrastructureError`` subclasses are retryable collaborator failures.
"""

from __future__ import annotations


class AboError(Exception):
    """Base exception for all engine errors."""


# ── Policy skips ─────────────────────────────────────────────────


class PolicySkip(AboError):
    """An event was handled but no action was created."""

    reason = "skipped"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason)


class NoMatchingAgent(PolicySkip):
    """The event type does not map to any agent type."""

    reason = "no_matching_agent"


class MalformedEvent(PolicySkip):
    """The event payload failed validation for its event type."""

    reason = "malformed_event"


class AgentInactive(PolicySkip):
    """The owning user's agent for this event type is switched off."""

    reason = "agent_inactive"


class LimitExceeded(PolicySkip):
    """A rate or time-window limit forbids acting right now."""

    def __init__(self, which: str, message: str = "") -> None:
        self.which = which
        self.reason = f"limit_exceeded:{which}"
        super().__init__(message or self.reason)


class AlreadyPending(PolicySkip):
    """An action for the same subscriber and trigger awaits approval."""

    reason = "already_pending"


class UnknownSubscriber(PolicySkip):
    """The event references a subscriber the user does not have."""

    reason = "unknown_subscriber"


class NoAllowedAction(PolicySkip):
    """The agent's rule set allows no action type at all."""

    reason = "no_allowed_action"


# ── State machine violations ─────────────────────────────────────


class StateError(AboError):
    """An operation was attempted from a state that does not permit it."""


class InvalidTransition(StateError):
    """An action status transition outside the lifecycle graph."""

    def __init__(self, action_id: str, current: str, target: str, detail: str = "") -> None:
        self.action_id = action_id
        self.current = current
        self.target = target
        message = f"Action {action_id}: cannot move from '{current}' to '{target}'"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidEpisodeState(StateError):
    """An episode is missing or was already resolved."""

    def __init__(self, episode_id: str, detail: str) -> None:
        self.episode_id = episode_id
        super().__init__(f"Episode {episode_id}: {detail}")


# ── Authorization and lookup ─────────────────────────────────────


class Unauthorized(AboError):
    """The caller does not own the action they are trying to change."""

    def __init__(self, action_id: str, caller_id: str) -> None:
        self.action_id = action_id
        self.caller_id = caller_id
        super().__init__(f"User {caller_id} may not modify action {action_id}")


class ActionNotFound(AboError):
    """No action exists with the given id."""

    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(f"Action not found: {action_id}")


# ── Infrastructure ───────────────────────────────────────────────


class InfrastructureError(AboError):
    """A collaborator failed. Safe to retry."""

    retryable = True


class GenerationTimeout(InfrastructureError):
    """Content generation did not finish before its deadline."""

    def __init__(self, timeout: float, detail: str = "") -> None:
        self.timeout = timeout
        message = f"Content generation timed out after {timeout:.1f}s"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class GenerationFailed(InfrastructureError):
    """Content generation returned an error."""


class DeliveryFailed(InfrastructureError):
    """The delivery channel did not confirm the send."""

    def __init__(self, action_id: str, detail: str) -> None:
        self.action_id = action_id
        self.detail = detail
        super().__init__(f"Delivery failed for action {action_id}: {detail}")
