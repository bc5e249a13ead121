"""Abstract collaborators the engine talks to: generation, delivery, owner notices.

The orchestrator and lifecycle only see these interfaces. Concrete
implementations live beside this module and are wired up by the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from abo.schemas.actions import ActionModifications, AgentAction, GeneratedContent
from abo.schemas.agents import AgentType, BrandSettings, Channel
from abo.schemas.situation import ActionDetails, SubscriberSnapshot

# ── Content generation ───────────────────────────────────────────


class GenerationRequest(BaseModel):
    """Everything a generator may use to write one message."""

    agent_type: AgentType
    trigger: str
    action_type: str
    strategy: str
    description: str = ""
    subscriber: SubscriberSnapshot
    details: ActionDetails
    brand: BrandSettings = Field(default_factory=BrandSettings)
    context: dict[str, Any] = Field(default_factory=dict, description="Validated event payload")
    memory_digest: str = ""
    modifications: ActionModifications | None = Field(
        default=None, description="Owner edits, set when regenerating a pending action"
    )

    def template_variables(self) -> dict[str, Any]:
        """Flat variables shared by the prompt and email templates."""
        subscriber = self.subscriber
        amount = self.context.get("amount")
        currency = (self.context.get("currency") or "eur").upper()
        return {
            "agent_type": self.agent_type.value,
            "trigger": self.trigger,
            "trigger_label": self.trigger.replace("_", " "),
            "action_type": self.action_type,
            "strategy": self.strategy,
            "description": self.description,
            "subscriber_name": subscriber.name or "there",
            "subscriber_email": subscriber.email,
            "plan": subscriber.plan or "your subscription",
            "mrr": format_cents(subscriber.mrr, currency) if subscriber.mrr else None,
            "tenure_months": subscriber.tenure_months,
            "amount": format_cents(amount, currency) if isinstance(amount, int) else None,
            "context": self.context,
            "details": self.details,
            "brand": self.brand,
            "company_name": self.brand.company_name or "our team",
            "signature": self.brand.signature or f"The {self.brand.company_name or 'team'}",
            "memory_digest": self.memory_digest,
            "note": self.details.note,
        }


def format_cents(cents: int, currency: str = "EUR") -> str:
    return f"{cents / 100:,.2f} {currency}"


class ContentGenerator(ABC):
    """Writes the subject and body of an outbound message."""

    name: str = "generator"

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GeneratedContent:
        """Produce content for ``request``.

        Raises:
            GenerationTimeout: The generator did not answer in time.
            GenerationFailed: The generator failed for another reason.
        """


# ── Delivery ─────────────────────────────────────────────────────


class OutboundMessage(BaseModel):
    to: str
    subject: str
    body: str
    channel: Channel = Channel.EMAIL
    from_name: str = ""
    reply_to: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class DeliveryReceipt(BaseModel):
    message_id: str | None = None
    provider: str = ""


class DeliveryChannel(ABC):
    """Sends messages to subscribers or owners."""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        """Send one message.

        Raises:
            DeliveryFailed: The provider refused the message or was unreachable.
        """

    async def aclose(self) -> None:
        """Release network resources. Channels without any keep the default."""
        return None


# ── Owner notification ───────────────────────────────────────────


class OwnerNotifier(ABC):
    """Tells the business owner about things the engine did on their behalf."""

    @abstractmethod
    async def actions_expired(
        self, user_id: str, recipient: str | None, actions: list[AgentAction]
    ) -> None:
        """Report actions that expired before anyone reviewed them."""

    @abstractmethod
    async def action_auto_approved(
        self, user_id: str, recipient: str | None, action: AgentAction
    ) -> None:
        """Send the owner a copy of an action approved by policy."""
