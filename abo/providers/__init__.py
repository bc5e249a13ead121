"""Content generation, delivery and owner notification collaborators.

The engine reaches the outside world only through the ContentGenerator,
DeliveryChannel and OwnerNotifier interfaces defined in base.py.
"""

from abo.providers.base import (
    ContentGenerator,
    DeliveryChannel,
    DeliveryReceipt,
    GenerationRequest,
    OutboundMessage,
    OwnerNotifier,
)
from abo.providers.litellm_generator import LiteLLMContentGenerator
from abo.providers.local import (
    DeliveryOwnerNotifier,
    LoggingOwnerNotifier,
    RecordingDeliveryChannel,
)
from abo.providers.resend import ResendDeliveryChannel
from abo.providers.template_generator import TemplateContentGenerator

__all__ = [
    "ContentGenerator",
    "DeliveryChannel",
    "DeliveryOwnerNotifier",
    "DeliveryReceipt",
    "GenerationRequest",
    "LiteLLMContentGenerator",
    "LoggingOwnerNotifier",
    "OutboundMessage",
    "OwnerNotifier",
    "RecordingDeliveryChannel",
    "ResendDeliveryChannel",
    "TemplateContentGenerator",
]
