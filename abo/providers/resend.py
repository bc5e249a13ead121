"""Email delivery through the Resend HTTP API."""

from __future__ import annotations

import logging
import os

import httpx

from abo.errors import DeliveryFailed
from abo.providers.base import DeliveryChannel, DeliveryReceipt, OutboundMessage
from abo.schemas.agents import Channel

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
RESEND_API_KEY_ENV = "RESEND_API_KEY"


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("name") or payload)[:200]
    return str(payload)[:200]


class ResendDeliveryChannel(DeliveryChannel):
    """Sends email with Resend. SMS is not supported by this channel."""

    def __init__(
        self,
        sender: str,
        *,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._sender = sender
        self._api_key = api_key or os.environ.get(RESEND_API_KEY_ENV, "")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        action_id = message.tags.get("action_id", "")
        if message.channel != Channel.EMAIL:
            raise DeliveryFailed(action_id, f"channel {message.channel} is not supported by Resend")
        if not self._api_key:
            raise DeliveryFailed(action_id, f"{RESEND_API_KEY_ENV} is not set")

        sender = f"{message.from_name} <{self._sender}>" if message.from_name else self._sender
        payload: dict = {
            "from": sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.body,
            "tags": [{"name": k, "value": v} for k, v in message.tags.items()],
        }
        if message.reply_to:
            payload["reply_to"] = message.reply_to

        try:
            response = await self._http_client.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise DeliveryFailed(action_id, f"Resend request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise DeliveryFailed(
                action_id,
                f"Resend returned {response.status_code}: {_safe_error_message(response)}",
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise DeliveryFailed(action_id, "Resend returned invalid JSON") from exc

        message_id = body.get("id") if isinstance(body, dict) else None
        logger.debug("Resend accepted message %s", message_id)
        return DeliveryReceipt(message_id=message_id, provider="resend")

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
