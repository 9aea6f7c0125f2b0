"""
Twilio WhatsApp Client — Outbound WhatsApp messages via the Twilio
Messages API (form-encoded POST, basic auth).

Provides:
- WhatsAppGateway.send(to, body)         → {message_id, status, to}
- build_fallback_message(...)            → 1/2/3 reply menu after voice retries
- REMINDER_MESSAGE / HELP_MESSAGE        → canned texts
- twiml_message(text)                    → inbound reply document

API Docs: https://www.twilio.com/docs/messaging/api/message-resource
"""
from __future__ import annotations

import structlog
from typing import Any, Optional
from xml.sax.saxutils import escape

import httpx

from channels.base import ProviderConfigError, ProviderHTTPClient
from config.settings import MessagingConfig
from utils.phone import to_whatsapp_address

logger = structlog.get_logger()

REPLY_MENU = (
    "Please reply:\n"
    "1 - YES (Confirm)\n"
    "2 - NO (Cancel)\n"
    "3 - I did not place this order"
)
REMINDER_MESSAGE = "Reminder: Please confirm your order by replying YES or NO."
HELP_MESSAGE = f"Sorry, we didn't understand your reply.\n\n{REPLY_MENU}"


def build_fallback_message(customer_name: str, order_ref: str, total_price: str) -> str:
    return (
        f"Hi {customer_name},\n"
        f"You placed Order #{order_ref} worth ₹{total_price}.\n\n"
        f"{REPLY_MENU}"
    )


def twiml_message(text: Optional[str] = None) -> str:
    if not text:
        return "<Response></Response>"
    return f"<Response><Message>{escape(text)}</Message></Response>"


class WhatsAppGateway(ProviderHTTPClient):
    """Twilio Messages API client restricted to the WhatsApp channel."""

    provider = "twilio"

    def __init__(self, config: MessagingConfig, transport: httpx.AsyncBaseTransport = None):
        super().__init__(f"{config.base_url.rstrip('/')}/{config.account_sid}", transport=transport)
        self.config = config

    def _client_kwargs(self) -> dict[str, Any]:
        return {"auth": (self.config.account_sid, self.config.auth_token)}

    @property
    def from_address(self) -> str:
        if not self.config.whatsapp_from:
            raise ProviderConfigError("Missing WhatsApp sender (whatsapp_from)", self.provider)
        return to_whatsapp_address(self.config.whatsapp_from)

    async def send(self, to: str, body: str) -> dict[str, Any]:
        if not self.config.account_sid or not self.config.auth_token:
            raise ProviderConfigError("Missing Twilio account_sid or auth_token", self.provider)
        if not to:
            raise ProviderConfigError("Missing WhatsApp destination", self.provider)

        destination = to_whatsapp_address(to)
        payload = {"From": self.from_address, "To": destination, "Body": body}

        logger.info("whatsapp_send", to=destination)
        result = await self._request("POST", "/Messages.json", data=payload)
        logger.info("whatsapp_sent", to=destination, message_id=result.get("sid"))
        return {
            "message_id": result.get("sid", ""),
            "status": result.get("status", "queued"),
            "to": destination,
        }

    async def send_fallback(self, to: str, customer_name: str, order_ref: str, total_price: str) -> dict[str, Any]:
        return await self.send(to, build_fallback_message(customer_name, order_ref, total_price))

    async def send_reminder(self, to: str) -> dict[str, Any]:
        return await self.send(to, REMINDER_MESSAGE)
