"""
Vapi Voice Client — Outbound AI calls through the Vapi REST API.

Call flow:
1. create_order_call() → Vapi dials the customer with the order assistant
2. Vapi posts lifecycle events to the public order webhook
   (<base>/api/order-vapi-webhook), correlated by `metadata.callLogId`
3. fetch_call() returns the call document (status, endedReason,
   analysis, artifact) for recovery sweeps and post-call polling

Errors: 429 / 5xx / network → TransientProviderError; other 4xx →
PermanentProviderError; missing credentials or public URL →
ProviderConfigError (raised before any request is made).

API Docs: https://docs.vapi.ai/api-reference/calls/create
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ProviderConfigError, ProviderHTTPClient, TransientProviderError
from config.settings import VoiceConfig

logger = structlog.get_logger()

ORDER_WEBHOOK_PATH = "/api/order-vapi-webhook"
CALL_NAME_MAX = 40


def resolve_public_base_url(*candidates: Optional[str]) -> Optional[str]:
    """First https, non-localhost candidate without its trailing slash."""
    for candidate in candidates:
        url = str(candidate or "").strip().rstrip("/")
        if not url.startswith("https://"):
            continue
        if "localhost" in url or "127.0.0.1" in url:
            continue
        return url
    return None


def build_order_first_message(
    customer_name: str, store_name: str, order_ref: str, total_price: str, language: str = "hindi",
) -> str:
    if str(language or "").strip().lower() == "gujarati":
        return (
            f"નમસ્તે {customer_name}, "
            f"હું {store_name} તરફથી બોલી રહ્યો છું. "
            f"તમે ₹{total_price} નો ઓર્ડર #{order_ref} કર્યો છે. "
            f"શું તમે આ ઓર્ડર કન્ફર્મ કરો છો?"
        )
    return (
        f"नमस्ते {customer_name}, "
        f"मैं {store_name} की तरफ से बोल रहा हूं। "
        f"आपने ₹{total_price} का Order #{order_ref} place किया है। "
        f"क्या आप इस ऑर्डर की पुष्टि करते हैं?"
    )


def build_customer_first_message(customer_name: str) -> str:
    name = str(customer_name or "").strip()
    if not name:
        return "Hello, how are you today?"
    return f"Hi {name}, how are you today?"


class VapiClient(ProviderHTTPClient):
    """Vapi REST API client for order-confirmation and generic calls."""

    provider = "vapi"

    def __init__(self, config: VoiceConfig, transport: httpx.AsyncBaseTransport = None):
        super().__init__(config.base_url, timeout_s=config.timeout_s, transport=transport)
        self.config = config

    def _client_kwargs(self) -> dict[str, Any]:
        return {"headers": {"Authorization": f"Bearer {self.config.api_key}"}}

    def _require_config(self, assistant_id: str) -> None:
        if not self.config.api_key or not self.config.phone_number_id or not assistant_id:
            raise ProviderConfigError(
                "Missing Vapi config: api_key, phone_number_id and assistant id are required",
                self.provider,
            )

    def order_webhook_url(self, request_base_url: str = None) -> str:
        base = resolve_public_base_url(
            request_base_url, self.config.webhook_base_url, self.config.app_url,
        )
        if not base:
            raise ProviderConfigError("Missing public webhook URL", self.provider)
        return f"{base}{ORDER_WEBHOOK_PATH}"

    # ── Calls ───────────────────────────────────────────────

    async def create_order_call(
        self,
        *,
        call_log_id: str,
        order_id: str,
        customer_name: str,
        phone_number: str,
        store_name: str,
        order_ref: str,
        total_price: str,
        request_base_url: str = None,
    ) -> dict[str, Any]:
        """
        Place an order-confirmation call.

        Returns:
            {"provider_call_id": "...", "status": "queued", "raw": {...}}
        """
        assistant_id = self.config.resolved_order_assistant_id
        self._require_config(assistant_id)
        server_url = self.order_webhook_url(request_base_url)

        payload = {
            "phoneNumberId": self.config.phone_number_id,
            "assistantId": assistant_id,
            "customer": {"name": customer_name, "number": phone_number},
            "name": f"COD-{str(order_ref)[-10:]}",
            "metadata": {
                "callLogId": call_log_id,
                "orderId": order_id,
                "type": "order_confirmation",
            },
            "assistantOverrides": {
                "serverUrl": server_url,
                "firstMessage": build_order_first_message(
                    customer_name, store_name, order_ref, total_price, self.config.call_language,
                ),
                "variableValues": {
                    "customerName": customer_name,
                    "storeName": store_name,
                    "orderId": str(order_ref),
                    "totalPrice": str(total_price),
                },
            },
        }

        logger.info("vapi_create_order_call", call_log_id=call_log_id, order_id=order_id)
        data = await self._request("POST", "/call/phone", json=payload)
        return self._normalize(data)

    async def create_customer_call(self, *, call_id: str, customer_name: str, phone: str) -> dict[str, Any]:
        """Place a generic (non-order) call with the default assistant."""
        self._require_config(self.config.assistant_id)
        payload = {
            "phoneNumberId": self.config.phone_number_id,
            "assistantId": self.config.assistant_id,
            "customer": {"name": customer_name, "number": phone},
            "name": f"AI-{customer_name[:20]}-{call_id[-8:]}"[:CALL_NAME_MAX],
            "assistantOverrides": {"firstMessage": build_customer_first_message(customer_name)},
        }

        logger.info("vapi_create_customer_call", call_id=call_id)
        data = await self._request("POST", "/call/phone", json=payload)
        return self._normalize(data)

    @retry(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def fetch_call(self, provider_call_id: str) -> dict[str, Any]:
        """Fetch the current call document (status, endedReason, analysis, artifact)."""
        if not self.config.api_key:
            raise ProviderConfigError("Missing Vapi api_key", self.provider)
        return await self._request("GET", f"/call/{provider_call_id}")

    @staticmethod
    def _normalize(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "provider_call_id": data.get("id"),
            "status": data.get("status", "queued"),
            "raw": data,
        }
