"""
Call Gateway Factory — instantiates the voice-call provider client from config.

The orchestrator and ingestion layers only depend on the CallGateway
protocol below, so tests substitute AsyncMock fakes and a different
provider only needs a client with the same three methods:
  - create_order_call(...)    → {provider_call_id, status, raw}
  - create_customer_call(...) → {provider_call_id, status, raw}
  - fetch_call(id)            → provider call document
"""
from __future__ import annotations

import structlog
from typing import Any, Protocol, runtime_checkable

from config.settings import VoiceConfig

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  PROTOCOL — Common interface for voice-call providers
# ══════════════════════════════════════════════════════════════

@runtime_checkable
class CallGateway(Protocol):

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
        ...

    async def create_customer_call(self, *, call_id: str, customer_name: str, phone: str) -> dict[str, Any]:
        ...

    async def fetch_call(self, provider_call_id: str) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


def create_call_gateway(config: VoiceConfig) -> CallGateway:
    from channels.telephony.vapi_client import VapiClient
    client = VapiClient(config)
    logger.info("call_gateway_created",
                provider="vapi",
                configured=bool(config.api_key and config.phone_number_id))
    return client
