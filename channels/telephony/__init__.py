"""
Voice-call provider clients.

Usage:
    from channels.telephony import create_call_gateway
    gateway = create_call_gateway(settings.voice)
    result = await gateway.create_order_call(call_log_id=..., ...)
"""
from channels.telephony.vapi_client import (
    VapiClient, resolve_public_base_url,
    build_order_first_message, build_customer_first_message,
)
from channels.telephony.factory import CallGateway, create_call_gateway

__all__ = [
    "VapiClient", "CallGateway", "create_call_gateway",
    "resolve_public_base_url", "build_order_first_message", "build_customer_first_message",
]
