"""Provider gateways: voice calls (Vapi) and WhatsApp messaging (Twilio)."""
from channels.base import (
    ProviderError,
    PermanentProviderError,
    TransientProviderError,
    ProviderConfigError,
    MessageDeduplicator,
    ProviderHTTPClient,
    classify_http_status,
)
from channels.twilio_whatsapp import WhatsAppGateway, build_fallback_message, twiml_message

__all__ = [
    "ProviderError", "PermanentProviderError", "TransientProviderError",
    "ProviderConfigError", "MessageDeduplicator", "ProviderHTTPClient",
    "classify_http_status",
    "WhatsAppGateway", "build_fallback_message", "twiml_message",
]
