"""
Tests for the provider HTTP clients.

Both clients are exercised against httpx.MockTransport, so the request
bodies, auth and error mapping are checked without any network.
"""
import json
from urllib.parse import parse_qs

import httpx
import pytest

from channels.base import (
    MessageDeduplicator, PermanentProviderError, ProviderConfigError,
    TransientProviderError, classify_http_status,
)
from channels.telephony.factory import CallGateway, create_call_gateway
from channels.telephony.vapi_client import (
    VapiClient, build_customer_first_message, build_order_first_message, resolve_public_base_url,
)
from channels.twilio_whatsapp import (
    REMINDER_MESSAGE, WhatsAppGateway, build_fallback_message, twiml_message,
)
from config.settings import MessagingConfig, VoiceConfig


def _voice_config(**overrides) -> VoiceConfig:
    data = {
        "api_key": "vapi-key",
        "phone_number_id": "pn_1",
        "assistant_id": "asst_generic",
        "order_assistant_id": "asst_order",
        "webhook_base_url": "https://cod.example.com/",
    }
    data.update(overrides)
    return VoiceConfig(**data)


def _messaging_config(**overrides) -> MessagingConfig:
    data = {"account_sid": "AC123", "auth_token": "secret", "whatsapp_from": "+14155238886"}
    data.update(overrides)
    return MessagingConfig(**data)


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


ORDER_CALL_KWARGS = dict(
    call_log_id="log_1",
    order_id="ord_1",
    customer_name="Priya",
    phone_number="+919876543201",
    store_name="chai-corner",
    order_ref="1001",
    total_price="499.00",
)


# ──────────────────────────────────────────────────────────────
#  Shared pieces
# ──────────────────────────────────────────────────────────────

class TestErrorClassification:
    def test_statuses(self):
        assert isinstance(classify_http_status(429, "slow down"), TransientProviderError)
        assert isinstance(classify_http_status(503, "down"), TransientProviderError)
        assert isinstance(classify_http_status(400, "bad"), PermanentProviderError)
        assert isinstance(classify_http_status(404, "missing"), PermanentProviderError)

    def test_flags(self):
        error = classify_http_status(500, "boom", "vapi")
        assert error.retryable is True
        assert error.provider == "vapi"
        assert error.status == 500
        assert ProviderConfigError("x").retryable is False


class TestDeduplicator:
    def test_second_delivery_is_duplicate(self):
        dedup = MessageDeduplicator()
        assert dedup.is_duplicate("SM1") is False
        assert dedup.is_duplicate("SM1") is True
        assert dedup.is_duplicate("SM2") is False

    def test_empty_key_never_duplicate(self):
        dedup = MessageDeduplicator()
        assert dedup.is_duplicate("") is False
        assert dedup.is_duplicate("") is False

    def test_capacity_evicts_oldest(self):
        dedup = MessageDeduplicator(max_size=2)
        for key in ("a", "b", "c"):
            dedup.is_duplicate(key)
        dedup.is_duplicate("d")
        assert dedup.is_duplicate("a") is False

    def test_expired_keys_forgotten(self):
        dedup = MessageDeduplicator(ttl_seconds=-1)
        dedup.is_duplicate("SM1")
        assert dedup.is_duplicate("SM1") is False


# ──────────────────────────────────────────────────────────────
#  Vapi
# ──────────────────────────────────────────────────────────────

class TestVapiHelpers:
    def test_public_base_url(self):
        assert resolve_public_base_url(None, "http://plain.example", "https://ok.example/") == "https://ok.example"
        assert resolve_public_base_url("https://localhost:8000", "https://127.0.0.1") is None

    def test_first_messages(self):
        hindi = build_order_first_message("Priya", "chai-corner", "1001", "499.00")
        assert "Order #1001" in hindi and "₹499.00" in hindi
        gujarati = build_order_first_message("Priya", "chai-corner", "1001", "499.00", "Gujarati")
        assert "ઓર્ડર #1001" in gujarati
        assert build_customer_first_message(" Amit ") == "Hi Amit, how are you today?"
        assert build_customer_first_message("") == "Hello, how are you today?"


class TestVapiClient:
    @pytest.mark.asyncio
    async def test_create_order_call_payload(self):
        recorder = Recorder(httpx.Response(201, json={"id": "call_abc", "status": "queued"}))
        client = VapiClient(_voice_config(), transport=recorder.transport)

        result = await client.create_order_call(**ORDER_CALL_KWARGS)
        await client.close()

        assert result["provider_call_id"] == "call_abc"
        assert result["status"] == "queued"

        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.vapi.ai/call/phone"
        assert request.headers["Authorization"] == "Bearer vapi-key"
        body = json.loads(request.content)
        assert body["assistantId"] == "asst_order"
        assert body["customer"] == {"name": "Priya", "number": "+919876543201"}
        assert body["metadata"] == {"callLogId": "log_1", "orderId": "ord_1", "type": "order_confirmation"}
        assert body["assistantOverrides"]["serverUrl"] == "https://cod.example.com/api/order-vapi-webhook"
        assert body["assistantOverrides"]["variableValues"]["orderId"] == "1001"

    @pytest.mark.asyncio
    async def test_request_base_url_preferred(self):
        recorder = Recorder(httpx.Response(201, json={"id": "call_abc"}))
        client = VapiClient(_voice_config(), transport=recorder.transport)
        await client.create_order_call(**ORDER_CALL_KWARGS, request_base_url="https://tunnel.example")
        body = json.loads(recorder.requests[0].content)
        assert body["assistantOverrides"]["serverUrl"] == "https://tunnel.example/api/order-vapi-webhook"

    @pytest.mark.asyncio
    async def test_order_assistant_falls_back_to_default(self):
        recorder = Recorder(httpx.Response(201, json={"id": "call_abc"}))
        client = VapiClient(_voice_config(order_assistant_id=""), transport=recorder.transport)
        await client.create_order_call(**ORDER_CALL_KWARGS)
        assert json.loads(recorder.requests[0].content)["assistantId"] == "asst_generic"

    @pytest.mark.asyncio
    async def test_missing_config_fails_before_request(self):
        recorder = Recorder(httpx.Response(201, json={}))
        client = VapiClient(_voice_config(api_key=""), transport=recorder.transport)
        with pytest.raises(ProviderConfigError):
            await client.create_order_call(**ORDER_CALL_KWARGS)

        client = VapiClient(_voice_config(webhook_base_url="", app_url="http://insecure"), transport=recorder.transport)
        with pytest.raises(ProviderConfigError, match="webhook URL"):
            await client.create_order_call(**ORDER_CALL_KWARGS)
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_create_customer_call(self):
        recorder = Recorder(httpx.Response(201, json={"id": "gen_1", "status": "queued"}))
        client = VapiClient(_voice_config(), transport=recorder.transport)

        result = await client.create_customer_call(call_id="cc_12345678", customer_name="Amit", phone="+919812345678")

        assert result["provider_call_id"] == "gen_1"
        body = json.loads(recorder.requests[0].content)
        assert body["assistantId"] == "asst_generic"
        assert body["name"] == "AI-Amit-12345678"
        assert "metadata" not in body

    @pytest.mark.asyncio
    async def test_rejected_number_is_permanent(self):
        recorder = Recorder(httpx.Response(400, json={"message": ["customer.number is invalid"]}))
        client = VapiClient(_voice_config(), transport=recorder.transport)
        with pytest.raises(PermanentProviderError, match="customer.number is invalid") as info:
            await client.create_order_call(**ORDER_CALL_KWARGS)
        assert info.value.status == 400

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        recorder = Recorder(httpx.Response(429, text="Too Many Requests"))
        client = VapiClient(_voice_config(), transport=recorder.transport)
        with pytest.raises(TransientProviderError):
            await client.create_order_call(**ORDER_CALL_KWARGS)

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = VapiClient(_voice_config(), transport=httpx.MockTransport(refuse))
        with pytest.raises(TransientProviderError, match="unreachable"):
            await client.create_order_call(**ORDER_CALL_KWARGS)

    @pytest.mark.asyncio
    async def test_fetch_call(self):
        document = {"id": "call_abc", "status": "ended", "endedReason": "customer-ended-call"}
        recorder = Recorder(httpx.Response(200, json=document))
        client = VapiClient(_voice_config(), transport=recorder.transport)

        assert await client.fetch_call("call_abc") == document
        assert recorder.requests[0].method == "GET"
        assert recorder.requests[0].url.path == "/call/call_abc"

    @pytest.mark.asyncio
    async def test_fetch_call_retries_once_on_transient(self):
        recorder = Recorder(
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json={"id": "call_abc", "status": "in-progress"}),
        )
        client = VapiClient(_voice_config(), transport=recorder.transport)
        assert (await client.fetch_call("call_abc"))["status"] == "in-progress"
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_fetch_call_not_found(self):
        recorder = Recorder(httpx.Response(404, json={"error": "Not Found"}))
        client = VapiClient(_voice_config(), transport=recorder.transport)
        with pytest.raises(PermanentProviderError, match="Not Found"):
            await client.fetch_call("missing")
        assert len(recorder.requests) == 1

    def test_factory_returns_protocol(self):
        gateway = create_call_gateway(_voice_config())
        assert isinstance(gateway, VapiClient)
        assert isinstance(gateway, CallGateway)


# ──────────────────────────────────────────────────────────────
#  Twilio WhatsApp
# ──────────────────────────────────────────────────────────────

class TestWhatsAppGateway:
    @pytest.mark.asyncio
    async def test_send_form_and_auth(self):
        recorder = Recorder(httpx.Response(201, json={"sid": "SM123", "status": "queued"}))
        gateway = WhatsAppGateway(_messaging_config(), transport=recorder.transport)

        result = await gateway.send("+919876543201", "hello")
        await gateway.close()

        assert result == {"message_id": "SM123", "status": "queued", "to": "whatsapp:+919876543201"}
        request = recorder.requests[0]
        assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert request.headers["Authorization"].startswith("Basic ")
        form = parse_qs(request.content.decode())
        assert form == {
            "From": ["whatsapp:+14155238886"],
            "To": ["whatsapp:+919876543201"],
            "Body": ["hello"],
        }

    @pytest.mark.asyncio
    async def test_fallback_and_reminder_bodies(self):
        recorder = Recorder(httpx.Response(201, json={"sid": "SM1"}))
        gateway = WhatsAppGateway(_messaging_config(), transport=recorder.transport)

        await gateway.send_fallback("+919876543201", "Priya", "1001", "499.00")
        await gateway.send_reminder("whatsapp:+919876543201")

        bodies = [parse_qs(r.content.decode())["Body"][0] for r in recorder.requests]
        assert bodies[0] == build_fallback_message("Priya", "1001", "499.00")
        assert "Order #1001 worth ₹499.00" in bodies[0]
        assert "1 - YES (Confirm)" in bodies[0]
        assert bodies[1] == REMINDER_MESSAGE
        assert parse_qs(recorder.requests[1].content.decode())["To"] == ["whatsapp:+919876543201"]

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        recorder = Recorder(httpx.Response(201, json={}))
        gateway = WhatsAppGateway(_messaging_config(auth_token=""), transport=recorder.transport)
        with pytest.raises(ProviderConfigError):
            await gateway.send("+919876543201", "hello")

        gateway = WhatsAppGateway(_messaging_config(whatsapp_from=""), transport=recorder.transport)
        with pytest.raises(ProviderConfigError, match="sender"):
            await gateway.send("+919876543201", "hello")
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_error_mapping(self):
        gateway = WhatsAppGateway(
            _messaging_config(), transport=Recorder(httpx.Response(429, json={"message": "Too many"})).transport,
        )
        with pytest.raises(TransientProviderError):
            await gateway.send("+919876543201", "hello")

        gateway = WhatsAppGateway(
            _messaging_config(),
            transport=Recorder(httpx.Response(400, json={"message": "Invalid 'To' number"})).transport,
        )
        with pytest.raises(PermanentProviderError, match="Invalid 'To' number"):
            await gateway.send("+919876543201", "hello")


class TestTwiml:
    def test_empty_response(self):
        assert twiml_message() == "<Response></Response>"

    def test_message_escaped(self):
        assert twiml_message("Tom & Jerry <3") == "<Response><Message>Tom &amp; Jerry &lt;3</Message></Response>"
