"""
Webhook/Reply Ingestion — Turns provider callbacks into state machine calls.

Processors:
  OrderCallWebhookProcessor     voice webhook, order flow
  CustomerCallWebhookProcessor  voice webhook, generic flow
  WhatsAppReplyProcessor        inbound WhatsApp reply → TwiML

Order-flow resolution for one webhook:

    metadata.callLogId / call.id ──▶ call attempt
        │
        ├─ call.started / status-update     → heartbeat (IN_PROGRESS)
        ├─ structured > end reason > transcript   (no network)
        ├─ terminal, unresolved → provider quick check (fetch_call)
        └─ still unresolved → background poll, then RECALL_REQUEST

Handlers never raise to the provider: errors are logged and acknowledged.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from channels.base import MessageDeduplicator, ProviderError
from channels.telephony.factory import CallGateway
from channels.twilio_whatsapp import HELP_MESSAGE, twiml_message
from config.settings import SchedulerConfig
from context.state_machine import OrderCallStateMachine
from core.customer_calls import CustomerCallService
from core.intent_resolver import (
    CALL_STATUS_RULE, FAILED_EVENTS, NO_ANSWER_EVENTS, WebhookEvent,
    call_is_active, map_whatsapp_reply, parse_webhook,
    resolve_call_outcome, resolve_from_call_details, resolve_from_webhook,
)
from database.store_base import BaseOrderStore
from models.schemas import (
    CallLog, CallOutcome, CallResult, CallStatus, Intent,
    RETRY_INTENTS, TERMINAL_ORDER_STATUSES,
)
from utils.phone import strip_whatsapp_prefix

logger = structlog.get_logger()

ACK = {"ok": True}
RECENT_EVENTS_LIMIT = 20
POLL_EXHAUSTED_REASON = "No answer or no clear intent detected after polling"


# ══════════════════════════════════════════════════════════════
#  ORDER FLOW
# ══════════════════════════════════════════════════════════════

class OrderCallWebhookProcessor:
    """
    Usage:
        processor = OrderCallWebhookProcessor(store, state_machine, gateway, settings.scheduler)
        ack = await processor.handle(body)     # always {"ok": True, ...}
        await processor.aclose()               # cancels outstanding polls
    """

    def __init__(
        self,
        store: BaseOrderStore,
        state_machine: OrderCallStateMachine,
        gateway: CallGateway,
        scheduler: SchedulerConfig = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.state_machine = state_machine
        self.gateway = gateway
        self.scheduler = scheduler or SchedulerConfig()
        self._sleep = sleep
        self._polls: set[asyncio.Task] = set()
        self._recent: deque[dict[str, Any]] = deque(maxlen=RECENT_EVENTS_LIMIT)

    def recent_events(self) -> list[dict[str, Any]]:
        """Newest first."""
        return list(reversed(self._recent))

    @property
    def pending_polls(self) -> int:
        return len(self._polls)

    async def handle(self, body: Any) -> dict[str, Any]:
        event = parse_webhook(body)
        try:
            return await self._process(body, event)
        except Exception as e:
            logger.error("order_webhook_error",
                         event_type=event.event_type,
                         provider_call_id=event.provider_call_id,
                         error=str(e))
            return {**ACK, "warning": "processing_error"}

    async def _process(self, body: Any, event: WebhookEvent) -> dict[str, Any]:
        call_log = await self._locate(event)
        if call_log is None:
            logger.info("order_webhook_unmatched",
                        event_type=event.event_type, provider_call_id=event.provider_call_id)
            self._record("unmatched", event)
            return ACK

        if event.is_in_progress:
            marked = await self.store.mark_call_log_in_progress(call_log.id, event.provider_call_id)
            self._record("in_progress", event, call_log, detail={"marked": marked})
            return ACK

        intent, source = resolve_from_webhook(body, event)
        if intent is None and event.event_type in NO_ANSWER_EVENTS | FAILED_EVENTS:
            intent, source = Intent.RECALL_REQUEST, "event_type"
        if intent:
            await self._apply(call_log, intent, source, event)
            return ACK

        if not event.is_terminal:
            self._record("ignored", event, call_log)
            return ACK

        provider_call_id = event.provider_call_id or call_log.provider_call_id
        if provider_call_id:
            intent = await self._quick_check(provider_call_id)
            if intent:
                await self._apply(call_log, intent, "quick_check", event)
                return ACK

        self._spawn_poll(call_log, provider_call_id, event)
        return ACK

    async def _locate(self, event: WebhookEvent) -> Optional[CallLog]:
        call_log_id = event.metadata.get("callLogId")
        if call_log_id:
            call_log = await self.store.get_call_log(str(call_log_id))
            if call_log:
                return call_log
        if event.provider_call_id:
            return await self.store.get_call_log_by_provider_id(event.provider_call_id)
        return None

    async def _quick_check(self, provider_call_id: str) -> Optional[Intent]:
        try:
            details = await self.gateway.fetch_call(provider_call_id)
        except ProviderError as e:
            logger.warning("quick_check_failed", provider_call_id=provider_call_id, error=str(e))
            return None
        return resolve_from_call_details(details)

    async def _apply(
        self,
        call_log: CallLog,
        intent: Intent,
        source: str,
        event: WebhookEvent,
        failure_reason: str = None,
        expected_status: CallStatus = None,
    ) -> CallResult:
        if failure_reason is None and intent in RETRY_INTENTS:
            failure_reason = event.ended_reason or event.event_type or None
        result = await self.state_machine.apply_result(
            call_log.order_id, intent,
            call_log_id=call_log.id,
            provider_call_id=event.provider_call_id,
            failure_reason=failure_reason,
            expected_status=expected_status,
        )
        self._record(source, event, call_log, intent=intent, result=result)
        return result

    # ── Post-call polling ───────────────────────────────────

    def _spawn_poll(self, call_log: CallLog, provider_call_id: Optional[str], event: WebhookEvent) -> None:
        task = asyncio.get_running_loop().create_task(self._poll(call_log, provider_call_id, event))
        self._polls.add(task)
        task.add_done_callback(self._polls.discard)
        logger.info("post_call_poll_scheduled",
                    call_log_id=call_log.id,
                    provider_call_id=provider_call_id,
                    attempts=self.scheduler.poll_attempts)

    async def _poll(self, call_log: CallLog, provider_call_id: Optional[str], event: WebhookEvent) -> None:
        try:
            if provider_call_id:
                for attempt in range(1, self.scheduler.poll_attempts + 1):
                    await self._sleep(self.scheduler.poll_interval_s)
                    try:
                        details = await self.gateway.fetch_call(provider_call_id)
                    except ProviderError as e:
                        logger.warning("post_call_poll_fetch_failed",
                                       call_log_id=call_log.id, attempt=attempt, error=str(e))
                        continue
                    if call_is_active(details):
                        continue
                    intent = resolve_from_call_details(details)
                    if intent:
                        await self._apply(call_log, intent, "poll_match", event)
                        return

            await self._apply(
                call_log, Intent.RECALL_REQUEST, "poll_exhausted", event,
                failure_reason=POLL_EXHAUSTED_REASON,
                expected_status=CallStatus.IN_PROGRESS,
            )
        except Exception as e:
            logger.error("post_call_poll_error", call_log_id=call_log.id, error=str(e))

    async def wait_for_polls(self) -> None:
        if self._polls:
            await asyncio.gather(*list(self._polls), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._polls):
            task.cancel()
        await self.wait_for_polls()

    # ── Ring buffer ─────────────────────────────────────────

    def _record(
        self,
        label: str,
        event: WebhookEvent,
        call_log: CallLog = None,
        intent: Intent = None,
        result: CallResult = None,
        detail: dict[str, Any] = None,
    ) -> None:
        entry = {
            "at": datetime.now(timezone.utc).isoformat(),
            "resolution": label,
            "event_type": event.event_type,
            "provider_call_id": event.provider_call_id,
            "call_log_id": call_log.id if call_log else None,
            "intent": intent.value if intent else None,
        }
        if result is not None:
            entry.update(
                call_status=result.call_status.value,
                order_status=result.order_status.value,
                ignored=result.ignored,
                reason=result.reason,
            )
        if detail:
            entry.update(detail)
        self._recent.append(entry)


# ══════════════════════════════════════════════════════════════
#  GENERIC FLOW
# ══════════════════════════════════════════════════════════════

class CustomerCallWebhookProcessor:

    def __init__(self, service: CustomerCallService):
        self.service = service

    async def handle(self, body: Any) -> dict[str, Any]:
        event = parse_webhook(body)
        try:
            await self._process(event)
        except Exception as e:
            logger.error("customer_call_webhook_error",
                         event_type=event.event_type,
                         provider_call_id=event.provider_call_id,
                         error=str(e))
            return {**ACK, "warning": "processing_error"}
        return ACK

    async def _process(self, event: WebhookEvent) -> None:
        if not event.provider_call_id:
            return

        if event.event_type in NO_ANSWER_EVENTS:
            outcome, reason = CallOutcome.FAILED, event.ended_reason or "no-answer"
        elif event.event_type in FAILED_EVENTS:
            outcome, reason = CallOutcome.FAILED, event.ended_reason or "call-failed"
        elif event.is_terminal:
            outcome = resolve_call_outcome(
                event.ended_reason, CALL_STATUS_RULE.extract(event.call), event.event_type,
            )
            reason = event.ended_reason
        else:
            return

        if outcome is None:
            logger.info("customer_call_outcome_pending",
                        provider_call_id=event.provider_call_id, reason=event.ended_reason)
            return
        await self.service.handle_call_end(event.provider_call_id, outcome, reason)


# ══════════════════════════════════════════════════════════════
#  WHATSAPP REPLIES
# ══════════════════════════════════════════════════════════════

ALREADY_RECORDED = "Your response has already been recorded. Thank you!"
ALREADY_PROCESSED = "This order has already been processed. No further action needed."
NO_PENDING_ORDER = "No pending order found for your number."
SOMETHING_WENT_WRONG = "Something went wrong. Please try again later."

REPLY_REASONS = {
    Intent.CONFIRM: "Confirmed via WhatsApp",
    Intent.CANCEL: "Cancelled via WhatsApp",
    Intent.WRONG_NUMBER: "Wrong number via WhatsApp",
}


def reply_text(intent: Intent, order_ref: str) -> str:
    if intent == Intent.CONFIRM:
        return f"✅ Your Order #{order_ref} has been CONFIRMED. Thank you!"
    if intent == Intent.CANCEL:
        return f"❌ Your Order #{order_ref} has been CANCELLED."
    return "⚠️ We've noted this was not your order. Sorry for the inconvenience."


class WhatsAppReplyProcessor:
    """Maps one inbound WhatsApp message to a TwiML reply document."""

    def __init__(
        self,
        store: BaseOrderStore,
        state_machine: OrderCallStateMachine,
        deduplicator: MessageDeduplicator = None,
    ):
        self.store = store
        self.state_machine = state_machine
        self.deduplicator = deduplicator or MessageDeduplicator()

    async def handle(self, form: dict[str, Any]) -> str:
        message_sid = str(form.get("MessageSid") or "")
        if self.deduplicator.is_duplicate(message_sid):
            logger.info("whatsapp_reply_duplicate", message_sid=message_sid)
            return twiml_message()

        phone = strip_whatsapp_prefix(form.get("From"))
        if not phone:
            return twiml_message()

        intent = map_whatsapp_reply(form.get("Body"))
        if intent is None:
            logger.info("whatsapp_reply_unrecognised", phone=phone)
            return twiml_message(HELP_MESSAGE)

        try:
            return twiml_message(await self._apply(phone, intent))
        except Exception as e:
            logger.error("whatsapp_reply_error", phone=phone, intent=intent.value, error=str(e))
            return twiml_message(SOMETHING_WENT_WRONG)

    async def _apply(self, phone: str, intent: Intent) -> str:
        call_log = await self.store.get_latest_open_call_log_by_phone(phone)
        if call_log is None or call_log.whatsapp_replied:
            return await self._closed_reply(phone, call_log)

        result = await self.state_machine.apply_result(
            call_log.order_id, intent,
            call_log_id=call_log.id,
            from_whatsapp=True,
            failure_reason=REPLY_REASONS.get(intent),
        )
        if result.ignored:
            logger.info("whatsapp_reply_ignored", call_log_id=call_log.id, reason=result.reason)
            return ALREADY_PROCESSED

        logger.info("whatsapp_reply_applied",
                    call_log_id=call_log.id, intent=intent.value, order_status=result.order_status.value)
        order = call_log.order or await self.store.get_order(call_log.order_id)
        return reply_text(intent, order.display_ref if order else call_log.order_id)

    async def _closed_reply(self, phone: str, open_log: Optional[CallLog]) -> str:
        latest = open_log or await self.store.get_latest_call_log_by_phone(phone)
        if latest is None:
            return NO_PENDING_ORDER
        if latest.whatsapp_replied:
            return ALREADY_RECORDED
        if latest.order and latest.order.order_status in TERMINAL_ORDER_STATUSES:
            return ALREADY_PROCESSED
        return NO_PENDING_ORDER
