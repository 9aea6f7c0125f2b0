"""
Orchestrator — Coordinates order confirmation calls end to end.

Architecture:
  Admission:  order-created event / manual UI → store (PENDING + QUEUED)
              → begin_dial (conditional) → CallGateway.create_order_call

  Sweeps:     claim queue → dial or query provider, one row at a time
              due_retry          → re-dial
              stale_queued       → first dial that never happened
              stale_in_progress  → fetch_call → resolved intent / RECALL_REQUEST

  WhatsApp:   fallback event (after commit) → send menu
              reminder claim    → second message
              reply timeout     → WhatsApp-sourced NO_RESPONSE

Every status change goes through OrderCallStateMachine.apply_result or a
store claim; this class only decides what to ask for and when.
"""
from __future__ import annotations

import structlog
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from backend.commerce import build_order_input
from channels.base import PermanentProviderError, ProviderError
from channels.telephony.factory import CallGateway
from channels.twilio_whatsapp import WhatsAppGateway
from config.settings import OrdersConfig, RetryConfig, SchedulerConfig
from context.state_machine import OrderCallStateMachine
from core.errors import NotFoundError, ValidationError
from core.intent_resolver import call_ended_at, call_is_active, resolve_from_call_details
from database.store_base import BaseOrderStore
from job_queue.claims import CallLogClaimQueues
from models.schemas import (
    CallLog, CallResult, CallStatus, Intent, Order, OrderInput,
    WhatsAppFallbackEvent, TERMINAL_ORDER_STATUSES,
)
from utils.phone import check_allowed_prefix, validate_phone

logger = structlog.get_logger()

RECALLABLE_STATUSES = frozenset({
    CallStatus.QUEUED, CallStatus.RETRY_SCHEDULED, CallStatus.FAILED, CallStatus.WHATSAPP_SENT,
})
MANUAL_DECISIONS = {
    Intent.CONFIRM: "Manually confirmed from UI",
    Intent.CANCEL: "Manually cancelled from UI",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dial_failure_intent(error: Exception) -> Intent:
    """Map a failed dial to the intent that records it."""
    if isinstance(error, PermanentProviderError):
        message = str(error).lower()
        if "wrong number" in message or "invalid" in message:
            return Intent.WRONG_NUMBER
    return Intent.RECALL_REQUEST


def _format_amount(amount: Any) -> str:
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number") from None
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than 0")
    return f"{value:.2f}"


class OrderCallOrchestrator:
    """
    Order-flow coordinator shared by the API, webhooks and the sweepers.

    Dial errors never escape a sweep; UI actions pass `propagate=True` so
    the caller sees the provider error after the failure has been recorded.
    """

    def __init__(
        self,
        store: BaseOrderStore,
        state_machine: OrderCallStateMachine,
        gateway: CallGateway,
        whatsapp: WhatsAppGateway = None,
        *,
        retry: RetryConfig = None,
        scheduler: SchedulerConfig = None,
        orders: OrdersConfig = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.state_machine = state_machine
        self.gateway = gateway
        self.whatsapp = whatsapp
        self.retry = retry or state_machine.policy
        self.scheduler = scheduler or SchedulerConfig()
        self.orders = orders or OrdersConfig()
        self.claims = CallLogClaimQueues(self.retry)
        self._clock = clock

    # ══════════════════════════════════════════════════════════
    #  DIALLING
    # ══════════════════════════════════════════════════════════

    async def dial(
        self,
        call_log: CallLog,
        *,
        from_statuses: Iterable[CallStatus] = (CallStatus.QUEUED,),
        request_base_url: str = None,
        already_claimed: bool = False,
        propagate: bool = False,
    ) -> dict[str, Any]:
        """
        Place the voice call for one attempt.

        Returns:
            {"dialed": True, "provider_call_id": "..."}
            {"dialed": False, "reason": "not_claimable" | "dial_failed", ...}
        """
        if not already_claimed:
            won = await self.store.begin_dial(call_log.id, from_statuses, now=self._clock())
            if not won:
                logger.info("dial_skipped", call_log_id=call_log.id, status=call_log.status.value)
                return {"dialed": False, "reason": "not_claimable"}

        order = call_log.order or await self.store.get_order(call_log.order_id)
        if order is None:
            raise NotFoundError(f"Order {call_log.order_id} not found")

        try:
            placed = await self.gateway.create_order_call(
                call_log_id=call_log.id,
                order_id=order.id,
                customer_name=order.customer_name,
                phone_number=order.phone_number,
                store_name=order.store_name,
                order_ref=order.display_ref,
                total_price=order.total_price,
                request_base_url=request_base_url,
            )
        except ProviderError as e:
            result = await self.handle_dial_failure(call_log, e)
            if propagate:
                raise
            return {"dialed": False, "reason": "dial_failed", "error": str(e), "result": result}

        provider_call_id = placed.get("provider_call_id")
        if provider_call_id:
            await self.store.set_call_log_provider_id(call_log.id, provider_call_id)
        logger.info("order_call_placed",
                    order_id=order.id,
                    call_log_id=call_log.id,
                    provider_call_id=provider_call_id,
                    retry_count=call_log.retry_count)
        return {"dialed": True, "provider_call_id": provider_call_id}

    async def handle_dial_failure(self, call_log: CallLog, error: ProviderError) -> CallResult:
        intent = dial_failure_intent(error)
        logger.warning("order_call_dial_failed",
                       call_log_id=call_log.id,
                       order_id=call_log.order_id,
                       retryable=error.retryable,
                       intent=intent.value,
                       error=str(error))
        return await self.state_machine.apply_result(
            call_log.order_id, intent,
            call_log_id=call_log.id,
            failure_reason=str(error)[:500],
            expected_status=CallStatus.IN_PROGRESS,
        )

    # ══════════════════════════════════════════════════════════
    #  ADMISSION
    # ══════════════════════════════════════════════════════════

    async def admit_order(self, data: OrderInput, request_base_url: str = None) -> tuple[Order, CallLog, dict[str, Any]]:
        order, call_log = await self.store.create_order_with_call_log(data)
        logger.info("order_admitted",
                    order_id=order.id,
                    external_order_id=order.external_order_id,
                    call_log_id=call_log.id)
        call_log.order = order
        outcome = await self.dial(call_log, request_base_url=request_base_url)
        return order, call_log, outcome

    async def admit_commerce_order(
        self, shop: str, payload: dict[str, Any], request_base_url: str = None,
    ) -> dict[str, Any]:
        data = build_order_input(shop, payload, self.orders)
        if data is None:
            logger.info("order_event_skipped", shop=shop, order_id=payload.get("id"), reason="not_cod_or_no_phone")
            return {"admitted": False, "reason": "not_cod_or_no_phone"}

        existing = await self.store.get_order_by_external_id(data.external_order_id)
        if existing:
            logger.info("order_event_duplicate", external_order_id=data.external_order_id)
            return {"admitted": False, "reason": "duplicate", "order_id": existing.id}

        try:
            order, call_log, outcome = await self.admit_order(data, request_base_url)
        except ValidationError as e:
            # a concurrent delivery of the same event won the insert
            logger.info("order_event_duplicate", external_order_id=data.external_order_id, error=str(e))
            return {"admitted": False, "reason": "duplicate"}
        return {"admitted": True, "order_id": order.id, "call_log_id": call_log.id, **outcome}

    async def create_manual_order(
        self,
        customer_name: str,
        phone: str,
        amount: Any,
        store_name: str = "",
        order_number: str = "",
        request_base_url: str = None,
    ) -> dict[str, Any]:
        name = str(customer_name or "").strip()
        if not name or not str(phone or "").strip() or amount in (None, ""):
            raise ValidationError("customer_name, phone and amount are required")
        phone_number = validate_phone(phone)
        check_allowed_prefix(phone_number, self.orders.allowed_prefixes)

        data = OrderInput(
            external_order_id=f"manual-{uuid.uuid4().hex[:12]}",
            order_number=str(order_number or "").strip(),
            customer_name=name,
            phone_number=phone_number,
            store_name=str(store_name or "").strip(),
            total_price=_format_amount(amount),
            order_placed_at=self._clock(),
        )
        order, call_log, outcome = await self.admit_order(data, request_base_url)
        if outcome.get("dialed"):
            message = f"Order created, calling {name} now."
        else:
            message = "Order created. Call will be retried shortly."
        return {
            "order": order,
            "call_log": await self.store.get_call_log(call_log.id),
            "message": message,
            **{k: v for k, v in outcome.items() if k in ("dialed", "provider_call_id", "error")},
        }

    # ══════════════════════════════════════════════════════════
    #  MANUAL UI ACTIONS
    # ══════════════════════════════════════════════════════════

    async def recall(self, call_log_id: str, request_base_url: str = None) -> dict[str, Any]:
        call_log = await self.store.get_call_log(call_log_id)
        if call_log is None:
            raise NotFoundError(f"Call log {call_log_id} not found")

        warning = None
        if call_log.status == CallStatus.IN_PROGRESS:
            warning = "Call already in progress."
        elif call_log.status == CallStatus.COMPLETED:
            warning = "Order already completed."
        elif call_log.retry_count >= self.retry.max_retries:
            warning = "Max retries reached."
        if warning:
            logger.info("recall_refused", call_log_id=call_log_id, reason=warning)
            return {"recalled": False, "warning": warning}

        outcome = await self.dial(
            call_log,
            from_statuses=RECALLABLE_STATUSES,
            request_base_url=request_base_url,
            propagate=True,
        )
        if not outcome["dialed"]:
            return {"recalled": False, "warning": "Call state changed, try again."}
        return {"recalled": True, "provider_call_id": outcome.get("provider_call_id")}

    async def manual_decision(self, order_id: str, intent: Intent) -> CallResult:
        if intent not in MANUAL_DECISIONS:
            raise ValidationError(f"Manual decision must be CONFIRM or CANCEL, got {intent}")
        if await self.store.get_order(order_id) is None:
            raise NotFoundError(f"Order {order_id} not found")
        return await self.state_machine.apply_result(
            order_id, intent, failure_reason=MANUAL_DECISIONS[intent],
        )

    # ══════════════════════════════════════════════════════════
    #  SWEEPS — claimed rows, processed sequentially
    # ══════════════════════════════════════════════════════════

    async def process_due_retries(self, now: datetime = None) -> int:
        now = now or self._clock()
        claimed = await self.claims.claim(self.store, self.claims.due_retry(now), now)
        return await self._dial_claimed(claimed, "due_retry")

    async def process_stale_queued(self, now: datetime = None) -> int:
        now = now or self._clock()
        claimed = await self.claims.claim(self.store, self.claims.stale_queued(now), now)
        return await self._dial_claimed(claimed, "stale_queued")

    async def _dial_claimed(self, claimed: list[CallLog], queue: str) -> int:
        dialed = 0
        for call_log in claimed:
            try:
                outcome = await self.dial(call_log, already_claimed=True)
                dialed += int(outcome["dialed"])
            except Exception as e:
                logger.error("sweep_row_error", queue=queue, call_log_id=call_log.id, error=str(e))
        return dialed

    async def recover_stale_in_progress(self, now: datetime = None) -> int:
        now = now or self._clock()
        claimed = await self.claims.claim(self.store, self.claims.stale_in_progress(now), now)
        recovered = 0
        for call_log in claimed:
            try:
                result = await self.recover_stale(call_log, now)
                recovered += int(result is not None and not result.ignored)
            except Exception as e:
                logger.error("sweep_row_error", queue="stale_in_progress", call_log_id=call_log.id, error=str(e))
        return recovered

    async def recover_stale(self, call_log: CallLog, now: datetime = None) -> Optional[CallResult]:
        """
        Ask the provider what happened to a call whose webhook never came.
        Returns None when the attempt is left for a later sweep.
        """
        now = now or self._clock()
        if not call_log.provider_call_id:
            return await self._recover_with(call_log, Intent.RECALL_REQUEST, "No provider call id after dial")

        try:
            details = await self.gateway.fetch_call(call_log.provider_call_id)
        except ProviderError as e:
            logger.warning("stale_recovery_fetch_failed",
                           call_log_id=call_log.id,
                           provider_call_id=call_log.provider_call_id,
                           error=str(e))
            return None

        if call_is_active(details):
            logger.info("stale_recovery_call_active",
                        call_log_id=call_log.id, provider_status=details.get("status"))
            return None

        intent = resolve_from_call_details(details)
        if intent:
            return await self._recover_with(call_log, intent, None)

        ended_at = call_ended_at(details)
        if ended_at and now - ended_at < timedelta(seconds=self.retry.analysis_grace_s):
            logger.info("stale_recovery_awaiting_analysis", call_log_id=call_log.id)
            return None

        return await self._recover_with(
            call_log, Intent.RECALL_REQUEST,
            str(details.get("endedReason") or "No intent detected after call ended"),
        )

    async def _recover_with(self, call_log: CallLog, intent: Intent, reason: Optional[str]) -> CallResult:
        logger.info("stale_recovery_resolved", call_log_id=call_log.id, intent=intent.value)
        return await self.state_machine.apply_result(
            call_log.order_id, intent,
            call_log_id=call_log.id,
            provider_call_id=call_log.provider_call_id,
            failure_reason=reason,
            expected_status=CallStatus.IN_PROGRESS,
        )

    async def run_order_sweep(self, now: datetime = None) -> dict[str, int]:
        """One order-flow tick: all three queues."""
        now = now or self._clock()
        return {
            "stale_in_progress": await self.recover_stale_in_progress(now),
            "due_retry": await self.process_due_retries(now),
            "stale_queued": await self.process_stale_queued(now),
        }

    # ══════════════════════════════════════════════════════════
    #  WHATSAPP FALLBACK
    # ══════════════════════════════════════════════════════════

    async def deliver_whatsapp_fallback(self, event: WhatsAppFallbackEvent) -> None:
        """Dispatcher handler. Provider errors propagate for the dispatcher's retry."""
        if self.whatsapp is None:
            raise PermanentProviderError("WhatsApp gateway not configured", "twilio")
        call_log = await self.store.get_call_log(event.call_log_id)
        if call_log is None or call_log.status != CallStatus.WHATSAPP_SENT or call_log.whatsapp_replied:
            logger.info("whatsapp_fallback_skipped",
                        call_log_id=event.call_log_id,
                        status=call_log.status.value if call_log else None)
            return
        await self.whatsapp.send_fallback(
            event.phone_number, event.customer_name, event.order_ref, event.total_price,
        )

    async def send_due_reminders(self, now: datetime = None) -> int:
        if self.whatsapp is None:
            return 0
        now = now or self._clock()
        sent_before = now - timedelta(seconds=self.scheduler.reminder_delay_s)
        claimed = await self.store.claim_whatsapp_reminders(sent_before, limit=self.retry.claim_batch_size)

        sent = 0
        for call_log in claimed:
            order = call_log.order or await self.store.get_order(call_log.order_id)
            if order is None or order.order_status in TERMINAL_ORDER_STATUSES:
                logger.info("whatsapp_reminder_skipped", call_log_id=call_log.id, reason="order_closed")
                continue
            try:
                await self.whatsapp.send_reminder(order.phone_number)
            except ProviderError as e:
                await self.store.release_whatsapp_reminder(call_log.id)
                logger.error("whatsapp_reminder_failed", call_log_id=call_log.id, error=str(e))
                continue
            sent += 1
            logger.info("whatsapp_reminder_sent", call_log_id=call_log.id, order_id=order.id)
        return sent

    async def expire_whatsapp_waits(self, now: datetime = None) -> int:
        timeout = self.scheduler.whatsapp_reply_timeout_s
        if timeout <= 0:
            return 0
        now = now or self._clock()
        waiting = await self.store.list_unanswered_whatsapp(
            now - timedelta(seconds=timeout), limit=self.retry.claim_batch_size,
        )

        expired = 0
        for call_log in waiting:
            try:
                result = await self.state_machine.apply_result(
                    call_log.order_id, Intent.NO_RESPONSE,
                    call_log_id=call_log.id,
                    from_whatsapp=True,
                    failure_reason="No WhatsApp reply",
                    expected_status=CallStatus.WHATSAPP_SENT,
                )
            except Exception as e:
                logger.error("whatsapp_timeout_error", call_log_id=call_log.id, error=str(e))
                continue
            expired += int(not result.ignored)
        return expired
