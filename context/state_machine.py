"""
Call/Order State Machine — Applies a resolved intent to an order + call attempt.

Two layers:

  decide_call_transition()      pure: (order, call_log, intent, policy, now)
                                → Transition (row changes + result + events)
  OrderCallStateMachine         runs the decision inside the store's
                                transactional read-modify-write, then hands
                                emitted events to the outbound dispatcher
                                after the commit.

Transition table (first matching row wins):

  expected status given and differs      → ignored
  WHATSAPP_SENT, not WhatsApp-sourced    → ignored
  COMPLETED/FAILED + CONFIRM/CANCEL      → COMPLETED, order CONFIRMED/CANCELLED (corrected)
  COMPLETED/FAILED + anything else       → ignored
  retry intent from a superseded dial    → ignored
  retry intent redelivered (RETRY_SCHEDULED, same provider call) → ignored
  CONFIRM / CANCEL                       → COMPLETED, order CONFIRMED / CANCELLED
  WRONG_NUMBER                           → FAILED, order INVALID
  retry intent, first time count reaches escalation threshold
                                         → WHATSAPP_SENT, order PENDING, fallback event
  retry intent, count reaches max        → FAILED, order PENDING_MANUAL_REVIEW
  retry intent otherwise                 → RETRY_SCHEDULED, next_retry_at = now + delay

Usage:
    sm = OrderCallStateMachine(store, retry_config, dispatcher)
    result = await sm.apply_result(order_id, "busy", provider_call_id="call_123")
    # result.call_status → RETRY_SCHEDULED, result.retry_count → 1
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from config.settings import RetryConfig
from core.errors import ValidationError
from database.store_base import BaseOrderStore
from models.schemas import (
    CallLog, CallResult, CallStatus, CustomerCall, CustomerCallStatus,
    CallOutcome, Intent, Order, OrderStatus, WhatsAppFallbackEvent,
    DECISIVE_INTENTS, RETRY_INTENTS,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_intent(value: Any) -> Intent:
    """Normalise an intent name ("busy", "RECALL_REQUEST", Intent.CANCEL)."""
    if isinstance(value, Intent):
        return value
    name = str(value or "").strip().upper()
    try:
        return Intent(name)
    except ValueError:
        raise ValidationError(f"Unsupported intent: {value!r}") from None


# ──────────────────────────────────────────────────────────────
#  Transition
# ──────────────────────────────────────────────────────────────

class Transition:
    """Changes to persist for one apply_result, plus what the caller sees."""

    def __init__(
        self,
        result: CallResult,
        call_updates: dict[str, Any] = None,
        order_status: Optional[OrderStatus] = None,
        events: list[WhatsAppFallbackEvent] = None,
    ):
        self.result = result
        self.call_updates = call_updates or {}
        self.order_status = order_status
        self.events = events or []

    def __bool__(self):
        return not self.result.ignored

    def __repr__(self):
        if self.result.ignored:
            return f"<Ignored {self.result.call_status.value} ({self.result.reason})>"
        return f"<Transition → {self.result.call_status.value} / {self.result.order_status.value}>"


def _ignored(order: Order, call_log: CallLog, reason: str) -> Transition:
    return Transition(CallResult(
        order_id=order.id,
        call_log_id=call_log.id,
        order_status=order.order_status,
        call_status=call_log.status,
        retry_count=call_log.retry_count,
        next_retry_at=call_log.next_retry_at,
        ignored=True,
        reason=reason,
    ))


def _decisive_updates(intent: Intent, from_whatsapp: bool, now: datetime) -> tuple[dict[str, Any], OrderStatus]:
    if intent == Intent.WRONG_NUMBER:
        updates = {"status": CallStatus.FAILED}
        order_status = OrderStatus.INVALID
    else:
        updates = {"status": CallStatus.COMPLETED}
        order_status = OrderStatus.CONFIRMED if intent == Intent.CONFIRM else OrderStatus.CANCELLED
    updates["next_retry_at"] = None
    if from_whatsapp:
        updates["whatsapp_replied"] = True
        updates["whatsapp_replied_at"] = now
    return updates, order_status


def decide_call_transition(
    order: Order,
    call_log: CallLog,
    intent: Intent,
    *,
    policy: RetryConfig,
    now: datetime,
    from_whatsapp: bool = False,
    failure_reason: Optional[str] = None,
    provider_call_id: Optional[str] = None,
    expected_status: Optional[CallStatus] = None,
) -> Transition:
    status = call_log.status

    if expected_status is not None and status != expected_status:
        return _ignored(order, call_log, "status_changed")

    if status == CallStatus.WHATSAPP_SENT and not from_whatsapp:
        return _ignored(order, call_log, "whatsapp_in_flight")

    if status in (CallStatus.COMPLETED, CallStatus.FAILED):
        if intent not in (Intent.CONFIRM, Intent.CANCEL):
            return _ignored(order, call_log, "terminal")
        updates, order_status = _decisive_updates(intent, from_whatsapp, now)
        updates.update(last_intent=intent.value, locked_at=None, failure_reason=None)
        return Transition(
            CallResult(
                order_id=order.id, call_log_id=call_log.id,
                order_status=order_status, call_status=CallStatus.COMPLETED,
                retry_count=call_log.retry_count, corrected=True,
            ),
            call_updates=updates,
            order_status=order_status,
        )

    if intent in RETRY_INTENTS and provider_call_id and call_log.provider_call_id:
        if provider_call_id != call_log.provider_call_id:
            return _ignored(order, call_log, "superseded_call")
        if status == CallStatus.RETRY_SCHEDULED:
            return _ignored(order, call_log, "duplicate_delivery")

    updates: dict[str, Any] = {
        "last_intent": intent.value,
        "locked_at": None,
        "failure_reason": failure_reason,
    }

    if intent in DECISIVE_INTENTS:
        decisive, order_status = _decisive_updates(intent, from_whatsapp, now)
        updates.update(decisive)
        return Transition(
            CallResult(
                order_id=order.id, call_log_id=call_log.id,
                order_status=order_status, call_status=updates["status"],
                retry_count=call_log.retry_count,
            ),
            call_updates=updates,
            order_status=order_status,
        )

    next_count = call_log.retry_count + 1
    already_escalated = call_log.whatsapp_sent_at is not None

    if not already_escalated and next_count >= policy.whatsapp_escalation_threshold:
        updates.update(
            status=CallStatus.WHATSAPP_SENT,
            retry_count=next_count,
            next_retry_at=None,
            whatsapp_sent_at=now,
            whatsapp_replied=False,
            whatsapp_replied_at=None,
            second_reminder_sent=False,
        )
        event = WhatsAppFallbackEvent(
            order_id=order.id,
            call_log_id=call_log.id,
            phone_number=order.phone_number,
            customer_name=order.customer_name,
            order_ref=order.display_ref,
            total_price=order.total_price,
        )
        return Transition(
            CallResult(
                order_id=order.id, call_log_id=call_log.id,
                order_status=OrderStatus.PENDING, call_status=CallStatus.WHATSAPP_SENT,
                retry_count=next_count, whatsapp_sent=True,
            ),
            call_updates=updates,
            order_status=OrderStatus.PENDING,
            events=[event],
        )

    if next_count >= policy.max_retries:
        capped = min(next_count, policy.max_retries)
        updates.update(status=CallStatus.FAILED, retry_count=capped, next_retry_at=None)
        return Transition(
            CallResult(
                order_id=order.id, call_log_id=call_log.id,
                order_status=OrderStatus.PENDING_MANUAL_REVIEW, call_status=CallStatus.FAILED,
                retry_count=capped,
            ),
            call_updates=updates,
            order_status=OrderStatus.PENDING_MANUAL_REVIEW,
        )

    next_retry_at = now + timedelta(seconds=policy.delay_for(intent.value))
    updates.update(status=CallStatus.RETRY_SCHEDULED, retry_count=next_count, next_retry_at=next_retry_at)
    return Transition(
        CallResult(
            order_id=order.id, call_log_id=call_log.id,
            order_status=OrderStatus.PENDING, call_status=CallStatus.RETRY_SCHEDULED,
            retry_count=next_count, next_retry_at=next_retry_at,
        ),
        call_updates=updates,
        order_status=OrderStatus.PENDING,
    )


# ──────────────────────────────────────────────────────────────
#  Order Call State Machine
# ──────────────────────────────────────────────────────────────

class OrderCallStateMachine:
    """
    Runs decide_call_transition atomically against the store and publishes
    the resulting outbound events once the transaction has committed.
    """

    def __init__(
        self,
        store: BaseOrderStore,
        policy: RetryConfig = None,
        dispatcher=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.policy = policy or RetryConfig()
        self.dispatcher = dispatcher
        self._clock = clock

    async def apply_result(
        self,
        order_id: str,
        intent: Any,
        *,
        call_log_id: str = None,
        provider_call_id: str = None,
        from_whatsapp: bool = False,
        failure_reason: str = None,
        expected_status: CallStatus = None,
    ) -> CallResult:
        parsed = parse_intent(intent)
        now = self._clock()

        def decide(order: Order, call_log: CallLog) -> Transition:
            return decide_call_transition(
                order, call_log, parsed,
                policy=self.policy,
                now=now,
                from_whatsapp=from_whatsapp,
                failure_reason=failure_reason,
                provider_call_id=provider_call_id,
                expected_status=expected_status,
            )

        transition = await self.store.apply_call_result(
            order_id, decide,
            call_log_id=call_log_id,
            provider_call_id=provider_call_id,
        )
        result = transition.result

        if result.ignored:
            logger.info("call_result_ignored",
                        order_id=order_id,
                        call_log_id=result.call_log_id,
                        intent=parsed.value,
                        status=result.call_status.value,
                        reason=result.reason)
        else:
            logger.info("state_transition",
                        order_id=order_id,
                        call_log_id=result.call_log_id,
                        intent=parsed.value,
                        call_status=result.call_status.value,
                        order_status=result.order_status.value,
                        retry_count=result.retry_count,
                        corrected=result.corrected,
                        from_whatsapp=from_whatsapp)

        for event in transition.events:
            self._emit(event)

        return result

    def _emit(self, event: WhatsAppFallbackEvent) -> None:
        if self.dispatcher is None:
            logger.warning("outbound_event_dropped",
                           event_id=event.event_id, call_log_id=event.call_log_id,
                           reason="no dispatcher")
            return
        try:
            self.dispatcher.publish(event)
        except Exception as e:
            # committed state stands regardless of the notification
            logger.error("outbound_event_publish_failed",
                         event_id=event.event_id, error=str(e))


# ──────────────────────────────────────────────────────────────
#  Generic customer calls
# ──────────────────────────────────────────────────────────────

def decide_customer_call_end(
    call: CustomerCall,
    outcome: CallOutcome,
    reason: Optional[str],
    *,
    max_retries: int,
    retry_delay_s: int,
    now: datetime,
) -> Optional[dict[str, Any]]:
    """
    End-of-call transition for a standalone call. Returns the fields to
    write, or None when the event must not change the row.
    """
    if call.status == CustomerCallStatus.ANSWERED:
        return None

    if outcome == CallOutcome.ANSWERED:
        return {
            "status": CustomerCallStatus.ANSWERED,
            "failure_reason": None,
            "next_retry_at": None,
        }

    if call.status not in (CustomerCallStatus.CALLING, CustomerCallStatus.PENDING):
        return None
    return _customer_call_failure(call, reason or "unknown", max_retries, retry_delay_s, now)


def decide_customer_call_dial_failure(
    call: CustomerCall,
    reason: str,
    *,
    permanent: bool,
    max_retries: int,
    retry_delay_s: int,
    now: datetime,
) -> Optional[dict[str, Any]]:
    if call.status != CustomerCallStatus.CALLING:
        return None
    if permanent:
        return {"status": CustomerCallStatus.FAILED, "failure_reason": reason, "next_retry_at": None}
    return _customer_call_failure(call, reason, max_retries, retry_delay_s, now)


def _customer_call_failure(
    call: CustomerCall, reason: str, max_retries: int, retry_delay_s: int, now: datetime,
) -> dict[str, Any]:
    if call.retry_count < max_retries:
        return {
            "status": CustomerCallStatus.RETRYING,
            "failure_reason": reason,
            "next_retry_at": now + timedelta(seconds=retry_delay_s),
        }
    return {"status": CustomerCallStatus.FAILED, "failure_reason": reason, "next_retry_at": None}
