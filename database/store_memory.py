"""
InMemoryOrderStore — Dict-backed store for development and testing.

Features:
  - No database required
  - Same interface and concurrency guarantees as SqlOrderStore: one
    asyncio.Lock stands in for the transaction and for the conditional
    update, so apply/claim/begin never interleave
  - Callers always receive copies; mutating a returned model does not
    touch stored state
  - All data lost on process restart

Best for: local development, unit tests.
"""
from __future__ import annotations

import asyncio
import itertools
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from core.errors import NotFoundError, ValidationError
from database.store_base import BaseOrderStore, CallDecision, CustomerCallDecision
from models.schemas import (
    CallLog, CallStatus, ClaimSpec, CustomerCall, CustomerCallStatus,
    Order, OrderInput, OrderStatus, OrderSummary,
    OPEN_CALL_STATUSES, OPEN_ORDER_STATUSES,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class InMemoryOrderStore(BaseOrderStore):
    """Full-featured in-memory store with the same interface as SqlOrderStore."""

    backend_name = "memory"

    def __init__(self):
        self._orders: dict[str, Order] = {}                 # id → order
        self._call_logs: dict[str, CallLog] = {}            # id → call log (no order attached)
        self._customer_calls: dict[str, CustomerCall] = {}  # id → customer call

        # Indexes
        self._external_index: dict[str, str] = {}           # external_order_id → order id
        self._seq: dict[str, int] = {}                      # row id → insertion sequence
        self._counter = itertools.count()

        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Orders ────────────────────────────────────────────

    async def create_order_with_call_log(self, data: OrderInput) -> tuple[Order, CallLog]:
        async with self._lock:
            if data.external_order_id in self._external_index:
                raise ValidationError(f"Order {data.external_order_id} already exists")
            now = _utcnow()
            order = Order(
                id=_new_id(),
                **data.model_dump(),
                order_status=OrderStatus.PENDING,
                created_at=now, updated_at=now,
            )
            call_log = CallLog(id=_new_id(), order_id=order.id, created_at=now, updated_at=now)
            self._orders[order.id] = order
            self._call_logs[call_log.id] = call_log
            self._external_index[order.external_order_id] = order.id
            self._seq[order.id] = next(self._counter)
            self._seq[call_log.id] = next(self._counter)
        return order.model_copy(), self._snapshot(call_log)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy() if order else None

    async def get_order_by_external_id(self, external_order_id: str) -> Optional[Order]:
        oid = self._external_index.get(external_order_id)
        return await self.get_order(oid) if oid else None

    async def list_recent_orders(self, limit: int = 50) -> list[OrderSummary]:
        orders = sorted(self._orders.values(), key=self._order_key, reverse=True)[:limit]
        summaries = []
        for order in orders:
            latest = self._latest_for_order(order.id)
            summaries.append(OrderSummary(
                order=order.model_copy(),
                latest_call_log=self._snapshot(latest) if latest else None,
            ))
        return summaries

    async def order_stats(self) -> dict[str, int]:
        stats = {
            "total": len(self._orders),
            "pending": 0, "confirmed": 0, "cancelled": 0,
            "pending_manual_review": 0, "invalid": 0,
        }
        for order in self._orders.values():
            stats[order.order_status.value.lower()] += 1
        stats["retry_scheduled"] = sum(
            1 for c in self._call_logs.values() if c.status == CallStatus.RETRY_SCHEDULED
        )
        return stats

    # ── Call logs: reads ──────────────────────────────────

    async def get_call_log(self, call_log_id: str) -> Optional[CallLog]:
        call_log = self._call_logs.get(call_log_id)
        return self._snapshot(call_log) if call_log else None

    async def get_call_log_by_provider_id(self, provider_call_id: str) -> Optional[CallLog]:
        matches = [c for c in self._call_logs.values() if c.provider_call_id == provider_call_id]
        return self._snapshot(max(matches, key=self._log_key)) if matches else None

    async def get_latest_call_log(self, order_id: str) -> Optional[CallLog]:
        latest = self._latest_for_order(order_id)
        return self._snapshot(latest) if latest else None

    async def get_latest_open_call_log_by_phone(self, phone_number: str) -> Optional[CallLog]:
        matches = [
            c for c in self._call_logs.values()
            if c.status in OPEN_CALL_STATUSES
            and self._orders[c.order_id].phone_number == phone_number
            and self._orders[c.order_id].order_status in OPEN_ORDER_STATUSES
        ]
        return self._snapshot(max(matches, key=self._log_key)) if matches else None

    async def get_latest_call_log_by_phone(self, phone_number: str) -> Optional[CallLog]:
        matches = [
            c for c in self._call_logs.values()
            if self._orders[c.order_id].phone_number == phone_number
        ]
        return self._snapshot(max(matches, key=self._log_key)) if matches else None

    async def list_unanswered_whatsapp(self, sent_before: datetime, limit: int = 25) -> list[CallLog]:
        matches = [
            c for c in self._call_logs.values()
            if c.status == CallStatus.WHATSAPP_SENT
            and not c.whatsapp_replied
            and c.whatsapp_sent_at is not None
            and c.whatsapp_sent_at <= sent_before
        ]
        matches.sort(key=lambda c: c.whatsapp_sent_at)
        return [self._snapshot(c) for c in matches[:limit]]

    # ── Call logs: writes ─────────────────────────────────

    async def set_call_log_provider_id(self, call_log_id: str, provider_call_id: str) -> None:
        async with self._lock:
            call_log = self._require_call_log(call_log_id)
            call_log.provider_call_id = provider_call_id
            call_log.updated_at = _utcnow()

    async def mark_call_log_in_progress(
        self, call_log_id: str, provider_call_id: str = None, now: datetime = None,
    ) -> bool:
        async with self._lock:
            call_log = self._call_logs.get(call_log_id)
            if not call_log or call_log.status not in (CallStatus.QUEUED, CallStatus.IN_PROGRESS):
                return False
            # a heartbeat from a superseded dial must not replace the current call id
            if provider_call_id and call_log.provider_call_id not in (None, provider_call_id):
                return False
            call_log.status = CallStatus.IN_PROGRESS
            call_log.failure_reason = None
            if provider_call_id:
                call_log.provider_call_id = provider_call_id
            call_log.updated_at = now or _utcnow()
            return True

    async def begin_dial(
        self, call_log_id: str, from_statuses: Iterable[CallStatus], now: datetime = None,
    ) -> bool:
        allowed = set(from_statuses)
        async with self._lock:
            call_log = self._call_logs.get(call_log_id)
            if not call_log or call_log.status not in allowed:
                return False
            now = now or _utcnow()
            call_log.status = CallStatus.IN_PROGRESS
            call_log.locked_at = now
            call_log.next_retry_at = None
            call_log.updated_at = now
            return True

    async def apply_call_result(
        self, order_id: str, decide: CallDecision, *,
        call_log_id: str = None, provider_call_id: str = None,
    ):
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            call_log = self._select_call_log(order_id, call_log_id, provider_call_id)

            transition = decide(order.model_copy(), self._snapshot(call_log))
            if not transition:
                return transition

            now = _utcnow()
            for field, value in transition.call_updates.items():
                setattr(call_log, field, value)
            call_log.updated_at = now
            if transition.order_status is not None and transition.order_status != order.order_status:
                order.order_status = transition.order_status
                order.updated_at = now
            return transition

    async def claim_call_logs(self, spec: ClaimSpec, limit: int = 25, now: datetime = None) -> list[CallLog]:
        now = now or _utcnow()
        # candidates are read outside the lock; the claim itself re-checks
        candidates = sorted(
            (c for c in self._call_logs.values() if self._claimable(c, spec)),
            key=lambda c: getattr(c, spec.age_field),
        )[:limit]

        claimed = []
        for candidate in candidates:
            async with self._lock:
                call_log = self._call_logs[candidate.id]
                if not self._claimable(call_log, spec):
                    continue
                call_log.locked_at = now
                call_log.updated_at = now
                if spec.set_status is not None:
                    call_log.status = spec.set_status
                    call_log.next_retry_at = None
                claimed.append(self._snapshot(call_log))
            # let overlapping sweeps interleave between rows
            await asyncio.sleep(0)
        return claimed

    async def claim_whatsapp_reminders(self, sent_before: datetime, limit: int = 25) -> list[CallLog]:
        claimed = []
        async with self._lock:
            candidates = sorted(
                (c for c in self._call_logs.values() if self._reminder_due(c, sent_before)),
                key=lambda c: c.whatsapp_sent_at,
            )[:limit]
            for call_log in candidates:
                call_log.second_reminder_sent = True
                call_log.updated_at = _utcnow()
                claimed.append(self._snapshot(call_log))
        return claimed

    async def release_whatsapp_reminder(self, call_log_id: str) -> None:
        async with self._lock:
            call_log = self._call_logs.get(call_log_id)
            if call_log and call_log.status == CallStatus.WHATSAPP_SENT and not call_log.whatsapp_replied:
                call_log.second_reminder_sent = False

    # ── Customer calls ────────────────────────────────────

    async def create_customer_calls(self, rows: list[dict[str, str]]) -> list[CustomerCall]:
        created = []
        async with self._lock:
            now = _utcnow()
            for row in rows:
                call = CustomerCall(
                    id=_new_id(), customer_name=row["customer_name"], phone=row["phone"],
                    created_at=now, updated_at=now,
                )
                self._customer_calls[call.id] = call
                self._seq[call.id] = next(self._counter)
                created.append(call.model_copy())
        return created

    async def get_customer_call(self, call_id: str) -> Optional[CustomerCall]:
        call = self._customer_calls.get(call_id)
        return call.model_copy() if call else None

    async def get_customer_call_by_provider_id(self, provider_call_id: str) -> Optional[CustomerCall]:
        for call in self._customer_calls.values():
            if call.provider_call_id == provider_call_id:
                return call.model_copy()
        return None

    async def list_pending_customer_calls(self, limit: int = None) -> list[CustomerCall]:
        pending = sorted(
            (c for c in self._customer_calls.values() if c.status == CustomerCallStatus.PENDING),
            key=self._customer_key,
        )
        if limit is not None:
            pending = pending[:limit]
        return [c.model_copy() for c in pending]

    async def list_recent_customer_calls(self, limit: int = 50) -> list[CustomerCall]:
        recent = sorted(self._customer_calls.values(), key=self._customer_key, reverse=True)
        return [c.model_copy() for c in recent[:limit]]

    async def begin_customer_call(
        self, call_id: str, from_statuses: Iterable[CustomerCallStatus], now: datetime = None,
    ) -> bool:
        allowed = set(from_statuses)
        async with self._lock:
            call = self._customer_calls.get(call_id)
            if not call or call.status not in allowed:
                return False
            now = now or _utcnow()
            call.status = CustomerCallStatus.CALLING
            call.next_retry_at = None
            call.last_call_at = now
            call.updated_at = now
            return True

    async def claim_due_customer_calls(
        self, limit: int, max_retries: int, now: datetime = None,
    ) -> list[CustomerCall]:
        now = now or _utcnow()
        claimed = []
        async with self._lock:
            due = sorted(
                (c for c in self._customer_calls.values() if self._customer_call_due(c, max_retries, now)),
                key=lambda c: c.next_retry_at,
            )[:limit]
            for call in due:
                call.status = CustomerCallStatus.CALLING
                call.retry_count += 1
                call.next_retry_at = None
                call.last_call_at = now
                call.updated_at = now
                claimed.append(call.model_copy())
        return claimed

    async def fail_exhausted_customer_calls(self, max_retries: int, now: datetime = None) -> int:
        now = now or _utcnow()
        failed = 0
        async with self._lock:
            for call in self._customer_calls.values():
                if call.status == CustomerCallStatus.RETRYING and call.retry_count >= max_retries:
                    call.status = CustomerCallStatus.FAILED
                    call.next_retry_at = None
                    call.failure_reason = call.failure_reason or "max retries reached"
                    call.updated_at = now
                    failed += 1
        return failed

    async def set_customer_call_provider_id(self, call_id: str, provider_call_id: str) -> None:
        async with self._lock:
            call = self._customer_calls.get(call_id)
            if call is None:
                raise NotFoundError(f"Customer call {call_id} not found")
            call.provider_call_id = provider_call_id
            call.updated_at = _utcnow()

    async def update_customer_call(
        self, call_id: str, decide: CustomerCallDecision,
    ) -> Optional[CustomerCall]:
        async with self._lock:
            call = self._customer_calls.get(call_id)
            if call is None:
                raise NotFoundError(f"Customer call {call_id} not found")
            updates = decide(call.model_copy())
            if not updates:
                return None
            for field, value in updates.items():
                setattr(call, field, value)
            call.updated_at = _utcnow()
            return call.model_copy()

    async def customer_call_stats(self) -> dict[str, int]:
        stats = {"total": len(self._customer_calls)}
        stats.update({s.value: 0 for s in CustomerCallStatus})
        for call in self._customer_calls.values():
            stats[call.status.value] += 1
        return stats

    # ── Helpers ───────────────────────────────────────────

    def _snapshot(self, call_log: CallLog) -> CallLog:
        order = self._orders.get(call_log.order_id)
        return call_log.model_copy(update={"order": order.model_copy() if order else None})

    def _require_call_log(self, call_log_id: str) -> CallLog:
        call_log = self._call_logs.get(call_log_id)
        if call_log is None:
            raise NotFoundError(f"Call log {call_log_id} not found")
        return call_log

    def _latest_for_order(self, order_id: str) -> Optional[CallLog]:
        logs = [c for c in self._call_logs.values() if c.order_id == order_id]
        return max(logs, key=self._log_key) if logs else None

    def _select_call_log(
        self, order_id: str, call_log_id: Optional[str], provider_call_id: Optional[str],
    ) -> CallLog:
        if call_log_id:
            call_log = self._call_logs.get(call_log_id)
            if call_log is None or call_log.order_id != order_id:
                raise NotFoundError(f"Call log {call_log_id} not found for order {order_id}")
            return call_log
        if provider_call_id:
            matches = [
                c for c in self._call_logs.values()
                if c.order_id == order_id and c.provider_call_id == provider_call_id
            ]
            if matches:
                return max(matches, key=self._log_key)
        latest = self._latest_for_order(order_id)
        if latest is None:
            raise NotFoundError(f"No call log for order {order_id}")
        return latest

    @staticmethod
    def _claimable(call_log: CallLog, spec: ClaimSpec) -> bool:
        if call_log.status != spec.status or call_log.retry_count >= spec.max_retries:
            return False
        age: Any = getattr(call_log, spec.age_field)
        if age is None or age > spec.cutoff:
            return False
        if call_log.locked_at is None:
            return True
        return spec.lock_stale_before is not None and call_log.locked_at <= spec.lock_stale_before

    @staticmethod
    def _reminder_due(call_log: CallLog, sent_before: datetime) -> bool:
        return (
            call_log.status == CallStatus.WHATSAPP_SENT
            and not call_log.whatsapp_replied
            and not call_log.second_reminder_sent
            and call_log.whatsapp_sent_at is not None
            and call_log.whatsapp_sent_at <= sent_before
        )

    @staticmethod
    def _customer_call_due(call: CustomerCall, max_retries: int, now: datetime) -> bool:
        return (
            call.status == CustomerCallStatus.RETRYING
            and call.retry_count < max_retries
            and call.next_retry_at is not None
            and call.next_retry_at <= now
        )

    def _order_key(self, order: Order):
        return (order.created_at, self._seq.get(order.id, 0))

    def _log_key(self, call_log: CallLog):
        return (call_log.created_at, self._seq.get(call_log.id, 0))

    def _customer_key(self, call: CustomerCall):
        return (call.created_at, self._seq.get(call.id, 0))
