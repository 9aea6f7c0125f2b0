"""
Customer Calls — Standalone "call a customer" flow (no order attached).

    upload(rows)        → validated batch, status pending
    start_all()         → sequential dial of every pending row
    call_one(id)        → dial from pending / retrying / failed
    handle_call_end()   → answered | retrying (under cap) | failed
    process_due_retries → safety guard, then claim due rows and re-dial

Status writes go through store.begin_customer_call / claim_due_customer_calls
(conditional) or store.update_customer_call (transactional).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from channels.base import PermanentProviderError, ProviderError
from channels.telephony.factory import CallGateway
from config.settings import OrdersConfig, RetryConfig
from context.state_machine import decide_customer_call_dial_failure, decide_customer_call_end
from core.errors import NotFoundError, ValidationError
from database.store_base import BaseOrderStore
from models.schemas import CallOutcome, CustomerCall, CustomerCallStatus
from utils.phone import check_allowed_prefix, validate_phone

logger = structlog.get_logger()

DIALABLE_STATUSES = frozenset({
    CustomerCallStatus.PENDING, CustomerCallStatus.RETRYING, CustomerCallStatus.FAILED,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomerCallService:

    def __init__(
        self,
        store: BaseOrderStore,
        gateway: CallGateway,
        *,
        retry: RetryConfig = None,
        orders: OrdersConfig = None,
        upload_limit: int = 500,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.retry = retry or RetryConfig()
        self.orders = orders or OrdersConfig()
        self.upload_limit = upload_limit
        self._clock = clock

    # ── Upload ──────────────────────────────────────────────

    async def upload(self, rows: list[dict[str, Any]]) -> dict[str, Any]:
        """
        Validate and store a batch. Invalid rows are reported, not fatal.

        Returns:
            {"created": [CustomerCall, ...], "errors": [{"row": 2, "error": "..."}]}
        """
        if not isinstance(rows, list) or not rows:
            raise ValidationError("Upload must contain at least one row")
        if len(rows) > self.upload_limit:
            raise ValidationError(f"Upload is limited to {self.upload_limit} rows, got {len(rows)}")

        valid, errors = [], []
        for index, row in enumerate(rows, start=1):
            try:
                valid.append(self._validate_row(row))
            except ValidationError as e:
                errors.append({"row": index, "error": str(e)})

        created = await self.store.create_customer_calls(valid) if valid else []
        logger.info("customer_calls_uploaded", created=len(created), rejected=len(errors))
        return {"created": created, "errors": errors}

    def _validate_row(self, row: Any) -> dict[str, str]:
        if not isinstance(row, dict):
            raise ValidationError("Row must be an object with name and phone")
        name = str(row.get("customerName") or row.get("customer_name") or row.get("name") or "").strip()
        if not name:
            raise ValidationError("Customer name is required")
        phone = validate_phone(row.get("phone") or row.get("phoneNumber") or row.get("phone_number") or "")
        check_allowed_prefix(phone, self.orders.allowed_prefixes)
        return {"customer_name": name, "phone": phone}

    # ── Dialling ────────────────────────────────────────────

    async def start_all(self) -> dict[str, int]:
        pending = await self.store.list_pending_customer_calls()
        started = failed = 0
        for call in pending:
            try:
                await self.call_one(call.id)
                started += 1
            except (ProviderError, ValidationError) as e:
                failed += 1
                logger.warning("customer_call_start_failed", call_id=call.id, error=str(e))
        logger.info("customer_calls_started", started=started, failed=failed, total=len(pending))
        return {"started": started, "failed": failed, "total": len(pending)}

    async def call_one(self, call_id: str) -> CustomerCall:
        call = await self.store.get_customer_call(call_id)
        if call is None:
            raise NotFoundError(f"Customer call {call_id} not found")
        if not await self.store.begin_customer_call(call_id, DIALABLE_STATUSES, now=self._clock()):
            raise ValidationError(f"Call cannot be started from status '{call.status.value}'")
        return await self._dial(call)

    async def _dial(self, call: CustomerCall) -> CustomerCall:
        try:
            placed = await self.gateway.create_customer_call(
                call_id=call.id, customer_name=call.customer_name, phone=call.phone,
            )
        except ProviderError as e:
            await self._record_dial_failure(call.id, e)
            raise

        provider_call_id = placed.get("provider_call_id")
        if provider_call_id:
            await self.store.set_customer_call_provider_id(call.id, provider_call_id)
        logger.info("customer_call_placed", call_id=call.id, provider_call_id=provider_call_id)
        return await self.store.get_customer_call(call.id)

    async def _record_dial_failure(self, call_id: str, error: ProviderError) -> None:
        now = self._clock()
        permanent = isinstance(error, PermanentProviderError)

        def decide(current: CustomerCall) -> Optional[dict[str, Any]]:
            return decide_customer_call_dial_failure(
                current, str(error)[:500],
                permanent=permanent,
                max_retries=self.retry.customer_call_max_retries,
                retry_delay_s=self.retry.customer_call_retry_delay_s,
                now=now,
            )

        updated = await self.store.update_customer_call(call_id, decide)
        logger.warning("customer_call_dial_failed",
                       call_id=call_id,
                       permanent=permanent,
                       status=updated.status.value if updated else None,
                       error=str(error))

    # ── Provider events ─────────────────────────────────────

    async def handle_call_end(
        self, provider_call_id: str, outcome: CallOutcome, reason: Optional[str] = None,
    ) -> Optional[CustomerCall]:
        call = await self.store.get_customer_call_by_provider_id(provider_call_id)
        if call is None:
            logger.info("customer_call_unknown", provider_call_id=provider_call_id)
            return None

        now = self._clock()

        def decide(current: CustomerCall) -> Optional[dict[str, Any]]:
            return decide_customer_call_end(
                current, outcome, reason,
                max_retries=self.retry.customer_call_max_retries,
                retry_delay_s=self.retry.customer_call_retry_delay_s,
                now=now,
            )

        updated = await self.store.update_customer_call(call.id, decide)
        if updated is None:
            logger.info("customer_call_event_ignored",
                        call_id=call.id, status=call.status.value, outcome=outcome.value)
            return None
        logger.info("customer_call_ended",
                    call_id=call.id, outcome=outcome.value, status=updated.status.value, reason=reason)
        return updated

    # ── Sweep ───────────────────────────────────────────────

    async def process_due_retries(self, now: datetime = None) -> int:
        now = now or self._clock()
        max_retries = self.retry.customer_call_max_retries

        exhausted = await self.store.fail_exhausted_customer_calls(max_retries, now=now)
        if exhausted:
            logger.info("customer_calls_exhausted", count=exhausted)

        claimed = await self.store.claim_due_customer_calls(
            self.retry.claim_batch_size, max_retries, now=now,
        )
        dialed = 0
        for call in claimed:
            try:
                await self._dial(call)
                dialed += 1
            except ProviderError:
                # already recorded by _record_dial_failure
                continue
            except Exception as e:
                logger.error("sweep_row_error", queue="customer_call_retry", call_id=call.id, error=str(e))
        return dialed
