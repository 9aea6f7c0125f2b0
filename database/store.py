"""
SqlOrderStore — Portable SQL store for PostgreSQL, MySQL, SQLite.

Concurrency primitives:
  - apply_call_result / update_customer_call run read → decide → write in
    one session, reading the rows with SELECT ... FOR UPDATE (ignored by
    SQLite, whose writer lock serialises the transaction instead)
  - claims are `UPDATE ... WHERE id = :id AND <readiness predicate>`; the
    statement's rowcount tells the caller whether it won the row

SQLite returns naive datetimes; every converter re-attaches UTC.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFoundError, ValidationError
from database.models import OrderRow, CallLogRow, CustomerCallRow, _new_id
from database.session import get_session
from database.store_base import BaseOrderStore, CallDecision, CustomerCallDecision
from models.schemas import (
    CallLog, CallStatus, ClaimSpec, CustomerCall, CustomerCallStatus,
    Order, OrderInput, OrderStatus, OrderSummary,
    OPEN_CALL_STATUSES, OPEN_ORDER_STATUSES,
)

logger = structlog.get_logger()

_AGE_COLUMNS = {
    "next_retry_at": CallLogRow.next_retry_at,
    "updated_at": CallLogRow.updated_at,
    "created_at": CallLogRow.created_at,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _values(statuses: Iterable[Enum]) -> list[str]:
    return [s.value for s in statuses]


class SqlOrderStore(BaseOrderStore):
    """
    Persistent order store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    backend_name = "sql"

    # ── Orders ─────────────────────────────────────────────

    async def create_order_with_call_log(self, data: OrderInput) -> tuple[Order, CallLog]:
        now = _utcnow()
        async with get_session() as db:
            order_row = OrderRow(
                id=_new_id(),
                external_order_id=data.external_order_id,
                order_number=data.order_number,
                customer_name=data.customer_name,
                phone_number=data.phone_number,
                store_name=data.store_name,
                total_price=data.total_price,
                order_placed_at=data.order_placed_at,
                order_status=OrderStatus.PENDING.value,
                created_at=now, updated_at=now,
            )
            call_row = CallLogRow(
                id=_new_id(), order_id=order_row.id,
                status=CallStatus.QUEUED.value, retry_count=0,
                whatsapp_replied=False, second_reminder_sent=False,
                created_at=now, updated_at=now,
            )
            db.add(order_row)
            try:
                await db.flush()
            except IntegrityError:
                raise ValidationError(f"Order {data.external_order_id} already exists") from None
            db.add(call_row)
            await db.flush()
            order = self._row_to_order(order_row)
            return order, self._row_to_call_log(call_row, order)

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with get_session() as db:
            row = await db.get(OrderRow, order_id)
            return self._row_to_order(row) if row else None

    async def get_order_by_external_id(self, external_order_id: str) -> Optional[Order]:
        async with get_session() as db:
            stmt = select(OrderRow).where(OrderRow.external_order_id == external_order_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_order(row) if row else None

    async def list_recent_orders(self, limit: int = 50) -> list[OrderSummary]:
        async with get_session() as db:
            stmt = select(OrderRow).order_by(OrderRow.created_at.desc()).limit(limit)
            orders = [self._row_to_order(r) for r in (await db.execute(stmt)).scalars()]
            if not orders:
                return []

            stmt = (
                select(CallLogRow)
                .where(CallLogRow.order_id.in_([o.id for o in orders]))
                .order_by(CallLogRow.created_at)
            )
            by_id = {o.id: o for o in orders}
            latest: dict[str, CallLog] = {}
            for row in (await db.execute(stmt)).scalars():
                latest[row.order_id] = self._row_to_call_log(row, by_id[row.order_id])

            return [OrderSummary(order=o, latest_call_log=latest.get(o.id)) for o in orders]

    async def order_stats(self) -> dict[str, int]:
        stats = {
            "total": 0, "pending": 0, "confirmed": 0, "cancelled": 0,
            "pending_manual_review": 0, "invalid": 0,
        }
        async with get_session() as db:
            stmt = select(OrderRow.order_status, func.count()).group_by(OrderRow.order_status)
            for status, count in (await db.execute(stmt)).all():
                stats[status.lower()] = count
                stats["total"] += count
            stmt = select(func.count()).select_from(CallLogRow).where(
                CallLogRow.status == CallStatus.RETRY_SCHEDULED.value
            )
            stats["retry_scheduled"] = (await db.execute(stmt)).scalar_one()
        return stats

    # ── Call logs: reads ───────────────────────────────────

    async def get_call_log(self, call_log_id: str) -> Optional[CallLog]:
        async with get_session() as db:
            row = await db.get(CallLogRow, call_log_id)
            return self._row_to_call_log(row) if row else None

    async def get_call_log_by_provider_id(self, provider_call_id: str) -> Optional[CallLog]:
        return await self._first_call_log(CallLogRow.provider_call_id == provider_call_id)

    async def get_latest_call_log(self, order_id: str) -> Optional[CallLog]:
        return await self._first_call_log(CallLogRow.order_id == order_id)

    async def get_latest_open_call_log_by_phone(self, phone_number: str) -> Optional[CallLog]:
        return await self._first_call_log(
            OrderRow.phone_number == phone_number,
            CallLogRow.status.in_(_values(OPEN_CALL_STATUSES)),
            OrderRow.order_status.in_(_values(OPEN_ORDER_STATUSES)),
            join_order=True,
        )

    async def get_latest_call_log_by_phone(self, phone_number: str) -> Optional[CallLog]:
        return await self._first_call_log(OrderRow.phone_number == phone_number, join_order=True)

    async def list_unanswered_whatsapp(self, sent_before: datetime, limit: int = 25) -> list[CallLog]:
        async with get_session() as db:
            stmt = (
                select(CallLogRow)
                .where(and_(
                    CallLogRow.status == CallStatus.WHATSAPP_SENT.value,
                    CallLogRow.whatsapp_replied.is_(False),
                    CallLogRow.whatsapp_sent_at.is_not(None),
                    CallLogRow.whatsapp_sent_at <= sent_before,
                ))
                .order_by(CallLogRow.whatsapp_sent_at)
                .limit(limit)
            )
            return [self._row_to_call_log(r) for r in (await db.execute(stmt)).scalars()]

    # ── Call logs: writes ──────────────────────────────────

    async def set_call_log_provider_id(self, call_log_id: str, provider_call_id: str) -> None:
        async with get_session() as db:
            stmt = (
                update(CallLogRow)
                .where(CallLogRow.id == call_log_id)
                .values(provider_call_id=provider_call_id, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                raise NotFoundError(f"Call log {call_log_id} not found")

    async def mark_call_log_in_progress(
        self, call_log_id: str, provider_call_id: str = None, now: datetime = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": CallStatus.IN_PROGRESS.value,
            "failure_reason": None,
            "updated_at": now or _utcnow(),
        }
        conditions = [
            CallLogRow.id == call_log_id,
            CallLogRow.status.in_([CallStatus.QUEUED.value, CallStatus.IN_PROGRESS.value]),
        ]
        if provider_call_id:
            values["provider_call_id"] = provider_call_id
            # a heartbeat from a superseded dial must not replace the current call id
            conditions.append(or_(
                CallLogRow.provider_call_id.is_(None),
                CallLogRow.provider_call_id == provider_call_id,
            ))
        async with get_session() as db:
            stmt = (
                update(CallLogRow)
                .where(and_(*conditions))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return (await db.execute(stmt)).rowcount == 1

    async def begin_dial(
        self, call_log_id: str, from_statuses: Iterable[CallStatus], now: datetime = None,
    ) -> bool:
        now = now or _utcnow()
        async with get_session() as db:
            stmt = (
                update(CallLogRow)
                .where(and_(
                    CallLogRow.id == call_log_id,
                    CallLogRow.status.in_(_values(from_statuses)),
                ))
                .values(
                    status=CallStatus.IN_PROGRESS.value,
                    locked_at=now, next_retry_at=None, updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return (await db.execute(stmt)).rowcount == 1

    async def apply_call_result(
        self, order_id: str, decide: CallDecision, *,
        call_log_id: str = None, provider_call_id: str = None,
    ):
        async with get_session() as db:
            order_row = await db.get(OrderRow, order_id, with_for_update=True)
            if order_row is None:
                raise NotFoundError(f"Order {order_id} not found")
            call_row = await self._select_call_row(db, order_id, call_log_id, provider_call_id)

            order = self._row_to_order(order_row)
            transition = decide(order, self._row_to_call_log(call_row, order))
            if not transition:
                return transition

            now = _utcnow()
            for field, value in transition.call_updates.items():
                setattr(call_row, field, _db_value(value))
            call_row.updated_at = now
            if transition.order_status is not None and transition.order_status != order.order_status:
                order_row.order_status = transition.order_status.value
                order_row.updated_at = now
            return transition

    async def claim_call_logs(self, spec: ClaimSpec, limit: int = 25, now: datetime = None) -> list[CallLog]:
        now = now or _utcnow()
        age_column = _AGE_COLUMNS.get(spec.age_field)
        if age_column is None:
            raise ValidationError(f"Unsupported claim age field: {spec.age_field}")

        lock_ok = CallLogRow.locked_at.is_(None)
        if spec.lock_stale_before is not None:
            lock_ok = or_(lock_ok, CallLogRow.locked_at <= spec.lock_stale_before)
        ready = and_(
            CallLogRow.status == spec.status.value,
            age_column.is_not(None),
            age_column <= spec.cutoff,
            CallLogRow.retry_count < spec.max_retries,
            lock_ok,
        )

        values: dict[str, Any] = {"locked_at": now, "updated_at": now}
        if spec.set_status is not None:
            values.update(status=spec.set_status.value, next_retry_at=None)

        async with get_session() as db:
            stmt = select(CallLogRow.id).where(ready).order_by(age_column).limit(limit)
            candidate_ids = list((await db.execute(stmt)).scalars())

            claimed_ids = []
            for call_log_id in candidate_ids:
                stmt = (
                    update(CallLogRow)
                    .where(and_(CallLogRow.id == call_log_id, ready))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if (await db.execute(stmt)).rowcount == 1:
                    claimed_ids.append(call_log_id)

            return await self._load_call_logs(db, claimed_ids)

    async def claim_whatsapp_reminders(self, sent_before: datetime, limit: int = 25) -> list[CallLog]:
        due = and_(
            CallLogRow.status == CallStatus.WHATSAPP_SENT.value,
            CallLogRow.whatsapp_replied.is_(False),
            CallLogRow.second_reminder_sent.is_(False),
            CallLogRow.whatsapp_sent_at.is_not(None),
            CallLogRow.whatsapp_sent_at <= sent_before,
        )
        async with get_session() as db:
            stmt = select(CallLogRow.id).where(due).order_by(CallLogRow.whatsapp_sent_at).limit(limit)
            candidate_ids = list((await db.execute(stmt)).scalars())

            claimed_ids = []
            for call_log_id in candidate_ids:
                stmt = (
                    update(CallLogRow)
                    .where(and_(CallLogRow.id == call_log_id, due))
                    .values(second_reminder_sent=True, updated_at=_utcnow())
                    .execution_options(synchronize_session=False)
                )
                if (await db.execute(stmt)).rowcount == 1:
                    claimed_ids.append(call_log_id)

            return await self._load_call_logs(db, claimed_ids)

    async def release_whatsapp_reminder(self, call_log_id: str) -> None:
        async with get_session() as db:
            stmt = (
                update(CallLogRow)
                .where(and_(
                    CallLogRow.id == call_log_id,
                    CallLogRow.status == CallStatus.WHATSAPP_SENT.value,
                    CallLogRow.whatsapp_replied.is_(False),
                ))
                .values(second_reminder_sent=False)
                .execution_options(synchronize_session=False)
            )
            await db.execute(stmt)

    # ── Customer calls ─────────────────────────────────────

    async def create_customer_calls(self, rows: list[dict[str, str]]) -> list[CustomerCall]:
        now = _utcnow()
        async with get_session() as db:
            created = [
                CustomerCallRow(
                    id=_new_id(), customer_name=row["customer_name"], phone=row["phone"],
                    status=CustomerCallStatus.PENDING.value, retry_count=0,
                    created_at=now, updated_at=now,
                )
                for row in rows
            ]
            db.add_all(created)
            await db.flush()
            return [self._row_to_customer_call(r) for r in created]

    async def get_customer_call(self, call_id: str) -> Optional[CustomerCall]:
        async with get_session() as db:
            row = await db.get(CustomerCallRow, call_id)
            return self._row_to_customer_call(row) if row else None

    async def get_customer_call_by_provider_id(self, provider_call_id: str) -> Optional[CustomerCall]:
        async with get_session() as db:
            stmt = (
                select(CustomerCallRow)
                .where(CustomerCallRow.provider_call_id == provider_call_id)
                .order_by(CustomerCallRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_customer_call(row) if row else None

    async def list_pending_customer_calls(self, limit: int = None) -> list[CustomerCall]:
        async with get_session() as db:
            stmt = (
                select(CustomerCallRow)
                .where(CustomerCallRow.status == CustomerCallStatus.PENDING.value)
                .order_by(CustomerCallRow.created_at)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return [self._row_to_customer_call(r) for r in (await db.execute(stmt)).scalars()]

    async def list_recent_customer_calls(self, limit: int = 50) -> list[CustomerCall]:
        async with get_session() as db:
            stmt = select(CustomerCallRow).order_by(CustomerCallRow.created_at.desc()).limit(limit)
            return [self._row_to_customer_call(r) for r in (await db.execute(stmt)).scalars()]

    async def begin_customer_call(
        self, call_id: str, from_statuses: Iterable[CustomerCallStatus], now: datetime = None,
    ) -> bool:
        now = now or _utcnow()
        async with get_session() as db:
            stmt = (
                update(CustomerCallRow)
                .where(and_(
                    CustomerCallRow.id == call_id,
                    CustomerCallRow.status.in_(_values(from_statuses)),
                ))
                .values(
                    status=CustomerCallStatus.CALLING.value,
                    next_retry_at=None, last_call_at=now, updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return (await db.execute(stmt)).rowcount == 1

    async def claim_due_customer_calls(
        self, limit: int, max_retries: int, now: datetime = None,
    ) -> list[CustomerCall]:
        now = now or _utcnow()
        due = and_(
            CustomerCallRow.status == CustomerCallStatus.RETRYING.value,
            CustomerCallRow.retry_count < max_retries,
            CustomerCallRow.next_retry_at.is_not(None),
            CustomerCallRow.next_retry_at <= now,
        )
        async with get_session() as db:
            stmt = select(CustomerCallRow.id).where(due).order_by(CustomerCallRow.next_retry_at).limit(limit)
            candidate_ids = list((await db.execute(stmt)).scalars())

            claimed_ids = []
            for call_id in candidate_ids:
                stmt = (
                    update(CustomerCallRow)
                    .where(and_(CustomerCallRow.id == call_id, due))
                    .values(
                        status=CustomerCallStatus.CALLING.value,
                        retry_count=CustomerCallRow.retry_count + 1,
                        next_retry_at=None, last_call_at=now, updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if (await db.execute(stmt)).rowcount == 1:
                    claimed_ids.append(call_id)

            if not claimed_ids:
                return []
            stmt = select(CustomerCallRow).where(CustomerCallRow.id.in_(claimed_ids))
            rows = {r.id: r for r in (await db.execute(stmt)).scalars()}
            return [self._row_to_customer_call(rows[i]) for i in claimed_ids if i in rows]

    async def fail_exhausted_customer_calls(self, max_retries: int, now: datetime = None) -> int:
        async with get_session() as db:
            stmt = (
                update(CustomerCallRow)
                .where(and_(
                    CustomerCallRow.status == CustomerCallStatus.RETRYING.value,
                    CustomerCallRow.retry_count >= max_retries,
                ))
                .values(
                    status=CustomerCallStatus.FAILED.value,
                    next_retry_at=None,
                    failure_reason=func.coalesce(CustomerCallRow.failure_reason, "max retries reached"),
                    updated_at=now or _utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return (await db.execute(stmt)).rowcount

    async def set_customer_call_provider_id(self, call_id: str, provider_call_id: str) -> None:
        async with get_session() as db:
            stmt = (
                update(CustomerCallRow)
                .where(CustomerCallRow.id == call_id)
                .values(provider_call_id=provider_call_id, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if (await db.execute(stmt)).rowcount == 0:
                raise NotFoundError(f"Customer call {call_id} not found")

    async def update_customer_call(
        self, call_id: str, decide: CustomerCallDecision,
    ) -> Optional[CustomerCall]:
        async with get_session() as db:
            row = await db.get(CustomerCallRow, call_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Customer call {call_id} not found")
            updates = decide(self._row_to_customer_call(row))
            if not updates:
                return None
            for field, value in updates.items():
                setattr(row, field, _db_value(value))
            row.updated_at = _utcnow()
            await db.flush()
            return self._row_to_customer_call(row)

    async def customer_call_stats(self) -> dict[str, int]:
        stats = {"total": 0}
        stats.update({s.value: 0 for s in CustomerCallStatus})
        async with get_session() as db:
            stmt = select(CustomerCallRow.status, func.count()).group_by(CustomerCallRow.status)
            for status, count in (await db.execute(stmt)).all():
                stats[status] = count
                stats["total"] += count
        return stats

    # ── Helpers ────────────────────────────────────────────

    async def _first_call_log(self, *criteria, join_order: bool = False) -> Optional[CallLog]:
        async with get_session() as db:
            stmt = select(CallLogRow)
            if join_order:
                stmt = stmt.join(OrderRow, CallLogRow.order_id == OrderRow.id)
            stmt = stmt.where(*criteria).order_by(CallLogRow.created_at.desc()).limit(1)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_call_log(row) if row else None

    async def _select_call_row(
        self, db: AsyncSession, order_id: str,
        call_log_id: Optional[str], provider_call_id: Optional[str],
    ) -> CallLogRow:
        if call_log_id:
            row = await db.get(CallLogRow, call_log_id, with_for_update=True)
            if row is None or row.order_id != order_id:
                raise NotFoundError(f"Call log {call_log_id} not found for order {order_id}")
            return row

        base = (
            select(CallLogRow)
            .where(CallLogRow.order_id == order_id)
            .order_by(CallLogRow.created_at.desc())
            .limit(1)
            .with_for_update()
        )
        if provider_call_id:
            stmt = base.where(CallLogRow.provider_call_id == provider_call_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is not None:
                return row
        row = (await db.execute(base)).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"No call log for order {order_id}")
        return row

    async def _load_call_logs(self, db: AsyncSession, ids: list[str]) -> list[CallLog]:
        if not ids:
            return []
        stmt = select(CallLogRow).where(CallLogRow.id.in_(ids))
        rows = {r.id: r for r in (await db.execute(stmt)).scalars()}
        return [self._row_to_call_log(rows[i]) for i in ids if i in rows]

    @staticmethod
    def _row_to_order(row: OrderRow) -> Order:
        return Order(
            id=row.id,
            external_order_id=row.external_order_id,
            order_number=row.order_number or "",
            customer_name=row.customer_name,
            phone_number=row.phone_number,
            store_name=row.store_name or "",
            total_price=row.total_price or "0",
            order_placed_at=_aware(row.order_placed_at),
            order_status=OrderStatus(row.order_status),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @classmethod
    def _row_to_call_log(cls, row: CallLogRow, order: Optional[Order] = None) -> CallLog:
        if order is None and row.order is not None:
            order = cls._row_to_order(row.order)
        return CallLog(
            id=row.id,
            order_id=row.order_id,
            provider_call_id=row.provider_call_id,
            status=CallStatus(row.status),
            retry_count=row.retry_count or 0,
            next_retry_at=_aware(row.next_retry_at),
            failure_reason=row.failure_reason,
            last_intent=row.last_intent,
            locked_at=_aware(row.locked_at),
            whatsapp_sent_at=_aware(row.whatsapp_sent_at),
            whatsapp_replied=bool(row.whatsapp_replied),
            whatsapp_replied_at=_aware(row.whatsapp_replied_at),
            second_reminder_sent=bool(row.second_reminder_sent),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            order=order,
        )

    @staticmethod
    def _row_to_customer_call(row: CustomerCallRow) -> CustomerCall:
        return CustomerCall(
            id=row.id,
            customer_name=row.customer_name,
            phone=row.phone,
            status=CustomerCallStatus(row.status),
            retry_count=row.retry_count or 0,
            provider_call_id=row.provider_call_id,
            failure_reason=row.failure_reason,
            next_retry_at=_aware(row.next_retry_at),
            last_call_at=_aware(row.last_call_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )
