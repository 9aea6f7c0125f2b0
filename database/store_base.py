"""
Abstract Order Store — Interface for all storage backends.

Implementations:
  - SqlOrderStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryOrderStore (dict-based, single-process, no persistence)

Two write primitives carry every concurrency guarantee of the system:

  apply_call_result / update_customer_call
      transactional read → decide → write. The `decide` callable sees a
      consistent snapshot of the rows and returns the changes to persist.

  claim_* / begin_*
      conditional updates. Each succeeds only if the row still matches the
      expected prior state, so at most one concurrent caller wins a row.

No other method writes status, retry_count, next_retry_at or locked_at.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from models.schemas import (
    CallLog, CallStatus, ClaimSpec, CustomerCall, CustomerCallStatus,
    Order, OrderInput, OrderSummary,
)

if TYPE_CHECKING:
    from context.state_machine import Transition

CallDecision = Callable[[Order, CallLog], "Transition"]
CustomerCallDecision = Callable[[CustomerCall], Optional[dict[str, Any]]]


class BaseOrderStore(ABC):
    """Interface that all order store backends must implement."""

    backend_name: str = "abstract"

    # ── Orders ────────────────────────────────────────────────

    @abstractmethod
    async def create_order_with_call_log(self, data: OrderInput) -> tuple[Order, CallLog]:
        """Create a PENDING order and its QUEUED call log in one transaction."""
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def get_order_by_external_id(self, external_order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def list_recent_orders(self, limit: int = 50) -> list[OrderSummary]:
        ...

    @abstractmethod
    async def order_stats(self) -> dict[str, int]:
        ...

    # ── Call logs: reads ──────────────────────────────────────

    @abstractmethod
    async def get_call_log(self, call_log_id: str) -> Optional[CallLog]:
        ...

    @abstractmethod
    async def get_call_log_by_provider_id(self, provider_call_id: str) -> Optional[CallLog]:
        ...

    @abstractmethod
    async def get_latest_call_log(self, order_id: str) -> Optional[CallLog]:
        ...

    @abstractmethod
    async def get_latest_open_call_log_by_phone(self, phone_number: str) -> Optional[CallLog]:
        """Newest attempt in an open status whose order is PENDING or PENDING_MANUAL_REVIEW."""
        ...

    @abstractmethod
    async def get_latest_call_log_by_phone(self, phone_number: str) -> Optional[CallLog]:
        ...

    @abstractmethod
    async def list_unanswered_whatsapp(self, sent_before: datetime, limit: int = 25) -> list[CallLog]:
        """WHATSAPP_SENT attempts, unreplied, escalated at or before `sent_before`."""
        ...

    # ── Call logs: writes ─────────────────────────────────────

    @abstractmethod
    async def set_call_log_provider_id(self, call_log_id: str, provider_call_id: str) -> None:
        ...

    @abstractmethod
    async def mark_call_log_in_progress(
        self, call_log_id: str, provider_call_id: str = None, now: datetime = None,
    ) -> bool:
        """
        Provider reported the call live: QUEUED/IN_PROGRESS → IN_PROGRESS heartbeat.
        Refused when `provider_call_id` differs from the id already stored.
        """
        ...

    @abstractmethod
    async def begin_dial(
        self, call_log_id: str, from_statuses: Iterable[CallStatus], now: datetime = None,
    ) -> bool:
        """Conditionally move an attempt to IN_PROGRESS and lock it before dialling."""
        ...

    @abstractmethod
    async def apply_call_result(
        self, order_id: str, decide: CallDecision, *,
        call_log_id: str = None, provider_call_id: str = None,
    ) -> "Transition":
        ...

    @abstractmethod
    async def claim_call_logs(self, spec: ClaimSpec, limit: int = 25, now: datetime = None) -> list[CallLog]:
        ...

    @abstractmethod
    async def claim_whatsapp_reminders(self, sent_before: datetime, limit: int = 25) -> list[CallLog]:
        """Flip second_reminder_sent on unreplied WHATSAPP_SENT attempts; return those won."""
        ...

    @abstractmethod
    async def release_whatsapp_reminder(self, call_log_id: str) -> None:
        ...

    # ── Customer calls ────────────────────────────────────────

    @abstractmethod
    async def create_customer_calls(self, rows: list[dict[str, str]]) -> list[CustomerCall]:
        ...

    @abstractmethod
    async def get_customer_call(self, call_id: str) -> Optional[CustomerCall]:
        ...

    @abstractmethod
    async def get_customer_call_by_provider_id(self, provider_call_id: str) -> Optional[CustomerCall]:
        ...

    @abstractmethod
    async def list_pending_customer_calls(self, limit: int = None) -> list[CustomerCall]:
        ...

    @abstractmethod
    async def list_recent_customer_calls(self, limit: int = 50) -> list[CustomerCall]:
        ...

    @abstractmethod
    async def begin_customer_call(
        self, call_id: str, from_statuses: Iterable[CustomerCallStatus], now: datetime = None,
    ) -> bool:
        ...

    @abstractmethod
    async def claim_due_customer_calls(
        self, limit: int, max_retries: int, now: datetime = None,
    ) -> list[CustomerCall]:
        """retrying + due + under the cap → calling, retry_count + 1."""
        ...

    @abstractmethod
    async def fail_exhausted_customer_calls(self, max_retries: int, now: datetime = None) -> int:
        ...

    @abstractmethod
    async def set_customer_call_provider_id(self, call_id: str, provider_call_id: str) -> None:
        ...

    @abstractmethod
    async def update_customer_call(
        self, call_id: str, decide: CustomerCallDecision,
    ) -> Optional[CustomerCall]:
        ...

    @abstractmethod
    async def customer_call_stats(self) -> dict[str, int]:
        ...
