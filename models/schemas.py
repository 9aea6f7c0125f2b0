"""
Core data models for the COD confirmation service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    INVALID = "INVALID"
    PENDING_MANUAL_REVIEW = "PENDING_MANUAL_REVIEW"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.INVALID,
})


class CallStatus(str, Enum):
    """Lifecycle of one order confirmation call attempt."""
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    WHATSAPP_SENT = "WHATSAPP_SENT"


# Attempts a WhatsApp reply may still act on
OPEN_CALL_STATUSES = frozenset({
    CallStatus.QUEUED, CallStatus.IN_PROGRESS, CallStatus.RETRY_SCHEDULED,
    CallStatus.FAILED, CallStatus.WHATSAPP_SENT,
})
OPEN_ORDER_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PENDING_MANUAL_REVIEW})


class CustomerCallStatus(str, Enum):
    """Lifecycle of a standalone (non-order) customer call."""
    PENDING = "pending"
    CALLING = "calling"
    ANSWERED = "answered"
    RETRYING = "retrying"
    FAILED = "failed"


class Intent(str, Enum):
    CONFIRM = "CONFIRM"
    CANCEL = "CANCEL"
    WRONG_NUMBER = "WRONG_NUMBER"
    BUSY = "BUSY"
    RECALL_REQUEST = "RECALL_REQUEST"
    NO_RESPONSE = "NO_RESPONSE"


DECISIVE_INTENTS = frozenset({Intent.CONFIRM, Intent.CANCEL, Intent.WRONG_NUMBER})
RETRY_INTENTS = frozenset({Intent.BUSY, Intent.RECALL_REQUEST, Intent.NO_RESPONSE})


class CallOutcome(str, Enum):
    """End-of-call classification for the generic customer-call flow."""
    ANSWERED = "answered"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Orders and call attempts
# ──────────────────────────────────────────────────────────────

class OrderInput(BaseModel):
    """Fields needed to admit a new order into the confirmation workflow."""
    external_order_id: str                    # platform-native id, unique
    order_number: str = ""                    # human-facing order number read out on the call
    customer_name: str
    phone_number: str                         # E.164
    store_name: str = ""
    total_price: str = "0"
    order_placed_at: datetime = Field(default_factory=_utcnow)


class Order(BaseModel):
    id: str
    external_order_id: str
    order_number: str = ""
    customer_name: str
    phone_number: str
    store_name: str = ""
    total_price: str = "0"
    order_placed_at: Optional[datetime] = None
    order_status: OrderStatus = OrderStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_ref(self) -> str:
        return (self.order_number or self.external_order_id).lstrip("#")


class CallLog(BaseModel):
    """One dial attempt cycle for an order (retries reuse the same log)."""
    id: str
    order_id: str
    provider_call_id: Optional[str] = None
    status: CallStatus = CallStatus.QUEUED
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    last_intent: Optional[str] = None
    locked_at: Optional[datetime] = None
    whatsapp_sent_at: Optional[datetime] = None
    whatsapp_replied: bool = False
    whatsapp_replied_at: Optional[datetime] = None
    second_reminder_sent: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    order: Optional[Order] = None


class OrderSummary(BaseModel):
    """Dashboard row: an order with its authoritative (latest) call attempt."""
    order: Order
    latest_call_log: Optional[CallLog] = None


class CustomerCall(BaseModel):
    id: str
    customer_name: str
    phone: str
    status: CustomerCallStatus = CustomerCallStatus.PENDING
    retry_count: int = 0
    provider_call_id: Optional[str] = None
    failure_reason: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    last_call_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  State machine results
# ──────────────────────────────────────────────────────────────

class CallResult(BaseModel):
    """What apply_result did to an order + call attempt pair."""
    order_id: str
    call_log_id: str
    order_status: OrderStatus
    call_status: CallStatus
    retry_count: int
    next_retry_at: Optional[datetime] = None
    whatsapp_sent: bool = False
    ignored: bool = False
    corrected: bool = False
    reason: str = ""


# ──────────────────────────────────────────────────────────────
#  Work queue claims
# ──────────────────────────────────────────────────────────────

class ClaimSpec(BaseModel):
    """
    Readiness predicate + claim mutation for one work queue.

    A row is claimable when status matches, `age_field <= cutoff`,
    retry_count < max_retries and it is unlocked (or its lock is older
    than `lock_stale_before`). Claiming stamps locked_at and, when
    `set_status` is given, flips the status and clears next_retry_at.
    """
    name: str
    status: CallStatus
    age_field: str                            # next_retry_at | updated_at | created_at
    cutoff: datetime
    max_retries: int
    set_status: Optional[CallStatus] = None
    lock_stale_before: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Outbound events
# ──────────────────────────────────────────────────────────────

class WhatsAppFallbackEvent(BaseModel):
    """Emitted after commit when an attempt escalates to WhatsApp."""
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    order_id: str
    call_log_id: str
    phone_number: str
    customer_name: str
    order_ref: str
    total_price: str
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}
