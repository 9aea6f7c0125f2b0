"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

  - String primary keys (uuid hex) — no database-specific sequences.
  - Statuses stored as plain strings so enum additions need no migration.
  - Indexes cover the sweeper predicates: (status, next_retry_at) for due
    retries, (status, updated_at) for stale in-progress, (status, created_at)
    for stale queued.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, ForeignKey, Index,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Orders
# ──────────────────────────────────────────────────────────────

class OrderRow(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    external_order_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    order_number: Mapped[str] = mapped_column(String(64), default="")
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    store_name: Mapped[str] = mapped_column(String(256), default="")
    total_price: Mapped[str] = mapped_column(String(32), default="0")
    order_placed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    order_status: Mapped[str] = mapped_column(String(32), default="PENDING")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    call_logs: Mapped[list["CallLogRow"]] = relationship(
        back_populates="order", lazy="noload", order_by="CallLogRow.created_at",
    )

    __table_args__ = (
        Index("ix_orders_status", "order_status"),
        Index("ix_orders_phone", "phone_number"),
        Index("ix_orders_created", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "external_order_id": self.external_order_id,
            "order_number": self.order_number, "customer_name": self.customer_name,
            "phone_number": self.phone_number, "store_name": self.store_name,
            "total_price": self.total_price, "order_placed_at": self.order_placed_at,
            "order_status": self.order_status,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }


# ──────────────────────────────────────────────────────────────
#  Call logs (order confirmation attempts)
# ──────────────────────────────────────────────────────────────

class CallLogRow(Base):
    __tablename__ = "call_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.id"), nullable=False)
    provider_call_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="QUEUED")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_intent: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    whatsapp_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    whatsapp_replied: Mapped[bool] = mapped_column(Boolean, default=False)
    whatsapp_replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    second_reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    order: Mapped["OrderRow"] = relationship(back_populates="call_logs", lazy="selectin")

    __table_args__ = (
        Index("ix_call_logs_order", "order_id"),
        Index("ix_call_logs_provider_call", "provider_call_id"),
        Index("ix_call_logs_status_next", "status", "next_retry_at"),
        Index("ix_call_logs_status_updated", "status", "updated_at"),
        Index("ix_call_logs_status_created", "status", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Customer calls (standalone, not tied to an order)
# ──────────────────────────────────────────────────────────────

class CustomerCallRow(Base):
    __tablename__ = "customer_calls"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    provider_call_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_call_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_customer_calls_status_next", "status", "next_retry_at"),
        Index("ix_customer_calls_provider_call", "provider_call_id"),
    )
