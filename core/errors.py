"""Domain errors raised by the store, state machine and services."""
from __future__ import annotations


class OrderCallError(Exception):
    """Base exception for the confirmation workflow."""


class ValidationError(OrderCallError):
    """Malformed input: bad phone, missing fields, unsupported intent."""


class NotFoundError(OrderCallError):
    """Referenced order, call attempt or customer call does not exist."""


class StoreError(OrderCallError):
    """Persistence failure."""
