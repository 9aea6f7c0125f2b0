"""
Database layer — Order and call-attempt persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  order, call_log = await store.create_order_with_call_log(order_input)
"""
from database.models import Base, OrderRow, CallLogRow, CustomerCallRow
from database.session import configure_database, get_engine, get_session, init_db, close_db
from database.store_base import BaseOrderStore
from database.store import SqlOrderStore
from database.store_memory import InMemoryOrderStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "OrderRow", "CallLogRow", "CustomerCallRow",
    # Session management
    "configure_database", "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseOrderStore",
    # Store backends
    "SqlOrderStore", "InMemoryOrderStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
