"""Shared test fixtures for the COD confirmation service."""
import os

# Settings are read lazily; keep imports of api.main off the real database
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from config.settings import OrdersConfig, RetryConfig, SchedulerConfig
from context.state_machine import OrderCallStateMachine
from core.orchestrator import OrderCallOrchestrator
from database.store_memory import InMemoryOrderStore
from models.schemas import OrderInput


class FakeClock:
    """
    Callable clock the services read instead of datetime.now().
    Starts at wall-clock time because some store writes stamp updated_at
    themselves; tests only ever move it forward.
    """

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingDispatcher:
    """Collects published outbound events."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


def make_order_input(n: int = 1, **overrides: Any) -> OrderInput:
    data = {
        "external_order_id": f"shop-{1000 + n}",
        "order_number": f"#{1000 + n}",
        "customer_name": "Priya Sharma",
        "phone_number": f"+9198765432{n:02d}",
        "store_name": "chai-corner",
        "total_price": "499.00",
    }
    data.update(overrides)
    return OrderInput(**data)


def make_gateway() -> AsyncMock:
    ids = itertools.count(1)
    gateway = AsyncMock()

    async def create_order_call(**kwargs):
        return {"provider_call_id": f"call_{next(ids)}", "status": "queued", "raw": {}}

    async def create_customer_call(**kwargs):
        return {"provider_call_id": f"gen_{next(ids)}", "status": "queued", "raw": {}}

    gateway.create_order_call.side_effect = create_order_call
    gateway.create_customer_call.side_effect = create_customer_call
    gateway.fetch_call.return_value = {"status": "ended", "endedReason": "customer-ended-call"}
    return gateway


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(poll_attempts=2, poll_interval_s=0)


@pytest.fixture
def orders_config() -> OrdersConfig:
    return OrdersConfig()


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def gateway() -> AsyncMock:
    return make_gateway()


@pytest.fixture
def whatsapp() -> AsyncMock:
    client = AsyncMock()
    client.send_fallback.return_value = {"message_id": "SM1", "status": "queued", "to": "whatsapp:+91"}
    client.send_reminder.return_value = {"message_id": "SM2", "status": "queued", "to": "whatsapp:+91"}
    return client


@pytest.fixture
def state_machine(store, retry_config, dispatcher, clock) -> OrderCallStateMachine:
    return OrderCallStateMachine(store, retry_config, dispatcher, clock=clock)


@pytest.fixture
def orchestrator(store, state_machine, gateway, whatsapp, retry_config,
                 scheduler_config, orders_config, clock) -> OrderCallOrchestrator:
    return OrderCallOrchestrator(
        store, state_machine, gateway, whatsapp,
        retry=retry_config,
        scheduler=scheduler_config,
        orders=orders_config,
        clock=clock,
    )


@pytest.fixture
def order_input() -> OrderInput:
    return make_order_input()
