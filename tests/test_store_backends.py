"""
Tests for order store backends.

Covers:
  - InMemoryOrderStore and SqlOrderStore (SQLite file) through one suite
  - conditional claims and begin_dial: one winner per row, overlapping sweeps split a batch
  - WhatsApp reminder claim/release
  - customer call claims and exhaustion
  - store factory selection
"""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from config.settings import DatabaseConfig, RetryConfig
from context.state_machine import OrderCallStateMachine
from core.errors import NotFoundError, ValidationError
from database.session import close_db, configure_database, init_db
from database.store import SqlOrderStore
from database.store_factory import create_store, get_store, reset_store
from database.store_memory import InMemoryOrderStore
from job_queue.claims import CallLogClaimQueues
from models.schemas import CallStatus, CustomerCallStatus, OrderStatus

from conftest import FakeClock, make_order_input


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryOrderStore()
        return
    configure_database(f"sqlite:///{tmp_path}/orders.db")
    await init_db()
    try:
        yield SqlOrderStore()
    finally:
        await close_db()


def _machine(store, clock, **policy):
    return OrderCallStateMachine(store, RetryConfig(**policy), clock=clock)


class TestOrders:
    @pytest.mark.asyncio
    async def test_create_order_with_call_log(self, any_store):
        order, log = await any_store.create_order_with_call_log(make_order_input())
        assert order.order_status == OrderStatus.PENDING
        assert log.status == CallStatus.QUEUED
        assert log.order_id == order.id
        assert log.order.id == order.id

        fetched = await any_store.get_order_by_external_id("shop-1001")
        assert fetched.id == order.id
        assert (await any_store.get_latest_call_log(order.id)).id == log.id

    @pytest.mark.asyncio
    async def test_duplicate_external_id_rejected(self, any_store):
        await any_store.create_order_with_call_log(make_order_input())
        with pytest.raises(ValidationError):
            await any_store.create_order_with_call_log(make_order_input())

    @pytest.mark.asyncio
    async def test_list_recent_orders_has_latest_attempt(self, any_store):
        for n in (1, 2):
            await any_store.create_order_with_call_log(make_order_input(n))
        summaries = await any_store.list_recent_orders(10)
        assert len(summaries) == 2
        assert all(s.latest_call_log is not None for s in summaries)

    @pytest.mark.asyncio
    async def test_stats(self, any_store):
        clock = FakeClock()
        sm = _machine(any_store, clock)
        o1, _ = await any_store.create_order_with_call_log(make_order_input(1))
        o2, _ = await any_store.create_order_with_call_log(make_order_input(2))
        await any_store.create_order_with_call_log(make_order_input(3))
        await sm.apply_result(o1.id, "confirm")
        await sm.apply_result(o2.id, "busy")

        stats = await any_store.order_stats()
        assert stats["total"] == 3
        assert stats["confirmed"] == 1
        assert stats["pending"] == 2
        assert stats["retry_scheduled"] == 1


class TestCallLogs:
    @pytest.mark.asyncio
    async def test_apply_result_persists(self, any_store):
        clock = FakeClock()
        sm = _machine(any_store, clock)
        order, log = await any_store.create_order_with_call_log(make_order_input())

        result = await sm.apply_result(order.id, "busy", call_log_id=log.id, failure_reason="customer-busy")
        assert result.call_status == CallStatus.RETRY_SCHEDULED

        stored = await any_store.get_call_log(log.id)
        assert stored.status == CallStatus.RETRY_SCHEDULED
        assert stored.retry_count == 1
        assert stored.next_retry_at == clock() + timedelta(seconds=300)
        assert stored.failure_reason == "customer-busy"
        assert stored.last_intent == "BUSY"

    @pytest.mark.asyncio
    async def test_apply_result_unknown_call_log(self, any_store):
        clock = FakeClock()
        order, _ = await any_store.create_order_with_call_log(make_order_input())
        with pytest.raises(NotFoundError):
            await _machine(any_store, clock).apply_result(order.id, "confirm", call_log_id="nope")

    @pytest.mark.asyncio
    async def test_begin_dial_single_winner(self, any_store):
        _, log = await any_store.create_order_with_call_log(make_order_input())
        assert await any_store.begin_dial(log.id, [CallStatus.QUEUED]) is True
        assert await any_store.begin_dial(log.id, [CallStatus.QUEUED]) is False
        stored = await any_store.get_call_log(log.id)
        assert stored.status == CallStatus.IN_PROGRESS
        assert stored.locked_at is not None

    @pytest.mark.asyncio
    async def test_provider_id_lookup_and_in_progress(self, any_store):
        _, log = await any_store.create_order_with_call_log(make_order_input())
        assert await any_store.mark_call_log_in_progress(log.id, "call_9") is True
        found = await any_store.get_call_log_by_provider_id("call_9")
        assert found.id == log.id
        assert found.status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_in_progress_keeps_current_call_id(self, any_store):
        _, log = await any_store.create_order_with_call_log(make_order_input())
        await any_store.set_call_log_provider_id(log.id, "call_2")

        assert await any_store.mark_call_log_in_progress(log.id, "call_1") is False
        stored = await any_store.get_call_log(log.id)
        assert stored.provider_call_id == "call_2"
        assert stored.status == CallStatus.QUEUED

        assert await any_store.mark_call_log_in_progress(log.id, "call_2") is True
        assert await any_store.mark_call_log_in_progress(log.id) is True
        assert (await any_store.get_call_log(log.id)).provider_call_id == "call_2"

    @pytest.mark.asyncio
    async def test_in_progress_refused_after_completion(self, any_store):
        clock = FakeClock()
        order, log = await any_store.create_order_with_call_log(make_order_input())
        await _machine(any_store, clock).apply_result(order.id, "cancel")
        assert await any_store.mark_call_log_in_progress(log.id) is False

    @pytest.mark.asyncio
    async def test_open_log_by_phone(self, any_store):
        clock = FakeClock()
        order, log = await any_store.create_order_with_call_log(make_order_input())
        found = await any_store.get_latest_open_call_log_by_phone(order.phone_number)
        assert found.id == log.id

        await _machine(any_store, clock).apply_result(order.id, "confirm")
        assert await any_store.get_latest_open_call_log_by_phone(order.phone_number) is None
        assert (await any_store.get_latest_call_log_by_phone(order.phone_number)).id == log.id


class TestClaims:
    @pytest.mark.asyncio
    async def test_due_retry_claimed_once(self, any_store):
        clock = FakeClock()
        sm = _machine(any_store, clock)
        queues = CallLogClaimQueues(RetryConfig())
        order, log = await any_store.create_order_with_call_log(make_order_input())
        await sm.apply_result(order.id, "busy")

        assert await queues.claim(any_store, queues.due_retry(clock()), clock()) == []

        now = clock.advance(301)
        first = await queues.claim(any_store, queues.due_retry(now), now)
        second = await queues.claim(any_store, queues.due_retry(now), now)
        assert [c.id for c in first] == [log.id]
        assert second == []
        assert first[0].status == CallStatus.IN_PROGRESS
        assert first[0].next_retry_at is None
        assert first[0].locked_at is not None

    @pytest.mark.asyncio
    async def test_stale_in_progress_lock_only(self, any_store):
        clock = FakeClock()
        queues = CallLogClaimQueues(RetryConfig())
        _, log = await any_store.create_order_with_call_log(make_order_input())
        await any_store.begin_dial(log.id, [CallStatus.QUEUED], now=clock())

        assert await queues.claim(any_store, queues.stale_in_progress(clock.advance(10)), clock()) == []

        now = clock.advance(40)
        claimed = await queues.claim(any_store, queues.stale_in_progress(now), now)
        assert [c.id for c in claimed] == [log.id]
        assert claimed[0].status == CallStatus.IN_PROGRESS
        assert claimed[0].locked_at == now

        # fresh lock blocks a second sweep
        assert await queues.claim(any_store, queues.stale_in_progress(now), now) == []

        # no result arrived: the row goes stale again and is reclaimed
        assert await queues.claim(any_store, queues.stale_in_progress(clock.advance(39)), clock()) == []
        again = clock.advance(1)
        reclaimed = await queues.claim(any_store, queues.stale_in_progress(again), again)
        assert [c.id for c in reclaimed] == [log.id]
        assert reclaimed[0].locked_at == again

    @pytest.mark.asyncio
    async def test_overlapping_claims_split_batch(self, any_store):
        clock = FakeClock()
        sm = _machine(any_store, clock)
        queues = CallLogClaimQueues(RetryConfig())
        ids = set()
        for n in range(1, 6):
            order, log = await any_store.create_order_with_call_log(make_order_input(n))
            await sm.apply_result(order.id, "busy")
            ids.add(log.id)

        now = clock.advance(301)
        a, b = await asyncio.gather(
            queues.claim(any_store, queues.due_retry(now), now),
            queues.claim(any_store, queues.due_retry(now), now),
        )
        claimed = [c.id for c in a] + [c.id for c in b]
        assert len(claimed) == len(ids)
        assert set(claimed) == ids

    @pytest.mark.asyncio
    async def test_stale_queued(self, any_store):
        clock = FakeClock()
        queues = CallLogClaimQueues(RetryConfig())
        _, log = await any_store.create_order_with_call_log(make_order_input())

        assert await queues.claim(any_store, queues.stale_queued(clock()), clock()) == []
        now = clock.advance(301)
        claimed = await queues.claim(any_store, queues.stale_queued(now), now)
        assert [c.id for c in claimed] == [log.id]
        assert claimed[0].status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_exhausted_rows_never_claimed(self, any_store):
        clock = FakeClock()
        queues = CallLogClaimQueues(RetryConfig(max_retries=1))
        _, log = await any_store.create_order_with_call_log(make_order_input())
        await any_store.begin_dial(log.id, [CallStatus.QUEUED], now=clock())
        order = (await any_store.get_call_log(log.id)).order
        await _machine(any_store, clock, max_retries=1, whatsapp_escalation_threshold=5).apply_result(
            order.id, "busy")

        now = clock.advance(3600)
        for spec in (queues.due_retry(now), queues.stale_in_progress(now), queues.stale_queued(now)):
            assert await queues.claim(any_store, spec, now) == []


class TestMemoryConcurrency:
    @pytest.mark.asyncio
    async def test_overlapping_sweeps_split_batch(self, clock):
        store = InMemoryOrderStore()
        sm = _machine(store, clock)
        queues = CallLogClaimQueues(RetryConfig())
        ids = set()
        for n in range(1, 6):
            order, log = await store.create_order_with_call_log(make_order_input(n))
            await sm.apply_result(order.id, "busy")
            ids.add(log.id)

        now = clock.advance(301)
        a, b = await asyncio.gather(
            queues.claim(store, queues.due_retry(now), now),
            queues.claim(store, queues.due_retry(now), now),
        )
        claimed = [c.id for c in a] + [c.id for c in b]
        assert sorted(claimed) == sorted(ids)

    @pytest.mark.asyncio
    async def test_concurrent_begin_dial(self):
        store = InMemoryOrderStore()
        _, log = await store.create_order_with_call_log(make_order_input())
        results = await asyncio.gather(*[store.begin_dial(log.id, [CallStatus.QUEUED]) for _ in range(5)])
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_returned_models_are_copies(self):
        store = InMemoryOrderStore()
        _, log = await store.create_order_with_call_log(make_order_input())
        log.status = CallStatus.COMPLETED
        assert (await store.get_call_log(log.id)).status == CallStatus.QUEUED


class TestWhatsAppReminders:
    @pytest.mark.asyncio
    async def test_claim_release_and_unanswered(self, any_store):
        clock = FakeClock()
        sm = _machine(any_store, clock, whatsapp_escalation_threshold=1)
        order, log = await any_store.create_order_with_call_log(make_order_input())
        await sm.apply_result(order.id, "recall_request")

        sent_at = (await any_store.get_call_log(log.id)).whatsapp_sent_at
        assert await any_store.claim_whatsapp_reminders(sent_at - timedelta(seconds=1)) == []
        assert await any_store.list_unanswered_whatsapp(sent_at - timedelta(seconds=1)) == []

        # the reply timeout does not wait for the reminder
        unanswered = await any_store.list_unanswered_whatsapp(sent_at)
        assert [c.id for c in unanswered] == [log.id]
        assert unanswered[0].second_reminder_sent is False

        claimed = await any_store.claim_whatsapp_reminders(sent_at)
        assert [c.id for c in claimed] == [log.id]
        assert claimed[0].second_reminder_sent is True
        assert await any_store.claim_whatsapp_reminders(sent_at) == []

        await any_store.release_whatsapp_reminder(log.id)
        assert [c.id for c in await any_store.claim_whatsapp_reminders(sent_at)] == [log.id]


class TestCustomerCalls:
    @pytest.mark.asyncio
    async def test_lifecycle(self, any_store):
        clock = FakeClock()
        created = await any_store.create_customer_calls([
            {"customer_name": "Amit", "phone": "+919812345678"},
            {"customer_name": "Neha", "phone": "+919812345679"},
        ])
        assert len(created) == 2
        assert len(await any_store.list_pending_customer_calls()) == 2
        assert len(await any_store.list_pending_customer_calls(limit=1)) == 1

        call = created[0]
        assert await any_store.begin_customer_call(call.id, [CustomerCallStatus.PENDING], now=clock()) is True
        assert await any_store.begin_customer_call(call.id, [CustomerCallStatus.PENDING], now=clock()) is False
        await any_store.set_customer_call_provider_id(call.id, "gen_1")
        assert (await any_store.get_customer_call_by_provider_id("gen_1")).id == call.id

        due_at = clock() + timedelta(seconds=60)
        updated = await any_store.update_customer_call(call.id, lambda c: {
            "status": CustomerCallStatus.RETRYING, "next_retry_at": due_at, "failure_reason": "busy",
        })
        assert updated.status == CustomerCallStatus.RETRYING
        assert await any_store.update_customer_call(call.id, lambda c: None) is None

        assert await any_store.claim_due_customer_calls(10, 3, now=clock()) == []
        claimed = await any_store.claim_due_customer_calls(10, 3, now=clock.advance(61))
        assert [c.id for c in claimed] == [call.id]
        assert claimed[0].status == CustomerCallStatus.CALLING
        assert claimed[0].retry_count == 1

        stats = await any_store.customer_call_stats()
        assert stats["total"] == 2
        assert stats["calling"] == 1
        assert stats["pending"] == 1

    @pytest.mark.asyncio
    async def test_fail_exhausted(self, any_store):
        clock = FakeClock()
        [call] = await any_store.create_customer_calls([{"customer_name": "Amit", "phone": "+919812345678"}])
        await any_store.update_customer_call(call.id, lambda c: {
            "status": CustomerCallStatus.RETRYING, "retry_count": 3, "next_retry_at": clock(),
        })
        assert await any_store.claim_due_customer_calls(10, 3, now=clock()) == []
        assert await any_store.fail_exhausted_customer_calls(3, now=clock()) == 1
        stored = await any_store.get_customer_call(call.id)
        assert stored.status == CustomerCallStatus.FAILED
        assert stored.failure_reason == "max retries reached"

    @pytest.mark.asyncio
    async def test_update_missing_call(self, any_store):
        with pytest.raises(NotFoundError):
            await any_store.update_customer_call("nope", lambda c: {})


class TestStoreFactory:
    def setup_method(self):
        reset_store()

    def teardown_method(self):
        reset_store()

    def test_memory_backend(self):
        store = create_store(DatabaseConfig(store_backend="memory"))
        assert store.backend_name == "memory"
        assert get_store() is store
        assert create_store(DatabaseConfig(store_backend="sql")) is store

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            create_store(DatabaseConfig(store_backend="mongo"))
