"""
Service wiring — builds the object graph the API and the sweepers share.

    store ─┬─ OrderCallStateMachine ──publish──▶ OutboundEventDispatcher
           │         │                                  │
           │         ▼                                  ▼
           ├─ OrderCallOrchestrator ◀── deliver_whatsapp_fallback
           ├─ CustomerCallService
           └─ webhook / reply processors

Tests pass their own store and AsyncMock gateways; everything else is
built from Settings.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from channels.telephony.factory import CallGateway, create_call_gateway
from channels.twilio_whatsapp import WhatsAppGateway
from config.settings import Settings
from context.state_machine import OrderCallStateMachine
from core.customer_calls import CustomerCallService
from core.ingestion import CustomerCallWebhookProcessor, OrderCallWebhookProcessor, WhatsAppReplyProcessor
from core.orchestrator import OrderCallOrchestrator
from database.session import close_db, init_db
from database.store_base import BaseOrderStore
from database.store_factory import create_store
from job_queue.dispatcher import OutboundEventDispatcher
from job_queue.supervisor import SchedulerSupervisor
from job_queue.sweepers import CustomerCallSweeper, OrderSweeper, WhatsAppReminderSweeper

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ServiceContainer:
    settings: Settings
    store: BaseOrderStore
    gateway: CallGateway
    whatsapp: WhatsAppGateway
    state_machine: OrderCallStateMachine
    dispatcher: OutboundEventDispatcher
    orchestrator: OrderCallOrchestrator
    customer_calls: CustomerCallService
    order_webhooks: OrderCallWebhookProcessor
    customer_webhooks: CustomerCallWebhookProcessor
    whatsapp_replies: WhatsAppReplyProcessor
    supervisor: SchedulerSupervisor

    async def startup(self) -> None:
        if self.store.backend_name == "sql":
            await init_db()
        if self.settings.scheduler.enabled:
            await self.supervisor.start()

    async def shutdown(self) -> None:
        await self.supervisor.stop()
        await self.order_webhooks.aclose()
        await self.dispatcher.wait_inline()
        await self.gateway.close()
        await self.whatsapp.close()
        if self.store.backend_name == "sql":
            await close_db()


def build_services(
    settings: Settings,
    *,
    store: BaseOrderStore = None,
    gateway: CallGateway = None,
    whatsapp: WhatsAppGateway = None,
    clock: Callable[[], datetime] = _utcnow,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ServiceContainer:
    store = store or create_store(settings.database)
    gateway = gateway or create_call_gateway(settings.voice)
    whatsapp = whatsapp or WhatsAppGateway(settings.messaging)

    state_machine = OrderCallStateMachine(store, settings.retry, clock=clock)
    orchestrator = OrderCallOrchestrator(
        store, state_machine, gateway, whatsapp,
        retry=settings.retry,
        scheduler=settings.scheduler,
        orders=settings.orders,
        clock=clock,
    )
    dispatcher = OutboundEventDispatcher(
        orchestrator.deliver_whatsapp_fallback,
        max_attempts=settings.scheduler.dispatcher_max_attempts,
    )
    state_machine.dispatcher = dispatcher

    customer_calls = CustomerCallService(
        store, gateway,
        retry=settings.retry,
        orders=settings.orders,
        upload_limit=settings.upload_batch_limit,
        clock=clock,
    )
    supervisor = SchedulerSupervisor(dispatcher, [
        OrderSweeper(orchestrator, settings.scheduler.order_interval_s),
        CustomerCallSweeper(customer_calls, settings.scheduler.customer_call_interval_s),
        WhatsAppReminderSweeper(orchestrator, settings.scheduler.reminder_interval_s),
    ])

    logger.info("services_built", store_backend=store.backend_name)
    return ServiceContainer(
        settings=settings,
        store=store,
        gateway=gateway,
        whatsapp=whatsapp,
        state_machine=state_machine,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        customer_calls=customer_calls,
        order_webhooks=OrderCallWebhookProcessor(store, state_machine, gateway, settings.scheduler, sleep=sleep),
        customer_webhooks=CustomerCallWebhookProcessor(customer_calls),
        whatsapp_replies=WhatsAppReplyProcessor(store, state_machine),
        supervisor=supervisor,
    )
