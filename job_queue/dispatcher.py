"""
Outbound Event Dispatcher — Delivers post-commit side effects.

The state machine publishes a WhatsAppFallbackEvent after the escalation
transaction commits. Delivery happens here, off the request path:

    publish(event) ──▶ asyncio.Queue ──▶ worker ──▶ handler(event)
                                            │
                                            └── TransientProviderError → retry
                                                (tenacity, bounded attempts)

A failed delivery is logged and dropped; it never touches the committed
state. When the worker is not running (tests, scripts) publish() delivers
in a tracked background task instead of queueing.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import TransientProviderError
from models.schemas import WhatsAppFallbackEvent

logger = structlog.get_logger()

EventHandler = Callable[[WhatsAppFallbackEvent], Awaitable[object]]


class OutboundEventDispatcher:
    """
    Usage:
        dispatcher = OutboundEventDispatcher(orchestrator.deliver_whatsapp_fallback)
        await dispatcher.start()
        dispatcher.publish(event)
        await dispatcher.stop()      # drains the queue first
    """

    def __init__(
        self,
        handler: EventHandler,
        max_attempts: int = 3,
        wait_min_s: float = 1.0,
        wait_max_s: float = 10.0,
    ):
        self.handler = handler
        self.max_attempts = max_attempts
        self.wait_min_s = wait_min_s
        self.wait_max_s = wait_max_s
        self._queue: asyncio.Queue[WhatsAppFallbackEvent] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._inline_tasks: set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run())
        logger.info("outbound_dispatcher_started")

    async def stop(self, drain: bool = True) -> None:
        if drain and self.running:
            await self._queue.join()
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.wait_inline()
        logger.info("outbound_dispatcher_stopped", delivered=self.delivered, failed=self.failed)

    def publish(self, event: WhatsAppFallbackEvent) -> None:
        if self.running:
            self._queue.put_nowait(event)
            return
        task = asyncio.get_running_loop().create_task(self.dispatch(event))
        self._inline_tasks.add(task)
        task.add_done_callback(self._inline_tasks.discard)

    async def wait_inline(self) -> None:
        """Wait for deliveries started outside the worker."""
        if self._inline_tasks:
            await asyncio.gather(*list(self._inline_tasks), return_exceptions=True)

    async def dispatch(self, event: WhatsAppFallbackEvent) -> bool:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientProviderError),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(min=self.wait_min_s, max=self.wait_max_s),
                reraise=True,
            ):
                with attempt:
                    await self.handler(event)
        except Exception as e:
            self.failed += 1
            logger.error("whatsapp_fallback_failed",
                         event_id=event.event_id,
                         order_id=event.order_id,
                         call_log_id=event.call_log_id,
                         error=str(e))
            return False

        self.delivered += 1
        logger.info("whatsapp_fallback_delivered",
                    event_id=event.event_id,
                    order_id=event.order_id,
                    call_log_id=event.call_log_id)
        return True

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()
