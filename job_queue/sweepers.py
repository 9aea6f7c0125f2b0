"""
Periodic Sweepers — Independent timer loops over the claim queues.

  OrderSweeper             every 30s: stale in-progress recovery, due
                           retries, stale queued (all three claim queues)
  CustomerCallSweeper      every 60s: generic-flow due retries
  WhatsAppReminderSweeper  every 10s: second reminder + reply timeout

Sweepers do not coordinate with each other or with request handlers.
Overlapping ticks (across loops or processes) are safe because every row
is taken through a conditional claim before it is processed.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from core.customer_calls import CustomerCallService
from core.orchestrator import OrderCallOrchestrator

logger = structlog.get_logger()


class PeriodicSweeper:
    """
    Base loop: tick(), then sleep `interval` seconds, until stopped.

    Usage:
        sweeper = OrderSweeper(orchestrator, interval_seconds=30)
        await sweeper.start_background()
        ...
        await sweeper.stop()
    """

    name = "sweeper"

    def __init__(self, interval_seconds: float):
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def tick(self) -> Any:
        raise NotImplementedError

    async def _run(self):
        logger.info(f"{self.name}_started", interval=self.interval)
        while True:
            try:
                summary = await self.tick()
                self.ticks += 1
                if summary:
                    logger.info(f"{self.name}_tick", summary=summary)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{self.name}_error", error=str(e))
            await asyncio.sleep(self.interval)


class OrderSweeper(PeriodicSweeper):

    name = "order_sweeper"

    def __init__(self, orchestrator: OrderCallOrchestrator, interval_seconds: float = 30.0):
        super().__init__(interval_seconds)
        self.orchestrator = orchestrator

    async def tick(self) -> Optional[dict[str, int]]:
        summary = await self.orchestrator.run_order_sweep()
        return summary if any(summary.values()) else None


class CustomerCallSweeper(PeriodicSweeper):

    name = "customer_call_sweeper"

    def __init__(self, service: CustomerCallService, interval_seconds: float = 60.0):
        super().__init__(interval_seconds)
        self.service = service

    async def tick(self) -> Optional[dict[str, int]]:
        dialed = await self.service.process_due_retries()
        return {"dialed": dialed} if dialed else None


class WhatsAppReminderSweeper(PeriodicSweeper):

    name = "whatsapp_reminder_sweeper"

    def __init__(self, orchestrator: OrderCallOrchestrator, interval_seconds: float = 10.0):
        super().__init__(interval_seconds)
        self.orchestrator = orchestrator

    async def tick(self) -> Optional[dict[str, int]]:
        reminded = await self.orchestrator.send_due_reminders()
        expired = await self.orchestrator.expire_whatsapp_waits()
        if reminded or expired:
            return {"reminded": reminded, "expired": expired}
        return None
