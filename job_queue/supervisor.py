"""
Scheduler Supervisor — Owns the background loops for one process.

The application lifespan creates one supervisor, starts it on startup and
stops it on shutdown. start() is idempotent: a second call (hot reload,
double startup hook) finds the loops already running and does nothing.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any

from job_queue.dispatcher import OutboundEventDispatcher
from job_queue.sweepers import PeriodicSweeper

logger = structlog.get_logger()


class SchedulerSupervisor:

    def __init__(self, dispatcher: OutboundEventDispatcher = None, sweepers: list[PeriodicSweeper] = None):
        self.dispatcher = dispatcher
        self.sweepers = list(sweepers or [])
        self._lock = asyncio.Lock()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> bool:
        """Returns False when the loops were already running."""
        async with self._lock:
            if self._started:
                logger.info("scheduler_already_running")
                return False
            if self.dispatcher:
                await self.dispatcher.start()
            for sweeper in self.sweepers:
                await sweeper.start_background()
            self._started = True
            logger.info("scheduler_started", sweepers=[s.name for s in self.sweepers])
            return True

    async def stop(self) -> None:
        async with self._lock:
            if not self._started:
                return
            for sweeper in self.sweepers:
                await sweeper.stop()
            if self.dispatcher:
                await self.dispatcher.stop()
            self._started = False
            logger.info("scheduler_stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "sweepers": {s.name: {"running": s.running, "ticks": s.ticks} for s in self.sweepers},
            "dispatcher": {
                "running": bool(self.dispatcher and self.dispatcher.running),
                "delivered": self.dispatcher.delivered if self.dispatcher else 0,
                "failed": self.dispatcher.failed if self.dispatcher else 0,
            },
        }
