"""
Maintenance scheduler.

Enqueues a ``maintenance`` queue item (the worker executes it) when either
more than ``max_interval_hours`` passed since the last run, or the user has
been idle longer than ``idle_threshold_seconds`` and more than
``idle_interval_hours`` passed since the last run. The last-run stamp is
written by the worker once a cycle completes, so a queued or failed item
leaves the schedule due.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from cliper.core.config import MaintenanceConfig
from cliper.core.types import QueueItemType

logger = logging.getLogger("Cliper.Maintenance.Scheduler")

MAINTENANCE_CONTENT = "Neural System Optimization"


class MaintenanceScheduler:
    def __init__(
        self,
        *,
        store,
        config: MaintenanceConfig,
        now_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._now_fn = now_fn
        self._sleep_fn = sleep_fn
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_activity_at = now_fn()
        self._enqueued_count = 0
        self._last_decision: Optional[str] = None

    @property
    def status(self) -> Dict[str, Any]:
        settings = self._store.get_settings()
        return {
            "running": self._running,
            "tick_seconds": self._config.tick_seconds,
            "last_activity_at": self._last_activity_at,
            "last_maintenance_at": settings.last_maintenance_at,
            "enqueued_count": self._enqueued_count,
            "last_decision": self._last_decision,
        }

    def record_activity(self, at: Optional[float] = None) -> None:
        self._last_activity_at = self._now_fn() if at is None else at

    def is_due(self) -> Optional[str]:
        """Reason maintenance is due now, or None."""
        now = self._now_fn()
        last_run = self._store.get_settings().last_maintenance_at
        since_run = float("inf") if last_run is None else now - last_run
        if since_run > self._config.max_interval_hours * 3600:
            return "interval_elapsed"
        idle_for = now - self._last_activity_at
        if (
            idle_for > self._config.idle_threshold_seconds
            and since_run > self._config.idle_interval_hours * 3600
        ):
            return "idle_window"
        return None

    def tick(self) -> Dict[str, Any]:
        reason = self.is_due()
        if reason is None:
            self._last_decision = "not_due"
            return {"enqueued": False, "reason": "not_due"}
        if self._store.has_queued(QueueItemType.MAINTENANCE):
            self._last_decision = "already_queued"
            return {"enqueued": False, "reason": "already_queued"}

        item = self._store.add_to_queue(MAINTENANCE_CONTENT, QueueItemType.MAINTENANCE)
        self._enqueued_count += 1
        self._last_decision = reason
        logger.info("Maintenance enqueued (%s): %s", reason, item.id)
        return {"enqueued": True, "reason": reason, "item_id": item.id}

    async def start(self) -> bool:
        if self._running:
            return False
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="cliper-maintenance-scheduler")
        logger.info("Maintenance scheduler started (tick=%.1fs)", self._config.tick_seconds)
        return True

    async def stop(self) -> bool:
        if not self._running and self._task is None:
            return False
        self._running = False
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Maintenance scheduler stopped")
        return True

    async def _run_loop(self) -> None:
        while self._running:
            try:
                self.tick()
            except Exception as e:
                logger.error("Maintenance scheduler tick error: %s", e, exc_info=True)
            try:
                await self._sleep_fn(self._config.tick_seconds)
            except asyncio.CancelledError:
                break
