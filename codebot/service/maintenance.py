"""Periodic housekeeping for the relay store.

Each sweep:
- resets quotas whose period has elapsed
- soft-deletes conversation messages past the retention window
- prunes old usage log rows
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from codebot.config import Settings
from codebot.logging import get_logger
from codebot.storage.common import UserStore
from codebot.storage.models import utcnow

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 3600


@dataclass(frozen=True)
class MaintenanceReport:
    quotas_reset: int
    messages_deleted: int
    usage_logs_pruned: int


class MaintenanceService:
    def __init__(self, store: UserStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.interval = settings.maintenance_interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def run_once(self, now: Optional[datetime] = None) -> MaintenanceReport:
        now = now or utcnow()
        quotas_reset = self.store.reset_expired_quotas(now, self.settings.quota_period_days)
        messages_deleted = self.store.soft_delete_messages_before(
            now - timedelta(days=self.settings.message_retention_days)
        )
        usage_logs_pruned = self.store.prune_usage_logs(
            now - timedelta(days=self.settings.usage_log_retention_days)
        )
        report = MaintenanceReport(quotas_reset, messages_deleted, usage_logs_pruned)
        logger.info(
            "maintenance_sweep_completed",
            quotas_reset=quotas_reset,
            messages_deleted=messages_deleted,
            usage_logs_pruned=usage_logs_pruned,
        )
        return report

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await asyncio.to_thread(self.run_once)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3))
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval)
