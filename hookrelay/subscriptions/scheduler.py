"""Periodic subscription maintenance: renewal followed by reconciliation."""

import asyncio
from datetime import timedelta

import structlog
from pydantic import BaseModel

from hookrelay.subscriptions.reconciler import Reconciler
from hookrelay.subscriptions.renewer import SubscriptionRenewer
from hookrelay.subscriptions.schemas import RenewalReport, SyncReport

logger = structlog.get_logger("hookrelay")


class MaintenanceResult(BaseModel):
    renewal: RenewalReport | None = None
    sync: SyncReport | None = None
    error: str | None = None


class MaintenanceScheduler:
    """Runs one maintenance pass every ``interval_seconds`` in the background."""

    def __init__(
        self,
        renewer: SubscriptionRenewer,
        reconciler: Reconciler,
        interval_seconds: float = 3600,
        renewal_threshold: timedelta | None = None,
    ) -> None:
        self.renewer = renewer
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.renewal_threshold = renewal_threshold
        self._task: asyncio.Task | None = None

    async def run_once(self) -> MaintenanceResult:
        """Renew first so reconciliation mirrors the new expirations."""
        result = MaintenanceResult()
        try:
            result.renewal = await self.renewer.renew_expiring(self.renewal_threshold)
            result.sync = await self.reconciler.sync()
        except Exception as e:
            logger.error("Maintenance pass failed", error=str(e), exc_info=True)
            result.error = str(e)
        return result

    async def run(self) -> None:
        logger.info("Subscription maintenance started", interval_seconds=self.interval_seconds)
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except (TimeoutError, asyncio.CancelledError):
            logger.info("Subscription maintenance stopped")
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
