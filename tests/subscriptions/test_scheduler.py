"""Tests for the periodic maintenance job."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from hookrelay.subscriptions.scheduler import MaintenanceScheduler
from hookrelay.subscriptions.schemas import RenewalReport, SyncReport


@pytest.fixture
def renewer():
    renewer = Mock()
    renewer.renew_expiring = AsyncMock(return_value=RenewalReport(checked=2, renewed=1, skipped=1))
    return renewer


@pytest.fixture
def reconciler():
    reconciler = Mock()
    reconciler.sync = AsyncMock(return_value=SyncReport(updated=1))
    return reconciler


class TestMaintenanceScheduler:
    """Renewal followed by reconciliation."""

    @pytest.mark.asyncio
    async def test_run_once(self, renewer, reconciler):
        result = await MaintenanceScheduler(renewer, reconciler).run_once()

        assert result.renewal.renewed == 1
        assert result.sync.updated == 1
        assert result.error is None

    @pytest.mark.asyncio
    async def test_failure_is_contained(self, renewer, reconciler):
        reconciler.sync.side_effect = RuntimeError("boom")

        result = await MaintenanceScheduler(renewer, reconciler).run_once()

        assert result.error == "boom"
        assert result.renewal is not None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, renewer, reconciler):
        scheduler = MaintenanceScheduler(renewer, reconciler, interval_seconds=3600)

        scheduler.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert scheduler.running

        await scheduler.stop()
        assert not scheduler.running
        renewer.renew_expiring.assert_awaited()
