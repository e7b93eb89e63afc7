"""
Scheduler wiring tests; jobs are registered but the scheduler is never started
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from jobs.scheduler import MarketplaceScheduler


@pytest.fixture
def scheduler():
    expiry = MagicMock()
    expiry.process_expired_orders = AsyncMock(return_value={"processed": 0})
    reconciliation = MagicMock()
    reconciliation.reconcile = AsyncMock()
    return MarketplaceScheduler(expiry_service=expiry, reconciliation_service=reconciliation)


class TestMarketplaceScheduler:
    def test_jobs_registered(self, scheduler):
        scheduler.setup_jobs()
        assert {job.id for job in scheduler.scheduler.get_jobs()} == {"expire_pending_orders", "reconcile_ledger"}

    @pytest.mark.asyncio
    async def test_job_wrappers_call_services(self, scheduler):
        await scheduler.expire_pending_orders()
        await scheduler.reconcile_ledger()
        scheduler.expiry_service.process_expired_orders.assert_awaited_once()
        scheduler.reconciliation_service.reconcile.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_job_failure_is_contained(self, scheduler):
        scheduler.expiry_service.process_expired_orders.side_effect = RuntimeError("database unavailable")
        await scheduler.expire_pending_orders()

    def test_stop_without_start(self, scheduler):
        scheduler.stop()
