"""Background job scheduler for the beat marketplace order core"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.financial_reconciliation import FinancialReconciliationService
from services.order_expiry_service import OrderExpiryService

logger = logging.getLogger(__name__)


class MarketplaceScheduler:
    """Runs the pending-order expiry sweep and ledger reconciliation"""

    def __init__(self, expiry_service: Optional[OrderExpiryService] = None,
                 reconciliation_service: Optional[FinancialReconciliationService] = None):
        self.expiry_service = expiry_service or OrderExpiryService()
        self.reconciliation_service = reconciliation_service or FinancialReconciliationService()

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # A late sweep runs once, not once per missed tick
            'max_instances': 1,  # A sweep never overlaps itself
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register all recurring jobs"""

        # Auto-cancel orders the seller never confirmed
        self.scheduler.add_job(
            self.expire_pending_orders,
            trigger=IntervalTrigger(seconds=Config.ORDER_EXPIRY_SWEEP_SECONDS),
            id="expire_pending_orders",
            name="Expire Pending Orders",
            replace_existing=True,
        )

        self.scheduler.add_job(
            self.reconcile_ledger,
            trigger=IntervalTrigger(minutes=Config.RECONCILIATION_INTERVAL_MINUTES),
            id="reconcile_ledger",
            name="Reconcile Wallet Ledger",
            replace_existing=True,
        )

    def start(self):
        """Register jobs and start ticking on the running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 MarketplaceScheduler jobs: {job_names}")

    def stop(self):
        """Shut down without waiting for a running sweep"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("🛑 MarketplaceScheduler stopped")

    async def expire_pending_orders(self):
        try:
            await self.expiry_service.process_expired_orders()
        except Exception as e:
            logger.error(f"❌ ORDER_EXPIRY_JOB_FAILED: {e}")

    async def reconcile_ledger(self):
        try:
            await self.reconciliation_service.reconcile()
        except Exception as e:
            logger.error(f"❌ RECONCILIATION_JOB_FAILED: {e}")
