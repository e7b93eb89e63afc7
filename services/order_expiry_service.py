"""
Order Expiry Service - server-side auto-cancel of unconfirmed orders

Pending orders the seller has not acted on within the confirmation window are
cancelled by the system actor through the normal transition path, so the
cancellation is logged, versioned and unlocks the buyer's dispute right exactly
like a seller cancellation. Runs from the scheduler, independent of any client.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select

from config import Config
from database import async_managed_session
from models import Order, OrderStatus
from services.notification_service import NotificationFormatter
from services.order_service import OrderService
from utils.helpers import utc_now
from utils.order_errors import ConcurrentUpdateError, InvalidTransition, MarketplaceError
from utils.order_state_validator import Actor

logger = logging.getLogger(__name__)


class OrderExpiryService:
    """Sweeps stale pending orders in batches"""

    def __init__(self, order_service: Optional[OrderService] = None, batch_size: Optional[int] = None,
                 timeout_minutes: Optional[int] = None):
        self.orders = order_service or OrderService()
        self.batch_size = batch_size or Config.ORDER_EXPIRY_BATCH_SIZE
        self.timeout_minutes = timeout_minutes or Config.ORDER_CONFIRMATION_TIMEOUT_MINUTES

    async def process_expired_orders(self) -> Dict[str, Any]:
        """
        Cancel pending orders older than the confirmation timeout.

        Orders that moved on between the scan and the cancel (the seller acted,
        or another sweep won the compare-and-swap) are skipped, not retried.
        """
        results = {"processed": 0, "cancelled": [], "skipped": [], "errors": []}
        cutoff = utc_now() - timedelta(minutes=self.timeout_minutes)

        async with async_managed_session(self.orders.session_factory) as session:
            rows = await session.execute(
                select(Order.order_id, Order.order_ref, Order.version)
                .where(Order.status == OrderStatus.PENDING.value, Order.created_at <= cutoff)
                .order_by(Order.created_at.asc())
                .limit(self.batch_size)
            )
            candidates = rows.all()

        system = Actor.system()
        for order_id, order_ref, version in candidates:
            results["processed"] += 1
            try:
                await self.orders.cancel(order_id, system, reason=Config.DEFAULT_CANCEL_REASON, expected_version=version)
                results["cancelled"].append(order_ref)
                logger.info(f"⏰ ORDER_AUTO_CANCELLED: {order_ref} (no confirmation in {self.timeout_minutes} min)")
            except (ConcurrentUpdateError, InvalidTransition) as e:
                results["skipped"].append(order_ref)
                logger.info(f"⏭️ ORDER_EXPIRY_SKIPPED: {order_ref} changed before cancel: {e}")
            except MarketplaceError as e:
                results["errors"].append(f"{order_ref}: {e}")
                logger.error(f"❌ ORDER_EXPIRY_ERROR: {order_ref}: {e}")

        if results["cancelled"]:
            self.orders.notifier.notify(NotificationFormatter.orders_auto_cancelled(results["cancelled"]))
        if candidates:
            logger.info(
                f"✅ ORDER_EXPIRY_SWEEP: processed={results['processed']} "
                f"cancelled={len(results['cancelled'])} skipped={len(results['skipped'])}"
            )
        return results
