"""Admin dashboard statistics and bulk marketplace reset"""

import logging
from datetime import timedelta
from typing import Any, Dict

from sqlalchemy import delete, func, select

from database import async_managed_session
from models import (
    ActorRole, Dispute, DisputeStatus, Order, OrderActionEntry, OrderStatus, Purchase,
    RefundOperation, Transaction, TransactionStatus, TransactionType, Wallet, Withdrawal,
    WithdrawalStatus,
)
from utils.helpers import utc_now
from utils.order_errors import AuthorizationError
from utils.order_state_validator import Actor

logger = logging.getLogger(__name__)

# Child tables first so foreign keys never dangle mid-reset
RESET_ORDER = (
    OrderActionEntry, Dispute, Order, RefundOperation, Purchase, Withdrawal, Transaction, Wallet,
)


class AdminService:
    """Operator-facing aggregate views and maintenance"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    async def dashboard_stats(self) -> Dict[str, Any]:
        now = utc_now()
        async with async_managed_session(self.session_factory) as session:
            by_status = dict(
                (await session.execute(
                    select(Order.status, func.count(Order.id)).group_by(Order.status)
                )).all()
            )
            open_disputes = (await session.execute(
                select(func.count(Dispute.id)).where(Dispute.status == DisputeStatus.OPEN.value)
            )).scalar_one()
            pending_withdrawals = (await session.execute(
                select(func.count(Withdrawal.id), func.coalesce(func.sum(Withdrawal.amount_cents), 0))
                .where(Withdrawal.status == WithdrawalStatus.PENDING.value)
            )).one()
            completed_sales = (await session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.type == TransactionType.SALE.value,
                    Transaction.status == TransactionStatus.COMPLETED.value,
                )
            )).scalar_one()
            orders_today = (await session.execute(
                select(func.count(Order.id)).where(Order.created_at >= now - timedelta(days=1))
            )).scalar_one()

        orders = {status.value: int(by_status.get(status.value, 0)) for status in OrderStatus}
        return {
            "orders": orders,
            "total_orders": sum(orders.values()),
            "orders_last_24h": int(orders_today),
            "disputed_orders": orders[OrderStatus.DISPUTED.value],
            "open_disputes": int(open_disputes),
            "pending_withdrawals": int(pending_withdrawals[0]),
            "pending_withdrawal_cents": int(pending_withdrawals[1]),
            "completed_sales_cents": int(completed_sales),
        }

    async def reset_marketplace(self, admin: Actor) -> Dict[str, int]:
        """Delete every marketplace document; the only physical deletion path"""
        if admin.role != ActorRole.ADMIN:
            raise AuthorizationError("Only admins can reset the marketplace")

        deleted: Dict[str, int] = {}
        async with async_managed_session(self.session_factory) as session:
            for model in RESET_ORDER:
                result = await session.execute(delete(model).execution_options(synchronize_session=False))
                deleted[model.__tablename__] = result.rowcount or 0

        logger.critical(f"🧹 MARKETPLACE_RESET by {admin.name}: {deleted}")
        return deleted
