"""
Arbitration Service - disputes and admin overrides on orders

Disputes are raised by either party; every exit from a dispute is an admin
decision. Each call runs through OrderService.transition so the dispute record,
the order status, the action-log entry and the ledger effect commit together.
"""

import logging
from typing import List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_managed_session
from models import Dispute, DisputeStatus, Order, OrderActionEntry, OrderStatus
from services.notification_service import NotificationFormatter
from services.order_service import OrderService
from utils.helpers import generate_public_id
from utils.order_state_validator import Actor, TransitionResult

logger = logging.getLogger(__name__)


class ArbitrationResult(NamedTuple):
    """Outcome of a dispute or admin decision"""
    order: Order
    entry: OrderActionEntry
    dispute: Optional[Dispute] = None


class ArbitrationService:
    """Dispute intake and admin decisions for orders"""

    def __init__(self, order_service: Optional[OrderService] = None, session_factory=None, notifier=None):
        self.orders = order_service or OrderService(session_factory=session_factory, notifier=notifier)
        self.session_factory = session_factory or self.orders.session_factory
        self.notifier = notifier or self.orders.notifier

    async def open_dispute(
        self,
        order_id: str,
        actor: Actor,
        reason: str,
        description: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ArbitrationResult:
        """Buyer or seller disputes an order; creates the open Dispute record"""
        created: List[Dispute] = []

        async def record_dispute(session: AsyncSession, order: Order, result: TransitionResult):
            dispute = Dispute(
                dispute_id=generate_public_id("dsp_"),
                order_id=order.order_id,
                order_ref=order.order_ref,
                beat_id=order.beat_id,
                beat_title=order.beat_title,
                amount_cents=order.price_cents,
                buyer_id=order.buyer_id,
                buyer_name=order.buyer_name,
                seller_id=order.seller_id,
                seller_name=order.seller_name,
                reason=order.dispute_reason,
                description=description,
                raised_by=order.disputed_by,
                status=DisputeStatus.OPEN.value,
                created_at=result.entry.at,
            )
            session.add(dispute)
            created.append(dispute)

        result = await self.orders.transition(
            order_id, actor, OrderStatus.DISPUTED, reason=reason,
            expected_version=expected_version, after_apply=record_dispute,
        )
        dispute = created[0]
        logger.warning(
            f"⚠️ DISPUTE_OPENED: {result.order.order_ref} by {dispute.raised_by} reason={dispute.reason!r}"
        )
        self.notifier.notify(NotificationFormatter.dispute_opened(dispute))
        return ArbitrationResult(order=result.order, entry=result.entry, dispute=dispute)

    async def _admin_decision(
        self,
        order_id: str,
        admin: Actor,
        to_status: OrderStatus,
        notes: Optional[str],
        expected_version: Optional[int],
    ) -> ArbitrationResult:
        resolved: List[Dispute] = []

        async def resolve_open_dispute(session: AsyncSession, order: Order, result: TransitionResult):
            rows = await session.execute(
                select(Dispute).where(
                    Dispute.order_id == order.order_id,
                    Dispute.status == DisputeStatus.OPEN.value,
                )
            )
            for dispute in rows.scalars().all():
                dispute.status = DisputeStatus.RESOLVED.value
                dispute.resolution = result.entry.action
                dispute.resolved_by = admin.name
                dispute.admin_notes = order.admin_notes
                dispute.resolved_at = result.entry.at
                resolved.append(dispute)

        result = await self.orders.transition(
            order_id, admin, to_status, notes=notes,
            expected_version=expected_version, after_apply=resolve_open_dispute,
        )
        logger.info(
            f"⚖️ ADMIN_DECISION: {result.order.order_ref} -> {result.entry.action} by {admin.name} "
            f"(disputes resolved: {len(resolved)})"
        )
        return ArbitrationResult(order=result.order, entry=result.entry, dispute=resolved[0] if resolved else None)

    async def admin_force_deliver(self, order_id: str, admin: Actor, notes: str,
                                  expected_version: Optional[int] = None) -> ArbitrationResult:
        """
        Seller override: deliver from pending or disputed when the admin judges the
        payment proof valid. Notes explaining the override are mandatory.
        """
        return await self._admin_decision(order_id, admin, OrderStatus.ADMIN_DELIVERED, notes, expected_version)

    async def admin_approve(self, order_id: str, admin: Actor, notes: Optional[str] = None,
                            expected_version: Optional[int] = None) -> ArbitrationResult:
        """Return a disputed order to the normal seller-delivery path"""
        return await self._admin_decision(order_id, admin, OrderStatus.APPROVED, notes, expected_version)

    async def admin_reject(self, order_id: str, admin: Actor, notes: str,
                           expected_version: Optional[int] = None) -> ArbitrationResult:
        return await self._admin_decision(order_id, admin, OrderStatus.REJECTED, notes, expected_version)

    async def list_open_disputes(self, limit: int = 100) -> List[Dispute]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Dispute)
                .where(Dispute.status == DisputeStatus.OPEN.value)
                .order_by(Dispute.created_at.asc(), Dispute.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_disputes_for_order(self, order_id: str) -> List[Dispute]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Dispute).where(Dispute.order_id == order_id).order_by(Dispute.id.asc())
            )
            return list(result.scalars().all())
