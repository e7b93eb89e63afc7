"""
Refund Service - administrative purchase refunds as a recorded saga

A refund touches three documents (buyer wallet, seller wallet, purchase), so it
runs as ordered legs, each committed on its own and checkpointed on a
RefundOperation row:

    claim               purchase -> refunding, operation created (version CAS)
    credit_buyer        buyer available += price, `refund` transaction
    release_seller_hold seller hold -= seller share (floored), `refund_deduct`
                        transaction, pending sale rejected
    mark_refunded       purchase -> refunded, purchase disputes resolved

The claim makes a second refund of the same purchase fail with InvalidTransition
before any money moves. A failure after the claim leaves the operation in
`needs_reconciliation` and raises PartialLedgerFailure; legs are not retried
automatically.
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy import select, update

from database import async_managed_session
from models import (
    ActorRole, Dispute, DisputeStatus, Purchase, PurchaseStatus, RefundOperation,
    RefundOperationStatus, TransactionStatus, TransactionType,
)
from services.notification_service import NotificationFormatter, operator_notifier
from services.purchase_service import PurchaseService, PurchaseStateValidator
from services.wallet_service import wallet_ledger
from utils.decimal_precision import MonetaryDecimal
from utils.helpers import generate_public_id, utc_now
from utils.order_errors import (
    AuthorizationError, ConcurrentUpdateError, InvalidTransition, PartialLedgerFailure,
)
from utils.order_state_validator import Actor

logger = logging.getLogger(__name__)

STEP_CLAIM = "claim"
STEP_CREDIT_BUYER = "credit_buyer"
STEP_RELEASE_SELLER_HOLD = "release_seller_hold"
STEP_MARK_REFUNDED = "mark_refunded"


class RefundService:
    def __init__(self, session_factory=None, notifier=None, ledger=None):
        self.session_factory = session_factory
        self.notifier = notifier or operator_notifier
        self.ledger = ledger or wallet_ledger

    async def refund_purchase(self, purchase_id: str, admin: Actor) -> RefundOperation:
        """Refund a purchase to its buyer; see module docstring for the legs"""
        if admin.role != ActorRole.ADMIN:
            raise AuthorizationError("Only admins can refund purchases")

        operation_id, purchase = await self._claim(purchase_id, admin)
        logger.info(f"↩️ REFUND_STARTED: {purchase_id} operation={operation_id} by {admin.name}")

        completed: List[str] = [STEP_CLAIM]
        legs = [
            (STEP_CREDIT_BUYER, self._credit_buyer),
            (STEP_RELEASE_SELLER_HOLD, self._release_seller_hold),
            (STEP_MARK_REFUNDED, self._mark_refunded),
        ]
        for step_name, leg in legs:
            try:
                await self._run_leg(operation_id, step_name, leg, purchase, admin)
            except Exception as e:
                logger.critical(
                    f"🚨 REFUND_PARTIAL_FAILURE: {purchase_id} operation={operation_id} "
                    f"failed at {step_name} after {completed}: {e}"
                )
                operation = await self._flag_for_reconciliation(operation_id, step_name, e)
                if operation is not None:
                    self.notifier.notify(NotificationFormatter.refund_needs_reconciliation(operation))
                raise PartialLedgerFailure(operation_id, completed, step_name, cause=e) from e
            completed.append(step_name)

        operation = await self.get_operation(purchase_id)
        logger.info(
            f"✅ REFUND_COMPLETED: {purchase_id} {MonetaryDecimal.format_usd(purchase.price_cents)} "
            f"to {purchase.buyer_id}"
        )
        self.notifier.notify(NotificationFormatter.refund_completed(purchase))
        return operation

    async def _claim(self, purchase_id: str, admin: Actor):
        try:
            async with async_managed_session(self.session_factory) as session:
                purchase = await PurchaseService._load(session, purchase_id)
                if purchase.status in (PurchaseStatus.REFUNDING.value, PurchaseStatus.REFUNDED.value):
                    logger.warning(f"🚫 DUPLICATE_REFUND_BLOCKED: {purchase_id} is already {purchase.status}")
                    raise InvalidTransition(purchase.status, PurchaseStatus.REFUNDED, admin.role,
                                            f"Purchase {purchase_id} is already {purchase.status}")
                PurchaseStateValidator.require(purchase, PurchaseStatus.REFUNDING, admin)

                now = utc_now()
                purchase.status = PurchaseStatus.REFUNDING.value
                purchase.updated_at = now
                operation_id = generate_public_id("rfd_")
                session.add(RefundOperation(
                    operation_id=operation_id,
                    purchase_id=purchase_id,
                    initiated_by=admin.name,
                    status=RefundOperationStatus.RUNNING.value,
                    completed_steps=STEP_CLAIM,
                    created_at=now,
                    updated_at=now,
                ))
                await session.flush()
        except ConcurrentUpdateError:
            logger.warning(f"⚠️ REFUND_CLAIM_LOST: {purchase_id} claimed concurrently")
            raise
        return operation_id, purchase

    async def _run_leg(self, operation_id: str, step_name: str, leg: Callable, purchase: Purchase, admin: Actor):
        async with async_managed_session(self.session_factory) as session:
            await leg(session, purchase, admin)
            operation = await self._load_operation(session, operation_id)
            operation.completed_steps = ",".join(operation.steps + [step_name])
            operation.updated_at = utc_now()
            if step_name == STEP_MARK_REFUNDED:
                operation.status = RefundOperationStatus.COMPLETED.value

    async def _credit_buyer(self, session, purchase: Purchase, admin: Actor):
        await self.ledger.credit(
            session, purchase.buyer_id, purchase.price_cents, TransactionType.REFUND,
            related_id=purchase.purchase_id,
            description=f"Refund: {purchase.beat_title}",
        )

    async def _release_seller_hold(self, session, purchase: Purchase, admin: Actor):
        seller_share = purchase.seller_amount_cents
        if seller_share is None:
            seller_share = purchase.price_cents
        await self.ledger.release_hold(session, purchase.seller_id, seller_share)
        await self.ledger.record_transaction(
            session, purchase.seller_id, TransactionType.REFUND_DEDUCT, -seller_share,
            related_id=purchase.purchase_id,
            description=f"Refund deduction: {purchase.beat_title}",
        )
        await self.ledger.advance_transaction(
            session, purchase.seller_id, TransactionType.SALE, purchase.purchase_id,
            TransactionStatus.REJECTED,
        )

    async def _mark_refunded(self, session, purchase: Purchase, admin: Actor):
        now = utc_now()
        current = await PurchaseService._load(session, purchase.purchase_id)
        PurchaseStateValidator.require(current, PurchaseStatus.REFUNDED, admin)
        current.status = PurchaseStatus.REFUNDED.value
        current.refunded_at = now
        current.refunded_by = admin.name
        current.updated_at = now
        await session.execute(
            update(Dispute)
            .where(Dispute.purchase_id == purchase.purchase_id, Dispute.status == DisputeStatus.OPEN.value)
            .values(status=DisputeStatus.RESOLVED.value, resolution="refunded",
                    resolved_by=admin.name, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        purchase.status = current.status
        purchase.refunded_at = now
        purchase.refunded_by = admin.name

    async def _flag_for_reconciliation(self, operation_id: str, step_name: str,
                                       error: BaseException) -> Optional[RefundOperation]:
        try:
            async with async_managed_session(self.session_factory) as session:
                operation = await self._load_operation(session, operation_id)
                operation.status = RefundOperationStatus.NEEDS_RECONCILIATION.value
                operation.failed_step = step_name
                operation.error_message = str(error)[:1000]
                operation.updated_at = utc_now()
            return operation
        except Exception as flag_error:
            logger.critical(
                f"🚨 REFUND_FLAG_FAILED: operation={operation_id} could not be marked for reconciliation: {flag_error}"
            )
            return None

    @staticmethod
    async def _load_operation(session, operation_id: str) -> RefundOperation:
        result = await session.execute(
            select(RefundOperation).where(RefundOperation.operation_id == operation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def get_operation(self, purchase_id: str) -> Optional[RefundOperation]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(RefundOperation).where(RefundOperation.purchase_id == purchase_id)
            )
            return result.scalar_one_or_none()

    async def list_operations_needing_reconciliation(self) -> List[RefundOperation]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(RefundOperation)
                .where(RefundOperation.status == RefundOperationStatus.NEEDS_RECONCILIATION.value)
                .order_by(RefundOperation.created_at.asc())
            )
            return list(result.scalars().all())
