"""
Purchase Service - legacy purchase records and purchase disputes

A purchase keeps the seller's share in the seller's hold until it is either
refunded by an admin (services/refund_service.py) or left to settle.
"""

import logging
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Union

from sqlalchemy import select

from config import Config
from database import async_managed_session
from models import (
    ActorRole, Dispute, DisputeStatus, LicenseType, Purchase, PurchaseStatus,
)
from services.notification_service import NotificationFormatter, operator_notifier
from services.wallet_service import wallet_ledger
from utils.decimal_precision import MonetaryDecimal
from utils.helpers import generate_public_id, is_blank, utc_now
from utils.order_errors import AuthorizationError, InvalidTransition, NotFound, ValidationError
from utils.order_state_validator import Actor

logger = logging.getLogger(__name__)


class PurchaseStateValidator:
    """Allowed purchase status moves per acting role"""

    VALID_TRANSITIONS: Dict[PurchaseStatus, Dict[PurchaseStatus, FrozenSet[ActorRole]]] = {
        PurchaseStatus.HOLD: {
            PurchaseStatus.DISPUTED: frozenset({ActorRole.BUYER}),
            PurchaseStatus.REFUNDING: frozenset({ActorRole.ADMIN}),
        },
        PurchaseStatus.DISPUTED: {
            PurchaseStatus.REFUNDING: frozenset({ActorRole.ADMIN}),
        },
        PurchaseStatus.REFUNDING: {
            PurchaseStatus.REFUNDED: frozenset({ActorRole.ADMIN}),
        },
        PurchaseStatus.REFUNDED: {},
    }

    @classmethod
    def require(cls, purchase: Purchase, to_status: PurchaseStatus, actor: Actor):
        from_status = PurchaseStatus(purchase.status)
        allowed = cls.VALID_TRANSITIONS.get(from_status, {}).get(to_status)
        if not allowed or actor.role not in allowed:
            logger.warning(
                f"🚫 PURCHASE_TRANSITION_BLOCKED: {purchase.purchase_id} "
                f"{from_status.value} -> {to_status.value} by {actor.role.value}"
            )
            raise InvalidTransition(from_status, to_status, actor.role)


class PurchaseService:
    def __init__(self, session_factory=None, notifier=None, ledger=None):
        self.session_factory = session_factory
        self.notifier = notifier or operator_notifier
        self.ledger = ledger or wallet_ledger

    async def record_purchase(
        self,
        buyer: Actor,
        seller_id: str,
        seller_name: str,
        beat_id: str,
        beat_title: str,
        license_type: Union[LicenseType, str],
        price: Union[Decimal, str, int],
        seller_amount: Optional[Union[Decimal, str, int]] = None,
    ) -> Purchase:
        """Record a completed checkout and hold the seller's share"""
        if buyer.role != ActorRole.BUYER or buyer.user_id is None:
            raise ValidationError("Purchases require a signed-in buyer")
        if any(is_blank(v) for v in (seller_id, seller_name, beat_id, beat_title)):
            raise ValidationError("Seller and beat details are required")
        try:
            license_value = LicenseType(license_type).value
            price_cents = MonetaryDecimal.to_cents(price)
            if seller_amount is None:
                seller_amount_cents = MonetaryDecimal.percentage_of_cents(price_cents, Config.SELLER_PAYOUT_RATE)
            else:
                seller_amount_cents = MonetaryDecimal.to_cents(seller_amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if price_cents < 0 or seller_amount_cents < 0 or seller_amount_cents > price_cents:
            raise ValidationError("Seller amount must be between zero and the purchase price")

        now = utc_now()
        purchase = Purchase(
            purchase_id=generate_public_id("pur_"),
            buyer_id=buyer.user_id,
            buyer_name=buyer.name,
            seller_id=seller_id,
            seller_name=seller_name,
            beat_id=beat_id,
            beat_title=beat_title,
            license_type=license_value,
            price_cents=price_cents,
            seller_amount_cents=seller_amount_cents,
            status=PurchaseStatus.HOLD.value,
            created_at=now,
            updated_at=now,
        )
        async with async_managed_session(self.session_factory) as session:
            session.add(purchase)
            await session.flush()
            await self.ledger.hold(
                session, seller_id, seller_amount_cents, purchase.purchase_id,
                f"Sale: {beat_title} ({license_value})",
            )

        logger.info(
            f"🧾 PURCHASE_RECORDED: {purchase.purchase_id} price={MonetaryDecimal.format_usd(price_cents)} "
            f"seller_share={MonetaryDecimal.format_usd(seller_amount_cents)}"
        )
        return purchase

    @staticmethod
    async def _load(session, purchase_id: str) -> Purchase:
        result = await session.execute(
            select(Purchase).where(Purchase.purchase_id == purchase_id).execution_options(populate_existing=True)
        )
        purchase = result.scalar_one_or_none()
        if purchase is None:
            raise NotFound("Purchase", purchase_id)
        return purchase

    async def get_purchase(self, purchase_id: str) -> Purchase:
        async with async_managed_session(self.session_factory) as session:
            return await self._load(session, purchase_id)

    async def list_purchases_for_buyer(self, buyer_id: str, limit: int = 100) -> List[Purchase]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Purchase).where(Purchase.buyer_id == buyer_id)
                .order_by(Purchase.created_at.desc(), Purchase.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def dispute_purchase(self, purchase_id: str, buyer: Actor, reason: str,
                               description: Optional[str] = None) -> Dispute:
        """Buyer disputes a held purchase; opens a Dispute for admin review"""
        if is_blank(reason):
            raise ValidationError("A dispute reason is required")

        async with async_managed_session(self.session_factory) as session:
            purchase = await self._load(session, purchase_id)
            PurchaseStateValidator.require(purchase, PurchaseStatus.DISPUTED, buyer)
            if buyer.user_id != purchase.buyer_id:
                raise AuthorizationError(f"{buyer.name} is not the buyer on purchase {purchase_id}")

            now = utc_now()
            purchase.status = PurchaseStatus.DISPUTED.value
            purchase.dispute_reason = reason.strip()
            purchase.updated_at = now
            dispute = Dispute(
                dispute_id=generate_public_id("dsp_"),
                purchase_id=purchase.purchase_id,
                beat_id=purchase.beat_id,
                beat_title=purchase.beat_title,
                amount_cents=purchase.price_cents,
                buyer_id=purchase.buyer_id,
                buyer_name=purchase.buyer_name,
                seller_id=purchase.seller_id,
                seller_name=purchase.seller_name,
                reason=reason.strip(),
                description=description,
                raised_by=ActorRole.BUYER.value,
                status=DisputeStatus.OPEN.value,
                created_at=now,
            )
            session.add(dispute)

        logger.warning(f"⚠️ PURCHASE_DISPUTED: {purchase_id} by {buyer.user_id}")
        self.notifier.notify(NotificationFormatter.dispute_opened(dispute))
        return dispute
