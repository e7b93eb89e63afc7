"""
Order Service - persistence and side effects for the order state machine

Every transition runs as one unit of work:
    load order -> optional expected_version check -> pure state machine apply
    -> version compare-and-swap flush -> wallet ledger effects -> commit
    -> fire-and-forget operator notification

A lost compare-and-swap surfaces as ConcurrentUpdateError and nothing is written;
callers must re-fetch the order before deciding whether to retry.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from database import async_managed_session
from models import ActorRole, LicenseType, Order, OrderAction, OrderActionEntry, OrderStatus
from services.notification_service import NotificationFormatter, operator_notifier
from services.wallet_service import wallet_ledger
from utils.decimal_precision import MonetaryDecimal
from utils.helpers import generate_order_ref, generate_public_id, is_blank, utc_now
from utils.order_errors import ConcurrentUpdateError, NotFound, ValidationError
from utils.order_state_validator import Actor, OrderStateMachine, TransitionResult, order_state_machine

logger = logging.getLogger(__name__)

AfterApplyHook = Callable[[AsyncSession, Order, TransitionResult], Awaitable[None]]


@dataclass
class NewOrder:
    """Checkout input submitted by a buyer"""
    beat_id: str
    beat_title: str
    license_type: Union[LicenseType, str]
    price: Union[Decimal, str, int]
    seller_id: str
    seller_name: str
    buyer_email: str
    payment_proof_ref: str
    buyer_name: Optional[str] = None
    seller_contact: Optional[str] = None
    beat_cover_ref: Optional[str] = None
    transaction_ref: Optional[str] = None
    payment_date: Optional[str] = None
    card_last_four: Optional[str] = None


class LedgerEffect(Enum):
    HOLD_SALE = "hold_sale"
    SETTLE_SALE = "settle_sale"
    REVERSE_SALE = "reverse_sale"


class OrderService:
    """Order lifecycle operations backed by the async store"""

    def __init__(self, session_factory=None, notifier=None, ledger=None,
                 state_machine: Optional[OrderStateMachine] = None):
        self.session_factory = session_factory
        self.notifier = notifier or operator_notifier
        self.ledger = ledger or wallet_ledger
        self.state_machine = state_machine or order_state_machine

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_new_order(actor: Actor, data: NewOrder):
        if actor.role != ActorRole.BUYER:
            raise ValidationError("Only buyers can place orders")
        required = {
            "beat_id": data.beat_id,
            "beat_title": data.beat_title,
            "seller_id": data.seller_id,
            "seller_name": data.seller_name,
            "buyer_email": data.buyer_email,
            "payment_proof_ref": data.payment_proof_ref,
        }
        missing = [name for name, value in required.items() if is_blank(value)]
        if missing:
            raise ValidationError(f"Missing required checkout fields: {', '.join(missing)}")
        if "@" not in data.buyer_email:
            raise ValidationError("A valid buyer email is required")
        if actor.user_id is not None and actor.user_id == data.seller_id:
            raise ValidationError("Sellers cannot buy their own beats")
        if data.card_last_four is not None and not (
            len(data.card_last_four) == 4 and data.card_last_four.isdigit()
        ):
            raise ValidationError("card_last_four must be exactly four digits")

    async def create_order(self, actor: Actor, data: NewOrder) -> Order:
        """Buyer submits a checkout with payment proof; the order starts pending"""
        self._validate_new_order(actor, data)
        try:
            license_type = LicenseType(data.license_type)
            price_cents = MonetaryDecimal.to_cents(data.price)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if price_cents < 0:
            raise ValidationError("Price must not be negative")

        now = utc_now()
        order = Order(
            order_id=generate_public_id(),
            order_ref=generate_order_ref(),
            buyer_id=actor.user_id,
            buyer_name=(data.buyer_name or actor.name or "Guest").strip(),
            buyer_email=data.buyer_email.strip(),
            seller_id=data.seller_id,
            seller_name=data.seller_name,
            seller_contact=data.seller_contact,
            beat_id=data.beat_id,
            beat_title=data.beat_title,
            beat_cover_ref=data.beat_cover_ref,
            license_type=license_type.value,
            price_cents=price_cents,
            payment_proof_ref=data.payment_proof_ref,
            transaction_ref=data.transaction_ref,
            payment_date=data.payment_date,
            card_last_four=data.card_last_four,
            status=OrderStatus.PENDING.value,
            held_cents=0,
            created_at=now,
            updated_at=now,
        )
        order.action_log.append(
            OrderActionEntry(
                sequence=1,
                action=OrderAction.CREATED.value,
                actor_name=order.buyer_name,
                actor_id=actor.user_id,
                actor_role=ActorRole.BUYER.value,
                at=now,
                note="Order created by buyer",
            )
        )

        async with async_managed_session(self.session_factory) as session:
            session.add(order)
            await session.flush()

        logger.info(
            f"🛒 ORDER_CREATED: {order.order_ref} beat={order.beat_id} "
            f"price={MonetaryDecimal.format_usd(order.price_cents)} buyer={'guest' if order.is_guest else order.buyer_id}"
        )
        self.notifier.notify(NotificationFormatter.order_created(order))
        return order

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def approve(self, order_id: str, actor: Actor, expected_version: Optional[int] = None) -> TransitionResult:
        return await self.transition(order_id, actor, OrderStatus.APPROVED, expected_version=expected_version)

    async def deliver(self, order_id: str, actor: Actor, expected_version: Optional[int] = None) -> TransitionResult:
        return await self.transition(order_id, actor, OrderStatus.DELIVERED, expected_version=expected_version)

    async def reject(self, order_id: str, actor: Actor, reason: str,
                     expected_version: Optional[int] = None) -> TransitionResult:
        return await self.transition(order_id, actor, OrderStatus.REJECTED, reason=reason,
                                     expected_version=expected_version)

    async def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None,
                     expected_version: Optional[int] = None) -> TransitionResult:
        return await self.transition(order_id, actor, OrderStatus.CANCELLED, reason=reason,
                                     expected_version=expected_version)

    async def transition(
        self,
        order_id: str,
        actor: Actor,
        to_status: OrderStatus,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
        after_apply: Optional[AfterApplyHook] = None,
    ) -> TransitionResult:
        """Apply one transition atomically; see module docstring for the sequence"""
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            if expected_version is not None and order.version != expected_version:
                logger.warning(
                    f"⚠️ ORDER_VERSION_MISMATCH: {order.order_ref} expected v{expected_version}, "
                    f"found v{order.version}"
                )
                raise ConcurrentUpdateError("order", order.order_ref, expected_version, order.version)

            # A failed flush expires the order; only these locals are safe to read afterwards
            order_ref = order.order_ref
            loaded_version = order.version
            held_before = order.held_cents or 0
            result = self.state_machine.apply(order, actor, to_status, reason=reason, notes=notes)
            effect = self._plan_ledger_effect(order, held_before)

            if after_apply is not None:
                await after_apply(session, order, result)

            try:
                await session.flush()
            except StaleDataError as e:
                logger.warning(f"⚠️ ORDER_CAS_LOST: {order_ref} v{loaded_version} was modified concurrently")
                raise ConcurrentUpdateError("order", order_ref, loaded_version) from e

            if effect is not None:
                await self._run_ledger_effect(session, order, effect, held_before)

        self.notifier.notify(self._format_transition(order, result))
        return result

    @staticmethod
    def _format_transition(order: Order, result: TransitionResult) -> str:
        if result.entry.actor_role == ActorRole.ADMIN.value:
            return NotificationFormatter.admin_decision(order, result.entry)
        return NotificationFormatter.order_transition(order, result.entry)

    @staticmethod
    def _plan_ledger_effect(order: Order, held_before: int) -> Optional[LedgerEffect]:
        """Decide the wallet effect of the new status and update held_cents before the flush"""
        status = OrderStatus(order.status)
        if status == OrderStatus.APPROVED and held_before == 0 and order.price_cents > 0:
            order.held_cents = order.price_cents
            return LedgerEffect.HOLD_SALE
        if status in (OrderStatus.DELIVERED, OrderStatus.ADMIN_DELIVERED):
            order.held_cents = 0
            return LedgerEffect.SETTLE_SALE
        if status == OrderStatus.REJECTED and held_before:
            order.held_cents = 0
            return LedgerEffect.REVERSE_SALE
        return None

    async def _run_ledger_effect(self, session: AsyncSession, order: Order, effect: LedgerEffect, held_before: int):
        description = f"{order.beat_title} ({order.license_type}) - {order.order_ref}"
        if effect == LedgerEffect.HOLD_SALE:
            await self.ledger.hold(session, order.seller_id, order.price_cents, order.order_id, description)
        elif effect == LedgerEffect.SETTLE_SALE:
            await self.ledger.settle_sale(
                session, order.seller_id, order.price_cents, order.order_id,
                held_cents=held_before, description=description,
            )
        elif effect == LedgerEffect.REVERSE_SALE:
            await self.ledger.reverse_sale(session, order.seller_id, held_before, order.order_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(session: AsyncSession, order_id: str) -> Order:
        result = await session.execute(
            select(Order).where(Order.order_id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def get_order(self, order_id: str) -> Order:
        async with async_managed_session(self.session_factory) as session:
            return await self._load(session, order_id)

    async def get_order_by_ref(self, order_ref: str) -> Order:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(Order).where(Order.order_ref == order_ref))
            order = result.scalar_one_or_none()
            if order is None:
                raise NotFound("Order", order_ref)
            return order

    async def _list(self, *criteria, limit: int = 100) -> List[Order]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Order).where(*criteria).order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def list_orders_for_buyer(self, buyer_id: str, limit: int = 100) -> List[Order]:
        return await self._list(Order.buyer_id == buyer_id, limit=limit)

    async def list_orders_for_seller(self, seller_id: str, limit: int = 100) -> List[Order]:
        return await self._list(Order.seller_id == seller_id, limit=limit)

    async def list_orders_by_status(self, status: OrderStatus, limit: int = 100) -> List[Order]:
        return await self._list(Order.status == OrderStatus(status).value, limit=limit)

    async def can_download(self, order_id: str, actor: Actor) -> bool:
        order = await self.get_order(order_id)
        return self.state_machine.grants_download(order, actor)
