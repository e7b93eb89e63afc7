"""
Withdrawal Service - seller payout requests and admin processing

Requesting a withdrawal debits ``available`` immediately and records a pending
`withdrawal` transaction. Approval completes the transaction; rejection credits
the amount back with a `withdrawal_refund` transaction.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select

from config import Config
from database import async_managed_session
from models import ActorRole, TransactionStatus, TransactionType, Withdrawal, WithdrawalStatus
from services.notification_service import NotificationFormatter, operator_notifier
from services.wallet_service import wallet_ledger
from utils.decimal_precision import MonetaryDecimal
from utils.helpers import generate_public_id, is_blank, utc_now
from utils.order_errors import AuthorizationError, InvalidTransition, NotFound, ValidationError
from utils.order_state_validator import Actor

logger = logging.getLogger(__name__)


class WithdrawalService:
    def __init__(self, session_factory=None, notifier=None, ledger=None):
        self.session_factory = session_factory
        self.notifier = notifier or operator_notifier
        self.ledger = ledger or wallet_ledger

    async def request_withdrawal(
        self,
        actor: Actor,
        amount: Union[Decimal, str, int],
        method: str,
        details: Optional[str] = None,
    ) -> Withdrawal:
        if actor.user_id is None or actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            raise AuthorizationError("Withdrawals must be requested by the wallet owner")
        if is_blank(method):
            raise ValidationError("A payout method is required")
        try:
            amount_cents = MonetaryDecimal.to_cents(amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if amount_cents < Config.MIN_WITHDRAWAL_CENTS:
            raise ValidationError(
                f"Minimum withdrawal is {MonetaryDecimal.format_usd(Config.MIN_WITHDRAWAL_CENTS)}"
            )

        now = utc_now()
        withdrawal = Withdrawal(
            withdrawal_id=generate_public_id("wd_"),
            user_id=actor.user_id,
            user_name=actor.name,
            amount_cents=amount_cents,
            method=method.strip(),
            details=details,
            status=WithdrawalStatus.PENDING.value,
            created_at=now,
        )
        async with async_managed_session(self.session_factory) as session:
            await self.ledger.debit(
                session, actor.user_id, amount_cents, TransactionType.WITHDRAWAL,
                related_id=withdrawal.withdrawal_id,
                description=f"Withdrawal via {withdrawal.method}",
                status=TransactionStatus.PENDING,
            )
            session.add(withdrawal)

        logger.info(
            f"💸 WITHDRAWAL_REQUESTED: {withdrawal.withdrawal_id} {actor.user_id} "
            f"{MonetaryDecimal.format_usd(amount_cents)} via {withdrawal.method}"
        )
        self.notifier.notify(NotificationFormatter.withdrawal_requested(withdrawal))
        return withdrawal

    @staticmethod
    async def _load_pending(session, withdrawal_id: str, to_status: WithdrawalStatus, admin: Actor) -> Withdrawal:
        if admin.role != ActorRole.ADMIN:
            raise AuthorizationError("Only admins can process withdrawals")
        result = await session.execute(
            select(Withdrawal).where(Withdrawal.withdrawal_id == withdrawal_id)
            .execution_options(populate_existing=True)
        )
        withdrawal = result.scalar_one_or_none()
        if withdrawal is None:
            raise NotFound("Withdrawal", withdrawal_id)
        if withdrawal.status != WithdrawalStatus.PENDING.value:
            raise InvalidTransition(withdrawal.status, to_status, admin.role)
        return withdrawal

    async def approve_withdrawal(self, withdrawal_id: str, admin: Actor) -> Withdrawal:
        async with async_managed_session(self.session_factory) as session:
            withdrawal = await self._load_pending(session, withdrawal_id, WithdrawalStatus.COMPLETED, admin)
            withdrawal.status = WithdrawalStatus.COMPLETED.value
            withdrawal.processed_by = admin.name
            withdrawal.processed_at = utc_now()
            await self.ledger.advance_transaction(
                session, withdrawal.user_id, TransactionType.WITHDRAWAL, withdrawal_id,
                TransactionStatus.COMPLETED,
            )
        logger.info(f"✅ WITHDRAWAL_APPROVED: {withdrawal_id} by {admin.name}")
        return withdrawal

    async def reject_withdrawal(self, withdrawal_id: str, admin: Actor, reason: str) -> Withdrawal:
        if is_blank(reason):
            raise ValidationError("A reason is required to reject a withdrawal")
        async with async_managed_session(self.session_factory) as session:
            withdrawal = await self._load_pending(session, withdrawal_id, WithdrawalStatus.REJECTED, admin)
            withdrawal.status = WithdrawalStatus.REJECTED.value
            withdrawal.reject_reason = reason.strip()
            withdrawal.processed_by = admin.name
            withdrawal.processed_at = utc_now()
            await self.ledger.advance_transaction(
                session, withdrawal.user_id, TransactionType.WITHDRAWAL, withdrawal_id,
                TransactionStatus.REJECTED,
            )
            await self.ledger.credit(
                session, withdrawal.user_id, withdrawal.amount_cents, TransactionType.WITHDRAWAL_REFUND,
                related_id=withdrawal_id,
                description=f"Withdrawal rejected: {withdrawal.reject_reason}",
            )
        logger.info(f"↩️ WITHDRAWAL_REJECTED: {withdrawal_id} by {admin.name}: {withdrawal.reject_reason}")
        return withdrawal

    async def list_pending_withdrawals(self, limit: int = 100) -> List[Withdrawal]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Withdrawal).where(Withdrawal.status == WithdrawalStatus.PENDING.value)
                .order_by(Withdrawal.created_at.asc(), Withdrawal.id.asc()).limit(limit)
            )
            return list(result.scalars().all())
