"""
Wallet Ledger - per-user available / hold balances with an append-only transaction log

Every balance change is a single atomic SQL increment on the wallet row
(``UPDATE wallets SET available_cents = available_cents + :delta``), never a
read-modify-write, and every change appends or advances a Transaction row in the
caller's unit of work. Callers own the session and therefore the commit.
"""

import logging
from typing import List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models import Transaction, TransactionStatus, TransactionType, Wallet
from utils.decimal_precision import MonetaryDecimal
from utils.helpers import generate_public_id, utc_now
from utils.order_errors import InsufficientFunds, StoreWriteFailure, ValidationError

logger = logging.getLogger(__name__)


class WalletLedger:
    """Atomic wallet operations; all methods take the caller's AsyncSession"""

    @staticmethod
    def _check_amount(amount_cents: int, operation: str):
        if not isinstance(amount_cents, int) or isinstance(amount_cents, bool):
            raise ValidationError(f"{operation}: amount must be integer cents, got {amount_cents!r}")
        if amount_cents < 0:
            raise ValidationError(f"{operation}: amount must not be negative")

    async def ensure_wallet(self, session: AsyncSession, user_id: str) -> None:
        """Create the wallet row on first use; concurrent creators are harmless"""
        if not user_id:
            raise ValidationError("Wallet operations require a user id")
        now = utc_now()
        values = dict(user_id=user_id, available_cents=0, hold_cents=0, version=1,
                      created_at=now, updated_at=now)
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(Wallet).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        elif dialect == "sqlite":
            stmt = sqlite_insert(Wallet).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        else:
            existing = await session.execute(select(Wallet.user_id).where(Wallet.user_id == user_id))
            if existing.scalar_one_or_none() is not None:
                return
            session.add(Wallet(**values))
            await session.flush()
            return
        await session.execute(stmt)

    async def _apply_delta(self, session: AsyncSession, user_id: str, *, available: int = 0,
                           hold: int = 0, guard_available: Optional[int] = None) -> int:
        await self.ensure_wallet(session, user_id)
        stmt = update(Wallet).where(Wallet.user_id == user_id)
        if guard_available is not None:
            stmt = stmt.where(Wallet.available_cents >= guard_available)
        stmt = stmt.values(
            available_cents=Wallet.available_cents + available,
            hold_cents=Wallet.hold_cents + hold,
            version=Wallet.version + 1,
            updated_at=utc_now(),
        ).execution_options(synchronize_session=False)
        result = await session.execute(stmt)
        return result.rowcount

    async def record_transaction(
        self,
        session: AsyncSession,
        user_id: str,
        tx_type: TransactionType,
        amount_cents: int,
        related_id: Optional[str] = None,
        description: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> Transaction:
        now = utc_now()
        tx = Transaction(
            transaction_id=generate_public_id("tx_"),
            user_id=user_id,
            type=tx_type.value,
            amount_cents=amount_cents,
            related_id=related_id,
            description=description,
            status=status.value,
            created_at=now,
            updated_at=now,
        )
        session.add(tx)
        await session.flush()
        return tx

    async def advance_transaction(
        self,
        session: AsyncSession,
        user_id: str,
        tx_type: TransactionType,
        related_id: str,
        to_status: TransactionStatus,
        from_status: TransactionStatus = TransactionStatus.PENDING,
    ) -> int:
        """Move matching transactions forward in status; returns how many moved"""
        stmt = (
            update(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.type == tx_type.value,
                Transaction.related_id == related_id,
                Transaction.status == from_status.value,
            )
            .values(status=to_status.value, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount

    async def credit(
        self,
        session: AsyncSession,
        user_id: str,
        amount_cents: int,
        tx_type: TransactionType,
        related_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        """available += amount, with a completed transaction"""
        self._check_amount(amount_cents, "credit")
        if await self._apply_delta(session, user_id, available=amount_cents) != 1:
            raise StoreWriteFailure(f"Wallet credit for {user_id} did not apply")
        tx = await self.record_transaction(session, user_id, tx_type, amount_cents, related_id, description)
        logger.info(f"💰 WALLET_CREDIT: {user_id} +{MonetaryDecimal.format_usd(amount_cents)} ({tx_type.value})")
        return tx

    async def debit(
        self,
        session: AsyncSession,
        user_id: str,
        amount_cents: int,
        tx_type: TransactionType,
        related_id: Optional[str] = None,
        description: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> Transaction:
        """available -= amount, refused when funds are short"""
        self._check_amount(amount_cents, "debit")
        applied = await self._apply_delta(
            session, user_id, available=-amount_cents, guard_available=amount_cents
        )
        if applied != 1:
            logger.warning(f"🚫 WALLET_DEBIT_REFUSED: {user_id} requested {amount_cents} cents")
            raise InsufficientFunds(user_id, amount_cents)
        tx = await self.record_transaction(
            session, user_id, tx_type, -amount_cents, related_id, description, status
        )
        logger.info(f"💸 WALLET_DEBIT: {user_id} -{MonetaryDecimal.format_usd(amount_cents)} ({tx_type.value})")
        return tx

    async def hold(
        self,
        session: AsyncSession,
        user_id: str,
        amount_cents: int,
        related_id: str,
        description: Optional[str] = None,
    ) -> Transaction:
        """hold += amount for a sale awaiting resolution, with a pending sale transaction"""
        self._check_amount(amount_cents, "hold")
        if await self._apply_delta(session, user_id, hold=amount_cents) != 1:
            raise StoreWriteFailure(f"Wallet hold for {user_id} did not apply")
        tx = await self.record_transaction(
            session, user_id, TransactionType.SALE, amount_cents, related_id, description,
            TransactionStatus.PENDING,
        )
        logger.info(f"🔒 WALLET_HOLD: {user_id} +{MonetaryDecimal.format_usd(amount_cents)} for {related_id}")
        return tx

    async def release_hold(self, session: AsyncSession, user_id: str, amount_cents: int) -> None:
        """hold -= amount, floored at zero"""
        self._check_amount(amount_cents, "release_hold")
        await self.ensure_wallet(session, user_id)
        stmt = (
            update(Wallet)
            .where(Wallet.user_id == user_id)
            .values(
                hold_cents=case(
                    (Wallet.hold_cents > amount_cents, Wallet.hold_cents - amount_cents),
                    else_=0,
                ),
                version=Wallet.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise StoreWriteFailure(f"Wallet hold release for {user_id} did not apply")
        logger.info(f"🔓 WALLET_HOLD_RELEASED: {user_id} -{MonetaryDecimal.format_usd(amount_cents)}")

    async def settle_sale(
        self,
        session: AsyncSession,
        seller_id: str,
        amount_cents: int,
        related_id: str,
        held_cents: int = 0,
        description: Optional[str] = None,
    ) -> None:
        """Move a sale out of hold (if it was held) and into available"""
        self._check_amount(amount_cents, "settle_sale")
        if held_cents:
            await self.release_hold(session, seller_id, held_cents)
        if await self._apply_delta(session, seller_id, available=amount_cents) != 1:
            raise StoreWriteFailure(f"Sale settlement for {seller_id} did not apply")
        advanced = await self.advance_transaction(
            session, seller_id, TransactionType.SALE, related_id, TransactionStatus.COMPLETED
        )
        if not advanced:
            await self.record_transaction(
                session, seller_id, TransactionType.SALE, amount_cents, related_id, description
            )
        logger.info(f"✅ SALE_SETTLED: {seller_id} +{MonetaryDecimal.format_usd(amount_cents)} for {related_id}")

    async def reverse_sale(self, session: AsyncSession, seller_id: str, held_cents: int, related_id: str) -> None:
        """Drop a held sale that will never settle"""
        if held_cents:
            await self.release_hold(session, seller_id, held_cents)
        await self.advance_transaction(
            session, seller_id, TransactionType.SALE, related_id, TransactionStatus.REJECTED
        )
        logger.info(f"↩️ SALE_REVERSED: {seller_id} hold -{MonetaryDecimal.format_usd(held_cents)} for {related_id}")

    async def get_wallet(self, session: AsyncSession, user_id: str) -> Wallet:
        await self.ensure_wallet(session, user_id)
        result = await session.execute(
            select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def list_transactions(self, session: AsyncSession, user_id: str, limit: int = 50) -> List[Transaction]:
        result = await session.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


wallet_ledger = WalletLedger()
