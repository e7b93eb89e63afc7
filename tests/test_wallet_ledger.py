"""
Wallet ledger tests: atomic increments, floors and the transaction trail
"""

import pytest

from conftest import fund_wallet, read_transactions, read_wallet
from models import TransactionStatus, TransactionType
from services.wallet_service import WalletLedger
from utils.order_errors import InsufficientFunds, ValidationError

USER = "user-77"


@pytest.fixture
def ledger():
    return WalletLedger()


class TestWalletLedger:
    @pytest.mark.asyncio
    async def test_wallet_is_created_lazily(self, ledger, session_factory):
        async with session_factory() as session:
            wallet = await ledger.get_wallet(session, USER)
            await session.commit()
        assert (wallet.available_cents, wallet.hold_cents) == (0, 0)

    @pytest.mark.asyncio
    async def test_ensure_wallet_is_idempotent(self, ledger, session_factory):
        async with session_factory() as session:
            await ledger.ensure_wallet(session, USER)
            await ledger.ensure_wallet(session, USER)
            await session.commit()
        assert await read_wallet(session_factory, USER) == (0, 0)

    @pytest.mark.asyncio
    async def test_credit_records_completed_transaction(self, ledger, session_factory):
        async with session_factory() as session:
            await ledger.credit(session, USER, 2500, TransactionType.REFUND, related_id="pur_1")
            await ledger.credit(session, USER, 500, TransactionType.REFUND, related_id="pur_2")
            await session.commit()

        assert await read_wallet(session_factory, USER) == (3000, 0)
        txs = await read_transactions(session_factory, USER)
        assert [(t.type, t.amount_cents, t.status) for t in txs] == [
            ("refund", 2500, "completed"), ("refund", 500, "completed"),
        ]

    @pytest.mark.asyncio
    async def test_debit_refuses_overdraw(self, ledger, session_factory):
        await fund_wallet(session_factory, USER, available_cents=1000)
        async with session_factory() as session:
            with pytest.raises(InsufficientFunds):
                await ledger.debit(session, USER, 1001, TransactionType.WITHDRAWAL)
            await session.rollback()

        assert await read_wallet(session_factory, USER) == (1000, 0)
        assert await read_transactions(session_factory, USER) == []

    @pytest.mark.asyncio
    async def test_debit_records_negative_amount(self, ledger, session_factory):
        await fund_wallet(session_factory, USER, available_cents=1000)
        async with session_factory() as session:
            await ledger.debit(session, USER, 400, TransactionType.WITHDRAWAL, related_id="wd_1",
                               status=TransactionStatus.PENDING)
            await session.commit()

        assert await read_wallet(session_factory, USER) == (600, 0)
        [tx] = await read_transactions(session_factory, USER)
        assert (tx.amount_cents, tx.status) == (-400, "pending")

    @pytest.mark.asyncio
    async def test_release_hold_is_floored_at_zero(self, ledger, session_factory):
        await fund_wallet(session_factory, USER, hold_cents=300)
        async with session_factory() as session:
            await ledger.release_hold(session, USER, 1000)
            await session.commit()
        assert await read_wallet(session_factory, USER) == (0, 0)

    @pytest.mark.asyncio
    async def test_hold_then_settle(self, ledger, session_factory):
        async with session_factory() as session:
            await ledger.hold(session, USER, 900, related_id="ord_1")
            await session.commit()
        assert await read_wallet(session_factory, USER) == (0, 900)

        async with session_factory() as session:
            await ledger.settle_sale(session, USER, 900, related_id="ord_1", held_cents=900)
            await session.commit()
        assert await read_wallet(session_factory, USER) == (900, 0)
        [tx] = await read_transactions(session_factory, USER)
        assert (tx.type, tx.status) == ("sale", "completed")

    @pytest.mark.asyncio
    async def test_reverse_sale_drops_hold(self, ledger, session_factory):
        async with session_factory() as session:
            await ledger.hold(session, USER, 900, related_id="ord_1")
            await ledger.reverse_sale(session, USER, 900, related_id="ord_1")
            await session.commit()
        assert await read_wallet(session_factory, USER) == (0, 0)
        [tx] = await read_transactions(session_factory, USER)
        assert tx.status == "rejected"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [-1, 1.5, "100"])
    async def test_amount_must_be_non_negative_cents(self, ledger, session_factory, amount):
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await ledger.credit(session, USER, amount, TransactionType.REFUND)

    @pytest.mark.asyncio
    async def test_increments_bump_wallet_version(self, ledger, session_factory):
        async with session_factory() as session:
            await ledger.credit(session, USER, 100, TransactionType.REFUND)
            await ledger.hold(session, USER, 50, related_id="ord_9")
            await session.commit()
        async with session_factory() as session:
            wallet = await ledger.get_wallet(session, USER)
        assert wallet.version == 3

    @pytest.mark.asyncio
    async def test_list_transactions_newest_first(self, ledger, session_factory):
        async with session_factory() as session:
            await ledger.credit(session, USER, 100, TransactionType.REFUND, related_id="a")
            await ledger.credit(session, USER, 200, TransactionType.REFUND, related_id="b")
            await session.commit()
        async with session_factory() as session:
            txs = await ledger.list_transactions(session, USER)
        assert [t.related_id for t in txs] == ["b", "a"]
