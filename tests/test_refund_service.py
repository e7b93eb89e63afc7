"""
Refund workflow tests

Tests the purchase refund saga: happy path ledger movements, the duplicate
refund guard, and partial failure leaving a reconciliation record.
"""

from decimal import Decimal

import pytest

from conftest import BUYER_ID, SELLER_ID, fund_wallet, read_transactions, read_wallet
from models import RefundOperationStatus
from services.refund_service import RefundService
from services.wallet_service import WalletLedger
from utils.order_errors import (
    AuthorizationError, InvalidTransition, PartialLedgerFailure, StoreWriteFailure, ValidationError,
)


class ExplodingHoldLedger(WalletLedger):
    """Ledger whose seller-side leg fails, as if the store went away mid-refund"""

    async def release_hold(self, session, user_id, amount_cents):
        raise StoreWriteFailure("connection reset while releasing hold")


async def record(purchase_service, buyer, price="20.00", **kwargs):
    return await purchase_service.record_purchase(
        buyer, seller_id=SELLER_ID, seller_name="Beatsmith", beat_id="beat-42",
        beat_title="Midnight Drive", license_type="mp3", price=Decimal(price), **kwargs
    )


class TestPurchases:
    @pytest.mark.asyncio
    async def test_record_purchase_holds_seller_share(self, purchase_service, buyer, session_factory):
        purchase = await record(purchase_service, buyer)
        assert purchase.status == "hold"
        assert purchase.price_cents == 2000
        assert purchase.seller_amount_cents == 1800
        assert await read_wallet(session_factory, SELLER_ID) == (0, 1800)

    @pytest.mark.asyncio
    async def test_seller_amount_cannot_exceed_price(self, purchase_service, buyer):
        with pytest.raises(ValidationError):
            await record(purchase_service, buyer, seller_amount=Decimal("25.00"))

    @pytest.mark.asyncio
    async def test_buyer_disputes_purchase(self, purchase_service, buyer, notifier):
        purchase = await record(purchase_service, buyer)
        dispute = await purchase_service.dispute_purchase(purchase.purchase_id, buyer, reason="Wrong beat delivered")
        assert dispute.purchase_id == purchase.purchase_id
        assert dispute.status == "open"
        stored = await purchase_service.get_purchase(purchase.purchase_id)
        assert stored.status == "disputed"
        assert stored.dispute_reason == "Wrong beat delivered"
        assert any("New Dispute" in m for m in notifier.messages)

    @pytest.mark.asyncio
    async def test_purchase_dispute_needs_reason(self, purchase_service, buyer):
        purchase = await record(purchase_service, buyer)
        with pytest.raises(ValidationError):
            await purchase_service.dispute_purchase(purchase.purchase_id, buyer, reason="  ")

    @pytest.mark.asyncio
    async def test_list_purchases_for_buyer_newest_first(self, purchase_service, buyer):
        first = await record(purchase_service, buyer)
        second = await record(purchase_service, buyer, price="35.00")

        listed = await purchase_service.list_purchases_for_buyer(BUYER_ID)
        assert [p.purchase_id for p in listed] == [second.purchase_id, first.purchase_id]
        assert await purchase_service.list_purchases_for_buyer("someone-else") == []


class TestRefundPurchase:
    @pytest.mark.asyncio
    async def test_refund_moves_money_and_completes(self, purchase_service, refund_service, buyer, admin,
                                                    session_factory):
        purchase = await record(purchase_service, buyer)
        await purchase_service.dispute_purchase(purchase.purchase_id, buyer, reason="File is silent")

        operation = await refund_service.refund_purchase(purchase.purchase_id, admin)

        assert operation.status == RefundOperationStatus.COMPLETED.value
        assert operation.steps == ["claim", "credit_buyer", "release_seller_hold", "mark_refunded"]
        assert await read_wallet(session_factory, BUYER_ID) == (2000, 0)
        assert await read_wallet(session_factory, SELLER_ID) == (0, 0)

        stored = await purchase_service.get_purchase(purchase.purchase_id)
        assert stored.status == "refunded"
        assert stored.refunded_by == "Ops Admin"
        assert stored.refunded_at is not None

        buyer_txs = await read_transactions(session_factory, BUYER_ID)
        assert [(t.type, t.amount_cents) for t in buyer_txs] == [("refund", 2000)]
        seller_txs = await read_transactions(session_factory, SELLER_ID)
        assert [(t.type, t.amount_cents, t.status) for t in seller_txs] == [
            ("sale", 1800, "rejected"), ("refund_deduct", -1800, "completed"),
        ]

    @pytest.mark.asyncio
    async def test_seller_hold_release_is_floored(self, purchase_service, refund_service, buyer, admin,
                                                  session_factory):
        purchase = await record(purchase_service, buyer)
        await fund_wallet(session_factory, SELLER_ID, hold_cents=500)

        await refund_service.refund_purchase(purchase.purchase_id, admin)
        assert await read_wallet(session_factory, SELLER_ID) == (0, 0)

    @pytest.mark.asyncio
    async def test_second_refund_is_rejected_without_double_credit(self, purchase_service, refund_service,
                                                                   buyer, admin, session_factory):
        purchase = await record(purchase_service, buyer)
        await refund_service.refund_purchase(purchase.purchase_id, admin)

        with pytest.raises(InvalidTransition):
            await refund_service.refund_purchase(purchase.purchase_id, admin)

        assert await read_wallet(session_factory, BUYER_ID) == (2000, 0)
        assert len(await read_transactions(session_factory, BUYER_ID)) == 1

    @pytest.mark.asyncio
    async def test_only_admin_can_refund(self, purchase_service, refund_service, buyer, seller):
        purchase = await record(purchase_service, buyer)
        with pytest.raises(AuthorizationError):
            await refund_service.refund_purchase(purchase.purchase_id, seller)

    @pytest.mark.asyncio
    async def test_partial_failure_flags_reconciliation(self, purchase_service, session_factory, notifier,
                                                        buyer, admin):
        purchase = await record(purchase_service, buyer)
        service = RefundService(session_factory=session_factory, notifier=notifier, ledger=ExplodingHoldLedger())

        with pytest.raises(PartialLedgerFailure) as excinfo:
            await service.refund_purchase(purchase.purchase_id, admin)

        failure = excinfo.value
        assert failure.completed_steps == ["claim", "credit_buyer"]
        assert failure.failed_step == "release_seller_hold"
        assert isinstance(failure.cause, StoreWriteFailure)

        operation = await service.get_operation(purchase.purchase_id)
        assert operation.status == RefundOperationStatus.NEEDS_RECONCILIATION.value
        assert operation.failed_step == "release_seller_hold"
        assert operation.steps == ["claim", "credit_buyer"]
        assert [op.purchase_id for op in await service.list_operations_needing_reconciliation()] == [
            purchase.purchase_id
        ]
        assert any("Needs Reconciliation" in m for m in notifier.messages)

        # Buyer leg committed exactly once; seller leg untouched
        assert await read_wallet(session_factory, BUYER_ID) == (2000, 0)
        assert await read_wallet(session_factory, SELLER_ID) == (0, 1800)
        stored = await purchase_service.get_purchase(purchase.purchase_id)
        assert stored.status == "refunding"

        # Not retried automatically: a new attempt is refused
        with pytest.raises(InvalidTransition):
            await service.refund_purchase(purchase.purchase_id, admin)
        assert await read_wallet(session_factory, BUYER_ID) == (2000, 0)
