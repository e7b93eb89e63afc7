"""
Order expiry sweep tests

Stale pending orders are cancelled by the system actor; anything the seller
already acted on, or that changed under the sweep, is left alone.
"""

from datetime import timedelta

import pytest

from conftest import SELLER_ID, backdate_order, read_wallet
from models import OrderStatus
from services.order_expiry_service import OrderExpiryService
from utils.helpers import utc_now
from utils.order_errors import ConcurrentUpdateError


@pytest.fixture
def expiry_service(order_service):
    return OrderExpiryService(order_service=order_service, batch_size=10, timeout_minutes=10)


async def make_stale(session_factory, order, minutes=11):
    await backdate_order(session_factory, order.order_id, utc_now() - timedelta(minutes=minutes))


class TestOrderExpiry:
    @pytest.mark.asyncio
    async def test_stale_pending_order_is_cancelled_by_system(self, expiry_service, order_service, pending_order,
                                                              session_factory, notifier):
        await make_stale(session_factory, pending_order)

        results = await expiry_service.process_expired_orders()

        assert results["processed"] == 1
        assert results["cancelled"] == [pending_order.order_ref]
        stored = await order_service.get_order(pending_order.order_id)
        assert stored.status == "cancelled"
        assert stored.cancel_reason == "payment not received"
        last = stored.action_log[-1]
        assert (last.action, last.actor_role, last.actor_name) == ("cancelled", "system", "system")
        assert any("auto-cancelled" in m for m in notifier.messages)

    @pytest.mark.asyncio
    async def test_recent_and_confirmed_orders_are_untouched(self, expiry_service, order_service, buyer, seller,
                                                             checkout, session_factory):
        recent = await order_service.create_order(buyer, checkout())
        approved = await order_service.create_order(buyer, checkout(beat_id="beat-9"))
        await order_service.approve(approved.order_id, seller)
        await make_stale(session_factory, approved, minutes=60)

        results = await expiry_service.process_expired_orders()

        assert results["processed"] == 0
        assert (await order_service.get_order(recent.order_id)).status == "pending"
        assert (await order_service.get_order(approved.order_id)).status == "approved"

    @pytest.mark.asyncio
    async def test_buyer_can_dispute_after_auto_cancel(self, expiry_service, arbitration_service, pending_order,
                                                       buyer, session_factory):
        await make_stale(session_factory, pending_order)
        await expiry_service.process_expired_orders()

        result = await arbitration_service.open_dispute(
            pending_order.order_id, buyer, reason="I paid within the window"
        )
        assert result.order.status == "disputed"

    @pytest.mark.asyncio
    async def test_order_changed_during_sweep_is_skipped(self, expiry_service, order_service, pending_order,
                                                         session_factory, monkeypatch, notifier):
        await make_stale(session_factory, pending_order)

        async def seller_got_there_first(order_id, actor, reason=None, expected_version=None):
            raise ConcurrentUpdateError("Order", order_id, expected_version, expected_version + 1)

        monkeypatch.setattr(order_service, "cancel", seller_got_there_first)

        results = await expiry_service.process_expired_orders()

        assert results["cancelled"] == []
        assert results["skipped"] == [pending_order.order_ref]
        assert results["errors"] == []
        assert not any("auto-cancelled" in m for m in notifier.messages)

    @pytest.mark.asyncio
    async def test_seller_approval_during_cancel_write_is_skipped(self, expiry_service, order_service,
                                                                  pending_order, seller, session_factory,
                                                                  monkeypatch):
        """The seller commits after the sweep read the order but before its write lands"""
        await make_stale(session_factory, pending_order)
        transition = order_service.transition

        async def seller_approves_first(session, order, result):
            await order_service.approve(order.order_id, seller)

        async def cancel_losing_the_race(order_id, actor, reason=None, expected_version=None):
            return await transition(order_id, actor, OrderStatus.CANCELLED, reason=reason,
                                    expected_version=expected_version, after_apply=seller_approves_first)

        monkeypatch.setattr(order_service, "cancel", cancel_losing_the_race)

        results = await expiry_service.process_expired_orders()

        assert results["skipped"] == [pending_order.order_ref]
        assert results["cancelled"] == []
        assert results["errors"] == []
        stored = await order_service.get_order(pending_order.order_id)
        assert stored.status == "approved"
        assert [e.action for e in stored.action_log] == ["created", "approved"]
        assert await read_wallet(session_factory, SELLER_ID) == (0, 4999)

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_sweep(self, order_service, buyer, checkout, session_factory):
        service = OrderExpiryService(order_service=order_service, batch_size=2, timeout_minutes=10)
        for i in range(3):
            order = await order_service.create_order(buyer, checkout(beat_id=f"beat-{i}"))
            await make_stale(session_factory, order, minutes=30 - i)

        first = await service.process_expired_orders()
        second = await service.process_expired_orders()

        assert len(first["cancelled"]) == 2
        assert len(second["cancelled"]) == 1
