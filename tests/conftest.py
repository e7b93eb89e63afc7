"""
Shared fixtures for the marketplace order core test suites

Key Components:
1. File-backed SQLite database per test (aiosqlite) so separate sessions get
   separate connections, which is what the compare-and-swap tests rely on
2. Recording notifier standing in for the Telegram operator channel
3. Actor and checkout factories
4. Wallet / order read helpers
"""

import logging
from decimal import Decimal
from typing import List

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from database import build_async_engine, build_session_factory, create_tables
from models import ActorRole, Order, Transaction, Wallet
from services.arbitration_service import ArbitrationService
from services.order_service import NewOrder, OrderService
from services.purchase_service import PurchaseService
from services.refund_service import RefundService
from services.withdrawal_service import WithdrawalService
from utils.order_state_validator import Actor

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"


class RecordingNotifier:
    """Captures operator notifications instead of sending them"""

    def __init__(self):
        self.messages: List[str] = []

    def notify(self, text: str):
        self.messages.append(text)
        return None

    async def drain(self):
        return None


@pytest.fixture
def buyer():
    return Actor(user_id=BUYER_ID, name="Ada Buyer", role=ActorRole.BUYER)


@pytest.fixture
def guest_buyer():
    return Actor(user_id=None, name="Guest", role=ActorRole.BUYER)


@pytest.fixture
def seller():
    return Actor(user_id=SELLER_ID, name="Beatsmith", role=ActorRole.SELLER)


@pytest.fixture
def other_seller():
    return Actor(user_id="seller-2", name="Imposter", role=ActorRole.SELLER)


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", name="Ops Admin", role=ActorRole.ADMIN)


def make_checkout(**overrides) -> NewOrder:
    data = dict(
        beat_id="beat-42",
        beat_title="Midnight Drive",
        license_type="wav",
        price=Decimal("49.99"),
        seller_id=SELLER_ID,
        seller_name="Beatsmith",
        buyer_email="ada@example.com",
        payment_proof_ref="proofs/receipt-001.png",
        buyer_name="Ada Buyer",
        seller_contact="@beatsmith",
        transaction_ref="TXN-778",
        card_last_four="4242",
    )
    data.update(overrides)
    return NewOrder(**data)


@pytest.fixture
def checkout():
    return make_checkout


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def order_service(session_factory, notifier):
    return OrderService(session_factory=session_factory, notifier=notifier)


@pytest.fixture
def arbitration_service(order_service):
    return ArbitrationService(order_service=order_service)


@pytest.fixture
def purchase_service(session_factory, notifier):
    return PurchaseService(session_factory=session_factory, notifier=notifier)


@pytest.fixture
def refund_service(session_factory, notifier):
    return RefundService(session_factory=session_factory, notifier=notifier)


@pytest.fixture
def withdrawal_service(session_factory, notifier):
    return WithdrawalService(session_factory=session_factory, notifier=notifier)


@pytest_asyncio.fixture
async def pending_order(order_service, buyer, checkout):
    return await order_service.create_order(buyer, checkout())


async def read_wallet(session_factory, user_id: str):
    """(available_cents, hold_cents) straight from the store; (0, 0) if never used"""
    async with session_factory() as session:
        wallet = (await session.execute(select(Wallet).where(Wallet.user_id == user_id))).scalar_one_or_none()
        if wallet is None:
            return 0, 0
        return wallet.available_cents, wallet.hold_cents


async def read_transactions(session_factory, user_id: str):
    async with session_factory() as session:
        result = await session.execute(
            select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.id.asc())
        )
        return list(result.scalars().all())


async def fund_wallet(session_factory, user_id: str, available_cents: int = 0, hold_cents: int = 0):
    """Seed balances directly, bypassing the ledger, for setup and tamper scenarios"""
    from services.wallet_service import wallet_ledger

    async with session_factory() as session:
        await wallet_ledger.ensure_wallet(session, user_id)
        await session.execute(
            update(Wallet).where(Wallet.user_id == user_id)
            .values(available_cents=available_cents, hold_cents=hold_cents)
        )
        await session.commit()


async def backdate_order(session_factory, order_id: str, created_at):
    async with session_factory() as session:
        await session.execute(
            update(Order).where(Order.order_id == order_id).values(created_at=created_at)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
