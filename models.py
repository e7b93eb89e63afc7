"""
Beat Marketplace - Order Core Database Schema
=============================================

Schema for the peer-to-peer beat marketplace order core:
- Orders with an append-only action log and versioned compare-and-swap updates
- Per-user wallets (available / hold) with an append-only transaction log
- Disputes for orders and legacy purchase records
- Withdrawal requests and refund saga records

All money columns are integer cents. Status columns are plain strings guarded by
CHECK constraints so the store itself refuses states outside the enums below.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from sqlalchemy import (
    Integer, BigInteger, String, DateTime, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.helpers import utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _check_in(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    ADMIN_DELIVERED = "admin_delivered"


class LicenseType(Enum):
    """License tiers a beat can be sold under"""
    MP3 = "mp3"
    WAV = "wav"
    TRACKOUT = "trackout"
    EXCLUSIVE = "exclusive"


class ActorRole(Enum):
    """Who is acting on an order"""
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class DisputeParty(Enum):
    BUYER = "buyer"
    SELLER = "seller"


class OrderAction(Enum):
    """Action names written to the order action log"""
    CREATED = "created"
    APPROVED = "approved"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    ADMIN_APPROVED = "admin_approved"
    ADMIN_REJECTED = "admin_rejected"
    ADMIN_DELIVERED = "admin_delivered"


class TransactionType(Enum):
    SALE = "sale"
    REFUND = "refund"
    REFUND_DEDUCT = "refund_deduct"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REFUND = "withdrawal_refund"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class DisputeStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class PurchaseStatus(Enum):
    """Legacy purchase record states"""
    HOLD = "hold"
    DISPUTED = "disputed"
    REFUNDING = "refunding"
    REFUNDED = "refunded"


class WithdrawalStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RefundOperationStatus(Enum):
    """Saga state of an administrative refund"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_RECONCILIATION = "needs_reconciliation"


# ============================================================================
# ORDERS
# ============================================================================

class Order(Base):
    """Checkout order for a single beat license, verified manually by the seller"""
    __tablename__ = 'orders'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    order_ref: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)

    # Parties (buyer_id NULL means guest checkout)
    buyer_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    buyer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="Guest")
    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    seller_name: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_contact: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Subject
    beat_id: Mapped[str] = mapped_column(String(128), nullable=False)
    beat_title: Mapped[str] = mapped_column(String(255), nullable=False)
    beat_cover_ref: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    license_type: Mapped[str] = mapped_column(String(20), nullable=False)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Payment evidence (opaque references into external storage)
    payment_proof_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    transaction_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_date: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    card_last_four: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disputed_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reject_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Seller hold currently attributable to this order
    held_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Compare-and-swap counter, incremented by the ORM on every flush
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    disputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    action_log: Mapped[List["OrderActionEntry"]] = relationship(
        "OrderActionEntry",
        back_populates="order",
        order_by="OrderActionEntry.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(_check_in("status", OrderStatus), name='ck_order_status_valid'),
        CheckConstraint(_check_in("license_type", LicenseType), name='ck_order_license_valid'),
        CheckConstraint('price_cents >= 0', name='ck_order_price_non_negative'),
        CheckConstraint('held_cents >= 0', name='ck_order_held_non_negative'),
        Index('ix_orders_status_created', 'status', 'created_at'),
    )

    @property
    def is_guest(self) -> bool:
        return self.buyer_id is None

    def __repr__(self):
        return f"<Order {self.order_ref} {self.status} v{self.version}>"


class OrderActionEntry(Base):
    """One immutable row of an order's public action log"""
    __tablename__ = 'order_actions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_pk: Mapped[int] = mapped_column(Integer, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_name: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    actor_role: Mapped[str] = mapped_column(String(10), nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="action_log")

    __table_args__ = (
        UniqueConstraint('order_pk', 'sequence', name='uq_order_action_sequence'),
        CheckConstraint(_check_in("actor_role", ActorRole), name='ck_order_action_role_valid'),
    )


# ============================================================================
# LEDGER
# ============================================================================

class Wallet(Base):
    """Per-user balances; rows are only ever changed with atomic SQL increments"""
    __tablename__ = 'wallets'

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    available_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    hold_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint('available_cents >= 0', name='ck_wallet_available_non_negative'),
        CheckConstraint('hold_cents >= 0', name='ck_wallet_hold_non_negative'),
    )

    def __repr__(self):
        return f"<Wallet {self.user_id} available={self.available_cents} hold={self.hold_cents}>"


class Transaction(Base):
    """Append-only ledger entry; only ``status`` ever advances after insert"""
    __tablename__ = 'transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    related_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.COMPLETED.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(_check_in("type", TransactionType), name='ck_transaction_type_valid'),
        CheckConstraint(_check_in("status", TransactionStatus), name='ck_transaction_status_valid'),
        Index('ix_transactions_related_type', 'related_id', 'type'),
    )


# ============================================================================
# DISPUTES, PURCHASES, WITHDRAWALS
# ============================================================================

class Dispute(Base):
    """Arbitration record for an order or a legacy purchase"""
    __tablename__ = 'disputes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dispute_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    purchase_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Snapshot of the disputed document at the time the dispute was raised
    order_ref: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    beat_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    beat_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    buyer_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    buyer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    seller_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    seller_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raised_by: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=DisputeStatus.OPEN.value, index=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(_check_in("status", DisputeStatus), name='ck_dispute_status_valid'),
        CheckConstraint('order_id IS NOT NULL OR purchase_id IS NOT NULL', name='ck_dispute_has_subject'),
    )


class Purchase(Base):
    """Legacy purchase record whose seller share sits in the seller's hold"""
    __tablename__ = 'purchases'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    purchase_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    buyer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    seller_name: Mapped[str] = mapped_column(String(255), nullable=False)
    beat_id: Mapped[str] = mapped_column(String(128), nullable=False)
    beat_title: Mapped[str] = mapped_column(String(255), nullable=False)
    license_type: Mapped[str] = mapped_column(String(20), nullable=False)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    seller_amount_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PurchaseStatus.HOLD.value)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(_check_in("status", PurchaseStatus), name='ck_purchase_status_valid'),
        CheckConstraint('price_cents >= 0', name='ck_purchase_price_non_negative'),
    )


class Withdrawal(Base):
    """Seller payout request; the amount leaves ``available`` when requested"""
    __tablename__ = 'withdrawals'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    withdrawal_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WithdrawalStatus.PENDING.value, index=True)
    reject_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(_check_in("status", WithdrawalStatus), name='ck_withdrawal_status_valid'),
        CheckConstraint('amount_cents > 0', name='ck_withdrawal_amount_positive'),
    )


class RefundOperation(Base):
    """Saga record for a purchase refund; survives partial failure for reconciliation"""
    __tablename__ = 'refund_operations'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    purchase_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=RefundOperationStatus.RUNNING.value)
    completed_steps: Mapped[str] = mapped_column(Text, nullable=False, default="")
    failed_step: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(_check_in("status", RefundOperationStatus), name='ck_refund_operation_status_valid'),
    )

    @property
    def steps(self) -> List[str]:
        return [step for step in (self.completed_steps or "").split(",") if step]
