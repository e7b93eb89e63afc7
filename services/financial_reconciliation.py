#!/usr/bin/env python3
"""
Financial Reconciliation Service
Recomputes every wallet from its transaction log and reports drift, plus refund
operations that stopped half-way and need manual attention
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List

from sqlalchemy import and_, case, func, or_, select

from database import async_managed_session
from models import RefundOperation, RefundOperationStatus, Transaction, TransactionStatus, TransactionType, Wallet
from services.notification_service import NotificationFormatter, operator_notifier
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationDiscrepancy:
    """A wallet whose stored balances disagree with its transaction log"""

    user_id: str
    stored_available_cents: int
    expected_available_cents: int
    stored_hold_cents: int
    expected_hold_cents: int

    @property
    def available_drift_cents(self) -> int:
        return self.stored_available_cents - self.expected_available_cents

    @property
    def hold_drift_cents(self) -> int:
        return self.stored_hold_cents - self.expected_hold_cents


@dataclass
class ReconciliationReport:
    """Complete reconciliation report"""

    reconciliation_date: datetime
    wallets_checked: int
    discrepancies: List[ReconciliationDiscrepancy] = field(default_factory=list)
    stuck_refunds: List[str] = field(default_factory=list)
    processing_time_ms: int = 0

    @property
    def status(self) -> str:
        return "clean" if not self.discrepancies and not self.stuck_refunds else "attention_required"


class FinancialReconciliationService:
    """
    Expected balances per user:
        available = completed sales + refunds + withdrawal refunds + withdrawals (negative, any status)
        hold      = pending sales
    """

    def __init__(self, session_factory=None, notifier=None):
        self.session_factory = session_factory
        self.notifier = notifier or operator_notifier

    @staticmethod
    def _expected_balances_query():
        completed_credit = and_(
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.type.in_([
                TransactionType.SALE.value,
                TransactionType.REFUND.value,
                TransactionType.WITHDRAWAL_REFUND.value,
            ]),
        )
        available_entry = or_(completed_credit, Transaction.type == TransactionType.WITHDRAWAL.value)
        pending_sale = and_(
            Transaction.type == TransactionType.SALE.value,
            Transaction.status == TransactionStatus.PENDING.value,
        )
        return select(
            Transaction.user_id,
            func.coalesce(func.sum(case((available_entry, Transaction.amount_cents), else_=0)), 0),
            func.coalesce(func.sum(case((pending_sale, Transaction.amount_cents), else_=0)), 0),
        ).group_by(Transaction.user_id)

    async def reconcile(self, notify: bool = True) -> ReconciliationReport:
        started = time.monotonic()
        async with async_managed_session(self.session_factory) as session:
            expected: Dict[str, tuple] = {
                user_id: (int(available), int(hold))
                for user_id, available, hold in (await session.execute(self._expected_balances_query())).all()
            }
            wallets = (await session.execute(select(Wallet))).scalars().all()
            stuck = (await session.execute(
                select(RefundOperation.purchase_id).where(
                    RefundOperation.status == RefundOperationStatus.NEEDS_RECONCILIATION.value
                )
            )).scalars().all()

        report = ReconciliationReport(reconciliation_date=utc_now(), wallets_checked=len(wallets))
        seen = set()
        for wallet in wallets:
            seen.add(wallet.user_id)
            exp_available, exp_hold = expected.get(wallet.user_id, (0, 0))
            if wallet.available_cents != exp_available or wallet.hold_cents != exp_hold:
                report.discrepancies.append(ReconciliationDiscrepancy(
                    user_id=wallet.user_id,
                    stored_available_cents=wallet.available_cents,
                    expected_available_cents=exp_available,
                    stored_hold_cents=wallet.hold_cents,
                    expected_hold_cents=exp_hold,
                ))
        for user_id, (exp_available, exp_hold) in expected.items():
            if user_id not in seen and (exp_available or exp_hold):
                report.discrepancies.append(ReconciliationDiscrepancy(
                    user_id=user_id,
                    stored_available_cents=0,
                    expected_available_cents=exp_available,
                    stored_hold_cents=0,
                    expected_hold_cents=exp_hold,
                ))
        report.stuck_refunds = list(stuck)
        report.processing_time_ms = int((time.monotonic() - started) * 1000)

        if report.status == "clean":
            logger.info(f"✅ RECONCILIATION_CLEAN: {report.wallets_checked} wallets in {report.processing_time_ms}ms")
        else:
            for discrepancy in report.discrepancies:
                logger.error(
                    f"❌ LEDGER_DRIFT: {discrepancy.user_id} available {discrepancy.available_drift_cents:+d} "
                    f"hold {discrepancy.hold_drift_cents:+d} cents"
                )
            if report.stuck_refunds:
                logger.error(f"❌ REFUNDS_NEED_RECONCILIATION: {report.stuck_refunds}")
            if notify:
                self.notifier.notify(NotificationFormatter.reconciliation_alert(report))
        return report
