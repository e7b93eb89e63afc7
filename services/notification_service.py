"""
Operator Notification Service - Telegram channel for marketplace events

Order transitions, disputes, refunds and withdrawals are announced to the
operator chat (ADMIN_CHAT_ID) as HTML messages. Delivery is best-effort:
sends are scheduled as fire-and-forget tasks after the store write commits,
failures are logged and never reach the caller.
"""

import asyncio
import logging
from typing import Optional, Set

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from config import Config
from utils.decimal_precision import MonetaryDecimal
from utils.helpers import escape_html

logger = logging.getLogger(__name__)


class TelegramNotificationSink:
    """Sends one HTML message to the operator chat; never raises"""

    def __init__(self, token: Optional[str] = None, chat_id: Optional[str] = None,
                 enabled: Optional[bool] = None):
        self.token = token if token is not None else Config.BOT_TOKEN
        self.chat_id = chat_id if chat_id is not None else Config.ADMIN_CHAT_ID
        self.enabled = Config.NOTIFICATIONS_ENABLED if enabled is None else enabled
        self._bot: Optional[Bot] = None

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.token and self.chat_id)

    def _get_bot(self) -> Bot:
        if self._bot is None:
            self._bot = Bot(token=self.token)
        return self._bot

    async def send(self, text: str) -> bool:
        if not self.configured:
            logger.debug("Operator notification skipped: Telegram not configured")
            return False
        try:
            await asyncio.wait_for(
                self._get_bot().send_message(
                    chat_id=self.chat_id,
                    text=text,
                    parse_mode=ParseMode.HTML,
                    disable_web_page_preview=True,
                ),
                timeout=Config.NOTIFICATION_TIMEOUT_SECONDS,
            )
            logger.info(f"✅ TELEGRAM_SENT_ASYNC: chat={self.chat_id}")
            return True
        except TelegramError as e:
            logger.error(f"❌ TELEGRAM_ERROR_ASYNC: chat={self.chat_id}, error={e}")
            return False
        except asyncio.TimeoutError:
            logger.error(f"❌ TELEGRAM_TIMEOUT_ASYNC: chat={self.chat_id}")
            return False
        except Exception as e:
            logger.error(f"❌ TELEGRAM_UNEXPECTED_ASYNC: chat={self.chat_id}, error={e}")
            return False


class OperatorNotifier:
    """Fire-and-forget dispatcher in front of a notification sink"""

    def __init__(self, sink=None):
        self.sink = sink or TelegramNotificationSink()
        self._pending: Set[asyncio.Task] = set()

    def _on_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ NOTIFICATION_TASK_FAILED: {error}")

    def notify(self, text: str) -> Optional[asyncio.Task]:
        """Schedule a send without waiting on it"""
        try:
            task = asyncio.get_running_loop().create_task(self.sink.send(text))
        except RuntimeError:
            logger.warning("⚠️ NOTIFICATION_DROPPED: no running event loop")
            return None
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def drain(self):
        """Wait for in-flight notifications (shutdown and tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class NotificationFormatter:
    """HTML message bodies for operator notifications"""

    @staticmethod
    def order_created(order) -> str:
        return (
            "🛒 <b>New Order</b>\n\n"
            f"Ref: <code>{escape_html(order.order_ref)}</code>\n"
            f"Beat: {escape_html(order.beat_title)} ({escape_html(order.license_type)})\n"
            f"Price: {MonetaryDecimal.format_usd(order.price_cents)}\n"
            f"Buyer: {escape_html(order.buyer_name)} ({escape_html(order.buyer_email)})\n"
            f"Seller: {escape_html(order.seller_name)}"
        )

    @staticmethod
    def order_transition(order, entry) -> str:
        return (
            "🔄 <b>Order Update</b>\n\n"
            f"Ref: <code>{escape_html(order.order_ref)}</code>\n"
            f"Status: <b>{escape_html(order.status)}</b>\n"
            f"By: {escape_html(entry.actor_name)} ({escape_html(entry.actor_role)})\n"
            f"Note: {escape_html(entry.note)}"
        )

    @staticmethod
    def dispute_opened(dispute) -> str:
        subject = dispute.order_ref or dispute.purchase_id or dispute.order_id
        return (
            "⚠️ <b>New Dispute</b>\n\n"
            f"Ref: <code>{escape_html(subject)}</code>\n"
            f"Beat: {escape_html(dispute.beat_title)}\n"
            f"Amount: {MonetaryDecimal.format_usd(dispute.amount_cents)}\n"
            f"Buyer: {escape_html(dispute.buyer_name)}\n"
            f"Seller: {escape_html(dispute.seller_name)}\n"
            f"Raised by: {escape_html(dispute.raised_by)}\n"
            f"Reason: {escape_html(dispute.reason)}"
        )

    @staticmethod
    def admin_decision(order, entry) -> str:
        return (
            "⚖️ <b>Admin Decision</b>\n\n"
            f"Ref: <code>{escape_html(order.order_ref)}</code>\n"
            f"Decision: <b>{escape_html(entry.action)}</b>\n"
            f"Admin: {escape_html(entry.actor_name)}\n"
            f"Note: {escape_html(entry.note)}"
        )

    @staticmethod
    def orders_auto_cancelled(order_refs) -> str:
        refs = "\n".join(f"• <code>{escape_html(ref)}</code>" for ref in order_refs)
        return (
            f"⏰ <b>{len(order_refs)} order(s) auto-cancelled</b>\n"
            f"No seller confirmation within {Config.ORDER_CONFIRMATION_TIMEOUT_MINUTES} minutes\n\n"
            f"{refs}"
        )

    @staticmethod
    def refund_completed(purchase) -> str:
        return (
            "↩️ <b>Refund Completed</b>\n\n"
            f"Purchase: <code>{escape_html(purchase.purchase_id)}</code>\n"
            f"Beat: {escape_html(purchase.beat_title)}\n"
            f"Amount: {MonetaryDecimal.format_usd(purchase.price_cents)}\n"
            f"Buyer: {escape_html(purchase.buyer_name)}"
        )

    @staticmethod
    def refund_needs_reconciliation(operation) -> str:
        return (
            "🚨 <b>Refund Needs Reconciliation</b>\n\n"
            f"Purchase: <code>{escape_html(operation.purchase_id)}</code>\n"
            f"Completed: {escape_html(operation.completed_steps or 'none')}\n"
            f"Failed at: {escape_html(operation.failed_step)}\n"
            f"Error: {escape_html(operation.error_message)}"
        )

    @staticmethod
    def withdrawal_requested(withdrawal) -> str:
        return (
            "💸 <b>Withdrawal Request</b>\n\n"
            f"User: {escape_html(withdrawal.user_name or withdrawal.user_id)}\n"
            f"Amount: {MonetaryDecimal.format_usd(withdrawal.amount_cents)}\n"
            f"Method: {escape_html(withdrawal.method)}\n"
            f"Details: {escape_html(withdrawal.details)}"
        )

    @staticmethod
    def reconciliation_alert(report) -> str:
        return (
            "📊 <b>Ledger Reconciliation Alert</b>\n\n"
            f"Wallets checked: {report.wallets_checked}\n"
            f"Discrepancies: {len(report.discrepancies)}\n"
            f"Refunds awaiting reconciliation: {len(report.stuck_refunds)}"
        )


operator_notifier = OperatorNotifier()
