"""
Operator notification tests: best-effort Telegram sends and message bodies
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.constants import ParseMode
from telegram.error import NetworkError

from services.notification_service import NotificationFormatter, OperatorNotifier, TelegramNotificationSink


def configured_sink(send_message):
    sink = TelegramNotificationSink(token="123:abc", chat_id="-1001", enabled=True)
    sink._bot = MagicMock()
    sink._bot.send_message = send_message
    return sink


class CollectingSink:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send(self, text):
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("sink exploded")
        self.sent.append(text)
        return True


class TestTelegramSink:
    @pytest.mark.asyncio
    async def test_unconfigured_sink_skips(self):
        sink = TelegramNotificationSink(token="", chat_id="", enabled=True)
        assert await sink.send("hello") is False

    @pytest.mark.asyncio
    async def test_disabled_sink_skips(self):
        send = AsyncMock()
        sink = configured_sink(send)
        sink.enabled = False
        assert await sink.send("hello") is False
        send.assert_not_called()

    @pytest.mark.asyncio
    async def test_sends_html_to_operator_chat(self):
        send = AsyncMock(return_value=None)
        sink = configured_sink(send)

        assert await sink.send("<b>hi</b>") is True
        send.assert_awaited_once()
        kwargs = send.await_args.kwargs
        assert kwargs["chat_id"] == "-1001"
        assert kwargs["text"] == "<b>hi</b>"
        assert kwargs["parse_mode"] == ParseMode.HTML

    @pytest.mark.asyncio
    async def test_telegram_error_is_swallowed(self):
        sink = configured_sink(AsyncMock(side_effect=NetworkError("bad gateway")))
        assert await sink.send("hello") is False

    @pytest.mark.asyncio
    async def test_unexpected_error_is_swallowed(self):
        sink = configured_sink(AsyncMock(side_effect=ValueError("boom")))
        assert await sink.send("hello") is False


class TestOperatorNotifier:
    @pytest.mark.asyncio
    async def test_notify_is_fire_and_forget(self):
        sink = CollectingSink()
        notifier = OperatorNotifier(sink)

        task = notifier.notify("order update")
        assert task is not None
        assert sink.sent == []

        await notifier.drain()
        assert sink.sent == ["order update"]

    @pytest.mark.asyncio
    async def test_failed_send_does_not_reach_caller(self):
        notifier = OperatorNotifier(CollectingSink(fail=True))
        notifier.notify("order update")
        await notifier.drain()
        assert notifier._pending == set()

    def test_notify_without_loop_is_dropped(self):
        notifier = OperatorNotifier(CollectingSink())
        assert notifier.notify("nobody listening") is None


class TestNotificationFormatter:
    def test_order_created_escapes_user_text(self):
        order = SimpleNamespace(
            order_ref="808-ABC-1234", beat_title="<Trap> & Soul", license_type="wav", price_cents=4999,
            buyer_name="Ada", buyer_email="ada@example.com", seller_name="Beatsmith",
        )
        text = NotificationFormatter.order_created(order)
        assert "&lt;Trap&gt; &amp; Soul" in text
        assert "$49.99" in text
        assert "<b>New Order</b>" in text

    def test_orders_auto_cancelled_lists_refs(self):
        text = NotificationFormatter.orders_auto_cancelled(["808-A-0001", "808-B-0002"])
        assert text.startswith("⏰ <b>2 order(s) auto-cancelled</b>")
        assert "808-B-0002" in text

    def test_refund_needs_reconciliation_without_steps(self):
        operation = SimpleNamespace(
            purchase_id="pur_1", completed_steps="", failed_step="claim", error_message=None,
        )
        text = NotificationFormatter.refund_needs_reconciliation(operation)
        assert "Completed: none" in text
        assert "Failed at: claim" in text
