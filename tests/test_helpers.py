"""
Helper and money conversion tests
"""

import re
from decimal import Decimal

import pytest

from utils.decimal_precision import MonetaryDecimal
from utils.helpers import escape_html, generate_order_ref, generate_public_id, is_blank, to_base36


class TestOrderReference:
    def test_format(self):
        ref = generate_order_ref()
        assert re.fullmatch(r"808-[0-9A-Z]+-[0-9A-Z]{4}", ref)

    def test_clock_is_base36(self):
        ref = generate_order_ref(now_ms=36 ** 3)
        assert ref.split("-")[1] == "1000"

    def test_refs_do_not_collide(self):
        refs = {generate_order_ref(now_ms=1700000000000) for _ in range(50)}
        assert len(refs) > 1

    def test_base36_rejects_negative(self):
        with pytest.raises(ValueError):
            to_base36(-1)
        assert to_base36(0) == "0"
        assert to_base36(35) == "Z"


class TestSmallHelpers:
    def test_public_id_prefix(self):
        assert generate_public_id("pur_").startswith("pur_")
        assert len(generate_public_id()) == 32

    @pytest.mark.parametrize("value,expected", [(None, True), ("", True), ("  ", True), ("x", False)])
    def test_is_blank(self, value, expected):
        assert is_blank(value) is expected

    def test_escape_html(self):
        assert escape_html("<b>A & B</b>") == "&lt;b&gt;A &amp; B&lt;/b&gt;"
        assert escape_html(None) == ""
        assert escape_html('Say "hi" & it\'s ok') == "Say &quot;hi&quot; &amp; it&#x27;s ok"


class TestMonetaryDecimal:
    @pytest.mark.parametrize("amount,cents", [
        (Decimal("49.99"), 4999),
        ("10", 1000),
        (5, 500),
        ("0.005", 1),
        ("19.994", 1999),
    ])
    def test_to_cents_rounds_half_up(self, amount, cents):
        assert MonetaryDecimal.to_cents(amount) == cents

    @pytest.mark.parametrize("bad", [None, "abc", "NaN", "Infinity", "1e27", "1e20", "-1000000000"])
    def test_invalid_amounts(self, bad):
        with pytest.raises(ValueError):
            MonetaryDecimal.to_cents(bad)

    def test_from_cents_and_format(self):
        assert MonetaryDecimal.from_cents(4999) == Decimal("49.99")
        assert MonetaryDecimal.format_usd(123456) == "$1,234.56"

    def test_percentage_of_cents(self):
        assert MonetaryDecimal.percentage_of_cents(4999, Decimal("0.90")) == 4499
        assert MonetaryDecimal.percentage_of_cents(2000, "0.90") == 1800
