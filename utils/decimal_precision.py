#!/usr/bin/env python3
"""
Decimal Precision Utilities for Marketplace Money
Money is stored as integer cents; Decimal is used only at the boundaries
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28


class MonetaryDecimal:
    """Conversions between boundary Decimal amounts and stored integer cents"""

    USD_PRECISION = Decimal("0.01")
    CENTS_PER_UNIT = 100
    MAX_AMOUNT = Decimal("999999999")

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal], context: str = "monetary") -> Decimal:
        """Convert a boundary value to Decimal, rejecting garbage instead of guessing"""
        if value is None:
            raise ValueError(f"Missing monetary value in context {context}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
                raise ValueError(f"Invalid monetary value {value!r}") from e

        if not decimal_value.is_finite():
            raise ValueError(f"Invalid monetary value {value!r}")
        if abs(decimal_value) > cls.MAX_AMOUNT:
            logger.warning(f"Rejected oversized monetary value: {decimal_value} in context: {context}")
            raise ValueError(f"Monetary value {value!r} exceeds the maximum of {cls.MAX_AMOUNT}")
        return decimal_value

    @classmethod
    def quantize_usd(cls, amount: Union[str, int, float, Decimal]) -> Decimal:
        """Quantize amount to USD precision (2 decimal places)"""
        try:
            return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)
        except InvalidOperation as e:
            raise ValueError(f"Invalid monetary value {amount!r}") from e

    @classmethod
    def to_cents(cls, amount: Union[str, int, float, Decimal]) -> int:
        """Decimal dollars -> integer cents (half-up)"""
        return int(cls.quantize_usd(amount) * cls.CENTS_PER_UNIT)

    @classmethod
    def from_cents(cls, cents: int) -> Decimal:
        return (Decimal(int(cents)) / cls.CENTS_PER_UNIT).quantize(cls.USD_PRECISION)

    @classmethod
    def percentage_of_cents(cls, cents: int, rate: Union[str, Decimal]) -> int:
        """Apply a rate to a cent amount, rounding half-up to whole cents"""
        result = (Decimal(int(cents)) * cls.to_decimal(rate, "rate")).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(result)

    @classmethod
    def format_usd(cls, cents: int) -> str:
        return f"${cls.from_cents(cents):,.2f}"
