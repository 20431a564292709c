"""
units.py - Fixed-point amount helpers.

Cash (USD/USDT) and token quantities are exact decimals with six
fractional digits. The database stores them as INTEGER micro-units so
every balance change is a single SQL arithmetic statement.
"""

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Union

MICRO = 1_000_000
QUANTUM = Decimal("0.000001")

Amount = Union[Decimal, int, str, float]


def to_decimal(value: Amount) -> Decimal:
    """Coerce to a Decimal rounded down to the micro-unit."""
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            # str() so that floats keep their shortest repr, not binary noise
            d = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Not a number: {value!r}")
    if not d.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return d.quantize(QUANTUM, rounding=ROUND_DOWN)


def to_micro(value: Amount) -> int:
    return int(to_decimal(value) * MICRO)


def from_micro(value: int) -> Decimal:
    return (Decimal(int(value)) / MICRO).quantize(QUANTUM)


def tokens_for_cash(cash_micro: int, price_micro: int) -> int:
    """Tokens (micro) bought with cash_micro at price_micro per token, rounded down."""
    if price_micro <= 0:
        raise ValueError("price must be positive")
    return cash_micro * MICRO // price_micro


def cash_for_tokens(token_micro: int, price_micro: int) -> int:
    return token_micro * price_micro // MICRO


def percent_of(amount_micro: int, percent: Decimal) -> int:
    """amount * percent / 100, rounded down to the micro-unit."""
    return int((Decimal(amount_micro) * percent / 100).to_integral_value(rounding=ROUND_DOWN))
