"""
Money Helpers

Single-currency fixed-point arithmetic. All amounts are Decimal values
quantized to cents with ROUND_HALF_UP; intermediate results keep full
context precision and are only rounded where a value is stored or returned.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any

getcontext().prec = 28  # High precision for financial calculations

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_decimal(value: Any) -> Decimal:
    """
    Convert a value to Decimal without losing precision

    Floats are routed through str() so 0.1 becomes Decimal('0.1') rather
    than its binary expansion.

    Raises:
        ValueError: If the value cannot be interpreted as a number
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    else:
        raise ValueError(f"Cannot convert {type(value).__name__} to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


def quantize_money(value: Any) -> Decimal:
    """Round a value to cents using ROUND_HALF_UP"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def decimal_places(value: Decimal) -> int:
    """Number of digits after the decimal point in the literal value"""
    exponent = value.normalize().as_tuple().exponent
    return -exponent if exponent < 0 else 0


def money_str(value: Decimal) -> str:
    """Format an amount for storage and JSON payloads"""
    return str(quantize_money(value))
