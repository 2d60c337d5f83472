"""
Monetary helpers.

All amounts flow through the engine as ``Decimal``. ``round2`` is applied to
the result of every addition chain, never to the individual operands, so
``round2(1.005 + 1.004)`` yields ``2.01``.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Convert DB/JSON values (float, str, int, None) to Decimal; garbage becomes 0."""
    if value is None or value == '':
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps the shortest float repr (1.005 stays 1.005)
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO


def round2(value: Any) -> Decimal:
    """Half-up rounding to cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Any]) -> Decimal:
    """Exact sum, rounded once at the end."""
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return round2(total)


def is_negligible(value: Any, epsilon: Decimal = CENT) -> bool:
    return abs(to_decimal(value)) <= epsilon


def as_float(value: Any) -> float:
    """JSON-friendly representation of a cent-rounded amount."""
    return float(round2(value))


def parse_rate(value: Any) -> Decimal:
    """Strict percentage for configuration writes: a finite number between 0 and 100."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid rate: {value!r}")
    try:
        rate = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid rate: {value!r}")
    if not rate.is_finite() or rate < 0 or rate > 100:
        raise ValueError(f"Rate must be between 0 and 100, got {value!r}")
    return rate
