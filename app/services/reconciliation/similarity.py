"""Similarity scoring primitives used by the matching engine.

All functions are pure and stateless.  String similarity is a normalized
Levenshtein ratio so ``"AIRTIME PURCHASE"`` and ``"Airtime purchase fee"``
score 0.8 rather than being treated as unrelated.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Union

from rapidfuzz.distance import Levenshtein

Number = Union[Decimal, float, int]

DEFAULT_AMOUNT_TOLERANCE = Decimal("0.01")


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def string_similarity(a: str, b: str) -> float:
    """Case-insensitive normalized edit-distance similarity in [0, 1].

    ``1 - distance / max(len(a), len(b))``.  Two equal strings (including
    two empty ones) score 1; an empty string against a non-empty one
    scores 0.
    """
    a = (a or "").lower()
    b = (b or "").lower()

    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    distance = Levenshtein.distance(a, b)
    return 1.0 - distance / max(len(a), len(b))


def dates_close(d1: date, d2: date, tolerance_days: int) -> bool:
    """True when the absolute day difference is within ``tolerance_days``."""
    return abs((d1 - d2).days) <= tolerance_days


def amounts_close(
    a: Number,
    b: Number,
    tolerance: Number = DEFAULT_AMOUNT_TOLERANCE,
) -> bool:
    """True when ``|a - b| <= tolerance`` (compared as decimals)."""
    return abs(_to_decimal(a) - _to_decimal(b)) <= _to_decimal(tolerance)


def amount_similarity(a: Number, b: Number) -> float:
    """Ratio of the smaller to the larger magnitude.

    Amounts of opposite sign never resemble each other: a debit is not a
    near-miss for a credit.
    """
    a = _to_decimal(a)
    b = _to_decimal(b)

    if a == 0 and b == 0:
        return 1.0
    if a == 0 or b == 0 or (a > 0) != (b > 0):
        return 0.0

    small, large = sorted((abs(a), abs(b)))
    return float(small / large)


def date_similarity(d1: date, d2: date, window_days: int = 7) -> float:
    """``1 - days_diff / window_days``, floored at 0."""
    if window_days <= 0:
        return 1.0 if d1 == d2 else 0.0
    days = abs((d1 - d2).days)
    return max(0.0, 1.0 - days / window_days)
