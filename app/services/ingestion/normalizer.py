"""Normalizer utility functions for incoming transaction records.

These functions provide a single place to handle the messy reality of
statement and ledger extracts: inconsistent date formats, amounts with
currency symbols or thousands separators, padded references, etc.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from app.core.logging import get_logger

logger = get_logger(__name__)

# Date formats we accept, ordered from most specific to least
_DATE_FORMATS: list[str] = [
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
    "%d-%m-%Y",
]

# Anything that is not part of a plain decimal number
_AMOUNT_NOISE = re.compile(r"[^\d.\-+]")
_WHITESPACE = re.compile(r"\s+")


def normalize_date(value: Any) -> Optional[date]:
    """Coerce a date, datetime or string into a UTC calendar date.

    Aware datetimes are converted to UTC before the date part is taken.

    Args:
        value: Raw date value from the extract.

    Returns:
        Parsed date, or None if the value is empty or all formats fail.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value

    stripped = str(value).strip()
    if not stripped:
        return None
    try:
        parsed = datetime.fromisoformat(stripped)
        return normalize_date(parsed)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(stripped, fmt).date()
        except ValueError:
            continue
    logger.warning("Could not parse date: %s", value)
    return None


def normalize_amount(value: Any) -> Optional[Decimal]:
    """Coerce a raw amount into a Decimal.

    ``"1,234.50"``, ``"$1234.5"`` and ``1234.5`` all become
    ``Decimal("1234.50")``-equivalent values.

    Args:
        value: Raw amount (number or string).

    Returns:
        The Decimal value, or None when the field is empty.

    Raises:
        ValueError: If a non-empty value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    stripped = str(value).strip()
    if not stripped:
        return None
    # Accounting-style negatives: (123.45)
    negative = stripped.startswith("(") and stripped.endswith(")")
    cleaned = _AMOUNT_NOISE.sub("", stripped)
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}") from None
    return -amount if negative else amount


def normalize_reference(value: Any) -> Optional[str]:
    """Strip whitespace; empty references become None."""
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def normalize_description(value: Any) -> str:
    """Collapse internal whitespace and strip the ends."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()
