"""Required-field validation for bank and internal transactions.

Runs on session creation, before anything reaches the matching engine.
Every bad row is collected (never fail-fast) so the caller can show the
user one reviewable list.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError
from app.core.logging import get_logger
from app.schemas.transaction import BankTransaction, InternalTransaction
from app.services.ingestion.normalizer import (
    normalize_amount,
    normalize_date,
    normalize_description,
    normalize_reference,
)

logger = get_logger(__name__)

RawRecord = Union[Mapping[str, Any], BaseModel]


def _as_dict(item: RawRecord) -> dict[str, Any]:
    if isinstance(item, BaseModel):
        return item.model_dump()
    return dict(item)


class _ErrorCollector:
    """Accumulates error dicts for one side of the input."""

    def __init__(self, side: str) -> None:
        self.side = side
        self.errors: list[dict[str, Any]] = []

    def add(self, index: int, txn_id: Optional[str], field: str, message: str) -> None:
        self.errors.append(
            {
                "index": index,
                "side": self.side,
                "transaction_id": txn_id,
                "field": field,
                "message": message,
            }
        )


def _common_fields(
    raw: dict[str, Any],
    index: int,
    seen_ids: set[str],
    errors: _ErrorCollector,
) -> dict[str, Any]:
    """Validate id, date, description and reference; return cleaned values."""
    txn_id = str(raw.get("id") or "").strip()
    if not txn_id:
        errors.add(index, None, "id", "id is required")
    elif txn_id in seen_ids:
        errors.add(index, txn_id, "id", f"duplicate id {txn_id!r}")
    else:
        seen_ids.add(txn_id)

    txn_date = normalize_date(raw.get("date"))
    if txn_date is None:
        errors.add(index, txn_id or None, "date", "date is missing or unparseable")

    description = normalize_description(raw.get("description"))
    if not description:
        errors.add(index, txn_id or None, "description", "description is required")

    return {
        "id": txn_id,
        "date": txn_date,
        "description": description,
        "reference": normalize_reference(raw.get("reference")),
    }


def _amount_field(
    raw: dict[str, Any],
    field: str,
    index: int,
    txn_id: Optional[str],
    errors: _ErrorCollector,
):
    try:
        return normalize_amount(raw.get(field))
    except ValueError as exc:
        errors.add(index, txn_id, field, str(exc))
        return None


def _build(model, cleaned: dict[str, Any], index: int, errors: _ErrorCollector):
    try:
        return model(**cleaned)
    except PydanticValidationError as exc:
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ())) or "record"
            errors.add(index, cleaned.get("id") or None, field, err.get("msg", "invalid"))
        return None


def validate_bank_transactions(
    items: Iterable[RawRecord],
) -> tuple[list[BankTransaction], list[dict[str, Any]]]:
    """Validate bank statement lines.

    Exactly one of debit/credit must be non-zero; neither may be negative.

    Returns:
        ``(valid_transactions, errors)``.
    """
    errors = _ErrorCollector("bank")
    valid: list[BankTransaction] = []
    seen: set[str] = set()

    for index, item in enumerate(items):
        raw = _as_dict(item)
        before = len(errors.errors)
        cleaned = _common_fields(raw, index, seen, errors)
        txn_id = cleaned["id"] or None

        debit = _amount_field(raw, "debit", index, txn_id, errors)
        credit = _amount_field(raw, "credit", index, txn_id, errors)
        balance = _amount_field(raw, "balance", index, txn_id, errors)

        for field, value in (("debit", debit), ("credit", credit)):
            if value is not None and value < 0:
                errors.add(index, txn_id, field, f"{field} must not be negative")

        has_debit = bool(debit)
        has_credit = bool(credit)
        if not has_debit and not has_credit:
            errors.add(index, txn_id, "amount", "either debit or credit is required")
        elif has_debit and has_credit:
            errors.add(index, txn_id, "amount", "only one of debit or credit may be set")

        if len(errors.errors) > before:
            continue

        cleaned.update(
            debit=debit if has_debit else None,
            credit=credit if has_credit else None,
            balance=balance,
        )
        txn = _build(BankTransaction, cleaned, index, errors)
        if txn is not None:
            valid.append(txn)

    return valid, errors.errors


def validate_internal_transactions(
    items: Iterable[RawRecord],
) -> tuple[list[InternalTransaction], list[dict[str, Any]]]:
    """Validate internal ledger transactions (non-zero amount required).

    Returns:
        ``(valid_transactions, errors)``.
    """
    errors = _ErrorCollector("internal")
    valid: list[InternalTransaction] = []
    seen: set[str] = set()

    for index, item in enumerate(items):
        raw = _as_dict(item)
        before = len(errors.errors)
        cleaned = _common_fields(raw, index, seen, errors)
        txn_id = cleaned["id"] or None

        amount = _amount_field(raw, "amount", index, txn_id, errors)
        if amount is None or amount == 0:
            if not any(e["field"] == "amount" for e in errors.errors[before:]):
                errors.add(index, txn_id, "amount", "a non-zero amount is required")

        txn_type = raw.get("type")
        if txn_type is not None:
            txn_type = str(txn_type).strip().lower() or None
            if txn_type not in (None, "credit", "debit"):
                errors.add(index, txn_id, "type", "type must be 'credit' or 'debit'")

        if len(errors.errors) > before:
            continue

        cleaned.update(amount=amount, type=txn_type)
        txn = _build(InternalTransaction, cleaned, index, errors)
        if txn is not None:
            valid.append(txn)

    return valid, errors.errors


def validate_transactions(
    bank_items: Iterable[RawRecord],
    internal_items: Iterable[RawRecord],
) -> tuple[list[BankTransaction], list[InternalTransaction]]:
    """Validate both sides and raise once with every error found.

    Raises:
        ValidationError: At least one record on either side is invalid.
    """
    bank, bank_errors = validate_bank_transactions(bank_items)
    internal, internal_errors = validate_internal_transactions(internal_items)

    all_errors = bank_errors + internal_errors
    if all_errors:
        logger.warning(
            "Validation failed: bank_errors=%d internal_errors=%d",
            len(bank_errors),
            len(internal_errors),
        )
        raise ValidationError(all_errors)

    return bank, internal
