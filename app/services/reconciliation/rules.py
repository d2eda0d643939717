"""Rule condition evaluation for the rule-based matching pass.

Each ``_evaluate_*`` function inspects a (bank, internal) pair against one
condition variant and returns a plain bool.  Dispatch is a closed
``isinstance`` chain over the three condition types; anything it cannot
evaluate raises ``RuleEvaluationError`` so the engine can skip that rule for
that pair without aborting the pass.

The functions stay *pure*: no engine state, no logging, trivially
unit-testable with two hand-built transactions.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from app.core.errors import RuleEvaluationError
from app.schemas.rule import (
    AmountCondition,
    DateCondition,
    MatchingRule,
    StringCondition,
)
from app.schemas.transaction import BankTransaction, InternalTransaction
from app.services.reconciliation.similarity import amounts_close


def _pick_sides(side: str, bank_value, internal_value) -> list:
    if side == "bank":
        return [bank_value]
    if side == "internal":
        return [internal_value]
    return [bank_value, internal_value]


# ── Amount ───────────────────────────────────────────────────────────


def _evaluate_amount(
    condition: AmountCondition,
    bank: BankTransaction,
    internal: InternalTransaction,
) -> bool:
    """Compare signed amounts, either side-to-side or against ``value``."""
    op = condition.operator
    tolerance = condition.tolerance
    bank_amount = bank.signed_amount
    internal_amount = internal.signed_amount

    if condition.value is None:
        if op == "equals":
            return amounts_close(bank_amount, internal_amount, tolerance)
        raise RuleEvaluationError(f"Amount operator {op!r} requires a value")

    value = Decimal(condition.value)
    targets = _pick_sides(condition.side, bank_amount, internal_amount)

    if op == "equals":
        return all(amounts_close(t, value, tolerance) for t in targets)
    if op == "greaterThan":
        return all(t > value for t in targets)
    if op == "lessThan":
        return all(t < value for t in targets)
    raise RuleEvaluationError(f"Unsupported amount operator {op!r}")


# ── Date ─────────────────────────────────────────────────────────────


def _evaluate_date(
    condition: DateCondition,
    bank: BankTransaction,
    internal: InternalTransaction,
) -> bool:
    """``equals`` = same day, ``range`` = within ``value`` days of each other."""
    op = condition.operator
    days_apart = abs((bank.date - internal.date).days)

    if op == "equals":
        return days_apart == 0
    if op == "range":
        if condition.value is None:
            raise RuleEvaluationError("Date range condition requires a value")
        return days_apart <= condition.value
    raise RuleEvaluationError(f"Unsupported date operator {op!r}")


# ── Description / reference ─────────────────────────────────────────


def _text(txn, field: str) -> Optional[str]:
    raw = getattr(txn, field, None)
    if raw is None:
        return None
    return raw.strip().lower()


def _apply_string_operator(op: str, text: str, needle: str) -> bool:
    if op == "equals":
        return text == needle
    if op == "contains":
        return needle in text
    if op == "startsWith":
        return text.startswith(needle)
    if op == "endsWith":
        return text.endswith(needle)
    raise RuleEvaluationError(f"Unsupported string operator {op!r}")


def _evaluate_string(
    condition: StringCondition,
    bank: BankTransaction,
    internal: InternalTransaction,
) -> bool:
    """Case-insensitive text test.

    Without a ``value`` the sides are compared to each other in both
    directions (bank contains internal, or internal contains bank).  With a
    ``value`` and ``side="both"`` either side satisfying it is enough; an
    explicit side must satisfy it itself.  A missing reference never
    satisfies a reference condition.
    """
    if condition.field not in ("description", "reference"):
        raise RuleEvaluationError(f"Unsupported string field {condition.field!r}")

    op = condition.operator
    bank_text = _text(bank, condition.field)
    internal_text = _text(internal, condition.field)

    if condition.value is None:
        if not bank_text or not internal_text:
            return False
        return _apply_string_operator(
            op, bank_text, internal_text
        ) or _apply_string_operator(op, internal_text, bank_text)

    needle = condition.value.strip().lower()
    targets = _pick_sides(condition.side, bank_text, internal_text)
    if condition.side == "both":
        return any(
            _apply_string_operator(op, t, needle) for t in targets if t is not None
        )
    if targets[0] is None:
        return False
    return _apply_string_operator(op, targets[0], needle)


# ── Public API ───────────────────────────────────────────────────────


def evaluate_condition(
    condition,
    bank: BankTransaction,
    internal: InternalTransaction,
) -> bool:
    """Evaluate a single condition for a pair.

    Raises:
        RuleEvaluationError: The condition's field/operator/value
            combination cannot be evaluated.
    """
    if isinstance(condition, AmountCondition):
        return _evaluate_amount(condition, bank, internal)
    if isinstance(condition, DateCondition):
        return _evaluate_date(condition, bank, internal)
    if isinstance(condition, StringCondition):
        return _evaluate_string(condition, bank, internal)
    raise RuleEvaluationError(
        f"Unsupported condition field {getattr(condition, 'field', None)!r}"
    )


def rule_matches(
    rule: MatchingRule,
    bank: BankTransaction,
    internal: InternalTransaction,
) -> bool:
    """True when *every* condition of ``rule`` holds for the pair.

    A rule without conditions would match everything, so it is treated as
    unevaluable rather than as a wildcard.
    """
    if not rule.conditions:
        raise RuleEvaluationError("Rule has no conditions", rule_id=rule.id)

    try:
        return all(evaluate_condition(c, bank, internal) for c in rule.conditions)
    except RuleEvaluationError as exc:
        exc.rule_id = rule.id
        raise


def sort_rules(rules: list[MatchingRule]) -> list[MatchingRule]:
    """Enabled rules by descending priority; ties keep insertion order."""
    return sorted(
        (r for r in rules if r.enabled),
        key=lambda r: r.priority,
        reverse=True,
    )
