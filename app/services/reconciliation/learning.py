"""Learns recurring manual matches and promotes them into matching rules.

Every manual match bumps a counter keyed by the bank transaction's rounded
amount and a short lowercased description prefix.  When a pattern reaches
the promotion threshold a system rule is synthesized.  The counter store is
an LRU bounded by ``max_patterns`` and lives inside one engine, which is
itself scoped to one account.
"""

from __future__ import annotations

from collections import OrderedDict
from decimal import Decimal
from typing import Optional

from app.core.logging import get_logger
from app.schemas.rule import AmountCondition, MatchingRule, StringCondition
from app.schemas.transaction import BankTransaction

logger = get_logger(__name__)

PatternKey = tuple[Decimal, str]

_CENT = Decimal("0.01")


class PatternLearner:
    """Counts (amount, description prefix) patterns with LRU eviction."""

    def __init__(
        self,
        threshold: int = 3,
        priority: int = 50,
        prefix_length: int = 10,
        max_patterns: int = 1000,
    ) -> None:
        self.threshold = threshold
        self.priority = priority
        self.prefix_length = prefix_length
        self.max_patterns = max_patterns
        self._counts: OrderedDict[PatternKey, int] = OrderedDict()

    def __len__(self) -> int:
        return len(self._counts)

    def pattern_key(self, bank: BankTransaction) -> PatternKey:
        amount = bank.signed_amount.quantize(_CENT)
        prefix = bank.description.strip().lower()[: self.prefix_length]
        return amount, prefix

    def count(self, key: PatternKey) -> int:
        return self._counts.get(key, 0)

    def record(self, bank: BankTransaction) -> Optional[MatchingRule]:
        """Count one occurrence; return a new rule when the threshold is hit."""
        key = self.pattern_key(bank)
        count = self._counts.pop(key, 0) + 1
        self._counts[key] = count

        while len(self._counts) > self.max_patterns:
            evicted, _ = self._counts.popitem(last=False)
            logger.debug("Evicted learning pattern %s", evicted)

        if count != self.threshold:
            return None

        return self._build_rule(key)

    def _build_rule(self, key: PatternKey) -> MatchingRule:
        amount, prefix = key
        conditions: list = [
            AmountCondition(operator="equals", value=amount, tolerance=_CENT),
        ]
        if prefix:
            conditions.append(
                StringCondition(
                    field="description",
                    operator="startsWith",
                    value=prefix,
                    side="bank",
                )
            )
        return MatchingRule(
            name=f"Learned: {prefix or '(no description)'} @ {amount}",
            conditions=conditions,
            priority=self.priority,
            enabled=True,
            source="system",
        )

    def clear(self) -> None:
        self._counts.clear()
