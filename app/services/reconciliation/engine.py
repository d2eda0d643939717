"""Account-scoped matching engine.

One ``MatchingEngine`` exists per account.  It owns the account's matching
rules and its pattern learner (the only cross-call state the matching core
keeps) and delegates the actual passes to ``TransactionMatcher``:

  1. Run exact / rule-based / fuzzy passes over a pair of pools.
  2. Produce ranked, non-committing suggestions for one bank transaction.
  3. Learn recurring manual matches and promote them into rules.

Engines are handed out by ``EngineRegistry`` so learned patterns from one
account never leak into another.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional, Sequence

from app.core.config import Settings, settings as default_settings
from app.core.errors import ConflictError, NotFoundError
from app.core.logging import get_logger
from app.schemas.rule import MatchingRule
from app.schemas.session import MatchSuggestion
from app.schemas.transaction import BankTransaction, InternalTransaction
from app.services.reconciliation.learning import PatternLearner
from app.services.reconciliation.matcher import MatchResult, TransactionMatcher

logger = get_logger(__name__)


class MatchingEngine:
    """Account-scoped matcher with a rule store and pattern learning."""

    def __init__(
        self,
        account_id: str,
        config: Optional[Settings] = None,
        rules: Optional[Sequence[MatchingRule]] = None,
    ) -> None:
        self.account_id = account_id
        self.config = config or default_settings
        self.matcher = TransactionMatcher(self.config)
        self.learner = PatternLearner(
            threshold=self.config.learning_threshold,
            priority=self.config.learned_rule_priority,
            prefix_length=self.config.learning_prefix_length,
            max_patterns=self.config.learning_max_patterns,
        )
        self._rules: list[MatchingRule] = list(rules or [])
        self._lock = threading.RLock()

    # ── Matching ─────────────────────────────────────────────────────

    def match(
        self,
        bank_transactions: Sequence[BankTransaction],
        internal_transactions: Sequence[InternalTransaction],
        confidence_threshold: Optional[float] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> MatchResult:
        """Run the three-pass algorithm with a snapshot of this account's rules."""
        logger.info(
            "Auto-match started: account=%s bank=%d internal=%d",
            self.account_id,
            len(bank_transactions),
            len(internal_transactions),
        )
        return self.matcher.match(
            bank_transactions,
            internal_transactions,
            rules=self.get_rules(),
            confidence_threshold=confidence_threshold,
            should_cancel=should_cancel,
        )

    def get_suggestions(
        self,
        bank_transaction: BankTransaction,
        internal_pool: Sequence[InternalTransaction],
        limit: Optional[int] = None,
    ) -> list[MatchSuggestion]:
        return self.matcher.suggest(bank_transaction, internal_pool, limit=limit)

    # ── Learning ─────────────────────────────────────────────────────

    def learn_from_match(
        self,
        bank_transaction: BankTransaction,
        internal_transaction: InternalTransaction,
    ) -> Optional[MatchingRule]:
        """Record a confirmed pairing; return the rule it promoted, if any."""
        with self._lock:
            rule = self.learner.record(bank_transaction)
            if rule is None:
                return None

            if any(r.name == rule.name for r in self._rules):
                logger.debug("Learned rule %r already exists", rule.name)
                return None

            self._rules.append(rule)

        logger.info(
            "Learned new rule: account=%s rule=%s name=%r (from bank=%s internal=%s)",
            self.account_id,
            rule.id,
            rule.name,
            bank_transaction.id,
            internal_transaction.id,
        )
        return rule

    # ── Rule management ──────────────────────────────────────────────

    def get_rules(self) -> list[MatchingRule]:
        """All rules, highest priority first."""
        with self._lock:
            return sorted(self._rules, key=lambda r: r.priority, reverse=True)

    def get_rule(self, rule_id: str) -> MatchingRule:
        with self._lock:
            for rule in self._rules:
                if rule.id == rule_id:
                    return rule
        raise NotFoundError(f"Rule {rule_id} not found")

    def add_rule(self, rule: MatchingRule) -> MatchingRule:
        with self._lock:
            if any(r.id == rule.id for r in self._rules):
                raise ConflictError(f"Rule {rule.id} already exists")
            self._rules.append(rule)
        logger.info("Rule added: account=%s rule=%s", self.account_id, rule.id)
        return rule

    def remove_rule(self, rule_id: str) -> None:
        with self._lock:
            rule = self.get_rule(rule_id)
            self._rules.remove(rule)
        logger.info("Rule removed: account=%s rule=%s", self.account_id, rule_id)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> MatchingRule:
        with self._lock:
            rule = self.get_rule(rule_id)
            updated = rule.model_copy(update={"enabled": enabled})
            self._rules[self._rules.index(rule)] = updated
        return updated


class EngineRegistry:
    """Hands out one engine per account, created lazily."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config
        self._engines: dict[str, MatchingEngine] = {}
        self._lock = threading.Lock()

    def get(self, account_id: str) -> MatchingEngine:
        with self._lock:
            engine = self._engines.get(account_id)
            if engine is None:
                engine = MatchingEngine(account_id, config=self.config)
                self._engines[account_id] = engine
            return engine

    def reset(self) -> None:
        with self._lock:
            self._engines.clear()


registry = EngineRegistry()


def get_engine(account_id: str) -> MatchingEngine:
    """Shortcut for ``registry.get(account_id)``."""
    return registry.get(account_id)
