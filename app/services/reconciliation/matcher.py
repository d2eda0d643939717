"""Bank-to-ledger matching logic.

This module pairs bank statement lines with internal ledger transactions.
Three passes run in a fixed order:

1. **Exact**: amounts less than 0.01 apart, dates within 1 day, equal references
   when both sides carry one.  Confidence 100.
2. **Rule-based**: enabled rules by descending priority; every condition
   must hold.  Confidence 90.
3. **Fuzzy**: weighted blend of amount, date and description similarity.

Exact and rule-based matches are zero-ambiguity, so they run first and are
never pre-empted by a fuzzy guess.  Each pass removes what it matched from
both pools before the next one starts.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from app.core.config import Settings, settings as default_settings
from app.core.errors import MatchingCancelledError, RuleEvaluationError
from app.core.logging import get_logger
from app.schemas.rule import MatchingRule
from app.schemas.session import MatchSuggestion, ReconciliationMatch
from app.schemas.transaction import BankTransaction, InternalTransaction
from app.services.reconciliation.rules import rule_matches, sort_rules
from app.services.reconciliation.similarity import (
    amount_similarity,
    date_similarity,
    dates_close,
    string_similarity,
)

logger = get_logger(__name__)

# Fuzzy weights and per-factor thresholds
AMOUNT_WEIGHT = 0.4
DATE_WEIGHT = 0.3
DESCRIPTION_WEIGHT = 0.3
AMOUNT_THRESHOLD = 0.95
DATE_THRESHOLD = 0.5
DESCRIPTION_THRESHOLD = 0.5
FACTOR_NORMALIZER = 0.33

REASON_AMOUNT = "Amount matches"
REASON_DATE = "Date is close"
REASON_DESCRIPTION = "Description is similar"
REASON_REFERENCE = "Reference matches"


@dataclass
class MatchResult:
    """Container for matching outcomes.

    Attributes:
        matches: Committed pairs, in the order the passes produced them.
        unmatched_bank: Bank transactions no pass could pair (input order).
        unmatched_internal: Internal transactions left over (input order).
    """

    matches: List[ReconciliationMatch] = field(default_factory=list)
    unmatched_bank: List[BankTransaction] = field(default_factory=list)
    unmatched_internal: List[InternalTransaction] = field(default_factory=list)


@dataclass(frozen=True)
class ScoredCandidate:
    """One internal transaction scored against a bank transaction."""

    index: int
    internal: InternalTransaction
    score: float
    reasons: Tuple[str, ...]

    @property
    def confidence(self) -> int:
        return round(self.score * 100)


def _references_compatible(bank: BankTransaction, internal: InternalTransaction) -> bool:
    """References only block a match when *both* sides carry one."""
    if not bank.reference or not internal.reference:
        return True
    return bank.reference.strip().lower() == internal.reference.strip().lower()


class TransactionMatcher:
    """Stateless three-pass matcher.

    Rules and the confidence threshold are passed in per call; the only
    thing held on the instance is configuration.
    """

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config or default_settings

    # ── Public API ───────────────────────────────────────────────────

    def match(
        self,
        bank_transactions: Sequence[BankTransaction],
        internal_transactions: Sequence[InternalTransaction],
        rules: Sequence[MatchingRule] = (),
        confidence_threshold: Optional[float] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> MatchResult:
        """Run exact, rule-based and fuzzy passes over the two pools.

        Args:
            bank_transactions: Unmatched bank pool.  Not mutated.
            internal_transactions: Unmatched internal pool.  Not mutated.
            rules: Candidate rules; disabled ones are ignored.
            confidence_threshold: Minimum fuzzy score in [0, 1]; defaults
                to ``auto_match_threshold``.
            should_cancel: Polled between passes, never inside one.

        Returns:
            A ``MatchResult`` with the new matches and residual pools.

        Raises:
            MatchingCancelledError: ``should_cancel`` returned True.
        """
        threshold = (
            self.config.auto_match_threshold
            if confidence_threshold is None
            else confidence_threshold
        )
        bank_pool = list(bank_transactions)
        internal_pool = list(internal_transactions)
        result = MatchResult()

        # --- Pass 1: exact ----------------------------------------------
        self._check_cancel(should_cancel, "exact")
        found, bank_pool, internal_pool = self._exact_pass(bank_pool, internal_pool)
        result.matches.extend(found)
        exact_count = len(found)

        # --- Pass 2: rule-based -----------------------------------------
        self._check_cancel(should_cancel, "rule-based")
        found, bank_pool, internal_pool = self._rule_pass(
            bank_pool, internal_pool, rules
        )
        result.matches.extend(found)
        rule_count = len(found)

        # --- Pass 3: fuzzy ----------------------------------------------
        self._check_cancel(should_cancel, "fuzzy")
        found, bank_pool, internal_pool = self._fuzzy_pass(
            bank_pool, internal_pool, threshold
        )
        result.matches.extend(found)

        result.unmatched_bank = bank_pool
        result.unmatched_internal = internal_pool

        logger.info(
            "Matching complete: exact=%d rule=%d fuzzy=%d "
            "unmatched_bank=%d unmatched_internal=%d",
            exact_count,
            rule_count,
            len(found),
            len(result.unmatched_bank),
            len(result.unmatched_internal),
        )
        return result

    def find_exact(
        self,
        bank: BankTransaction,
        pool: Sequence[InternalTransaction],
    ) -> Optional[int]:
        """Index of the first exact candidate in ``pool``, or None."""
        for idx, internal in enumerate(pool):
            if self._is_exact(bank, internal):
                return idx
        return None

    def score(
        self,
        bank: BankTransaction,
        internal: InternalTransaction,
    ) -> Tuple[float, Tuple[str, ...]]:
        """Weighted fuzzy score in [0, 1] plus the factors that counted.

        Only factors that clear their own threshold contribute; the
        weighted sum is normalized by ``contributing_factors * 0.33`` and
        clamped so several strong factors cannot push it above 1.
        """
        weighted = 0.0
        reasons: list[str] = []

        amount_sim = amount_similarity(bank.signed_amount, internal.signed_amount)
        if amount_sim > AMOUNT_THRESHOLD:
            weighted += AMOUNT_WEIGHT * amount_sim
            reasons.append(REASON_AMOUNT)

        date_sim = date_similarity(
            bank.date, internal.date, self.config.fuzzy_date_window_days
        )
        if date_sim > DATE_THRESHOLD:
            weighted += DATE_WEIGHT * date_sim
            reasons.append(REASON_DATE)

        description_sim = string_similarity(bank.description, internal.description)
        if description_sim > DESCRIPTION_THRESHOLD:
            weighted += DESCRIPTION_WEIGHT * description_sim
            reasons.append(REASON_DESCRIPTION)

        if not reasons:
            return 0.0, ()

        normalized = weighted / (len(reasons) * FACTOR_NORMALIZER)
        return min(1.0, max(0.0, normalized)), tuple(reasons)

    def rank_candidates(
        self,
        bank: BankTransaction,
        pool: Sequence[InternalTransaction],
        threshold: float,
    ) -> List[ScoredCandidate]:
        """Candidates at or above ``threshold``, best first.

        Ties keep pool order, so the earliest candidate wins.
        """
        scored = []
        for idx, internal in enumerate(pool):
            value, reasons = self.score(bank, internal)
            if value >= threshold and reasons:
                scored.append(ScoredCandidate(idx, internal, value, reasons))
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored

    def suggest(
        self,
        bank: BankTransaction,
        pool: Sequence[InternalTransaction],
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[MatchSuggestion]:
        """Non-committing ranked suggestions for one bank transaction.

        An exact candidate, if any, comes first at confidence 100; ranked
        fuzzy candidates fill the rest up to ``limit``.
        """
        limit = self.config.suggestion_limit if limit is None else limit
        threshold = self.config.suggestion_threshold if threshold is None else threshold
        if limit <= 0:
            return []

        suggestions: List[MatchSuggestion] = []

        exact_idx = self.find_exact(bank, pool)
        if exact_idx is not None:
            suggestions.append(
                MatchSuggestion(
                    bank_transaction_id=bank.id,
                    internal_transaction=pool[exact_idx],
                    match_type="exact",
                    confidence=100,
                    reasons=self._exact_reasons(bank, pool[exact_idx]),
                )
            )

        for candidate in self.rank_candidates(bank, pool, threshold):
            if len(suggestions) >= limit:
                break
            if candidate.index == exact_idx:
                continue
            suggestions.append(
                MatchSuggestion(
                    bank_transaction_id=bank.id,
                    internal_transaction=candidate.internal,
                    match_type="fuzzy",
                    confidence=candidate.confidence,
                    reasons=list(candidate.reasons),
                )
            )

        return suggestions

    # ── Passes ───────────────────────────────────────────────────────

    def _exact_pass(
        self,
        bank_pool: List[BankTransaction],
        internal_pool: List[InternalTransaction],
    ):
        matches: List[ReconciliationMatch] = []
        remaining_bank: List[BankTransaction] = []
        available = list(internal_pool)

        for bank in bank_pool:
            idx = self.find_exact(bank, available)
            if idx is None:
                remaining_bank.append(bank)
                continue
            internal = available.pop(idx)
            matches.append(
                ReconciliationMatch(
                    bank_transaction=bank,
                    internal_transaction=internal,
                    match_type="exact",
                    confidence=100,
                    matched_by="system",
                    reasons=self._exact_reasons(bank, internal),
                )
            )

        return matches, remaining_bank, available

    def _rule_pass(
        self,
        bank_pool: List[BankTransaction],
        internal_pool: List[InternalTransaction],
        rules: Sequence[MatchingRule],
    ):
        ordered = sort_rules(list(rules))
        if not ordered:
            return [], bank_pool, internal_pool

        matches: List[ReconciliationMatch] = []
        remaining_bank: List[BankTransaction] = []
        available = list(internal_pool)

        for bank in bank_pool:
            hit = self._first_rule_hit(bank, available, ordered)
            if hit is None:
                remaining_bank.append(bank)
                continue
            rule, idx = hit
            internal = available.pop(idx)
            matches.append(
                ReconciliationMatch(
                    bank_transaction=bank,
                    internal_transaction=internal,
                    match_type="rule-based",
                    confidence=self.config.rule_match_confidence,
                    matched_by="system",
                    rule_id=rule.id,
                    reasons=[f"Matched by rule '{rule.name}'"],
                )
            )

        return matches, remaining_bank, available

    def _first_rule_hit(
        self,
        bank: BankTransaction,
        available: List[InternalTransaction],
        rules: List[MatchingRule],
    ) -> Optional[Tuple[MatchingRule, int]]:
        for rule in rules:
            for idx, internal in enumerate(available):
                try:
                    if rule_matches(rule, bank, internal):
                        return rule, idx
                except RuleEvaluationError as exc:
                    logger.warning(
                        "Skipping rule %s for pair bank=%s internal=%s: %s",
                        rule.id,
                        bank.id,
                        internal.id,
                        exc,
                    )
        return None

    def _fuzzy_pass(
        self,
        bank_pool: List[BankTransaction],
        internal_pool: List[InternalTransaction],
        threshold: float,
    ):
        """Parallel scoring over a frozen snapshot, then a sequential claim.

        Scores don't depend on pool state, so claiming the best unclaimed
        candidate in bank input order gives the same result as scoring
        against a shrinking pool one bank transaction at a time.
        """
        snapshot = tuple(internal_pool)
        rankings = self._rank_all(bank_pool, snapshot, threshold)

        matches: List[ReconciliationMatch] = []
        remaining_bank: List[BankTransaction] = []
        claimed: set[int] = set()

        for bank, ranking in zip(bank_pool, rankings):
            best = next((c for c in ranking if c.index not in claimed), None)
            if best is None:
                remaining_bank.append(bank)
                continue
            claimed.add(best.index)
            matches.append(
                ReconciliationMatch(
                    bank_transaction=bank,
                    internal_transaction=best.internal,
                    match_type="fuzzy",
                    confidence=best.confidence,
                    matched_by="system",
                    reasons=list(best.reasons),
                )
            )

        remaining_internal = [
            internal for idx, internal in enumerate(snapshot) if idx not in claimed
        ]
        return matches, remaining_bank, remaining_internal

    def _rank_all(
        self,
        bank_pool: List[BankTransaction],
        snapshot: Tuple[InternalTransaction, ...],
        threshold: float,
    ) -> List[List[ScoredCandidate]]:
        workers = self.config.fuzzy_workers
        if workers <= 1 or len(bank_pool) < 2:
            return [self.rank_candidates(b, snapshot, threshold) for b in bank_pool]

        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(
                executor.map(
                    lambda b: self.rank_candidates(b, snapshot, threshold),
                    bank_pool,
                )
            )

    # ── Private helpers ──────────────────────────────────────────────

    def _is_exact(self, bank: BankTransaction, internal: InternalTransaction) -> bool:
        # Strictly inside the tolerance: 499.99 vs 500.00 is not exact
        amount_gap = abs(bank.signed_amount - internal.signed_amount)
        return (
            amount_gap < self.config.exact_amount_tolerance
            and dates_close(
                bank.date, internal.date, self.config.exact_date_tolerance_days
            )
            and _references_compatible(bank, internal)
        )

    @staticmethod
    def _exact_reasons(bank: BankTransaction, internal: InternalTransaction) -> List[str]:
        reasons = [REASON_AMOUNT, REASON_DATE]
        if bank.reference and internal.reference:
            reasons.append(REASON_REFERENCE)
        return reasons

    @staticmethod
    def _check_cancel(should_cancel: Optional[Callable[[], bool]], next_pass: str) -> None:
        if should_cancel is not None and should_cancel():
            logger.info("Matching cancelled before %s pass", next_pass)
            raise MatchingCancelledError(f"Matching cancelled before {next_pass} pass")
