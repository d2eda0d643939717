"""Reconciliation report generation.

Projects a session snapshot into a read-only ``ReconciliationReport``:
counts, match rate, per-type breakdown, balances and adjustment totals.
``session_statistics`` aggregates the same counts across stored sessions.
Nothing here mutates the session, and two reports built from the same
session content differ only in ``generated_at``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from app.core.logging import get_logger
from app.schemas.common import utcnow
from app.schemas.report import ReconciliationReport, SessionStatistics
from app.schemas.session import ReconciliationSession
from app.services.reconciliation.store import SessionStore

logger = get_logger(__name__)

_ZERO = Decimal("0")

# Fixed key order keeps the serialized report stable
_MATCH_TYPES = ("exact", "rule-based", "fuzzy", "manual")
_STATUSES = ("in-progress", "completed", "approved", "rejected")


def generate_report(session: ReconciliationSession) -> ReconciliationReport:
    """Build a summary report for ``session``.

    ``match_rate`` is matches / bank transactions, 0 when the statement is
    empty.  Balances and ``difference`` are copied verbatim.
    """
    total_bank = len(session.bank_transactions)
    matched = len(session.matches)

    # Statement totals
    total_debits = sum((t.debit or _ZERO for t in session.bank_transactions), _ZERO)
    total_credits = sum((t.credit or _ZERO for t in session.bank_transactions), _ZERO)
    total_internal = sum(
        (t.signed_amount for t in session.internal_transactions), _ZERO
    )

    # Match breakdown
    by_type: dict[str, int] = {t: 0 for t in _MATCH_TYPES}
    confidence_sum = 0
    for m in session.matches:
        by_type[m.match_type] = by_type.get(m.match_type, 0) + 1
        confidence_sum += m.confidence
    average_confidence = round(confidence_sum / matched, 2) if matched else 0.0

    # Residual pools
    unmatched_bank_amount = sum(
        (t.signed_amount for t in session.unmatched_bank), _ZERO
    )
    unmatched_internal_amount = sum(
        (t.signed_amount for t in session.unmatched_internal), _ZERO
    )

    # Adjustments
    adjustment_total = _ZERO
    approved_total = _ZERO
    for a in session.adjustments:
        adjustment_total += a.amount
        if a.approved:
            approved_total += a.amount

    match_rate = round(matched / total_bank, 4) if total_bank else 0.0

    report = ReconciliationReport(
        session_id=session.id,
        account_id=session.account_id,
        status=session.status,
        period_start=session.period_start,
        period_end=session.period_end,
        opening_balance=session.opening_balance,
        closing_balance=session.closing_balance,
        book_balance=session.book_balance,
        difference=session.difference,
        total_bank_transactions=total_bank,
        total_bank_debits=total_debits,
        total_bank_credits=total_credits,
        total_internal_transactions=len(session.internal_transactions),
        total_internal_amount=total_internal,
        matched_count=matched,
        matches_by_type=by_type,
        average_confidence=average_confidence,
        unmatched_bank_count=len(session.unmatched_bank),
        unmatched_bank_amount=unmatched_bank_amount,
        unmatched_internal_count=len(session.unmatched_internal),
        unmatched_internal_amount=unmatched_internal_amount,
        match_rate=match_rate,
        adjustment_count=len(session.adjustments),
        adjustment_total=adjustment_total,
        approved_adjustment_total=approved_total,
        pending_adjustment_total=adjustment_total - approved_total,
        generated_at=utcnow(),
    )

    logger.info(
        "Report generated: session=%s matched=%d/%d rate=%.4f difference=%s",
        session.id,
        matched,
        total_bank,
        match_rate,
        session.difference,
    )
    return report


def session_statistics(
    store: SessionStore,
    account_id: Optional[str] = None,
) -> SessionStatistics:
    """Count sessions per status and the overall match rate.

    The rate pools every session's matches and bank lines, so large
    statements weigh more than small ones.
    """
    sessions = store.list(account_id)

    by_status: dict[str, int] = {s: 0 for s in _STATUSES}
    total_matches = 0
    total_bank = 0
    for s in sessions:
        by_status[s.status] = by_status.get(s.status, 0) + 1
        total_matches += len(s.matches)
        total_bank += len(s.bank_transactions)

    average_match_rate = round(total_matches / total_bank, 4) if total_bank else 0.0

    logger.info(
        "Statistics generated: account=%s sessions=%d matches=%d rate=%.4f",
        account_id or "*",
        len(sessions),
        total_matches,
        average_match_rate,
    )
    return SessionStatistics(
        account_id=account_id,
        total_sessions=len(sessions),
        sessions_by_status=by_status,
        total_matches=total_matches,
        total_bank_transactions=total_bank,
        average_match_rate=average_match_rate,
        generated_at=utcnow(),
    )
