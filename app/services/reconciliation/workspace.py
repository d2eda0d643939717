"""Reconciliation workspace: the stateful session aggregate.

A ``ReconciliationWorkspace`` wraps one ``ReconciliationSession`` and is the
only way to change it.  Every mutating operation:

  1. takes the workspace lock (single writer per session),
  2. checks all preconditions *before* touching state, so a failed
     operation leaves the session exactly as it was,
  3. mutates the pools/adjustments/status,
  4. bumps ``version``, stamps ``updated_at`` and appends an audit entry.

Status flow: in-progress -> completed -> approved, or in-progress ->
rejected.  Nothing goes back.  An approved session is immutable.
"""

from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from app.core.config import Settings, settings as default_settings
from app.core.errors import ConflictError, ImmutableStateError, NotFoundError
from app.core.logging import get_logger
from app.schemas.common import utcnow
from app.schemas.session import (
    AdjustmentEntry,
    AuditEntry,
    MatchSuggestion,
    ReconciliationMatch,
    ReconciliationSession,
)
from app.schemas.transaction import BankTransaction, InternalTransaction
from app.services.ingestion.validator import RawRecord, validate_transactions
from app.services.reconciliation.engine import MatchingEngine, get_engine

logger = get_logger(__name__)

_ZERO = Decimal("0")


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_difference(session: ReconciliationSession) -> Decimal:
    """``closing - book - sum(adjustments)``.

    Independent of how many transactions are matched: a fully matched
    statement can still carry a gap from unposted items.
    """
    adjustments = sum((a.amount for a in session.adjustments), _ZERO)
    return session.closing_balance - session.book_balance - adjustments


class ReconciliationWorkspace:
    """Single-writer wrapper around a session's state.

    With ``defer_learning`` set, manual matches are queued instead of being
    fed to the engine right away; the caller hands them over with
    ``commit_learning()`` once the session has been persisted.
    """

    def __init__(
        self,
        session: ReconciliationSession,
        engine: Optional[MatchingEngine] = None,
        config: Optional[Settings] = None,
        defer_learning: bool = False,
    ) -> None:
        self.session = session
        self.engine = engine or get_engine(session.account_id)
        self.config = config or default_settings
        self.defer_learning = defer_learning
        self._pending_lessons: list[tuple[BankTransaction, InternalTransaction]] = []
        self._lock = threading.RLock()

    # ── Creation ─────────────────────────────────────────────────────

    @classmethod
    def create(
        cls,
        account_id: str,
        bank_transactions: Iterable[RawRecord],
        internal_transactions: Iterable[RawRecord],
        opening_balance: Decimal = _ZERO,
        closing_balance: Decimal = _ZERO,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        created_by: Optional[str] = None,
        engine: Optional[MatchingEngine] = None,
        config: Optional[Settings] = None,
    ) -> "ReconciliationWorkspace":
        """Validate the inputs and open a new in-progress session.

        Empty lists are legal and simply mean there is nothing to match.

        Raises:
            ValidationError: Every invalid record on either side.
        """
        bank, internal = validate_transactions(bank_transactions, internal_transactions)

        all_dates = [t.date for t in bank] + [t.date for t in internal]
        if period_start is None and all_dates:
            period_start = min(all_dates)
        if period_end is None and all_dates:
            period_end = max(all_dates)

        book_balance = sum((t.signed_amount for t in internal), _ZERO)

        session = ReconciliationSession(
            account_id=account_id,
            period_start=period_start,
            period_end=period_end,
            opening_balance=_as_decimal(opening_balance),
            closing_balance=_as_decimal(closing_balance),
            book_balance=book_balance,
            bank_transactions=bank,
            internal_transactions=internal,
            unmatched_bank=list(bank),
            unmatched_internal=list(internal),
            created_by=created_by,
        )
        session.difference = compute_difference(session)
        session.audit_log.append(
            AuditEntry(
                action="session_created",
                actor=created_by,
                details={
                    "bank_transactions": len(bank),
                    "internal_transactions": len(internal),
                },
            )
        )

        logger.info(
            "Session created: id=%s account=%s bank=%d internal=%d difference=%s",
            session.id,
            account_id,
            len(bank),
            len(internal),
            session.difference,
        )
        return cls(session, engine=engine, config=config)

    # ── Matching ─────────────────────────────────────────────────────

    def auto_match(
        self,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> list[ReconciliationMatch]:
        """Run the engine over the current unmatched pools.

        Returns only the matches added by this call; an empty list means
        nothing more can be matched automatically.
        """
        with self._lock:
            self._ensure_open()
            result = self.engine.match(
                self.session.unmatched_bank,
                self.session.unmatched_internal,
                confidence_threshold=self.config.auto_match_threshold,
                should_cancel=should_cancel,
            )

            self.session.matches.extend(result.matches)
            self.session.unmatched_bank = result.unmatched_bank
            self.session.unmatched_internal = result.unmatched_internal

            by_type: dict[str, int] = {}
            for m in result.matches:
                by_type[m.match_type] = by_type.get(m.match_type, 0) + 1
            self._touch("auto_match", None, {"matched": len(result.matches), "by_type": by_type})

        logger.info(
            "Auto-match applied: session=%s new_matches=%d",
            self.session.id,
            len(result.matches),
        )
        return result.matches

    def manual_match(
        self,
        bank_transaction_id: str,
        internal_transaction_id: str,
        user_id: Optional[str] = None,
    ) -> ReconciliationMatch:
        """Pair two transactions by hand at confidence 100.

        Raises:
            ConflictError: Either side is not in its unmatched pool.
        """
        with self._lock:
            self._ensure_open()
            bank = next(
                (t for t in self.session.unmatched_bank if t.id == bank_transaction_id),
                None,
            )
            internal = next(
                (
                    t
                    for t in self.session.unmatched_internal
                    if t.id == internal_transaction_id
                ),
                None,
            )
            if bank is None:
                raise ConflictError(
                    f"Bank transaction {bank_transaction_id} is not unmatched"
                )
            if internal is None:
                raise ConflictError(
                    f"Internal transaction {internal_transaction_id} is not unmatched"
                )

            match = ReconciliationMatch(
                bank_transaction=bank,
                internal_transaction=internal,
                match_type="manual",
                confidence=100,
                matched_by="user",
                user_id=user_id,
                reasons=["Matched manually"],
            )
            self.session.matches.append(match)
            self.session.unmatched_bank = [
                t for t in self.session.unmatched_bank if t.id != bank.id
            ]
            self.session.unmatched_internal = [
                t for t in self.session.unmatched_internal if t.id != internal.id
            ]
            self._touch(
                "manual_match",
                user_id,
                {"match_id": match.id, "bank_id": bank.id, "internal_id": internal.id},
            )

        if self.defer_learning:
            self._pending_lessons.append((bank, internal))
        else:
            self.engine.learn_from_match(bank, internal)
        logger.info(
            "Manual match: session=%s match=%s bank=%s internal=%s",
            self.session.id,
            match.id,
            bank.id,
            internal.id,
        )
        return match

    def commit_learning(self) -> int:
        """Feed queued manual matches to the engine; returns how many."""
        with self._lock:
            lessons, self._pending_lessons = self._pending_lessons, []
        for bank, internal in lessons:
            self.engine.learn_from_match(bank, internal)
        return len(lessons)

    def unmatch(self, match_id: str, user_id: Optional[str] = None) -> ReconciliationMatch:
        """Undo a match and return both sides to their unmatched pools.

        Pools are rebuilt in original input order, so match + unmatch is an
        exact round trip.

        Raises:
            NotFoundError: ``match_id`` is not an active match.
        """
        with self._lock:
            self._ensure_open()
            match = next((m for m in self.session.matches if m.id == match_id), None)
            if match is None:
                raise NotFoundError(f"Match {match_id} not found")

            self.session.matches = [m for m in self.session.matches if m.id != match_id]

            bank_ids = {t.id for t in self.session.unmatched_bank}
            bank_ids.add(match.bank_transaction.id)
            self.session.unmatched_bank = [
                t for t in self.session.bank_transactions if t.id in bank_ids
            ]
            internal_ids = {t.id for t in self.session.unmatched_internal}
            internal_ids.add(match.internal_transaction.id)
            self.session.unmatched_internal = [
                t for t in self.session.internal_transactions if t.id in internal_ids
            ]
            self._touch(
                "unmatch",
                user_id,
                {
                    "match_id": match_id,
                    "bank_id": match.bank_transaction.id,
                    "internal_id": match.internal_transaction.id,
                },
            )

        logger.info("Unmatched: session=%s match=%s", self.session.id, match_id)
        return match

    def get_suggestions(
        self,
        bank_transaction_id: str,
        limit: Optional[int] = None,
    ) -> list[MatchSuggestion]:
        """Ranked candidates for one unmatched bank transaction.  Read-only.

        Raises:
            NotFoundError: Unknown bank transaction id.
            ConflictError: The bank transaction is already matched.
        """
        with self._lock:
            bank = next(
                (t for t in self.session.unmatched_bank if t.id == bank_transaction_id),
                None,
            )
            if bank is None:
                if any(t.id == bank_transaction_id for t in self.session.bank_transactions):
                    raise ConflictError(
                        f"Bank transaction {bank_transaction_id} is already matched"
                    )
                raise NotFoundError(f"Bank transaction {bank_transaction_id} not found")
            pool = list(self.session.unmatched_internal)

        return self.engine.get_suggestions(bank, pool, limit=limit)

    # ── Adjustments ──────────────────────────────────────────────────

    def add_adjustment(self, entry: AdjustmentEntry) -> AdjustmentEntry:
        with self._lock:
            self._ensure_open()
            if any(a.id == entry.id for a in self.session.adjustments):
                raise ConflictError(f"Adjustment {entry.id} already exists")

            self.session.adjustments.append(entry)
            self.session.difference = compute_difference(self.session)
            self._touch(
                "adjustment_added",
                entry.created_by,
                {"adjustment_id": entry.id, "amount": str(entry.amount), "type": entry.type},
            )

        logger.info(
            "Adjustment added: session=%s adjustment=%s amount=%s difference=%s",
            self.session.id,
            entry.id,
            entry.amount,
            self.session.difference,
        )
        return entry

    def remove_adjustment(
        self,
        adjustment_id: str,
        user_id: Optional[str] = None,
    ) -> AdjustmentEntry:
        with self._lock:
            self._ensure_open()
            entry = self._find_adjustment(adjustment_id)

            self.session.adjustments = [
                a for a in self.session.adjustments if a.id != adjustment_id
            ]
            self.session.difference = compute_difference(self.session)
            self._touch("adjustment_removed", user_id, {"adjustment_id": adjustment_id})

        logger.info(
            "Adjustment removed: session=%s adjustment=%s difference=%s",
            self.session.id,
            adjustment_id,
            self.session.difference,
        )
        return entry

    def approve_adjustment(self, adjustment_id: str, approver_id: str) -> AdjustmentEntry:
        with self._lock:
            self._ensure_open()
            entry = self._find_adjustment(adjustment_id)
            if entry.approved:
                raise ConflictError(f"Adjustment {adjustment_id} is already approved")

            approved = entry.model_copy(
                update={"approved": True, "approved_by": approver_id, "approved_at": utcnow()}
            )
            self.session.adjustments = [
                approved if a.id == adjustment_id else a for a in self.session.adjustments
            ]
            self._touch("adjustment_approved", approver_id, {"adjustment_id": adjustment_id})

        return approved

    # ── Status transitions ───────────────────────────────────────────

    def complete(self, user_id: Optional[str] = None) -> ReconciliationSession:
        """Close the working phase; unmatched items are allowed to remain."""
        with self._lock:
            self._ensure_open()
            self.session.status = "completed"
            self.session.completed_by = user_id
            self.session.completed_at = utcnow()
            self._touch(
                "completed",
                user_id,
                {
                    "unmatched_bank": len(self.session.unmatched_bank),
                    "unmatched_internal": len(self.session.unmatched_internal),
                    "difference": str(self.session.difference),
                },
            )

        logger.info(
            "Session completed: id=%s unmatched_bank=%d difference=%s",
            self.session.id,
            len(self.session.unmatched_bank),
            self.session.difference,
        )
        return self.session

    def approve(self, approver_id: str) -> ReconciliationSession:
        """Sign off a completed session; it becomes immutable."""
        with self._lock:
            self._ensure_not_approved()
            if self.session.status != "completed":
                raise ConflictError(
                    f"Only completed sessions can be approved (status={self.session.status})"
                )
            self.session.status = "approved"
            self.session.approved_by = approver_id
            self.session.approved_at = utcnow()
            self._touch("approved", approver_id, {})

        logger.info("Session approved: id=%s approver=%s", self.session.id, approver_id)
        return self.session

    def reject(self, user_id: Optional[str] = None, reason: Optional[str] = None) -> ReconciliationSession:
        with self._lock:
            self._ensure_open()
            self.session.status = "rejected"
            self.session.rejected_by = user_id
            self.session.rejected_at = utcnow()
            self.session.rejection_reason = reason
            self._touch("rejected", user_id, {"reason": reason})

        logger.info("Session rejected: id=%s reason=%r", self.session.id, reason)
        return self.session

    # ── Private helpers ──────────────────────────────────────────────

    def _ensure_not_approved(self) -> None:
        if self.session.status == "approved":
            raise ImmutableStateError(f"Session {self.session.id} is approved and immutable")

    def _ensure_open(self) -> None:
        """Mutations are only allowed while the session is in progress."""
        self._ensure_not_approved()
        if self.session.status != "in-progress":
            raise ConflictError(
                f"Session {self.session.id} is {self.session.status}, not in-progress"
            )

    def _find_adjustment(self, adjustment_id: str) -> AdjustmentEntry:
        for a in self.session.adjustments:
            if a.id == adjustment_id:
                return a
        raise NotFoundError(f"Adjustment {adjustment_id} not found")

    def _touch(self, action: str, actor: Optional[str], details: dict[str, Any]) -> None:
        now = utcnow()
        self.session.version += 1
        self.session.updated_at = now
        self.session.audit_log.append(
            AuditEntry(action=action, actor=actor, at=now, details=details)
        )
