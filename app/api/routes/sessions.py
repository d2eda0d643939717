"""Reconciliation session endpoints.

Provides routes to open, list, delete and summarize sessions, run
auto-match, fetch suggestions, match/unmatch by hand, manage adjustments,
move the session through its status flow, and generate the report.

Every mutating route follows the same cycle under the session's writer
lock: load -> mutate through the workspace -> save with the version that
was loaded.  A core error aborts the cycle before the save, so the stored
session is untouched.
"""

from __future__ import annotations

from typing import Callable, List, Optional, TypeVar

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.logging import get_logger
from app.schemas.reconciliation import (
    ActorRequest,
    AdjustmentCreateRequest,
    ApprovalRequest,
    ManualMatchRequest,
    RejectRequest,
    SessionCreateRequest,
    SessionSummary,
)
from app.schemas.report import ReconciliationReport, SessionStatistics
from app.schemas.session import (
    AdjustmentEntry,
    MatchSuggestion,
    ReconciliationMatch,
    ReconciliationSession,
)
from app.services.reconciliation.report import generate_report, session_statistics
from app.services.reconciliation.store import SessionStore, session_lock
from app.services.reconciliation.workspace import ReconciliationWorkspace

logger = get_logger(__name__)

router = APIRouter()

T = TypeVar("T")


def _mutate(
    db: Session,
    session_id: str,
    operation: Callable[[ReconciliationWorkspace], T],
) -> T:
    """Load, apply ``operation`` and save with optimistic concurrency.

    Manual matches only reach the pattern learner once the save went
    through, so a rejected save teaches the engine nothing.
    """
    store = SessionStore(db)
    with session_lock(session_id):
        session = store.get(session_id)
        expected_version = session.version
        workspace = ReconciliationWorkspace(session, defer_learning=True)
        result = operation(workspace)
        store.save(workspace.session, expected_version)
        workspace.commit_learning()
    return result


def _summary(session: ReconciliationSession) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        account_id=session.account_id,
        status=session.status,
        version=session.version,
        period_start=session.period_start,
        period_end=session.period_end,
        difference=session.difference,
        matched_count=len(session.matches),
        unmatched_bank_count=len(session.unmatched_bank),
        unmatched_internal_count=len(session.unmatched_internal),
        created_at=session.created_at,
    )


# ── Session lifecycle ───────────────────────────────────────────────


@router.post("", response_model=ReconciliationSession, status_code=201)
def create_session(
    body: SessionCreateRequest,
    db: Session = Depends(get_db),
) -> ReconciliationSession:
    """Validate the transactions and open a new in-progress session.

    Invalid rows are reported all at once with a 422.
    """
    workspace = ReconciliationWorkspace.create(
        account_id=body.account_id,
        bank_transactions=body.bank_transactions,
        internal_transactions=body.internal_transactions,
        opening_balance=body.opening_balance,
        closing_balance=body.closing_balance,
        period_start=body.period_start,
        period_end=body.period_end,
        created_by=body.created_by,
    )
    return SessionStore(db).add(workspace.session)


@router.get("", response_model=List[SessionSummary])
def list_sessions(
    account_id: Optional[str] = Query(None, description="Filter by account"),
    db: Session = Depends(get_db),
) -> list[SessionSummary]:
    """List sessions, newest first."""
    return [_summary(s) for s in SessionStore(db).list(account_id)]


@router.get("/statistics", response_model=SessionStatistics)
def get_statistics(
    account_id: Optional[str] = Query(None, description="Filter by account"),
    db: Session = Depends(get_db),
) -> SessionStatistics:
    """Session counts per status, total matches and pooled match rate."""
    return session_statistics(SessionStore(db), account_id)


@router.get("/{session_id}", response_model=ReconciliationSession)
def get_session(
    session_id: str,
    db: Session = Depends(get_db),
) -> ReconciliationSession:
    return SessionStore(db).get(session_id)


@router.delete("/{session_id}", status_code=204)
def delete_session(
    session_id: str,
    db: Session = Depends(get_db),
) -> None:
    """Delete a session.  Approved sessions are kept (423)."""
    with session_lock(session_id):
        SessionStore(db).delete(session_id)


# ── Matching ────────────────────────────────────────────────────────


@router.post("/{session_id}/auto-match", response_model=List[ReconciliationMatch])
def auto_match(
    session_id: str,
    db: Session = Depends(get_db),
) -> list[ReconciliationMatch]:
    """Run exact, rule-based and fuzzy passes; returns the new matches."""
    logger.info("Auto-match requested: session=%s", session_id)
    return _mutate(db, session_id, lambda ws: ws.auto_match())


@router.post("/{session_id}/auto-match/async")
def auto_match_async(
    session_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Submit auto-match as a background job.

    Returns immediately with a job_id that can be polled via GET /jobs/{id}.
    """
    from app.core.database import SessionLocal
    from app.services.reconciliation.batch import submit_auto_match_job

    # Fail fast on unknown sessions instead of queueing a doomed job
    SessionStore(db).get(session_id)

    job_id = submit_auto_match_job(
        db_factory=SessionLocal,
        session_id=session_id,
        background_tasks=background_tasks,
    )
    return {
        "job_id": job_id,
        "status": "pending",
        "message": "Auto-match job submitted",
    }


@router.get(
    "/{session_id}/suggestions/{bank_transaction_id}",
    response_model=List[MatchSuggestion],
)
def get_suggestions(
    session_id: str,
    bank_transaction_id: str,
    limit: int = Query(5, ge=1, le=50, description="Max suggestions"),
    db: Session = Depends(get_db),
) -> list[MatchSuggestion]:
    """Ranked, non-committing candidates for one bank transaction."""
    session = SessionStore(db).get(session_id)
    return ReconciliationWorkspace(session).get_suggestions(bank_transaction_id, limit)


@router.post("/{session_id}/matches", response_model=ReconciliationMatch, status_code=201)
def manual_match(
    session_id: str,
    body: ManualMatchRequest,
    db: Session = Depends(get_db),
) -> ReconciliationMatch:
    return _mutate(
        db,
        session_id,
        lambda ws: ws.manual_match(
            body.bank_transaction_id, body.internal_transaction_id, body.user_id
        ),
    )


@router.delete("/{session_id}/matches/{match_id}", response_model=ReconciliationMatch)
def unmatch(
    session_id: str,
    match_id: str,
    user_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> ReconciliationMatch:
    """Undo a match; both sides go back to their unmatched pools."""
    return _mutate(db, session_id, lambda ws: ws.unmatch(match_id, user_id))


# ── Adjustments ─────────────────────────────────────────────────────


@router.post("/{session_id}/adjustments", response_model=AdjustmentEntry, status_code=201)
def add_adjustment(
    session_id: str,
    body: AdjustmentCreateRequest,
    db: Session = Depends(get_db),
) -> AdjustmentEntry:
    entry = AdjustmentEntry(
        description=body.description,
        amount=body.amount,
        type=body.type,
        created_by=body.created_by,
    )
    return _mutate(db, session_id, lambda ws: ws.add_adjustment(entry))


@router.delete("/{session_id}/adjustments/{adjustment_id}", response_model=AdjustmentEntry)
def remove_adjustment(
    session_id: str,
    adjustment_id: str,
    user_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> AdjustmentEntry:
    return _mutate(db, session_id, lambda ws: ws.remove_adjustment(adjustment_id, user_id))


@router.post(
    "/{session_id}/adjustments/{adjustment_id}/approve",
    response_model=AdjustmentEntry,
)
def approve_adjustment(
    session_id: str,
    adjustment_id: str,
    body: ApprovalRequest,
    db: Session = Depends(get_db),
) -> AdjustmentEntry:
    return _mutate(
        db, session_id, lambda ws: ws.approve_adjustment(adjustment_id, body.approver_id)
    )


# ── Status transitions ──────────────────────────────────────────────


@router.post("/{session_id}/complete", response_model=ReconciliationSession)
def complete_session(
    session_id: str,
    body: Optional[ActorRequest] = None,
    db: Session = Depends(get_db),
) -> ReconciliationSession:
    """Mark the session completed; unmatched items may remain."""
    user_id = body.user_id if body else None
    return _mutate(db, session_id, lambda ws: ws.complete(user_id))


@router.post("/{session_id}/approve", response_model=ReconciliationSession)
def approve_session(
    session_id: str,
    body: ApprovalRequest,
    db: Session = Depends(get_db),
) -> ReconciliationSession:
    return _mutate(db, session_id, lambda ws: ws.approve(body.approver_id))


@router.post("/{session_id}/reject", response_model=ReconciliationSession)
def reject_session(
    session_id: str,
    body: RejectRequest,
    db: Session = Depends(get_db),
) -> ReconciliationSession:
    return _mutate(db, session_id, lambda ws: ws.reject(body.user_id, body.reason))


# ── Report ──────────────────────────────────────────────────────────


@router.get("/{session_id}/report", response_model=ReconciliationReport)
def get_report(
    session_id: str,
    db: Session = Depends(get_db),
) -> ReconciliationReport:
    """Regenerate the summary report from the stored session."""
    return generate_report(SessionStore(db).get(session_id))
