"""Background auto-match job management.

Allows running a session's auto-match as a background task and tracking
its progress.  Uses an in-memory dict for job tracking (MVP approach;
a production system would use Redis, a DB table, or a proper task queue
like Celery).

Cancellation is cooperative: the flag is polled between matching passes,
never inside the fuzzy scoring loop, so a run either applies a complete
pass or nothing from it.
"""

from __future__ import annotations

import threading
import uuid

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from app.core.errors import MatchingCancelledError
from app.core.logging import get_logger
from app.services.reconciliation.store import SessionStore, session_lock
from app.services.reconciliation.workspace import ReconciliationWorkspace

logger = get_logger(__name__)

# In-memory job tracker (simple dict for MVP)
_jobs: dict[str, dict] = {}
_cancel_flags: dict[str, threading.Event] = {}


def submit_auto_match_job(
    db_factory,  # callable that creates a new session
    session_id: str,
    background_tasks: BackgroundTasks,
) -> str:
    """Submit an auto-match run for ``session_id`` to run in background.

    Returns job_id immediately so the caller can poll for status later.
    """
    job_id = str(uuid.uuid4())
    _jobs[job_id] = {
        "job_id": job_id,
        "session_id": session_id,
        "status": "pending",
        "matched": None,
        "version": None,
        "error": None,
    }
    _cancel_flags[job_id] = threading.Event()
    background_tasks.add_task(_run_job, job_id, db_factory, session_id)
    return job_id


def _run_job(job_id: str, db_factory, session_id: str) -> None:
    """Background task: load, auto-match, save.

    The job's cancel flag is dropped once it reaches a terminal state.
    """
    flag = _cancel_flags.get(job_id)
    try:
        if flag is None or flag.is_set():
            _jobs[job_id]["status"] = "cancelled"
            return
        _execute_job(job_id, db_factory, session_id, flag)
    finally:
        _cancel_flags.pop(job_id, None)


def _execute_job(job_id: str, db_factory, session_id: str, flag: threading.Event) -> None:
    _jobs[job_id]["status"] = "running"
    try:
        db: Session = db_factory()
        try:
            store = SessionStore(db)
            with session_lock(session_id):
                session = store.get(session_id)
                expected_version = session.version
                workspace = ReconciliationWorkspace(session)
                matches = workspace.auto_match(should_cancel=flag.is_set)
                store.save(workspace.session, expected_version)
            _jobs[job_id]["status"] = "completed"
            _jobs[job_id]["matched"] = len(matches)
            _jobs[job_id]["version"] = workspace.session.version
        finally:
            db.close()
    except MatchingCancelledError:
        logger.info("Job %s cancelled", job_id)
        _jobs[job_id]["status"] = "cancelled"
    except Exception as e:
        logger.error("Job %s failed: %s", job_id, e)
        _jobs[job_id]["status"] = "failed"
        _jobs[job_id]["error"] = str(e)


def cancel_job(job_id: str) -> dict | None:
    """Request cancellation.  Returns the job, or None if unknown."""
    job = _jobs.get(job_id)
    if job is None:
        return None
    flag = _cancel_flags.get(job_id)
    if flag is not None and job["status"] in ("pending", "running"):
        flag.set()
        job["cancel_requested"] = True
    return job


def get_job_status(job_id: str) -> dict | None:
    """Look up a job by ID.  Returns None if not found."""
    return _jobs.get(job_id)


def list_jobs() -> list[dict]:
    """Return all tracked jobs (oldest first by insertion order)."""
    return list(_jobs.values())
