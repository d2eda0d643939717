"""SQL-backed persistence for reconciliation sessions.

The core is storage-agnostic: it takes a ``ReconciliationSession`` in and
hands one back.  This store is the default persistence collaborator.  A
session is a long-lived, multi-step workspace, so saves use optimistic
concurrency on the ``version`` stamp instead of last-write-wins.
"""

from __future__ import annotations

import threading
import weakref
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, ImmutableStateError, NotFoundError
from app.core.logging import get_logger
from app.models.session import SessionRecord
from app.schemas.session import ReconciliationSession

logger = get_logger(__name__)

# One writer lock per session id for load -> mutate -> save cycles; an
# entry lives only as long as some caller holds its lock
_session_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def session_lock(session_id: str) -> threading.Lock:
    """Process-wide lock serializing writers of one session."""
    with _registry_lock:
        lock = _session_locks.get(session_id)
        if lock is None:
            lock = _session_locks[session_id] = threading.Lock()
        return lock


class SessionStore:
    """Load and save sessions through a SQLAlchemy session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def add(self, session: ReconciliationSession) -> ReconciliationSession:
        """Insert a brand-new session.

        Raises:
            ConflictError: A session with the same id already exists.
        """
        if self.db.get(SessionRecord, session.id) is not None:
            raise ConflictError(f"Session {session.id} already exists")

        record = SessionRecord(
            id=session.id,
            account_id=session.account_id,
            status=session.status,
            version=session.version,
            payload=session.model_dump(mode="json"),
        )
        self.db.add(record)
        self.db.commit()
        logger.info("Session stored: id=%s version=%d", session.id, session.version)
        return session

    def get(self, session_id: str) -> ReconciliationSession:
        """Load a session by id.

        Raises:
            NotFoundError: No such session.
        """
        record = self.db.get(SessionRecord, session_id)
        if record is None:
            raise NotFoundError(f"Session {session_id} not found")
        return ReconciliationSession.model_validate(record.payload)

    def save(
        self,
        session: ReconciliationSession,
        expected_version: int,
    ) -> ReconciliationSession:
        """Persist ``session`` if the stored version is still ``expected_version``.

        Raises:
            NotFoundError: The session was never added.
            ConflictError: Someone else saved a newer version first.
        """
        result = self.db.execute(
            update(SessionRecord)
            .where(SessionRecord.id == session.id)
            .where(SessionRecord.version == expected_version)
            .values(
                status=session.status,
                version=session.version,
                payload=session.model_dump(mode="json"),
            )
        )
        if result.rowcount == 0:
            self.db.rollback()
            if self.db.get(SessionRecord, session.id) is None:
                raise NotFoundError(f"Session {session.id} not found")
            raise ConflictError(
                f"Session {session.id} was modified concurrently "
                f"(expected version {expected_version})"
            )

        self.db.commit()
        logger.info(
            "Session saved: id=%s version=%d->%d",
            session.id,
            expected_version,
            session.version,
        )
        return session

    def list(self, account_id: Optional[str] = None) -> list[ReconciliationSession]:
        """All sessions, newest first, optionally for one account."""
        query = select(SessionRecord).order_by(SessionRecord.created_at.desc())
        if account_id is not None:
            query = query.where(SessionRecord.account_id == account_id)
        records = self.db.execute(query).scalars().all()
        return [ReconciliationSession.model_validate(r.payload) for r in records]

    def delete(self, session_id: str) -> None:
        """Remove a session for good.

        Raises:
            NotFoundError: No such session.
            ImmutableStateError: The session was approved and must be kept.
        """
        record = self.db.get(SessionRecord, session_id)
        if record is None:
            raise NotFoundError(f"Session {session_id} not found")
        if record.status == "approved":
            raise ImmutableStateError(f"Session {session_id} is approved and cannot be deleted")

        self.db.delete(record)
        self.db.commit()
        logger.info("Session deleted: id=%s", session_id)
