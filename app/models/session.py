"""Reconciliation session model, one row per persisted workspace."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Integer, JSON, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class SessionRecord(Base):
    """Serialized ``ReconciliationSession`` plus the columns we filter on.

    ``version`` is the optimistic-concurrency stamp: a save only succeeds
    when the caller read the version currently stored.
    """

    __tablename__ = "reconciliation_sessions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
    )
    account_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="in-progress | completed | approved | rejected",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<SessionRecord(id={self.id!r}, account_id={self.account_id!r}, "
            f"status={self.status!r}, version={self.version})>"
        )
