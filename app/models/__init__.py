"""SQLAlchemy models for the bank reconciliation service."""

from app.models.session import SessionRecord

__all__ = [
    "SessionRecord",
]
