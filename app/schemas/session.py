"""Pydantic schemas for the reconciliation session aggregate.

``ReconciliationSession`` is the value object handed to and returned by the
persistence collaborator.  It is only mutated through
``ReconciliationWorkspace`` operations, never by direct field writes.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.common import new_id, utcnow
from app.schemas.transaction import BankTransaction, InternalTransaction

MatchType = Literal["exact", "fuzzy", "rule-based", "manual"]
SessionStatus = Literal["in-progress", "completed", "approved", "rejected"]
AdjustmentType = Literal[
    "bank-fee",
    "interest",
    "timing-difference",
    "error-correction",
    "other",
]


class ReconciliationMatch(BaseModel):
    """A committed pairing of one bank and one internal transaction."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    bank_transaction: BankTransaction
    internal_transaction: InternalTransaction
    match_type: MatchType
    confidence: int = Field(..., ge=0, le=100)
    matched_by: Literal["system", "user"] = "system"
    matched_at: dt.datetime = Field(default_factory=utcnow)
    rule_id: Optional[str] = Field(None, description="Rule that produced a rule-based match")
    user_id: Optional[str] = None
    reasons: list[str] = Field(default_factory=list)


class MatchSuggestion(BaseModel):
    """A non-committing candidate pairing offered to the user."""

    model_config = ConfigDict(frozen=True)

    bank_transaction_id: str
    internal_transaction: InternalTransaction
    match_type: Literal["exact", "fuzzy"]
    confidence: int = Field(..., ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)


class AdjustmentEntry(BaseModel):
    """Manually recorded amount explaining a residual difference."""

    id: str = Field(default_factory=new_id)
    description: str = Field(..., min_length=1)
    amount: Decimal
    type: AdjustmentType = "other"
    approved: bool = False
    created_by: Optional[str] = None
    created_at: dt.datetime = Field(default_factory=utcnow)
    approved_by: Optional[str] = None
    approved_at: Optional[dt.datetime] = None


class AuditEntry(BaseModel):
    """One line of the session's audit trail."""

    model_config = ConfigDict(frozen=True)

    action: str
    actor: Optional[str] = None
    at: dt.datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)


class ReconciliationSession(BaseModel):
    """Full state of one reconciliation effort for one statement period."""

    id: str = Field(default_factory=new_id)
    account_id: str
    period_start: Optional[dt.date] = None
    period_end: Optional[dt.date] = None

    opening_balance: Decimal = Decimal("0")
    closing_balance: Decimal = Decimal("0")
    book_balance: Decimal = Decimal("0")
    difference: Decimal = Decimal("0")

    status: SessionStatus = "in-progress"
    version: int = 0

    bank_transactions: list[BankTransaction] = Field(default_factory=list)
    internal_transactions: list[InternalTransaction] = Field(default_factory=list)
    matches: list[ReconciliationMatch] = Field(default_factory=list)
    unmatched_bank: list[BankTransaction] = Field(default_factory=list)
    unmatched_internal: list[InternalTransaction] = Field(default_factory=list)
    adjustments: list[AdjustmentEntry] = Field(default_factory=list)

    created_by: Optional[str] = None
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: Optional[dt.datetime] = None
    completed_by: Optional[str] = None
    completed_at: Optional[dt.datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[dt.datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[dt.datetime] = None
    rejection_reason: Optional[str] = None

    audit_log: list[AuditEntry] = Field(default_factory=list)
