"""Pydantic schema for the derived reconciliation report."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReconciliationReport(BaseModel):
    """Point-in-time, read-only summary of a session.

    Never stored as authoritative state; always regenerable from the
    session it was built from.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    account_id: str
    status: str
    period_start: Optional[dt.date] = None
    period_end: Optional[dt.date] = None

    opening_balance: Decimal
    closing_balance: Decimal
    book_balance: Decimal
    difference: Decimal

    total_bank_transactions: int = 0
    total_bank_debits: Decimal = Decimal("0")
    total_bank_credits: Decimal = Decimal("0")
    total_internal_transactions: int = 0
    total_internal_amount: Decimal = Decimal("0")

    matched_count: int = 0
    matches_by_type: dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0
    unmatched_bank_count: int = 0
    unmatched_bank_amount: Decimal = Decimal("0")
    unmatched_internal_count: int = 0
    unmatched_internal_amount: Decimal = Decimal("0")
    match_rate: float = Field(0.0, description="matches / total bank transactions")

    adjustment_count: int = 0
    adjustment_total: Decimal = Decimal("0")
    approved_adjustment_total: Decimal = Decimal("0")
    pending_adjustment_total: Decimal = Decimal("0")

    generated_at: dt.datetime


class SessionStatistics(BaseModel):
    """Aggregate view over every stored session, optionally for one account."""

    model_config = ConfigDict(frozen=True)

    account_id: Optional[str] = None
    total_sessions: int = 0
    sessions_by_status: dict[str, int] = Field(default_factory=dict)
    total_matches: int = 0
    total_bank_transactions: int = 0
    average_match_rate: float = Field(
        0.0, description="all matches / all bank transactions across sessions"
    )
    generated_at: dt.datetime
