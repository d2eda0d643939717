"""Pydantic schemas for reconciliation API requests and responses."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.rule import RuleCondition
from app.schemas.session import AdjustmentType, SessionStatus


class SessionCreateRequest(BaseModel):
    """Request body to open a new reconciliation session.

    Transactions are accepted as raw dicts so that every bad row is
    reported together by the ingestion validator.
    """

    account_id: str = Field(..., min_length=1, max_length=100)
    opening_balance: Decimal = Decimal("0")
    closing_balance: Decimal = Decimal("0")
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    created_by: Optional[str] = None
    bank_transactions: list[dict[str, Any]] = Field(default_factory=list)
    internal_transactions: list[dict[str, Any]] = Field(default_factory=list)


class SessionSummary(BaseModel):
    """Lightweight listing entry for a session."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    status: SessionStatus
    version: int
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    difference: Decimal
    matched_count: int = 0
    unmatched_bank_count: int = 0
    unmatched_internal_count: int = 0
    created_at: datetime


class ManualMatchRequest(BaseModel):
    bank_transaction_id: str
    internal_transaction_id: str
    user_id: Optional[str] = None


class AdjustmentCreateRequest(BaseModel):
    description: str = Field(..., min_length=1)
    amount: Decimal
    type: AdjustmentType = "other"
    created_by: Optional[str] = None


class ActorRequest(BaseModel):
    """Body for operations that only record who performed them."""

    user_id: Optional[str] = None


class ApprovalRequest(BaseModel):
    approver_id: str = Field(..., min_length=1)


class RejectRequest(BaseModel):
    user_id: Optional[str] = None
    reason: Optional[str] = None


class RuleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    conditions: list[RuleCondition] = Field(..., min_length=1)
    priority: int = 0
    enabled: bool = True


class RuleUpdateRequest(BaseModel):
    enabled: bool
