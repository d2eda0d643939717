"""Pydantic schemas for normalized bank and internal transactions.

Both are immutable value objects: the ingestion collaborator hands them to
the core already normalized (UTC calendar dates, decimal amounts, ids unique
within their list).  Required-field rules live in the ingestion validator so
the matching engine never has to raise on a malformed record.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

_ZERO = Decimal("0")


class BankTransaction(BaseModel):
    """A line item from the externally issued bank statement."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique id within the statement")
    date: dt.date
    description: str
    reference: Optional[str] = None
    debit: Optional[Decimal] = Field(None, description="Money leaving the account")
    credit: Optional[Decimal] = Field(None, description="Money entering the account")
    balance: Optional[Decimal] = Field(None, description="Running statement balance")

    @property
    def signed_amount(self) -> Decimal:
        """Credits positive, debits negative."""
        return (self.credit or _ZERO) - (self.debit or _ZERO)


class InternalTransaction(BaseModel):
    """A line item from the organization's own ledger."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique id within the ledger extract")
    date: dt.date
    description: str
    amount: Decimal
    type: Optional[Literal["credit", "debit"]] = Field(
        None,
        description="When absent the sign of ``amount`` decides the direction",
    )
    reference: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        if self.type == "debit":
            return -abs(self.amount)
        if self.type == "credit":
            return abs(self.amount)
        return self.amount
