"""Matching rule schemas.

A rule is an ordered list of conditions that must *all* hold for a
(bank, internal) pair.  Conditions are a tagged variant discriminated by
``field`` so an unsupported field/operator combination is rejected when the
rule is built, not halfway through a reconciliation pass.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from app.schemas.common import new_id, utcnow

ConditionSide = Literal["both", "bank", "internal"]


class AmountCondition(BaseModel):
    """Compare signed amounts within ``tolerance``.

    With no ``value`` the two sides are compared to each other; with a
    ``value`` the side(s) named by ``side`` are compared to it.
    """

    field: Literal["amount"] = "amount"
    operator: Literal["equals", "greaterThan", "lessThan"] = "equals"
    value: Optional[Decimal] = None
    tolerance: Decimal = Field(Decimal("0.01"), ge=0)
    side: ConditionSide = "both"


class DateCondition(BaseModel):
    """Compare the two sides' dates: ``equals`` or within ``value`` days (``range``)."""

    field: Literal["date"] = "date"
    operator: Literal["equals", "range"] = "equals"
    value: Optional[int] = Field(None, ge=0, description="Max day gap for range")


class StringCondition(BaseModel):
    """Case-insensitive text test on description or reference."""

    field: Literal["description", "reference"]
    operator: Literal["equals", "contains", "startsWith", "endsWith"] = "contains"
    value: Optional[str] = None
    side: ConditionSide = "both"


RuleCondition = Annotated[
    Union[AmountCondition, DateCondition, StringCondition],
    Field(discriminator="field"),
]


class MatchingRule(BaseModel):
    """User-defined or system-learned rule evaluated in the rule-based pass."""

    id: str = Field(default_factory=new_id)
    name: str
    conditions: list[RuleCondition] = Field(default_factory=list)
    priority: int = Field(0, description="Higher is evaluated first")
    enabled: bool = True
    source: Literal["user", "system"] = "user"
    created_at: datetime = Field(default_factory=utcnow)
