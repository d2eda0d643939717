"""Matching rule endpoints, scoped per account."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter

from app.core.logging import get_logger
from app.schemas.reconciliation import RuleCreateRequest, RuleUpdateRequest
from app.schemas.rule import MatchingRule
from app.services.reconciliation.engine import get_engine

logger = get_logger(__name__)

router = APIRouter()


@router.get("/{account_id}/rules", response_model=List[MatchingRule])
def list_rules(account_id: str) -> list[MatchingRule]:
    """All rules for the account (user and learned), highest priority first."""
    return get_engine(account_id).get_rules()


@router.post("/{account_id}/rules", response_model=MatchingRule, status_code=201)
def create_rule(account_id: str, body: RuleCreateRequest) -> MatchingRule:
    rule = MatchingRule(
        name=body.name,
        conditions=body.conditions,
        priority=body.priority,
        enabled=body.enabled,
        source="user",
    )
    return get_engine(account_id).add_rule(rule)


@router.patch("/{account_id}/rules/{rule_id}", response_model=MatchingRule)
def update_rule(account_id: str, rule_id: str, body: RuleUpdateRequest) -> MatchingRule:
    """Enable or disable a rule."""
    return get_engine(account_id).set_rule_enabled(rule_id, body.enabled)


@router.delete("/{account_id}/rules/{rule_id}", status_code=204)
def delete_rule(account_id: str, rule_id: str) -> None:
    get_engine(account_id).remove_rule(rule_id)
