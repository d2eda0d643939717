"""Error taxonomy for the reconciliation core.

Structural errors (conflict, not found, immutable) fail a single operation
and leave the session untouched.  Validation errors are collected so the
caller can show every bad row at once.
"""

from __future__ import annotations

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base class for every error raised by the reconciliation core."""


class ValidationError(ReconciliationError):
    """One or more transactions failed required-field validation.

    Attributes:
        errors: One dict per problem with ``index``, ``side``,
            ``transaction_id``, ``field`` and ``message`` keys.
    """

    def __init__(self, errors: list[dict[str, Any]]) -> None:
        self.errors = errors
        super().__init__(f"{len(errors)} transaction(s) failed validation")


class ConflictError(ReconciliationError):
    """Operation targets a transaction/match that is not in the expected state."""


class NotFoundError(ReconciliationError):
    """Referenced session, match, adjustment or rule id does not exist."""


class ImmutableStateError(ReconciliationError):
    """Mutation attempted on an approved session."""


class RuleEvaluationError(ReconciliationError):
    """A rule condition cannot be evaluated for a transaction pair."""

    def __init__(self, message: str, rule_id: Optional[str] = None) -> None:
        self.rule_id = rule_id
        super().__init__(message)


class MatchingCancelledError(ReconciliationError):
    """A batch matching run was cancelled between passes."""
