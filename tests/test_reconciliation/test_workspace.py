"""Tests for the ReconciliationWorkspace session aggregate.

Pure unit tests: sessions are built in memory from raw dicts, exactly as
the API hands them over, and each test gets its own engine so learned
rules never bleed between tests.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from app.core.config import Settings
from app.core.errors import (
    ConflictError,
    ImmutableStateError,
    NotFoundError,
    ValidationError,
)
from app.schemas.session import AdjustmentEntry
from app.services.reconciliation.engine import MatchingEngine
from app.services.reconciliation.workspace import ReconciliationWorkspace


# ── Helpers ──────────────────────────────────────────────────────────


def _bank(txn_id: str, day: int, description: str = "DEPOSIT", **amounts) -> dict:
    row = {"id": txn_id, "date": f"2024-01-{day:02d}", "description": description}
    row.update(amounts)
    return row


def _internal(txn_id: str, day: int, amount: str, description: str = "Deposit") -> dict:
    return {
        "id": txn_id,
        "date": f"2024-01-{day:02d}",
        "description": description,
        "amount": amount,
    }


def _workspace(bank=None, internal=None, **kwargs) -> ReconciliationWorkspace:
    config = Settings()
    return ReconciliationWorkspace.create(
        account_id="acct-1",
        bank_transactions=bank or [],
        internal_transactions=internal or [],
        engine=MatchingEngine("acct-1", config=config),
        config=config,
        **kwargs,
    )


def _unrelated_workspace() -> ReconciliationWorkspace:
    """Three bank and three internal lines that auto-match leaves alone."""
    return _workspace(
        bank=[
            _bank("B1", 2, "COFFEE", debit="4.50"),
            _bank("B2", 10, "SALARY", credit="3000.00"),
            _bank("B3", 20, "GYM", debit="45.00"),
        ],
        internal=[
            _internal("I1", 28, "-800.00", "Insurance premium"),
            _internal("I2", 15, "120.00", "Refund"),
            _internal("I3", 6, "-9.99", "Streaming plan"),
        ],
    )


def _pool_ids(ws: ReconciliationWorkspace):
    return (
        [t.id for t in ws.session.unmatched_bank],
        [t.id for t in ws.session.unmatched_internal],
    )


def _assert_pools_complete(ws: ReconciliationWorkspace) -> None:
    s = ws.session
    bank_side = [m.bank_transaction.id for m in s.matches] + [t.id for t in s.unmatched_bank]
    internal_side = [m.internal_transaction.id for m in s.matches] + [
        t.id for t in s.unmatched_internal
    ]
    assert sorted(bank_side) == sorted(t.id for t in s.bank_transactions)
    assert sorted(internal_side) == sorted(t.id for t in s.internal_transactions)


# ── Creation ─────────────────────────────────────────────────────────


class TestCreate:
    def test_create_opens_in_progress_session(self):
        ws = _workspace(
            bank=[_bank("B1", 5, credit="1000.00")],
            internal=[_internal("I1", 5, "1000.00"), _internal("I2", 9, "-250.00")],
            closing_balance=Decimal("900.00"),
            created_by="alice",
        )
        s = ws.session

        assert s.status == "in-progress"
        assert s.version == 0
        assert s.book_balance == Decimal("750.00")
        assert s.difference == Decimal("150.00")
        assert str(s.period_start) == "2024-01-05"
        assert str(s.period_end) == "2024-01-09"
        assert [t.id for t in s.unmatched_bank] == ["B1"]
        assert [t.id for t in s.unmatched_internal] == ["I1", "I2"]
        assert s.audit_log[0].action == "session_created"
        assert s.audit_log[0].actor == "alice"

    def test_empty_inputs_are_legal(self):
        ws = _workspace()

        assert ws.session.bank_transactions == []
        assert ws.auto_match() == []

    def test_all_invalid_rows_reported_together(self):
        with pytest.raises(ValidationError) as exc_info:
            _workspace(
                bank=[
                    _bank("B1", 5, credit="10"),
                    _bank("B1", 6, credit="20"),
                    {"id": "B3", "date": "not a date", "description": "X", "credit": "5"},
                    _bank("B4", 7, "", debit="3"),
                    _bank("B5", 8, debit="3", credit="4"),
                ],
                internal=[_internal("I1", 5, "0")],
            )

        errors = exc_info.value.errors
        found = {(e["side"], e["index"], e["field"]) for e in errors}
        assert ("bank", 1, "id") in found
        assert ("bank", 2, "date") in found
        assert ("bank", 3, "description") in found
        assert ("bank", 4, "amount") in found
        assert ("internal", 0, "amount") in found


# ── Matching ─────────────────────────────────────────────────────────


class TestMatching:
    def test_auto_match_moves_pairs_out_of_pools(self):
        ws = _workspace(
            bank=[_bank("B1", 5, credit="1000.00"), _bank("B2", 6, "FEE", debit="2.50")],
            internal=[_internal("I1", 5, "1000.00")],
        )

        new = ws.auto_match()

        assert [m.match_type for m in new] == ["exact"]
        assert _pool_ids(ws) == (["B2"], [])
        assert ws.session.version == 1
        assert ws.session.audit_log[-1].action == "auto_match"
        _assert_pools_complete(ws)

    def test_second_auto_match_finds_nothing(self):
        ws = _workspace(
            bank=[_bank("B1", 5, credit="1000.00")],
            internal=[_internal("I1", 5, "1000.00")],
        )
        ws.auto_match()

        assert ws.auto_match() == []
        assert len(ws.session.matches) == 1

    def test_manual_match(self):
        ws = _unrelated_workspace()

        match = ws.manual_match("B2", "I2", user_id="bob")

        assert match.match_type == "manual"
        assert match.confidence == 100
        assert match.matched_by == "user"
        assert match.user_id == "bob"
        assert _pool_ids(ws) == (["B1", "B3"], ["I1", "I3"])
        _assert_pools_complete(ws)

    def test_manual_match_already_matched_conflicts(self):
        ws = _unrelated_workspace()
        ws.manual_match("B2", "I2")
        before = ws.session.model_dump_json()

        with pytest.raises(ConflictError):
            ws.manual_match("B2", "I1")
        with pytest.raises(ConflictError):
            ws.manual_match("B1", "I2")
        with pytest.raises(ConflictError):
            ws.manual_match("nope", "I1")

        assert ws.session.model_dump_json() == before

    def test_unmatch_restores_original_pools(self):
        ws = _unrelated_workspace()
        before = _pool_ids(ws)

        match = ws.manual_match("B2", "I3")
        ws.unmatch(match.id)

        assert _pool_ids(ws) == before
        assert ws.session.matches == []
        assert ws.session.version == 2

    def test_unmatch_unknown_match(self):
        ws = _unrelated_workspace()
        with pytest.raises(NotFoundError):
            ws.unmatch("missing")

    def test_suggestions(self):
        ws = _workspace(
            bank=[_bank("B1", 5, credit="1000.00")],
            internal=[_internal("I1", 8, "1000.00"), _internal("I2", 25, "-70.00", "Fuel")],
        )

        suggestions = ws.get_suggestions("B1")

        assert [s.internal_transaction.id for s in suggestions] == ["I1"]
        assert ws.session.version == 0

    def test_suggestions_unknown_or_matched(self):
        ws = _unrelated_workspace()
        ws.manual_match("B1", "I1")

        with pytest.raises(NotFoundError):
            ws.get_suggestions("B99")
        with pytest.raises(ConflictError):
            ws.get_suggestions("B1")

    def test_manual_matches_teach_engine(self):
        engine = MatchingEngine("acct-1", config=Settings())
        for n in range(3):
            ws = ReconciliationWorkspace.create(
                account_id="acct-1",
                bank_transactions=[_bank(f"B{n}", 3, "MERCHANT SETTLEMENT", credit="77.00")],
                internal_transactions=[_internal(f"I{n}", 20, "11.00", "Misc")],
                engine=engine,
            )
            ws.manual_match(f"B{n}", f"I{n}")

        rules = engine.get_rules()
        assert len(rules) == 1
        assert rules[0].priority == 50
        assert rules[0].enabled is True

    def test_deferred_learning_waits_for_commit(self):
        engine = MatchingEngine("acct-1", config=Settings())
        workspaces = []
        for n in range(3):
            ws = ReconciliationWorkspace.create(
                account_id="acct-1",
                bank_transactions=[_bank(f"B{n}", 3, "MERCHANT SETTLEMENT", credit="77.00")],
                internal_transactions=[_internal(f"I{n}", 20, "11.00", "Misc")],
                engine=engine,
            )
            ws = ReconciliationWorkspace(ws.session, engine=engine, defer_learning=True)
            ws.manual_match(f"B{n}", f"I{n}")
            workspaces.append(ws)

        assert engine.get_rules() == []

        assert [ws.commit_learning() for ws in workspaces] == [1, 1, 1]
        assert len(engine.get_rules()) == 1
        # queue is drained
        assert workspaces[0].commit_learning() == 0


# ── Adjustments ──────────────────────────────────────────────────────


class TestAdjustments:
    def _ws(self) -> ReconciliationWorkspace:
        return _workspace(
            bank=[_bank("B1", 5, credit="1000.00")],
            internal=[_internal("I1", 5, "1000.00")],
            closing_balance=Decimal("985.00"),
        )

    def test_adjustment_changes_difference(self):
        ws = self._ws()
        assert ws.session.difference == Decimal("-15.00")

        entry = ws.add_adjustment(
            AdjustmentEntry(description="Bank fee", amount=Decimal("-15.00"), type="bank-fee")
        )

        assert ws.session.difference == Decimal("0.00")
        ws.remove_adjustment(entry.id)
        assert ws.session.difference == Decimal("-15.00")

    def test_duplicate_adjustment_conflicts(self):
        ws = self._ws()
        entry = ws.add_adjustment(AdjustmentEntry(description="Fee", amount=Decimal("-1")))

        with pytest.raises(ConflictError):
            ws.add_adjustment(entry)

    def test_remove_unknown_adjustment(self):
        with pytest.raises(NotFoundError):
            self._ws().remove_adjustment("missing")

    def test_approve_adjustment(self):
        ws = self._ws()
        entry = ws.add_adjustment(AdjustmentEntry(description="Fee", amount=Decimal("-1")))

        approved = ws.approve_adjustment(entry.id, "carol")

        assert approved.approved is True
        assert approved.approved_by == "carol"
        assert approved.approved_at is not None
        assert ws.session.adjustments[0].approved is True
        with pytest.raises(ConflictError):
            ws.approve_adjustment(entry.id, "carol")


# ── Status flow ──────────────────────────────────────────────────────


class TestStatusFlow:
    def test_partial_reconciliation_can_complete(self):
        """Seven pairs auto-match, three bank lines remain; completion still works."""
        bank = [_bank(f"B{d}", d, credit=f"{d * 100}.00") for d in range(1, 8)]
        bank += [
            _bank("B8", 20, "CHQ 1001", debit="55.00"),
            _bank("B9", 21, "CHQ 1002", debit="65.00"),
            _bank("B10", 22, "CHQ 1003", debit="75.00"),
        ]
        internal = [_internal(f"I{d}", d, f"{d * 100}.00") for d in range(1, 8)]
        ws = _workspace(bank=bank, internal=internal, closing_balance=Decimal("5000.00"))

        matches = ws.auto_match()
        assert len(matches) == 7
        assert len(ws.session.unmatched_bank) == 3
        difference_before = ws.session.difference

        session = ws.complete(user_id="alice")

        assert session.status == "completed"
        assert session.completed_by == "alice"
        assert session.difference == difference_before == Decimal("2200.00")

    def test_approve_requires_completed(self):
        ws = _unrelated_workspace()
        with pytest.raises(ConflictError):
            ws.approve("boss")

    def test_completed_session_rejects_edits(self):
        ws = _unrelated_workspace()
        ws.complete()

        with pytest.raises(ConflictError):
            ws.manual_match("B1", "I1")

    def test_reject(self):
        ws = _unrelated_workspace()
        session = ws.reject(user_id="boss", reason="Wrong statement")

        assert session.status == "rejected"
        assert session.rejection_reason == "Wrong statement"
        with pytest.raises(ConflictError):
            ws.auto_match()

    def test_approved_session_is_immutable(self):
        ws = _unrelated_workspace()
        match = ws.manual_match("B1", "I1")
        entry = ws.add_adjustment(AdjustmentEntry(description="Fee", amount=Decimal("-1")))
        ws.complete()
        ws.approve("boss")
        frozen = ws.session.model_dump_json()

        attempts = [
            lambda: ws.auto_match(),
            lambda: ws.manual_match("B2", "I2"),
            lambda: ws.unmatch(match.id),
            lambda: ws.add_adjustment(AdjustmentEntry(description="x", amount=Decimal("1"))),
            lambda: ws.remove_adjustment(entry.id),
            lambda: ws.approve_adjustment(entry.id, "boss"),
            lambda: ws.complete(),
            lambda: ws.approve("boss"),
            lambda: ws.reject(reason="too late"),
        ]
        for attempt in attempts:
            with pytest.raises(ImmutableStateError):
                attempt()

        assert ws.session.model_dump_json() == frozen

    def test_every_mutation_is_audited(self):
        ws = _unrelated_workspace()
        match = ws.manual_match("B1", "I1", user_id="bob")
        ws.unmatch(match.id, user_id="bob")
        ws.complete(user_id="bob")

        actions = [a.action for a in ws.session.audit_log]
        assert actions == ["session_created", "manual_match", "unmatch", "completed"]
        assert ws.session.version == 3
        assert ws.session.updated_at is not None
