"""API integration tests for the reconciliation session endpoints."""

from __future__ import annotations

from decimal import Decimal

from app.core.errors import ConflictError
from app.services.reconciliation.store import SessionStore

BASE = "/api/v1/sessions"
RULES = "/api/v1/accounts/acct-api/rules"


def _payload(**overrides) -> dict:
    payload = {
        "account_id": "acct-api",
        "opening_balance": "0",
        "closing_balance": "1140.00",
        "created_by": "alice",
        "bank_transactions": [
            {"id": "B1", "date": "2024-01-05", "description": "DEPOSIT", "credit": "1000.00"},
            {"id": "B2", "date": "2024-01-09", "description": "CHQ 1001", "debit": "60.00"},
            {"id": "B3", "date": "2024-01-15", "description": "INTEREST", "credit": "0.75"},
        ],
        "internal_transactions": [
            {"id": "I1", "date": "2024-01-05", "description": "Deposit", "amount": "1000.00"},
            {"id": "I2", "date": "2024-01-28", "description": "Office chairs", "amount": "-310.00"},
            {"id": "I3", "date": "2024-01-02", "description": "Client refund", "amount": "450.00"},
        ],
    }
    payload.update(overrides)
    return payload


def _create(client, **overrides) -> dict:
    response = client.post(BASE, json=_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


# ── Creation ─────────────────────────────────────────────────────────


def test_create_session(client):
    """POST /api/v1/sessions opens an in-progress session."""
    data = _create(client)

    assert data["status"] == "in-progress"
    assert data["version"] == 0
    assert data["account_id"] == "acct-api"
    assert Decimal(data["book_balance"]) == Decimal("1140.00")
    assert Decimal(data["difference"]) == Decimal("0")
    assert len(data["unmatched_bank"]) == 3
    assert data["period_start"] == "2024-01-02"
    assert data["period_end"] == "2024-01-28"


def test_create_session_invalid_rows(client):
    """Every bad row comes back in one 422 response."""
    response = client.post(
        BASE,
        json=_payload(
            bank_transactions=[
                {"id": "B1", "date": "2024-01-05", "description": "X"},
                {"id": "B2", "date": "nope", "description": "Y", "credit": "1"},
            ],
            internal_transactions=[{"id": "I1", "date": "2024-01-05", "description": "Z"}],
        ),
    )

    assert response.status_code == 422
    errors = response.json()["errors"]
    assert {(e["side"], e["index"], e["field"]) for e in errors} == {
        ("bank", 0, "amount"),
        ("bank", 1, "date"),
        ("internal", 0, "amount"),
    }


def test_get_and_list_sessions(client):
    first = _create(client)
    _create(client, account_id="acct-other")

    response = client.get(f"{BASE}/{first['id']}")
    assert response.status_code == 200
    assert response.json()["id"] == first["id"]

    listing = client.get(BASE, params={"account_id": "acct-api"}).json()
    assert [s["id"] for s in listing] == [first["id"]]
    assert listing[0]["unmatched_bank_count"] == 3
    assert len(client.get(BASE).json()) == 2


def test_get_session_not_found(client):
    response = client.get(f"{BASE}/missing")
    assert response.status_code == 404
    assert "not found" in response.json()["detail"].lower()


def test_delete_session(client):
    session_id = _create(client)["id"]

    response = client.delete(f"{BASE}/{session_id}")

    assert response.status_code == 204
    assert client.get(f"{BASE}/{session_id}").status_code == 404
    assert client.get(BASE).json() == []


def test_delete_session_not_found(client):
    assert client.delete(f"{BASE}/missing").status_code == 404


def test_statistics(client):
    first = _create(client)["id"]
    _create(client)
    _create(client, account_id="acct-other")
    client.post(f"{BASE}/{first}/auto-match")
    client.post(f"{BASE}/{first}/complete", json={"user_id": "alice"})

    response = client.get(f"{BASE}/statistics")

    assert response.status_code == 200
    stats = response.json()
    assert stats["total_sessions"] == 3
    assert stats["sessions_by_status"]["completed"] == 1
    assert stats["sessions_by_status"]["in-progress"] == 2
    assert stats["total_matches"] == 1
    assert stats["total_bank_transactions"] == 9
    assert stats["average_match_rate"] == round(1 / 9, 4)

    scoped = client.get(f"{BASE}/statistics", params={"account_id": "acct-other"}).json()
    assert scoped["account_id"] == "acct-other"
    assert scoped["total_sessions"] == 1
    assert scoped["total_matches"] == 0


# ── Matching ─────────────────────────────────────────────────────────


def test_auto_match(client):
    session_id = _create(client)["id"]

    response = client.post(f"{BASE}/{session_id}/auto-match")

    assert response.status_code == 200, response.text
    matches = response.json()
    assert len(matches) == 1
    assert matches[0]["match_type"] == "exact"
    assert matches[0]["confidence"] == 100

    session = client.get(f"{BASE}/{session_id}").json()
    assert session["version"] == 1
    assert [t["id"] for t in session["unmatched_bank"]] == ["B2", "B3"]


def test_manual_match_and_unmatch(client):
    session_id = _create(client)["id"]

    response = client.post(
        f"{BASE}/{session_id}/matches",
        json={"bank_transaction_id": "B2", "internal_transaction_id": "I2", "user_id": "bob"},
    )
    assert response.status_code == 201, response.text
    match = response.json()
    assert match["match_type"] == "manual"
    assert match["user_id"] == "bob"

    again = client.post(
        f"{BASE}/{session_id}/matches",
        json={"bank_transaction_id": "B2", "internal_transaction_id": "I3"},
    )
    assert again.status_code == 409

    response = client.delete(f"{BASE}/{session_id}/matches/{match['id']}")
    assert response.status_code == 200

    session = client.get(f"{BASE}/{session_id}").json()
    assert session["matches"] == []
    assert [t["id"] for t in session["unmatched_bank"]] == ["B1", "B2", "B3"]
    assert [t["id"] for t in session["unmatched_internal"]] == ["I1", "I2", "I3"]
    assert session["version"] == 2


def test_saved_manual_matches_teach_rule(client):
    for _ in range(3):
        session_id = _create(client)["id"]
        response = client.post(
            f"{BASE}/{session_id}/matches",
            json={"bank_transaction_id": "B2", "internal_transaction_id": "I2"},
        )
        assert response.status_code == 201

    rules = client.get(RULES).json()
    assert len(rules) == 1
    assert rules[0]["source"] == "system"


def test_rejected_save_teaches_nothing(client, monkeypatch):
    session_ids = [_create(client)["id"] for _ in range(3)]

    def _stale_save(self, session, expected_version):
        raise ConflictError(f"Session {session.id} was modified concurrently")

    monkeypatch.setattr(SessionStore, "save", _stale_save)
    for session_id in session_ids:
        response = client.post(
            f"{BASE}/{session_id}/matches",
            json={"bank_transaction_id": "B2", "internal_transaction_id": "I2"},
        )
        assert response.status_code == 409

    assert client.get(RULES).json() == []


def test_unmatch_unknown(client):
    session_id = _create(client)["id"]
    response = client.delete(f"{BASE}/{session_id}/matches/missing")
    assert response.status_code == 404


def test_suggestions(client):
    session_id = _create(client)["id"]

    response = client.get(f"{BASE}/{session_id}/suggestions/B1")

    assert response.status_code == 200
    suggestions = response.json()
    assert suggestions[0]["match_type"] == "exact"
    assert suggestions[0]["internal_transaction"]["id"] == "I1"

    assert client.get(f"{BASE}/{session_id}/suggestions/B99").status_code == 404


def test_auto_match_async(client):
    session_id = _create(client)["id"]

    response = client.post(f"{BASE}/{session_id}/auto-match/async")

    assert response.status_code == 200
    job_id = response.json()["job_id"]

    # TestClient runs background tasks before returning
    job = client.get(f"/api/v1/jobs/{job_id}").json()
    assert job["status"] == "completed", job
    assert job["matched"] == 1
    assert job["version"] == 1

    assert any(j["job_id"] == job_id for j in client.get("/api/v1/jobs").json()["jobs"])


def test_auto_match_async_unknown_session(client):
    response = client.post(f"{BASE}/missing/auto-match/async")
    assert response.status_code == 404


def test_job_not_found(client):
    assert client.get("/api/v1/jobs/missing").status_code == 404
    assert client.post("/api/v1/jobs/missing/cancel").status_code == 404


# ── Adjustments and status flow ──────────────────────────────────────


def test_adjustments(client):
    session_id = _create(client, closing_balance="1100.00")["id"]

    response = client.post(
        f"{BASE}/{session_id}/adjustments",
        json={"description": "Bank fee", "amount": "-40.00", "type": "bank-fee"},
    )
    assert response.status_code == 201, response.text
    adjustment = response.json()

    session = client.get(f"{BASE}/{session_id}").json()
    assert Decimal(session["difference"]) == Decimal("0")

    response = client.post(
        f"{BASE}/{session_id}/adjustments/{adjustment['id']}/approve",
        json={"approver_id": "carol"},
    )
    assert response.status_code == 200
    assert response.json()["approved"] is True

    response = client.delete(f"{BASE}/{session_id}/adjustments/{adjustment['id']}")
    assert response.status_code == 200
    session = client.get(f"{BASE}/{session_id}").json()
    assert Decimal(session["difference"]) == Decimal("-40.00")


def test_full_status_flow(client):
    session_id = _create(client)["id"]
    client.post(f"{BASE}/{session_id}/auto-match")

    # Approving before completion is a conflict
    response = client.post(f"{BASE}/{session_id}/approve", json={"approver_id": "boss"})
    assert response.status_code == 409

    response = client.post(f"{BASE}/{session_id}/complete", json={"user_id": "alice"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["completed_by"] == "alice"

    response = client.post(f"{BASE}/{session_id}/approve", json={"approver_id": "boss"})
    assert response.status_code == 200
    assert response.json()["status"] == "approved"

    # Approved sessions are locked
    response = client.post(
        f"{BASE}/{session_id}/matches",
        json={"bank_transaction_id": "B2", "internal_transaction_id": "I2"},
    )
    assert response.status_code == 423
    response = client.post(f"{BASE}/{session_id}/auto-match")
    assert response.status_code == 423

    session = client.get(f"{BASE}/{session_id}").json()
    assert session["status"] == "approved"
    assert session["version"] == 3

    # and cannot be deleted
    assert client.delete(f"{BASE}/{session_id}").status_code == 423


def test_complete_without_body(client):
    session_id = _create(client)["id"]
    response = client.post(f"{BASE}/{session_id}/complete")
    assert response.status_code == 200
    assert response.json()["completed_by"] is None


def test_reject(client):
    session_id = _create(client)["id"]

    response = client.post(
        f"{BASE}/{session_id}/reject", json={"user_id": "boss", "reason": "Wrong period"}
    )

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert client.post(f"{BASE}/{session_id}/auto-match").status_code == 409


# ── Report ───────────────────────────────────────────────────────────


def test_report(client):
    session_id = _create(client)["id"]
    client.post(f"{BASE}/{session_id}/auto-match")

    response = client.get(f"{BASE}/{session_id}/report")

    assert response.status_code == 200
    report = response.json()
    assert report["session_id"] == session_id
    assert report["matched_count"] == 1
    assert report["total_bank_transactions"] == 3
    assert report["match_rate"] == round(1 / 3, 4)
    assert report["matches_by_type"]["exact"] == 1
    assert Decimal(report["difference"]) == Decimal("0")


def test_report_not_found(client):
    assert client.get(f"{BASE}/missing/report").status_code == 404
