"""Tests for the credits API — balance, history, admin entries and hold verbs."""

import uuid
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import STARTING_CREDITS, auth_headers
from creditflow.api.v1.endpoints import credits as credits_endpoints
from creditflow.main import app as fastapi_app
from creditflow.models.credit_account import CreditAccount
from creditflow.services.approvals import approve_request, fulfill_request, get_request, submit_request

BASE = "/api/v1/credits"


def _submit(db, clock, policy, company, team, requester, estimated=100):
    return submit_request(
        db,
        requester_id=requester.id,
        company_id=company.id,
        team_id=team.id,
        request_type="expert_consult",
        title="Expert consult",
        estimated_credits=estimated,
        clock=clock,
        policy=policy,
    )


@pytest.fixture
def users(directory, account):
    return directory


class TestBalance:
    def test_balance(self, client, company, users):
        resp = client.get(f"{BASE}/balance", headers=auth_headers(users["requester"]))
        assert resp.status_code == 200
        body = resp.json()
        assert body["companyId"] == str(company.id)
        assert body["balance"] == STARTING_CREDITS
        assert body["reserved"] == 0
        assert body["available"] == STARTING_CREDITS
        assert body["subscriptionTier"] == "standard"
        assert body["activeHolds"] == 0

    def test_no_account(self, client, directory):
        resp = client.get(f"{BASE}/balance", headers=auth_headers(directory["owner"]))
        assert resp.status_code == 404

    def test_unexpected_error_is_a_generic_500(self, client, users, caplog):
        # Dependency overrides from the client fixture stay in place.
        quiet_client = TestClient(fastapi_app, raise_server_exceptions=False)
        with patch.object(credits_endpoints, "list_active_holds", side_effect=RuntimeError("boom")):
            resp = quiet_client.get(f"{BASE}/balance", headers=auth_headers(users["requester"]))

        assert resp.status_code == 500
        assert resp.json() == {"error": "InternalError", "message": "Internal server error"}
        assert "boom" not in resp.text
        assert any(r.exc_info and r.exc_info[0] is RuntimeError for r in caplog.records)

    def test_active_holds_listed(self, client, db, clock, policy, company, team, users):
        request = _submit(db, clock, policy, company, team, users["requester"], estimated=75)
        resp = client.get(f"{BASE}/holds", headers=auth_headers(users["requester"]))
        items = resp.json()["items"]
        assert len(items) == 1
        assert items[0]["requestId"] == str(request.id)
        assert items[0]["amount"] == 75
        assert items[0]["state"] == "active"


class TestTransactions:
    def test_newest_first(self, client, db, clock, policy, company, team, users):
        _submit(db, clock, policy, company, team, users["requester"], estimated=50)
        resp = client.get(f"{BASE}/transactions", headers=auth_headers(users["requester"]))
        body = resp.json()
        assert resp.status_code == 200
        assert body["total"] == 2
        assert [e["kind"] for e in body["items"]] == ["hold_place", "grant"]
        hold_place = body["items"][0]
        assert hold_place["signedAmount"] == 50
        assert hold_place["balanceAfter"] == STARTING_CREDITS
        assert hold_place["reservedAfter"] == 50

    def test_pagination(self, client, db, clock, policy, company, team, users):
        for _ in range(3):
            _submit(db, clock, policy, company, team, users["requester"], estimated=10)
        resp = client.get(f"{BASE}/transactions?page=2&pageSize=3", headers=auth_headers(users["admin"]))
        body = resp.json()
        assert body["total"] == 4
        assert body["page"] == 2
        assert body["pageSize"] == 3
        assert len(body["items"]) == 1
        assert body["hasMore"] is False

    def test_filter_by_kind(self, client, db, clock, policy, company, team, users):
        _submit(db, clock, policy, company, team, users["requester"], estimated=10)
        resp = client.get(f"{BASE}/transactions?kind=grant", headers=auth_headers(users["admin"]))
        assert [e["kind"] for e in resp.json()["items"]] == ["grant"]

    def test_invalid_kind(self, client, users):
        resp = client.get(f"{BASE}/transactions?kind=bonus", headers=auth_headers(users["admin"]))
        assert resp.status_code == 400
        assert resp.json() == {"error": "ValidationError", "message": "Invalid kind 'bonus'"}


class TestAdminEntries:
    def test_grant(self, client, db, company, users):
        resp = client.post(
            f"{BASE}/grant",
            json={"amount": 500, "description": "Quarterly top-up"},
            headers=auth_headers(users["admin"]),
        )
        assert resp.status_code == 201
        entry = resp.json()["entry"]
        assert entry["kind"] == "grant"
        assert entry["balanceAfter"] == STARTING_CREDITS + 500
        assert entry["actorUserId"] == str(users["admin"].id)

    def test_negative_adjustment(self, client, users):
        resp = client.post(
            f"{BASE}/grant",
            json={"amount": -200, "kind": "adjust"},
            headers=auth_headers(users["owner"]),
        )
        assert resp.status_code == 201
        assert resp.json()["entry"]["balanceAfter"] == STARTING_CREDITS - 200

    def test_grant_must_be_positive(self, client, users):
        resp = client.post(f"{BASE}/grant", json={"amount": -5}, headers=auth_headers(users["admin"]))
        assert resp.status_code == 400

    def test_adjustment_cannot_eat_reserved_credits(self, client, db, clock, policy, company, team, users):
        _submit(db, clock, policy, company, team, users["requester"], estimated=900)
        resp = client.post(
            f"{BASE}/grant",
            json={"amount": -200, "kind": "adjust"},
            headers=auth_headers(users["owner"]),
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "InsufficientCredits"

    def test_approver_cannot_grant(self, client, users):
        resp = client.post(f"{BASE}/grant", json={"amount": 10}, headers=auth_headers(users["approver"]))
        assert resp.status_code == 403

    def test_refund(self, client, db, clock, policy, company, team, users):
        request = _submit(db, clock, policy, company, team, users["requester"], estimated=300)
        approve_request(db, request.id, actor_user_id=users["approver"].id, clock=clock)
        fulfill_request(db, request.id, actor_user_id=users["approver"].id, clock=clock, actual_credits=300)

        resp = client.post(
            f"{BASE}/refund",
            json={"requestId": str(request.id), "amount": 100},
            headers=auth_headers(users["admin"]),
        )
        assert resp.status_code == 201
        assert resp.json()["entry"]["balanceAfter"] == STARTING_CREDITS - 200

        resp = client.post(
            f"{BASE}/refund",
            json={"requestId": str(request.id), "amount": 201},
            headers=auth_headers(users["admin"]),
        )
        assert resp.status_code == 400


class TestReconcile:
    def test_consistent(self, client, db, clock, policy, company, team, users):
        _submit(db, clock, policy, company, team, users["requester"], estimated=120)
        resp = client.get(f"{BASE}/reconcile", headers=auth_headers(users["admin"]))
        body = resp.json()
        assert resp.status_code == 200
        assert body["consistent"] is True
        assert body["ledgerReserved"] == body["storedReserved"] == body["activeHolds"] == 120

    def test_reports_drift(self, client, db, company, users):
        account = db.query(CreditAccount).filter(CreditAccount.company_id == company.id).one()
        account.balance = account.balance + 1
        db.commit()

        body = client.get(f"{BASE}/reconcile", headers=auth_headers(users["owner"])).json()
        assert body["consistent"] is False
        assert body["storedBalance"] == STARTING_CREDITS + 1
        assert body["ledgerBalance"] == STARTING_CREDITS

    def test_member_cannot_reconcile(self, client, users):
        assert client.get(f"{BASE}/reconcile", headers=auth_headers(users["requester"])).status_code == 403


class TestHoldVerbs:
    def test_release_cancels_request(self, client, db, clock, policy, company, team, users):
        request = _submit(db, clock, policy, company, team, users["requester"], estimated=250)
        hold_id = request.hold_id

        resp = client.post(f"{BASE}/hold/{hold_id}/release", headers=auth_headers(users["admin"]))
        assert resp.status_code == 200
        hold = resp.json()["hold"]
        assert hold["state"] == "released"
        assert hold["resolvedAt"] == "2026-03-02T09:00:00"

        db.expire_all()
        assert get_request(db, request.id).status == "cancelled"

        resp = client.post(f"{BASE}/hold/{hold_id}/release", headers=auth_headers(users["admin"]))
        assert resp.status_code == 409

    def test_convert_fulfills_approved_request(self, client, db, clock, policy, company, team, users):
        request = _submit(db, clock, policy, company, team, users["requester"], estimated=250)
        approve_request(db, request.id, actor_user_id=users["approver"].id, clock=clock)

        resp = client.post(
            f"{BASE}/hold/{request.hold_id}/convert",
            json={"actualCredits": 200},
            headers=auth_headers(users["owner"]),
        )
        assert resp.status_code == 200
        hold = resp.json()["hold"]
        assert hold["state"] == "converted"
        assert hold["convertedAmount"] == 200

        db.expire_all()
        fulfilled = get_request(db, request.id)
        assert fulfilled.status == "fulfilled"
        assert fulfilled.actual_credits == 200

    def test_convert_pending_request_is_invalid(self, client, db, clock, policy, company, team, users):
        request = _submit(db, clock, policy, company, team, users["requester"])
        resp = client.post(f"{BASE}/hold/{request.hold_id}/convert", headers=auth_headers(users["owner"]))
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidTransition"

    def test_unknown_hold(self, client, users):
        resp = client.post(f"{BASE}/hold/{uuid.uuid4()}/release", headers=auth_headers(users["admin"]))
        assert resp.status_code == 404

    def test_member_cannot_release(self, client, db, clock, policy, company, team, users):
        request = _submit(db, clock, policy, company, team, users["requester"])
        resp = client.post(f"{BASE}/hold/{request.hold_id}/release", headers=auth_headers(users["requester"]))
        assert resp.status_code == 403
