"""
Integration tests for the Credit Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from datetime import date
from fastapi.testclient import TestClient

from credit_ledger.api import create_app
from credit_ledger.api.system import LedgerSystem
from credit_ledger.storage import InMemoryStorage


@pytest.fixture
def client():
    """Create a test client over an in-memory ledger with a fixed clock"""
    system = LedgerSystem(storage=InMemoryStorage(), clock=lambda: date(2024, 1, 31))
    return TestClient(create_app(system))


@pytest.fixture
def facility(client):
    """A bank and a 2,000,000 revolving facility at 2% margin"""
    bank = client.post("/banks", json={"user_id": "user_1", "name": "Gulf Bank", "code": "GB"}).json()
    r = client.post("/facilities", json={
        "bank_id": bank["id"],
        "user_id": "user_1",
        "name": "Working Capital",
        "facility_type": "revolving",
        "credit_limit": "2000000",
        "margin": "2.0",
        "start_date": "2024-01-01"
    })
    assert r.status_code == 201
    return r.json()


def draw(client, facility, **overrides):
    payload = {
        "facility_id": facility["id"],
        "amount": "1000000",
        "start_date": "2024-01-01",
        "term_months": 1,
        "benchmark_rate": "5.5"
    }
    payload.update(overrides)
    return client.post("/loans", json=payload)


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Credit Ledger API"
        assert "loans" in data["endpoints"]


class TestFacilityFlow:
    """Banks, facilities and credit lines over HTTP"""

    def test_create_and_get_facility(self, client, facility):
        client.post(f"/facilities/{facility['id']}/credit-lines",
                    json={"name": "Trade", "credit_limit": "500000"})

        r = client.get(f"/facilities/{facility['id']}")
        assert r.status_code == 200
        data = r.json()
        assert data["facility_type"] == "revolving"
        assert len(data["credit_lines"]) == 1

        listed = client.get("/facilities", params={"user_id": "user_1"}).json()
        assert len(listed["facilities"]) == 1

    def test_duplicate_bank_code(self, client, facility):
        r = client.post("/banks", json={"user_id": "user_1", "name": "Other", "code": "GB"})
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "unique_violation"

    def test_limit_change(self, client, facility):
        r = client.post(f"/facilities/{facility['id']}/limit", json={"new_limit": "2500000"})
        assert r.status_code == 200
        assert Decimal(r.json()["credit_limit"]) == Decimal('2500000')

        transactions = client.get(f"/facilities/{facility['id']}/transactions").json()
        assert [t["transaction_type"] for t in transactions["transactions"]] == ["limit_change"]

    def test_unknown_facility(self, client):
        r = client.get("/facilities/nope")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "not_found"


class TestLoanFlow:
    """Draw, repay, revolve and settle"""

    def test_draw_loan(self, client, facility):
        r = draw(client, facility, start_date="2024-01-03")
        assert r.status_code == 201
        loan = r.json()
        assert loan["status"] == "active"
        assert Decimal(loan["bank_rate"]) == Decimal('7.5')
        # 30 days on is Friday 2024-02-02; the weekend rolls it to Sunday
        assert loan["due_date"] == "2024-02-04"

        utilization = client.get(f"/facilities/{facility['id']}/utilization").json()
        assert Decimal(utilization["used"]) == Decimal('1000000')
        assert Decimal(utilization["utilization_percent"]) == Decimal('50')

    def test_accrued_interest(self, client, facility):
        loan = draw(client, facility).json()
        r = client.get(f"/loans/{loan['id']}/accrued-interest")
        assert r.json()["accrued_interest"] == "6250.00"

    def test_revolve_blocked_by_accrued_interest(self, client, facility):
        loan = draw(client, facility).json()

        r = client.post(f"/loans/{loan['id']}/revolve", json={"new_term_months": 3, "new_benchmark_rate": "5.6"})
        assert r.status_code == 409
        error = r.json()["error"]
        assert error["code"] == "precondition_violation"
        assert "accrued interest of 6250.00 must be settled" in error["message"]

        r = client.post(f"/loans/{loan['id']}/repayments", json={
            "amount": "6250",
            "payment_date": "2024-01-31",
            "allocation": {"interest": "6250"}
        })
        assert r.status_code == 201

        r = client.post(f"/loans/{loan['id']}/revolve", json={"new_term_months": 3, "new_benchmark_rate": "5.6"})
        assert r.status_code == 201
        successor = r.json()
        assert successor["cycle_number"] == 2
        assert successor["parent_loan_id"] == loan["id"]
        assert Decimal(successor["bank_rate"]) == Decimal('7.6')

        chain = client.get(f"/loans/{successor['id']}/chain").json()["loans"]
        assert [l["id"] for l in chain] == [loan["id"], successor["id"]]

    def test_revolve_rejects_margin_change(self, client, facility):
        loan = draw(client, facility, start_date="2024-01-31").json()
        r = client.post(f"/loans/{loan['id']}/revolve", json={"new_term_months": 1, "margin": "3.0"})
        assert r.status_code == 400

    def test_repayment_requires_allocation(self, client, facility):
        loan = draw(client, facility).json()
        r = client.post(f"/loans/{loan['id']}/repayments", json={"amount": "100", "payment_date": "2024-01-31"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "validation_error"

    def test_repayment_idempotency(self, client, facility):
        loan = draw(client, facility).json()
        payload = {
            "amount": "500000",
            "payment_date": "2024-01-31",
            "allocation": {"principal": "500000"},
            "idempotency_key": "pay-1"
        }

        first = client.post(f"/loans/{loan['id']}/repayments", json=payload)
        second = client.post(f"/loans/{loan['id']}/repayments", json=payload)
        assert first.status_code == 201
        assert second.status_code == 201
        assert first.json()["transaction"]["id"] == second.json()["transaction"]["id"]
        assert Decimal(second.json()["loan"]["outstanding_principal"]) == Decimal('500000')

        payload["amount"] = "400000"
        payload["allocation"] = {"principal": "400000"}
        conflicting = client.post(f"/loans/{loan['id']}/repayments", json=payload)
        assert conflicting.status_code == 409

    def test_settle_and_reverse(self, client, facility):
        loan = draw(client, facility, start_date="2024-01-31").json()

        r = client.post(f"/loans/{loan['id']}/settle", json={"settlement_date": "2024-01-31"})
        assert r.status_code == 200
        assert r.json()["status"] == "settled"

        r = client.post(f"/loans/{loan['id']}/reverse-settlement", json={"reason": "bounced"})
        assert r.status_code == 200
        assert r.json()["status"] == "active"

    def test_cancel_loan(self, client, facility):
        loan = draw(client, facility).json()
        r = client.request("DELETE", f"/loans/{loan['id']}", json={"reason": "duplicate"})
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"

        utilization = client.get(f"/facilities/{facility['id']}/utilization").json()
        assert Decimal(utilization["used"]) == Decimal('0')

    def test_unknown_loan(self, client):
        assert client.get("/loans/nope").status_code == 404

    def test_malformed_request(self, client, facility):
        r = client.post("/loans", json={"facility_id": facility["id"], "amount": "100"})
        assert r.status_code == 400
        assert "errors" in r.json()["error"]["details"]

    def test_actor_header_recorded(self, client, facility):
        r = draw(client, facility)
        loan_id = r.json()["id"]
        client.post(f"/loans/{loan_id}/repayments", headers={"X-Actor-Id": "treasury_ops"}, json={
            "amount": "1000",
            "payment_date": "2024-01-31",
            "allocation": {"principal": "1000"}
        })

        events = client.get(f"/loans/{loan_id}/audit").json()["events"]
        assert events[-1]["actor"] == "treasury_ops"


class TestCollateralAndSnapshots:
    """Collateral assignment and exposure snapshots over HTTP"""

    def test_assignment_needs_exactly_one_target(self, client, facility):
        asset = client.post("/collateral", json={
            "user_id": "user_1",
            "collateral_type": "real_estate",
            "name": "Warehouse",
            "current_value": "3000000",
            "valuation_date": "2024-01-15"
        }).json()

        r = client.post("/collateral/assignments", json={
            "collateral_id": asset["id"],
            "pledge_type": "first_lien",
            "effective_date": "2024-01-20",
            "facility_id": facility["id"],
            "bank_id": facility["bank_id"]
        })
        assert r.status_code == 400

        r = client.post("/collateral/assignments", json={
            "collateral_id": asset["id"],
            "pledge_type": "first_lien",
            "effective_date": "2024-01-20",
            "facility_id": facility["id"]
        })
        assert r.status_code == 201

        detail = client.get(f"/collateral/{asset['id']}").json()
        assert len(detail["assignments"]) == 1

    def test_snapshot_upsert_is_idempotent(self, client, facility):
        draw(client, facility)
        client.post("/snapshots", json={"user_id": "user_1"})
        client.post("/snapshots", json={"user_id": "user_1"})

        r = client.get("/snapshots", params={"user_id": "user_1", "snapshot_date": "2024-01-31"})
        data = r.json()
        assert data["count"] == 3
        levels = sorted(s["level"] for s in data["snapshots"])
        assert levels == ["bank", "facility", "global"]

    def test_unknown_snapshot_level(self, client):
        r = client.get("/snapshots", params={"user_id": "user_1", "level": "region"})
        assert r.status_code == 400

    def test_audit_chain_verifies(self, client, facility):
        draw(client, facility)
        result = client.get("/audit/verify").json()
        assert result["valid"]
        assert result["total_events"] >= 3
