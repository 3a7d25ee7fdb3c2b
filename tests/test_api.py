"""
Integration tests for the loan servicing API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

import loan_servicing.api
from loan_servicing.api import app, LoanServicingSystem
from loan_servicing.config import LoanServicingConfig


@pytest.fixture
def client():
    """Test client backed by an in-memory system"""
    original_system = loan_servicing.api._system
    loan_servicing.api._system = LoanServicingSystem(LoanServicingConfig(database_url="memory://"))

    yield TestClient(app)

    loan_servicing.api._system = original_system


def create_loan(client, principal="1000.00", term_months=2, client_id="CLIENT1"):
    r = client.post("/loans", json={
        "client_id": client_id,
        "principal": {"amount": principal},
        "interest_rate": "0",
        "term_months": term_months,
        "start_date": "2024-01-15",
    })
    assert r.status_code == 201
    return r.json()["loan_id"]


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestLoanFlow:

    def test_create_and_get_loan(self, client):
        loan_id = create_loan(client)

        r = client.get(f"/loans/{loan_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["principal"] == {"amount": "1000.00", "currency": "KES"}
        assert data["balance"]["amount"] == "1000.00"

        r = client.get(f"/loans/{loan_id}/schedule")
        assert r.status_code == 200
        schedule = r.json()
        assert [row["due_date"] for row in schedule] == ["2024-02-15", "2024-03-15"]
        assert all(row["status"] == "pending" for row in schedule)

    def test_invalid_loan(self, client):
        r = client.post("/loans", json={
            "client_id": "CLIENT1",
            "principal": {"amount": "abc"},
            "interest_rate": "10",
            "term_months": 12,
        })
        assert r.status_code == 400

        r = client.post("/loans", json={
            "client_id": "CLIENT1",
            "principal": {"amount": "1000"},
            "interest_rate": "10",
            "term_months": 12,
            "repayment_frequency": "daily",
        })
        assert r.status_code == 400

    def test_unknown_loan(self, client):
        assert client.get("/loans/missing").status_code == 404
        assert client.get("/loans/missing/schedule").status_code == 404
        r = client.post("/loans/missing/payments", json={"amount": {"amount": "100"}})
        assert r.status_code == 404


class TestPaymentFlow:

    def test_record_and_revert_payment(self, client):
        loan_id = create_loan(client)

        r = client.post(f"/loans/{loan_id}/payments", json={
            "amount": {"amount": "700.00"},
            "payment_method": "mpesa",
            "receipt_number": "QHX12345",
            "created_by": "teller",
        })
        assert r.status_code == 201
        payment = r.json()
        assert payment["applied"]["amount"] == "700.00"
        assert payment["residual"]["amount"] == "0.00"
        assert [i["new_status"] for i in payment["installments"]] == ["paid", "partial"]

        r = client.get(f"/loans/{loan_id}/transactions")
        assert r.status_code == 200
        assert r.json()[0]["receipt_number"] == "QHX12345"

        r = client.post(f"/transactions/{payment['transaction_id']}/revert", json={"reason": "Wrong loan"})
        assert r.status_code == 200
        assert r.json()["reversed"]["amount"] == "700.00"

        r = client.get(f"/loans/{loan_id}")
        assert r.json()["balance"]["amount"] == "1000.00"

        r = client.post(f"/transactions/{payment['transaction_id']}/revert", json={"reason": "Again"})
        assert r.status_code == 400

    def test_overpayment_and_client_draw_down(self, client):
        first = create_loan(client, principal="400.00", term_months=1)
        second = create_loan(client, principal="600.00", term_months=2)

        r = client.post(f"/loans/{first}/payments", json={"amount": {"amount": "1000.00"}})
        assert r.json()["residual"]["amount"] == "600.00"
        assert r.json()["wallet_transaction_id"] is not None

        r = client.get("/clients/CLIENT1/wallet")
        assert r.json()["balance"]["amount"] == "600.00"

        r = client.post("/clients/CLIENT1/draw-down-payments", json={
            "target_loan_id": second,
            "amount": {"amount": "450.00"},
        })
        assert r.status_code == 201
        assert r.json()["receipt_number"].startswith("CDD-")

        r = client.post("/clients/CLIENT1/wallet/withdrawals", json={"amount": {"amount": "150.00"}})
        assert r.status_code == 201
        assert r.json()["new_balance"] == "0.00"

        r = client.post("/clients/CLIENT1/wallet/withdrawals", json={"amount": {"amount": "1.00"}})
        assert r.status_code == 400

    def test_draw_down_payment(self, client):
        loan_id = create_loan(client)

        r = client.post(f"/loans/{loan_id}/draw-down-funds", json={"amount": {"amount": "300"}})
        assert r.status_code == 200
        assert r.json()["draw_down_balance"]["amount"] == "300.00"

        r = client.post(f"/loans/{loan_id}/draw-down-payments", json={"amount": {"amount": "500"}})
        assert r.status_code == 400

        r = client.post(f"/loans/{loan_id}/draw-down-payments", json={"amount": {"amount": "300"}})
        assert r.status_code == 201
        assert r.json()["receipt_number"].startswith("DD-")

    def test_payment_validation(self, client):
        loan_id = create_loan(client)
        r = client.post(f"/loans/{loan_id}/payments", json={"amount": {"amount": "0"}})
        assert r.status_code == 400
        r = client.post(f"/loans/{loan_id}/payments", json={"amount": {"amount": "10", "currency": "XYZ"}})
        assert r.status_code == 400
        r = client.post(f"/loans/{loan_id}/payments", json={"amount": {"amount": "10", "currency": "USD"}})
        assert r.status_code == 400

    def test_payment_defaults_to_loan_currency(self, client):
        r = client.post("/loans", json={
            "client_id": "CLIENT1",
            "principal": {"amount": "1000", "currency": "UGX"},
            "interest_rate": "0",
            "term_months": 1,
        })
        loan_id = r.json()["loan_id"]

        r = client.post(f"/loans/{loan_id}/payments", json={"amount": {"amount": "1500"}})
        assert r.status_code == 201
        assert r.json()["residual"] == {"amount": "500", "currency": "UGX"}

        r = client.get("/clients/CLIENT1/wallet", params={"currency": "UGX"})
        assert r.json()["balance"] == {"amount": "500", "currency": "UGX"}
        assert len(r.json()["transactions"]) == 1

        r = client.get("/clients/CLIENT1/wallet")
        assert r.json()["balance"]["amount"] == "0.00"

        r = client.get("/clients/CLIENT1/wallet", params={"currency": "XYZ"})
        assert r.status_code == 400

    def test_global_draw_down_payment(self, client):
        target = create_loan(client)
        source = create_loan(client, client_id="CLIENT2")
        client.post(f"/loans/{source}/draw-down-funds", json={"amount": {"amount": "250"}})

        r = client.get("/draw-down-balance")
        assert r.json()["draw_down_balance"]["amount"] == "250.00"

        r = client.post(f"/loans/{target}/global-draw-down-payments", json={"amount": {"amount": "300"}})
        assert r.status_code == 400

        r = client.post(f"/loans/{target}/global-draw-down-payments", json={"amount": {"amount": "200"}})
        assert r.status_code == 201
        assert r.json()["receipt_number"].startswith("DD-")
        assert r.json()["applied"]["amount"] == "200.00"

        r = client.get("/draw-down-balance")
        assert r.json()["draw_down_balance"]["amount"] == "50.00"

    def test_post_and_revert_fee(self, client):
        loan_id = create_loan(client)

        r = client.post(f"/loans/{loan_id}/fees", json={
            "amount": {"amount": "50"},
            "fee_type": "late_fee",
            "notes": "March",
        })
        assert r.status_code == 201
        assert r.json()["notes"] == "late_fee: March"
        fee_id = r.json()["transaction_id"]

        r = client.get(f"/loans/{loan_id}")
        assert r.json()["balance"]["amount"] == "1000.00"

        r = client.post(f"/transactions/{fee_id}/revert", json={"reason": "Waived"})
        assert r.status_code == 200
        assert r.json()["reversed"]["amount"] == "0.00"
        assert r.json()["installments"] == []

        r = client.post(f"/loans/{loan_id}/fees", json={"amount": {"amount": "50"}, "fee_type": "parking_fee"})
        assert r.status_code == 400
