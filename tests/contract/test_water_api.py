"""Contract tests for the water billing API."""

import pytest
from fastapi.testclient import TestClient

from utility_billing.main import create_app
from utility_billing.services.db import build_engine
from tests.factories import CLIENT_ID, TODAY

BASE = f"/api/water/clients/{CLIENT_ID}"

CONFIG = {
    "rate_per_m3": "50.00",
    "minimum_charge": "0",
    "penalty_rate": "0.05",
    "grace_period_days": 10,
}


@pytest.fixture
def client(test_settings):
    """Client for an app on a fresh in-memory database, with today fixed."""
    app = create_app(test_settings, engine=build_engine("sqlite+aiosqlite://"), clock=lambda: TODAY)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def billed(client):
    """Configured client with one unit billed 150.00 for Jul 2025."""
    assert client.put(f"{BASE}/config", json=CONFIG).status_code == 200
    client.post(f"{BASE}/readings/2025/11", json={"readings": {"101": 100}})
    client.post(f"{BASE}/readings/2026/0", json={"readings": {"101": 103}})
    response = client.post(f"{BASE}/bills/generate", json={"fiscal_year": 2026, "fiscal_month": 0})
    assert response.json()["created"] == ["101"]
    return client


def pay(client, amount, ref, date="2025-07-05", unit_id="101"):
    return client.post(
        f"{BASE}/payments/record",
        json={"unit_id": unit_id, "amount": amount, "date": date, "transaction_ref": ref},
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestConfigEndpoints:
    def test_roundtrip(self, client):
        response = client.put(f"{BASE}/config", json=CONFIG)

        assert response.status_code == 200
        data = client.get(f"{BASE}/config").json()
        assert data["rate_per_m3"] == "50.00"
        assert data["fiscal_year_start_month"] == 7
        assert data["due_day"] == 1

    def test_missing_config(self, client):
        response = client.get(f"{BASE}/config")

        assert response.status_code == 404
        assert response.json()["detail"]["error"]["code"] == "not_found"

    def test_invalid_config_rejected(self, client):
        response = client.put(f"{BASE}/config", json={**CONFIG, "rate_per_m3": "0"})

        assert response.status_code == 422


class TestBillEndpoints:
    def test_generated_bill_listed(self, billed):
        data = billed.get(f"{BASE}/bills/2026/0").json()

        assert data["fiscal_month"] == 0
        bill = data["bills"][0]
        assert bill["unit_id"] == "101"
        assert bill["consumption"] == 3
        assert bill["base_charge"] == "150.00"
        assert bill["due_date"] == "2025-07-01"
        assert bill["status"] == "unpaid"

    def test_unpaid_bills(self, billed):
        data = billed.get(f"{BASE}/bills/unpaid/101").json()

        assert data["total_due"] == "150.00"
        assert data["credit_balance"] == "0.00"
        assert [b["period_id"] for b in data["bills"]] == ["2026-00"]

    def test_recalculate_penalties(self, billed):
        response = billed.post(
            f"{BASE}/bills/recalculate-penalties", json={"as_of": "2025-07-20"}
        )

        assert response.status_code == 200
        assert response.json()["updated_bills"] == 1
        assert response.json()["total_penalties"] == "7.50"
        assert response.json()["credit_released"] == "0.00"
        summary = billed.get(f"{BASE}/bills/penalty-summary").json()
        assert summary["total_penalties"] == "7.50"
        assert summary["unpaid_bills"] == 1

    def test_meter_rollback_rejected(self, billed):
        billed.post(f"{BASE}/readings/2026/1", json={"readings": {"101": 90}})

        response = billed.post(f"{BASE}/bills/generate", json={"fiscal_year": 2026, "fiscal_month": 1})

        assert response.status_code == 422
        assert response.json()["detail"]["error"]["code"] == "validation_error"


class TestPaymentEndpoints:
    def test_preview_then_record(self, billed):
        preview = billed.post(
            f"{BASE}/payments/preview", json={"unit_id": "101", "amount": "200.00"}
        ).json()
        assert preview["outcome"] == "overpayment"
        assert preview["credit_created"] == "50.00"

        response = pay(billed, "200.00", "rcpt-1")

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "overpayment"
        assert data["new_bill_statuses"] == {"2026-00": "paid"}
        assert data["new_credit_balance"] == "50.00"
        assert data["allocations"][0]["base"] == "150.00"
        assert data["duplicate"] is False

    def test_retry_returns_stored_outcome(self, billed):
        first = pay(billed, "100.00", "rcpt-1").json()

        again = pay(billed, "100.00", "rcpt-1").json()

        assert again["duplicate"] is True
        assert again["outcome"] == first["outcome"] == "underpayment"
        history = billed.get(f"{BASE}/payments/history/101").json()["payments"]
        assert len(history) == 1

    def test_future_date_rejected_with_prefix(self, billed):
        response = pay(billed, "100.00", "rcpt-1", date="2025-07-06")

        assert response.status_code == 422
        message = response.json()["detail"]["error"]["message"]
        assert message.startswith("Payment not recorded: ")

    @pytest.mark.parametrize("amount", ["0", "-5.00", "10.005"])
    def test_bad_amount_rejected(self, billed, amount):
        assert pay(billed, amount, "rcpt-1").status_code == 422

    def test_reverse_payment(self, billed):
        pay(billed, "200.00", "rcpt-1")

        response = billed.post(f"{BASE}/payments/rcpt-1/reverse")

        assert response.status_code == 200
        data = response.json()
        assert data["restored_bills"] == {"2026-00": "unpaid"}
        assert data["credit_change"] == "-50.00"
        assert data["new_credit_balance"] == "0.00"
        history = billed.get(f"{BASE}/payments/history/101").json()["payments"]
        assert history[0]["status"] == "reversed"

    def test_reverse_unknown_payment(self, billed):
        response = billed.post(f"{BASE}/payments/missing/reverse")

        assert response.status_code == 404
        assert response.json()["detail"]["error"]["message"].startswith("Reversal not applied: ")

    def test_reverse_after_credit_spent_conflicts(self, billed):
        pay(billed, "200.00", "rcpt-1")
        billed.post(
            f"{BASE}/credit/101/adjust",
            json={"amount": "-50.00", "transaction_ref": "adj-1", "note": "Refund"},
        )

        response = billed.post(f"{BASE}/payments/rcpt-1/reverse")

        assert response.status_code == 409
        assert response.json()["detail"]["error"]["code"] == "insufficient_credit"


class TestCreditEndpoints:
    def test_adjust_and_history(self, billed):
        response = billed.post(
            f"{BASE}/credit/101/adjust",
            json={"amount": "25.00", "transaction_ref": "adj-1", "note": "Goodwill"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["balance"] == "25.00"
        entry = data["history"][0]
        assert entry["reason"] == "adjusted"
        assert entry["amount"] == "25.00"
        assert entry["note"] == "Goodwill"

    def test_overdraw_conflicts(self, billed):
        response = billed.post(
            f"{BASE}/credit/101/adjust", json={"amount": "-1.00", "transaction_ref": "adj-1"}
        )

        assert response.status_code == 409
        assert billed.get(f"{BASE}/credit/101").json()["balance"] == "0.00"


class TestAggregatedViewEndpoint:
    def test_view_reflects_payment(self, billed):
        before = billed.get(f"{BASE}/aggregated/2026").json()
        assert before["summary"]["total_unpaid"] == "150.00"
        assert len(before["periods"]) == 12

        pay(billed, "150.00", "rcpt-1")
        after = billed.get(f"{BASE}/aggregated/2026").json()

        unit = after["units"][0]
        assert unit["unit_id"] == "101"
        assert unit["cells"][0]["status"] == "paid"
        assert unit["total_due"] == "0.00"
        assert after["summary"]["collection_rate"] == "100.0"
        assert after["updated_at"] is not None

    def test_readings_invalidate_view(self, billed):
        billed.get(f"{BASE}/aggregated/2026")

        billed.post(f"{BASE}/readings/2026/1", json={"readings": {"101": 110}})
        data = billed.get(f"{BASE}/aggregated/2026").json()

        assert data["updated_at"] is None
        assert data["units"][0]["cells"][1]["status"] == "no-bill"
        assert data["units"][0]["cells"][1]["consumption"] == 7
