"""
Integration tests for API endpoints.

Tests the full HTTP request/response cycle against a per-test ledger with a
fake transfer executor.
"""
import pytest
from unittest.mock import MagicMock

from conftest import ALICE, BOB, FARMER
from harvest_ledger.api.dependencies import get_distribution_orchestrator
from harvest_ledger.domain.errors import TransferGatewayError
from harvest_ledger.infrastructure.transfer_executor import TransferOutcome
from harvest_ledger.main import app


# ============================================================
# Health Check Tests
# ============================================================

class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, test_client):
        """Root endpoint should return healthy status."""
        response = test_client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "service" in data
        assert "version" in data

    def test_health_endpoint(self, test_client):
        """Health endpoint should return healthy status."""
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# ============================================================
# Distribution Endpoint Tests
# ============================================================

class TestDistributionEndpoints:
    """Tests for harvest distribution endpoints."""

    def test_distribute_harvest(self, test_client, seeder):
        _, harvest_id = seeder.example_grove()

        response = test_client.post(f"/api/v1/harvests/{harvest_id}/distribution")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "distributed"
        assert data["farmer_share"] == 30_000
        assert {s["beneficiary"]: s["amount"] for s in data["investor_shares"]} == {
            ALICE: 42_000,
            BOB: 28_000,
        }

    def test_second_distribution_is_a_no_op(self, test_client, seeder):
        _, harvest_id = seeder.example_grove()
        test_client.post(f"/api/v1/harvests/{harvest_id}/distribution")

        response = test_client.post(f"/api/v1/harvests/{harvest_id}/distribution")

        assert response.status_code == 200
        assert response.json()["status"] == "already_distributed"

    def test_unknown_harvest(self, test_client):
        response = test_client.post("/api/v1/harvests/999/distribution")

        assert response.status_code == 404
        data = response.json()
        assert data["reason"] == "HARVEST_NOT_FOUND"
        assert "detail" in data

    def test_invalid_harvest_id(self, test_client):
        """Should return 422 for invalid harvest ID format."""
        response = test_client.post("/api/v1/harvests/invalid/distribution")

        assert response.status_code == 422

    def test_negative_revenue(self, test_client, seeder):
        grove_id = seeder.grove()
        harvest_id = seeder.harvest(grove_id, gross=-10)

        response = test_client.post(f"/api/v1/harvests/{harvest_id}/distribution")

        assert response.status_code == 422
        assert response.json()["reason"] == "INVALID_REVENUE"

    def test_pending_and_summary(self, test_client, seeder):
        _, harvest_id = seeder.example_grove()

        pending = test_client.get("/api/v1/harvests/pending").json()
        assert pending["total"] == 1
        assert pending["harvests"][0]["harvest_id"] == harvest_id

        preview = test_client.get(f"/api/v1/harvests/{harvest_id}/preview").json()
        assert preview["farmer_share"] == 30_000

        test_client.post(f"/api/v1/harvests/{harvest_id}/distribution")
        summary = test_client.get(f"/api/v1/harvests/{harvest_id}/distribution").json()
        assert summary["is_distributed"] is True
        assert summary["total_holders"] == 2
        assert test_client.get("/api/v1/harvests/pending").json()["total"] == 0

    def test_batch_distribution(self, test_client, seeder):
        seeder.example_grove()
        seeder.example_grove()

        response = test_client.post("/api/v1/harvests/distributions")

        assert response.status_code == 200
        assert response.json()["distributed_count"] == 2

    def test_unexpected_error_is_hidden(self, test_client):
        """Internal exceptions never reach the client."""
        broken = MagicMock()
        broken.distribute_harvest.side_effect = RuntimeError("connection string with secrets")
        app.dependency_overrides[get_distribution_orchestrator] = lambda: broken

        response = test_client.post("/api/v1/harvests/1/distribution")

        assert response.status_code == 500
        data = response.json()
        assert data["reason"] == "INTERNAL_ERROR"
        assert "secrets" not in response.text


# ============================================================
# Beneficiary Endpoint Tests
# ============================================================

class TestBeneficiaryEndpoints:
    """Tests for balances, history and payouts over HTTP."""

    @pytest.fixture
    def distributed(self, test_client, seeder):
        _, harvest_id = seeder.example_grove()
        test_client.post(f"/api/v1/harvests/{harvest_id}/distribution")
        return harvest_id

    def test_balance(self, test_client, distributed):
        response = test_client.get(f"/api/v1/beneficiaries/{ALICE}/balance")

        assert response.status_code == 200
        data = response.json()
        assert data["available"] == 42_000
        assert data["total_earned"] == 42_000
        assert data["total_withdrawn"] == 0

    def test_balances_shared_across_requests(self, test_client, cache, distributed):
        """The distribution request fills the process-wide cache read by later requests."""
        cached = cache.get(ALICE)

        assert cached is not None
        assert cached.available == 42_000
        balance = test_client.get(f"/api/v1/beneficiaries/{ALICE}/balance").json()
        assert balance["available"] == cached.available

    def test_earnings_history(self, test_client, distributed):
        data = test_client.get(f"/api/v1/beneficiaries/{ALICE}/earnings").json()

        assert data["total_records"] == 1
        assert data["records"][0]["earning_amount"] == 42_000
        assert data["records"][0]["status"] == "unclaimed"

    def test_grove_breakdown(self, test_client, distributed):
        data = test_client.get(f"/api/v1/beneficiaries/{FARMER}/groves").json()

        assert data["groves"][0]["total_earned"] == 30_000

    def test_claim_flow(self, test_client, distributed):
        records = test_client.get(f"/api/v1/beneficiaries/{ALICE}/earnings").json()["records"]

        response = test_client.post(
            f"/api/v1/beneficiaries/{ALICE}/claims",
            json={"earning_record_ids": [r["id"] for r in records], "amount": 42_000},
        )

        assert response.status_code == 201
        payout = response.json()
        assert payout["status"] == "completed"
        assert payout["explorer_url"]

        balance = test_client.get(f"/api/v1/beneficiaries/{ALICE}/balance").json()
        assert balance["available"] == 0
        assert balance["total_withdrawn"] == 42_000

        history = test_client.get(f"/api/v1/beneficiaries/{ALICE}/payouts").json()
        assert [p["id"] for p in history["payouts"]] == [payout["id"]]
        assert test_client.get(f"/api/v1/payouts/{payout['id']}").json()["status"] == "completed"

    def test_claim_amount_mismatch(self, test_client, distributed):
        records = test_client.get(f"/api/v1/beneficiaries/{ALICE}/earnings").json()["records"]

        response = test_client.post(
            f"/api/v1/beneficiaries/{ALICE}/claims",
            json={"earning_record_ids": [r["id"] for r in records], "amount": 1},
        )

        assert response.status_code == 422
        assert response.json()["reason"] == "AMOUNT_MISMATCH"

    def test_withdrawal(self, test_client, distributed):
        response = test_client.post(
            f"/api/v1/beneficiaries/{FARMER}/withdrawals", json={"amount": 12_000}
        )

        assert response.status_code == 201
        assert response.json()["kind"] == "withdrawal"
        balance = test_client.get(f"/api/v1/beneficiaries/{FARMER}/balance").json()
        assert balance["available"] == 18_000

    def test_overdraw(self, test_client, distributed):
        response = test_client.post(
            f"/api/v1/beneficiaries/{FARMER}/withdrawals", json={"amount": 1_000_000}
        )

        assert response.status_code == 422
        assert response.json()["reason"] == "INSUFFICIENT_BALANCE"

    def test_hold_blocks_and_release(self, test_client, store, distributed):
        store.place_hold(FARMER, "under review")

        blocked = test_client.post(
            f"/api/v1/beneficiaries/{FARMER}/withdrawals", json={"amount": 1_000}
        )
        released = test_client.delete(f"/api/v1/beneficiaries/{FARMER}/hold")
        allowed = test_client.post(
            f"/api/v1/beneficiaries/{FARMER}/withdrawals", json={"amount": 1_000}
        )

        assert blocked.status_code == 423
        assert blocked.json()["reason"] == "LEDGER_ON_HOLD"
        assert released.json()["released_holds"] == 1
        assert allowed.status_code == 201


# ============================================================
# Payout Endpoint Tests
# ============================================================

class TestPayoutEndpoints:
    """Tests for payout lookup and reconciliation."""

    def test_unknown_payout(self, test_client):
        response = test_client.get("/api/v1/payouts/claim_missing")

        assert response.status_code == 404
        assert response.json()["reason"] == "PAYOUT_NOT_FOUND"

    def test_reconcile_unknown_outcome(self, test_client, seeder, executor):
        _, harvest_id = seeder.example_grove()
        test_client.post(f"/api/v1/harvests/{harvest_id}/distribution")
        executor.error = TransferGatewayError("gateway unavailable")

        payout = test_client.post(
            f"/api/v1/beneficiaries/{FARMER}/withdrawals", json={"amount": 5_000}
        ).json()
        assert payout["status"] == "processing"
        assert test_client.get("/api/v1/payouts/unresolved").json()["total"] == 1

        executor.known[payout["id"]] = TransferOutcome(success=True, reference="0xsettled")
        response = test_client.post(f"/api/v1/payouts/{payout['id']}/reconcile")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert test_client.get("/api/v1/payouts/unresolved").json()["total"] == 0


# ============================================================
# Response Format Tests
# ============================================================

class TestResponseFormats:
    """Tests for API response formats."""

    def test_openapi_schema_available(self, test_client):
        """OpenAPI schema should be available."""
        response = test_client.get("/openapi.json")

        assert response.status_code == 200
        paths = response.json()["paths"]
        assert "/api/v1/harvests/{harvest_id}/distribution" in paths
        assert "/api/v1/beneficiaries/{beneficiary}/balance" in paths
        assert "/api/v1/payouts/{request_id}/reconcile" in paths

    def test_docs_endpoint_available(self, test_client):
        """Swagger docs should be available."""
        response = test_client.get("/docs")

        assert response.status_code == 200


# ============================================================
# CORS Tests
# ============================================================

class TestCORS:
    """Tests for CORS configuration."""

    def test_cors_headers_present(self, test_client):
        response = test_client.get("/health", headers={"Origin": "https://dashboard.example.com"})

        assert response.status_code == 200
        assert "access-control-allow-origin" in response.headers
