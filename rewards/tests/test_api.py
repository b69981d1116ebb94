"""
API Tests for the Reward Ledger HTTP surface

Tests cover:
1. Error body shape and status codes
2. Submission -> approval -> redemption -> cancellation flow
3. Oracle endpoints with and without a configured bridge
4. Reconciliation trigger and status
"""

import pytest
from fastapi.testclient import TestClient

from rewards.api import create_app
from rewards.config import Settings
from rewards.service import RewardsService

ALICE = "0x" + "a1" * 20


@pytest.fixture
def settings():
    settings = Settings()
    settings.RECONCILE_INTERVAL_SECONDS = 0
    return settings


@pytest.fixture
def client(settings, oracle_service, bridge):
    return TestClient(create_app(settings=settings, service=oracle_service, bridge=bridge))


@pytest.fixture
def offline_client(settings, service):
    return TestClient(create_app(settings=settings, service=service))


def approved_user(client):
    submission = client.post("/submissions", json={
        "wallet_address": ALICE, "quest_id": "beach-cleanup", "proof_reference": "ipfs://proof",
    }).json()["submission"]
    response = client.patch(f"/admin/submissions/{submission['id']}", json={"verified": True})
    assert response.status_code == 200
    return response.json()["submission"]


class TestSystem:
    """Tests for health and error handling."""

    def test_health(self, client):
        """Test the liveness endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["oracle_configured"] is True

    def test_invalid_body_returns_400(self, client):
        """Test request validation failures use the common error body."""
        response = client.post("/submissions", json={"wallet_address": "nope", "quest_id": "beach-cleanup"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert "wallet_address" in body["error"]

    def test_invalid_query_returns_400(self, client):
        """Test invalid query specifiers are rejected at the boundary."""
        response = client.get("/submissions", params={"limit": 500})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unknown_user_returns_404(self, client):
        """Test NotFound maps to 404."""
        response = client.get(f"/users/{ALICE}")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": f"User {ALICE} not found"}


class TestRewardFlow:
    """Tests for the end-to-end reward flow."""

    def test_submission_to_cancelled_redemption(self, client):
        """Test award, redeem and refund through the API."""
        submission = approved_user(client)
        assert submission["impact_points_earned"] == 50
        assert submission["certification_status"] == "certified"

        balance = client.get(f"/users/{ALICE}/balance").json()
        assert balance["success"] is True
        assert balance["reward_tokens"] == 2

        created = client.post("/redemptions", json={"wallet_address": ALICE, "purchase_amount": "10"})
        assert created.status_code == 201
        redemption = created.json()["redemption"]
        assert created.json()["remaining_tokens"] == 1

        cancelled = client.patch(f"/admin/redemptions/{redemption['id']}", json={"status": "cancelled"})
        assert cancelled.status_code == 200
        assert cancelled.json()["redemption"]["status"] == "cancelled"
        assert client.get(f"/users/{ALICE}/balance").json()["reward_tokens"] == 2

        again = client.patch(f"/admin/redemptions/{redemption['id']}", json={"status": "completed"})
        assert again.status_code == 400
        assert again.json()["success"] is False
        assert "Only pending" in again.json()["error"]

        history = client.get(f"/users/{ALICE}/transactions").json()
        assert [t["kind"] for t in history["transactions"]] == [
            "redemption_refund", "redemption_debit", "quest_reward",
        ]

    def test_invalid_redemption_status(self, client):
        """Test an unsupported target status is rejected."""
        approved_user(client)
        redemption = client.post(
            "/redemptions", json={"wallet_address": ALICE, "purchase_amount": "10"}
        ).json()["redemption"]

        response = client.patch(f"/admin/redemptions/{redemption['id']}", json={"status": "refunded"})

        assert response.status_code == 400
        assert response.json()["error"] == 'Invalid status. Must be "completed" or "cancelled"'

    def test_insufficient_tokens(self, client):
        """Test an unaffordable redemption reports required and available tokens."""
        approved_user(client)

        response = client.post("/redemptions", json={"wallet_address": ALICE, "purchase_amount": "1000"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Insufficient tokens", "required": 100, "available": 2}
        assert client.get("/redemptions").json()["count"] == 0

    def test_user_summary_and_stats(self, client):
        """Test the user summary and dashboard aggregates."""
        approved_user(client)

        user = client.get(f"/users/{ALICE}").json()
        assert user["user"]["current_stage"] == "seedling"
        assert user["summary"]["next_stage_at"] == 100

        stats = client.get("/admin/stats").json()
        assert stats["total_users"] == 1
        assert stats["verified_submissions"] == 1
        assert stats["total_tokens_outstanding"] == 2


class TestOracleEndpoints:
    """Tests for oracle endpoints."""

    def test_mint_rejects_negative_amount(self, client, ledger_client):
        """Test a non-positive amount fails before touching the ledger."""
        response = client.post("/oracle/mint-tokens", json={"user_address": ALICE, "amount": -5})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Invalid amount. Must be a positive number"}
        assert ledger_client.applied == []

    def test_mint_requires_fields(self, client):
        """Test missing fields are reported."""
        response = client.post("/oracle/mint-tokens", json={"amount": 5})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields: user_address, amount"

    def test_mint_records_oracle_mint(self, client, ledger_client):
        """Test a manual mint is journaled without changing the off-chain balance."""
        approved_user(client)

        response = client.post("/oracle/mint-tokens", json={"user_address": ALICE, "amount": 2})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["transaction"]["kind"] == "oracle_mint"
        assert ledger_client.balance_of(ALICE) == 2 * 10 ** 18
        balance = client.get(f"/users/{ALICE}/balance").json()
        assert balance["reward_tokens"] == 2
        assert balance["tokens_minted"] == 2

    def test_complete_quest_twice(self, client):
        """Test the second certification of the same proof reports already certified."""
        payload = {"user_address": ALICE, "quest_id": 7, "proof_data": "photo"}

        first = client.post("/oracle/complete-quest", json=payload).json()
        second = client.post("/oracle/complete-quest", json=payload).json()

        assert first["already_certified"] is False
        assert first["transaction_hash"] is not None
        assert second["already_certified"] is True
        assert second["proof_hash"] == first["proof_hash"]

    def test_complete_quest_requires_fields(self, client):
        """Test certification needs an address and quest id."""
        response = client.post("/oracle/complete-quest", json={"user_address": ALICE})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields: user_address, quest_id"

    def test_oracle_status(self, client, signer):
        """Test the readiness readout."""
        body = client.get("/oracle/mint-tokens").json()

        assert body["configured"] is True
        assert body["oracle_address"] == signer.address

    def test_not_configured(self, offline_client):
        """Test oracle operations report 503 without a bridge."""
        assert offline_client.get("/oracle/mint-tokens").json()["configured"] is False

        response = offline_client.post("/oracle/mint-tokens", json={"user_address": ALICE, "amount": 1})
        assert response.status_code == 503
        assert response.json() == {"success": False, "error": "Oracle service not configured"}

        assert offline_client.post("/reconciliation/run").status_code == 503
        assert offline_client.get("/reconciliation/status").json()["configured"] is False


class TestReconciliationEndpoints:
    """Tests for the reconciliation trigger."""

    def test_run_and_status(self, client, ledger_client):
        """Test a run mints the outstanding delta and shows up in the status."""
        approved_user(client)

        report = client.post("/reconciliation/run").json()

        assert report["success"] is True
        assert report["total_minted"] == 2
        assert report["minted"][0]["wallet_address"] == ALICE
        assert ledger_client.balance_of(ALICE) == 2 * 10 ** 18

        status = client.get("/reconciliation/status").json()
        assert status["configured"] is True
        assert status["running"] is False
        assert status["last_report"]["users_checked"] == 1

    def test_unknown_realtime_topic(self, client):
        """Test the realtime endpoint rejects unknown topics."""
        response = client.get("/realtime", params={"events": "quest:completed,bogus"})

        assert response.status_code == 400
        assert response.json()["available"][0] == "quest:completed"


def test_service_without_bridge_uses_offline_job(settings):
    """Test an app built around a bridgeless service has reconciliation disabled."""
    app = create_app(settings=settings, service=RewardsService())

    assert app.state.job.configured is False
