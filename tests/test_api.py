"""Tests for the payouts API endpoints."""

import pytest
from datetime import datetime, timedelta
from fastapi import Request
from fastapi.testclient import TestClient

from payouts_sdk.api import app
from payouts_sdk.auth import limiter, rate_limit_key
from payouts_sdk.processor import SimulatorConfig
from payouts_sdk.reconciliation.api import (
    get_lock_registry,
    get_processor,
    get_session_factory,
    get_stats_cache,
)
from payouts_sdk.reconciliation.service import PayoutLockRegistry

from conftest import ACCOUNT_ID, CHURCH_ID


@pytest.fixture
def client(session_factory, processor, stats_cache, monkeypatch):
    """Test client wired to the test database and the simulator."""
    monkeypatch.setattr(limiter, "enabled", False)
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_stats_cache] = lambda: stats_cache
    app.dependency_overrides[get_lock_registry] = PayoutLockRegistry
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
async def scenario(seeder, scenario_payout):
    await seeder.connect()
    await seeder.donation("pi_c1", 5000)
    await seeder.donation("pi_c2", 5000, covered=150, platform_fee=50)
    return await seeder.payout("po_scenario_1", 9700)


class TestAuthentication:
    """Tests for bearer API key checks."""

    def test_missing_credentials_rejected(self, client):
        response = client.get("/payouts/stats", params={"church_id": CHURCH_ID})
        assert response.status_code in (401, 403)

    def test_wrong_key_rejected(self, client, mock_api_key):
        response = client.get(
            "/payouts/stats",
            params={"church_id": CHURCH_ID},
            headers={"Authorization": "Bearer wrong_key"},
        )
        assert response.status_code == 401

    def test_health_is_public(self, client):
        response = client.get("/payouts/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "payouts"}

    def test_rate_limiter_is_configured(self):
        assert app.state.limiter is limiter

    def test_rate_limit_buckets_by_credential(self):
        """Test that callers sharing an address are limited per API key."""
        def request(headers):
            return Request({"type": "http", "headers": headers, "client": ("10.0.0.1", 4711)})

        first = request([(b"authorization", b"Bearer key_one")])
        second = request([(b"authorization", b"Bearer key_two")])

        assert rate_limit_key(first).startswith("key:")
        assert rate_limit_key(first) != rate_limit_key(second)
        assert rate_limit_key(request([])) == "10.0.0.1"


class TestReconcileEndpoint:
    """Tests for POST /payouts/reconcile."""

    async def test_reconcile_flags_mismatch(self, client, auth_headers, scenario):
        response = client.post(
            "/payouts/reconcile",
            json={"payout_id": scenario.id},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "flagged"
        assert data["aggregates"]["gross_volume"] == 10200
        assert data["aggregates"]["net_amount"] == 9900
        assert data["aggregates"]["discrepancy_amount"] == 200
        assert "po_scenario_1" in data["message"]

    async def test_second_call_returns_stored_result(self, client, auth_headers, scenario):
        first = client.post("/payouts/reconcile", json={"payout_id": scenario.id}, headers=auth_headers)
        second = client.post("/payouts/reconcile", json={"payout_id": scenario.id}, headers=auth_headers)

        assert second.status_code == 200
        assert second.json()["outcome"] == "already_reconciled"
        assert second.json()["aggregates"] == first.json()["aggregates"]

    async def test_unknown_payout_is_404(self, client, auth_headers):
        response = client.post(
            "/payouts/reconcile",
            json={"payout_id": "does-not-exist"},
            headers=auth_headers,
        )
        assert response.status_code == 404

    async def test_not_connected_is_409(self, client, auth_headers, seeder):
        payout = await seeder.payout("po_orphan", 100, church_id="church_unboarded")

        response = client.post(
            "/payouts/reconcile",
            json={"payout_id": payout.id},
            headers=auth_headers,
        )

        assert response.status_code == 409
        assert "onboarding" in response.json()["detail"]

    async def test_processor_failure_is_502(self, client, auth_headers, processor, scenario):
        """Test that the error names the payout and the payout stays retryable."""
        processor.set_payout_unavailable("po_scenario_1")

        response = client.post(
            "/payouts/reconcile",
            json={"payout_id": scenario.id},
            headers=auth_headers,
        )

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["processor_payout_reference"] == "po_scenario_1"
        assert "po_scenario_1" in detail["message"]


class TestReconcileAllEndpoint:

    async def test_reconcile_all(self, client, auth_headers, processor, scenario, seeder):
        processor.add_payout(ACCOUNT_ID, 0, [], payout_id="po_empty")
        await seeder.payout("po_empty", 0)

        response = client.post(
            "/payouts/reconcile-all",
            json={"church_id": CHURCH_ID},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["reconciled"] == 2
        assert data["flagged"] == 1
        assert data["failed"] == 0
        assert len(data["results"]) == 2

    def test_not_connected_is_409(self, client, auth_headers):
        response = client.post(
            "/payouts/reconcile-all",
            json={"church_id": "church_unboarded"},
            headers=auth_headers,
        )
        assert response.status_code == 409


class TestImportEndpoints:
    """Tests for GET and POST /payouts/import."""

    async def test_check_available(self, client, auth_headers, processor, seeder):
        await seeder.connect()
        processor.add_payout(ACCOUNT_ID, 100, payout_id="po_avail_1")

        response = client.get("/payouts/import", params={"church_id": CHURCH_ID}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["has_account"] is True
        assert response.json()["available_count"] == 1

    async def test_check_available_slow_processor_is_502(
        self, client, auth_headers, processor, seeder, monkeypatch
    ):
        await seeder.connect()
        monkeypatch.setenv("PROCESSOR_TIMEOUT_SECONDS", "0.05")
        processor.config = SimulatorConfig(delay_ms=300)

        response = client.get("/payouts/import", params={"church_id": CHURCH_ID}, headers=auth_headers)

        assert response.status_code == 502
        assert "timed out" in response.json()["detail"]

    def test_check_available_without_account(self, client, auth_headers):
        response = client.get(
            "/payouts/import",
            params={"church_id": "church_unboarded"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["has_account"] is False

    async def test_import_twice(self, client, auth_headers, processor, seeder):
        await seeder.connect()
        for i in range(3):
            processor.add_payout(ACCOUNT_ID, 100, payout_id=f"po_api_{i}")

        first = client.post("/payouts/import", json={"church_id": CHURCH_ID, "limit": 50}, headers=auth_headers)
        second = client.post("/payouts/import", json={"church_id": CHURCH_ID, "limit": 50}, headers=auth_headers)

        assert first.status_code == 200
        assert (first.json()["imported"], first.json()["skipped"]) == (3, 0)
        assert (second.json()["imported"], second.json()["skipped"]) == (0, 3)

    def test_import_not_connected_is_409(self, client, auth_headers):
        response = client.post(
            "/payouts/import",
            json={"church_id": "church_unboarded"},
            headers=auth_headers,
        )
        assert response.status_code == 409

    async def test_import_processor_failure_reports_partial_counts(
        self, client, auth_headers, processor, seeder
    ):
        await seeder.connect()
        processor.add_payout(ACCOUNT_ID, 100, payout_id="po_api_x")
        processor.config = SimulatorConfig(fail_list_after_pages=0)

        response = client.post("/payouts/import", json={"church_id": CHURCH_ID}, headers=auth_headers)

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["imported"] == 0
        assert "outage" in detail["message"]

    def test_import_validation(self, client, auth_headers):
        too_many = client.post(
            "/payouts/import",
            json={"church_id": CHURCH_ID, "limit": 500},
            headers=auth_headers,
        )
        backwards = client.post(
            "/payouts/import",
            json={
                "church_id": CHURCH_ID,
                "start_date": "2026-02-01T00:00:00",
                "end_date": "2026-01-01T00:00:00",
            },
            headers=auth_headers,
        )

        assert too_many.status_code == 422
        assert backwards.status_code == 400


class TestQueryEndpoints:
    """Tests for stats, listing and revenue."""

    async def test_stats(self, client, auth_headers, seeder):
        await seeder.payout("po_1", 100)
        await seeder.payout("po_2", 100, status="failed")

        response = client.get("/payouts/stats", params={"church_id": CHURCH_ID}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "total": 2,
            "reconciled": 0,
            "pending": 1,
            "failed": 1,
            "needs_review": 0,
        }

    async def test_list_payouts(self, client, auth_headers, seeder):
        now = datetime.utcnow()
        await seeder.payout("po_old", 100, payout_date=now - timedelta(days=2))
        await seeder.payout("po_new", 100, payout_date=now)
        await seeder.payout("po_failed", 100, status="failed", payout_date=now - timedelta(days=1))

        response = client.get("/payouts", params={"church_id": CHURCH_ID}, headers=auth_headers)
        failed = client.get(
            "/payouts",
            params={"church_id": CHURCH_ID, "status": "failed"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["total"] == 3
        assert [p["processor_payout_reference"] for p in response.json()["payouts"]] == [
            "po_new", "po_failed", "po_old",
        ]
        assert [p["processor_payout_reference"] for p in failed.json()["payouts"]] == ["po_failed"]

    async def test_revenue(self, client, auth_headers, seeder):
        await seeder.donation("pi_1", 5000)
        await seeder.donation("pi_2", 5000, covered=150, platform_fee=50)

        response = client.get("/payouts/revenue", params={"church_id": CHURCH_ID}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["gross_revenue"] == 10200
        assert response.json()["donation_count"] == 2
