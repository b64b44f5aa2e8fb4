"""
Integration tests for FastAPI endpoints.

Tests:
- Quota consume and status endpoints
- Admin subscription grants
- Cancellation
- Order creation, polling and provider callbacks
- Error mapping and system endpoints
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from quota_ledger.billing.quota_service import DAILY_EXHAUSTED_REASON
from quota_ledger.config import get_settings
from quota_ledger.ledger import build_ledger, get_ledger
from quota_ledger.main import app
from quota_ledger.storage.database import LedgerDatabase


@pytest.fixture
def api_ledger(test_settings, clock):
    database = LedgerDatabase(db_path=test_settings.storage.db_path)
    asyncio.run(database.initialize())
    yield build_ledger(test_settings, database, clock=clock)
    database.close()


@pytest.fixture
def app_client(api_ledger, test_settings):
    app.dependency_overrides[get_ledger] = lambda: api_ledger
    app.dependency_overrides[get_settings] = lambda: test_settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def user(user_id: str) -> dict[str, str]:
    return {"X-User-ID": user_id}


@pytest.fixture
def admin(test_settings) -> dict[str, str]:
    return {"X-Admin-Key": test_settings.admin_api_key}


class TestQuotaEndpoints:
    """Test suite for quota endpoints."""

    def test_consume_until_denied(self, app_client: TestClient):
        """Denial is a normal 200 result carrying a reason."""
        responses = [
            app_client.post("/api/v1/quota/consume", headers=user("u1")) for _ in range(4)
        ]

        assert [r.status_code for r in responses] == [200] * 4
        bodies = [r.json() for r in responses]
        assert [b["allowed"] for b in bodies] == [True, True, True, False]
        assert [b["remaining"] for b in bodies] == [2, 1, 0, 0]
        assert bodies[3]["reason"] == DAILY_EXHAUSTED_REASON
        assert bodies[3]["quota_type"] == "daily"

    def test_consume_with_quota_type(self, app_client: TestClient):
        response = app_client.post(
            "/api/v1/quota/consume", headers=user("u1"), json={"quota_type": "export"}
        )

        assert response.status_code == 200
        assert response.json()["limit"] == 10

    def test_consume_rejects_unknown_quota_type(self, app_client: TestClient):
        response = app_client.post(
            "/api/v1/quota/consume", headers=user("u1"), json={"quota_type": "teleport"}
        )
        assert response.status_code == 422

    def test_missing_user_header(self, app_client: TestClient):
        response = app_client.post("/api/v1/quota/consume")
        assert response.status_code == 422

    def test_blank_user_header_is_validation_error(self, app_client: TestClient):
        response = app_client.post("/api/v1/quota/consume", headers=user("   "))

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"
        assert response.json()["retryable"] is False

    def test_status(self, app_client: TestClient):
        app_client.post("/api/v1/quota/consume", headers=user("u1"))

        response = app_client.get("/api/v1/quota/status", headers=user("u1"))

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "free"
        create = next(d for d in data["daily"] if d["quota_type"] == "create")
        assert create["used"] == 1
        assert create["remaining"] == 2


class TestSubscriptionEndpoints:
    """Test suite for subscription endpoints."""

    def test_admin_grant(self, app_client: TestClient, admin):
        response = app_client.post(
            "/api/v1/subscriptions",
            headers=admin,
            json={"user_id": "comped", "tier": "basic"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "active"
        assert data["monthly_quota_limit"] == 100
        assert data["monthly_quota_remaining"] == 100

        consume = app_client.post("/api/v1/quota/consume", headers=user("comped")).json()
        assert consume["quota_type"] == "monthly"
        assert consume["remaining"] == 99

    def test_grant_rejects_wrong_admin_key(self, app_client: TestClient):
        response = app_client.post(
            "/api/v1/subscriptions",
            headers={"X-Admin-Key": "wrong-key"},
            json={"user_id": "comped"},
        )
        assert response.status_code == 401

    def test_grant_disabled_without_admin_key(self, app_client: TestClient, admin, test_settings):
        test_settings.admin_api_key = None

        response = app_client.post(
            "/api/v1/subscriptions", headers=admin, json={"user_id": "comped"}
        )
        assert response.status_code == 403

    def test_cancel(self, app_client: TestClient, admin):
        app_client.post("/api/v1/subscriptions", headers=admin, json={"user_id": "u1"})

        response = app_client.post("/api/v1/subscriptions/cancel", headers=user("u1"))

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["current_period_end"]

    def test_cancel_without_subscription_is_404(self, app_client: TestClient):
        response = app_client.post("/api/v1/subscriptions/cancel", headers=user("nobody"))

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"


class TestPaymentEndpoints:
    """Test suite for the order and callback flow."""

    def test_order_flow(self, app_client: TestClient):
        created = app_client.post("/api/v1/payments/orders", headers=user("payer"), json={})
        assert created.status_code == 201
        order = created.json()
        assert order["order_id"].startswith("INSPI")
        assert order["qr_code_url"]
        assert order["amount"] == "15.00"

        pending = app_client.get(f"/api/v1/payments/orders/{order['order_id']}", headers=user("payer"))
        assert pending.status_code == 200
        assert pending.json()["status"] == "pending"

        callback = app_client.post(
            "/api/v1/payments/callback",
            content=json.dumps({"orderId": order["order_id"], "status": "success"}),
            headers={"Content-Type": "application/json"},
        )
        assert callback.status_code == 200
        assert callback.json() == {"success": True}

        # Duplicate delivery is acknowledged
        again = app_client.post(
            "/api/v1/payments/callback",
            content=json.dumps({"orderId": order["order_id"], "status": "success"}),
        )
        assert again.json() == {"success": True}

        paid = app_client.get(f"/api/v1/payments/orders/{order['order_id']}", headers=user("payer"))
        assert paid.json()["status"] == "success"
        assert paid.json()["paid_at"] is not None

        consume = app_client.post("/api/v1/quota/consume", headers=user("payer")).json()
        assert consume["quota_type"] == "monthly"
        assert consume["remaining"] == 299

    def test_orders_are_private(self, app_client: TestClient):
        order = app_client.post("/api/v1/payments/orders", headers=user("payer"), json={}).json()

        response = app_client.get(
            f"/api/v1/payments/orders/{order['order_id']}", headers=user("someone-else")
        )
        assert response.status_code == 404

    def test_list_orders_newest_first(self, app_client: TestClient, clock):
        first = app_client.post("/api/v1/payments/orders", headers=user("payer"), json={}).json()
        clock.advance(minutes=1)
        second = app_client.post(
            "/api/v1/payments/orders", headers=user("payer"), json={"type": "renewal"}
        ).json()
        app_client.post("/api/v1/payments/orders", headers=user("someone-else"), json={})

        response = app_client.get("/api/v1/payments/orders", headers=user("payer"))

        assert response.status_code == 200
        orders = response.json()
        assert [o["order_id"] for o in orders] == [second["order_id"], first["order_id"]]
        assert orders[0]["type"] == "renewal"
        assert orders[1]["status"] == "pending"

    def test_list_orders_limit(self, app_client: TestClient):
        for _ in range(3):
            app_client.post("/api/v1/payments/orders", headers=user("payer"), json={})

        response = app_client.get("/api/v1/payments/orders?limit=2", headers=user("payer"))

        assert len(response.json()) == 2

    def test_unknown_order_callback_is_404(self, app_client: TestClient):
        response = app_client.post(
            "/api/v1/payments/callback",
            content=json.dumps({"orderId": "INSPI0000000000000000000", "status": "success"}),
        )
        assert response.status_code == 404

    def test_malformed_callback_is_422(self, app_client: TestClient):
        response = app_client.post("/api/v1/payments/callback", content=b"garbage")
        assert response.status_code == 422

    def test_invalid_tier_is_422(self, app_client: TestClient):
        response = app_client.post(
            "/api/v1/payments/orders", headers=user("payer"), json={"tier": "free"}
        )
        assert response.status_code == 422

    def test_replay_requires_admin(self, app_client: TestClient):
        order = app_client.post("/api/v1/payments/orders", headers=user("payer"), json={}).json()

        response = app_client.post(
            f"/api/v1/payments/orders/{order['order_id']}/replay",
            headers={"X-Admin-Key": "wrong-key"},
        )
        assert response.status_code == 401

    def test_replay_of_pending_order_is_409(self, app_client: TestClient, admin):
        order = app_client.post("/api/v1/payments/orders", headers=user("payer"), json={}).json()

        response = app_client.post(
            f"/api/v1/payments/orders/{order['order_id']}/replay", headers=admin
        )
        assert response.status_code == 409
        assert response.json()["error"] == "ConflictError"


class TestSystemEndpoints:
    def test_health(self, app_client: TestClient):
        response = app_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["provider"] == "sandbox"
        assert response.json()["payment_breaker"] == "closed"

    def test_metrics(self, app_client: TestClient):
        app_client.post("/api/v1/quota/consume", headers=user("u1"))

        response = app_client.get("/metrics")

        assert response.status_code == 200
        assert "quota_ledger_quota_decisions_total" in response.text

    def test_request_id_header(self, app_client: TestClient):
        response = app_client.get("/health", headers={"X-Request-ID": "req_fixed"})

        assert response.headers["X-Request-ID"] == "req_fixed"
        assert "X-Trace-ID" in response.headers

    def test_error_body_carries_request_ids(self, app_client: TestClient):
        response = app_client.post(
            "/api/v1/subscriptions/cancel",
            headers={**user("nobody"), "X-Request-ID": "req_err", "X-Trace-ID": "trace_err"},
        )

        assert response.status_code == 404
        assert response.json()["request_id"] == "req_err"
        assert response.json()["trace_id"] == "trace_err"
