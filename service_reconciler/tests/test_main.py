"""
Tests for the reconciler HTTP service.
"""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from shared.config import get_config
from service_reconciler.app.main import create_app, default_products
from service_reconciler.app.models import utcnow
from service_reconciler.app.storage.kv_store import MemoryStore
from service_reconciler.app.store.local import LocalStoreProvider
from service_reconciler.app.store.provider import PurchaseOutcome
from service_reconciler.tests.helpers import BASE_URL, MONTHLY, status_payload, sync_payload, verify_payload


@pytest.fixture
def config():
    return get_config(
        "reconciler",
        8020,
        backend_base_url=BASE_URL,
        verify_retry_base_delay=0.0,
        circuit_failure_threshold=100,
    )


@pytest.fixture
def store(config):
    return LocalStoreProvider(default_products(config))


@pytest.fixture
def client(config, store, fake_backend):
    """Create test client with the app lifespan running."""
    fake_backend.set("/subscriptions/sync", sync_payload("free"))
    fake_backend.set("/subscriptions/status", status_payload("free", plan=None))
    app = create_app(config, store, MemoryStore(), fake_backend.transport)
    with TestClient(app) as client:
        yield client


def login(client, user_id="user-1"):
    response = client.post("/session/login", json={"user_id": user_id, "access_token": "token-1"})
    assert response.status_code == 200
    return response.json()


def test_root_endpoint(client):
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "reconciler"
    assert data["version"] == "1.0.0"


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["dependencies"]["backend_circuit"] == "closed"
    assert data["dependencies"]["transaction_listener"] == "running"


def test_metrics_endpoint(client):
    client.get("/entitlement")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "reconciliation_passes_total" in response.text
    assert "http_requests_total" in response.text


def test_initial_entitlement_fails_open(client):
    """Test an anonymous session gets access until a decision is made."""
    response = client.get("/entitlement")
    assert response.status_code == 200
    data = response.json()
    assert data["has_access"] is True
    assert data["status"] == "unknown"


def test_login_and_trial(client, fake_backend):
    """Test login refreshes from the backend and a trial can start."""
    data = login(client)
    assert data["entitlement"]["status"] == "unknown"
    assert fake_backend.calls == ["/subscriptions/sync", "/subscriptions/status"]

    response = client.post("/trial/start")
    assert response.status_code == 200
    data = response.json()
    assert data["entitlement"]["status"] == "trial"
    assert data["entitlement"]["trial_days_remaining"] == 3
    assert data["access"]["allow"] is True


def test_trial_requires_login(client):
    response = client.post("/trial/start")

    assert response.status_code == 401
    assert response.json()["code"] == "NOT_AUTHENTICATED"


def test_products(client):
    response = client.get("/products")

    assert response.status_code == 200
    assert [p["product_id"] for p in response.json()] == [
        "com.gofitai.premium.monthly", "com.gofitai.premium.yearly",
    ]


def test_purchase(client, fake_backend):
    """Test a purchase through the HTTP surface."""
    end_date = utcnow() + timedelta(days=30)
    fake_backend.set("/subscriptions/verify", verify_payload(end_date=end_date))
    fake_backend.set("/subscriptions/status", status_payload("active", end_date=end_date))
    login(client)

    response = client.post("/purchase", json={"product_id": MONTHLY})

    assert response.status_code == 200
    data = response.json()
    assert data["entitlement"]["status"] == "active"
    assert data["entitlement"]["source"] == "backend"
    assert data["access"]["should_show_paywall"] is False


def test_purchase_cancelled_by_user(client, store):
    login(client)
    store.next_outcome = PurchaseOutcome.USER_CANCELLED

    response = client.post("/purchase", json={"product_id": MONTHLY})

    assert response.status_code == 409
    assert response.json()["code"] == "PURCHASE_CANCELLED"


def test_purchase_unknown_product(client):
    login(client)

    response = client.post("/purchase", json={"product_id": "com.gofitai.premium.weekly"})

    assert response.status_code == 400
    data = response.json()
    assert data["code"] == "PRODUCT_NOT_FOUND"
    assert data["details"]["product_id"] == "com.gofitai.premium.weekly"


def test_cancel(client, fake_backend):
    end_date = utcnow() + timedelta(days=12)
    fake_backend.set("/subscriptions/cancel", {
        "message": "Subscription cancelled successfully",
        "subscription": {"status": "cancelled", "plan": "monthly", "endDate": end_date.isoformat()},
        "daysRemaining": 12,
    })
    login(client)

    response = client.post("/cancel")

    assert response.status_code == 200
    assert response.json()["entitlement"]["status"] == "cancelled"
    assert response.json()["entitlement"]["has_access"] is True


def test_expired_user_sees_paywall_after_onboarding(client, fake_backend):
    """Test the paywall appears only once onboarding completes."""
    fake_backend.set("/subscriptions/status", status_payload("expired"))
    data = login(client)
    assert data["access"]["allow"] is False
    assert data["access"]["should_show_paywall"] is False

    response = client.post("/onboarding/complete")

    assert response.status_code == 200
    assert response.json()["should_show_paywall"] is True
    assert client.get("/access").json()["should_show_paywall"] is True


def test_restore_foreground_and_reconcile(client, fake_backend, store):
    login(client)

    assert client.post("/restore").status_code == 200
    assert store.sync_calls == 1
    assert client.post("/foreground").status_code == 200
    assert client.post("/reconcile").status_code == 200


def test_logout(client):
    login(client)

    response = client.post("/session/logout")

    assert response.status_code == 200
    assert response.json()["entitlement"]["status"] == "unknown"
