"""HTTP-level tests for the banking and categorization routers."""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from banksync.config import get_settings
from banksync.database import get_db
from banksync.main import app
from banksync.app.models import BankConnection, BankConnectionStatus, Transaction
from banksync.app.bank_integration.providers.base import ProviderAccount
from banksync.app.routes.banking import build_redirect, get_bank_provider, get_session_factory
from conftest import TENANT, USER, provider_txn

HEADERS = {"X-Tenant-ID": TENANT, "X-User-ID": USER}


@pytest.fixture
def client(session_factory, provider):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_bank_provider] = lambda: provider
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def redirect_params(response):
    location = urlparse(response.headers["location"])
    return location.path, {key: values[0] for key, values in parse_qs(location.query).items()}


def test_health(client):
    assert client.get("/api/health").json() == {"status": "healthy"}


# ---------------------------------------------------------------------------
# Redirect building
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("return_to, expected_path", [
    ("/accounts", "/accounts"),
    (None, "/dashboard/banking"),
    ("https://evil.example.com", "/dashboard/banking"),
    ("//evil.example.com", "/dashboard/banking"),
])
def test_build_redirect_only_follows_relative_paths(return_to, expected_path):
    response = build_redirect(return_to, status="connected")

    location = urlparse(response.headers["location"])
    assert response.status_code == 302
    assert f"{location.scheme}://{location.netloc}" == get_settings().frontend_url.rstrip("/")
    assert location.path == expected_path


# ---------------------------------------------------------------------------
# Link flow
# ---------------------------------------------------------------------------


class TestLinkFlow:
    def test_link_requires_tenant_headers(self, client):
        assert client.get("/api/banking/link").status_code == 401

    def test_link_returns_authorization_url(self, client):
        response = client.get("/api/banking/link", params={"returnTo": "/accounts"}, headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["state"] in body["authorization_url"]

    def test_provider_error_redirects_with_error(self, client):
        response = client.get(
            "/api/banking/callback",
            params={"error": "access_denied", "error_description": "User cancelled"},
            follow_redirects=False
        )

        assert response.status_code == 302
        path, params = redirect_params(response)
        assert path == "/dashboard/banking"
        assert params == {"status": "error", "message": "User cancelled"}

    def test_missing_code_redirects_with_error(self, client):
        response = client.get("/api/banking/callback", params={"state": "abc"}, follow_redirects=False)

        assert response.status_code == 302
        assert redirect_params(response)[1]["status"] == "error"

    def test_unknown_state_redirects_with_error(self, client):
        response = client.get(
            "/api/banking/callback", params={"code": "c", "state": "forged"}, follow_redirects=False
        )

        assert response.status_code == 302
        assert redirect_params(response)[1]["message"] == "Bank connection session expired. Please try again."

    def test_callback_connects_and_runs_initial_sync(self, client, provider, db):
        provider.accounts = [ProviderAccount(account_id="acc-1", account_type="TRANSACTION", display_name="Main")]
        provider.transactions["acc-1"] = [provider_txn("t1", "-4.20", description="PRET A MANGER")]
        state = client.get("/api/banking/link", params={"returnTo": "/accounts"}, headers=HEADERS).json()["state"]

        response = client.get(
            "/api/banking/callback", params={"code": "code-1", "state": state}, follow_redirects=False
        )

        assert response.status_code == 302
        path, params = redirect_params(response)
        assert path == "/accounts"
        assert params["status"] == "connected"

        connection = db.get(BankConnection, int(params["connection"]))
        assert connection.status == BankConnectionStatus.ACTIVE
        assert connection.last_sync_at is not None
        assert db.query(Transaction).filter_by(provider_transaction_id="t1").count() == 1

        listed = client.get("/api/banking/connections", headers=HEADERS).json()
        assert listed[0]["accounts"][0]["provider_account_id"] == "acc-1"
        assert listed[0]["latest_sync"]["status"] == "completed"


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class TestConnectionRoutes:
    def test_sync_unknown_connection_is_404(self, client):
        assert client.post("/api/banking/connections/999/sync", headers=HEADERS).status_code == 404

    def test_sync_inactive_connection_is_409(self, client, make_connection):
        connection = make_connection(status=BankConnectionStatus.DISCONNECTED)

        response = client.post(f"/api/banking/connections/{connection.id}/sync", headers=HEADERS)

        assert response.status_code == 409

    def test_manual_sync(self, client, provider, make_connection):
        provider.transactions["acc-1"] = [provider_txn("t1", "-1"), provider_txn("t2", "2")]
        connection = make_connection()

        response = client.post(f"/api/banking/connections/{connection.id}/sync", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert response.json()["imported"] == 2

    def test_history_limit_is_validated(self, client, make_connection):
        connection = make_connection()

        response = client.get(
            f"/api/banking/connections/{connection.id}/history", params={"limit": 0}, headers=HEADERS
        )

        assert response.status_code == 422

    def test_disconnect(self, client, make_connection):
        connection = make_connection()

        response = client.delete(f"/api/banking/connections/{connection.id}", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["connection_id"] == connection.id


# ---------------------------------------------------------------------------
# Categorization
# ---------------------------------------------------------------------------


class TestCategorizationRoutes:
    def test_suggest_without_categories_offers_creation(self, client):
        response = client.post(
            "/api/categorization/suggest", json={"description": "TESCO STORES 2291"}, headers=HEADERS
        )

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "suggest"
        assert body["suggested_category_id"] is None
        assert body["suggested_category_name"] == "Groceries"

    def test_correct_unknown_transaction_is_404(self, client):
        response = client.post(
            "/api/categorization/transactions/1/correct", json={"category_id": 1}, headers=HEADERS
        )

        assert response.status_code == 404

    def test_stats_for_empty_tenant(self, client):
        body = client.get("/api/categorization/stats", headers=HEADERS).json()

        assert body["total_transactions"] == 0
        assert body["categorization_rate"] == 0.0
