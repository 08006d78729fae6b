"""
API tests for provider authorization and sync endpoints
"""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from conftest import USER_A, USER_B
from helpers import fitbit_api_with_two_days, make_credential, token_response
from vitalis.main import create_app
from vitalis.services.connectors import ConnectorRegistry, FitbitConnector
from vitalis.services.errors import PersistenceError
from vitalis.services.persistence import HealthDataGateway
from vitalis.services.sync_types import ProviderId

FITBIT_TOKEN = "/oauth2/token"
SYNC_BODY = {
    "providers": ["fitbit"],
    "startDate": "2024-01-01T00:00:00Z",
    "endDate": "2024-01-02T23:59:00Z",
}


class BrokenConnectionGateway(HealthDataGateway):
    def upsert_device_connection(self, user_id, provider, status):
        raise PersistenceError("Connection write failed: OperationalError")


def auth(user_id: str) -> dict:
    token = jwt.encode({"sub": user_id}, "test-session-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def fitbit_api():
    return fitbit_api_with_two_days().add(FITBIT_TOKEN, json=token_response(user_id="FB123"))


@pytest.fixture
def client(engine, users, fitbit_api):
    registry = ConnectorRegistry([
        FitbitConnector("client-id", "client-secret", transport=fitbit_api.transport),
    ])
    app = create_app(engine=engine, registry=registry)
    with TestClient(app) as test_client:
        yield test_client


def issue_state(client, user_id: str) -> str:
    response = client.get("/api/v1/health/auth/fitbit", headers=auth(user_id))
    assert response.status_code == 200
    query = parse_qs(urlparse(response.json()["authorizationUrl"]).query)
    return query["state"][0]


class TestAuthentication:
    def test_requires_session(self, client):
        response = client.get("/api/v1/health/auth/fitbit")
        assert response.status_code == 401

    def test_rejects_forged_session(self, client):
        token = jwt.encode({"sub": USER_A}, "not-the-secret", algorithm="HS256")
        response = client.get("/api/v1/health/sync/status", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_session_cookie_accepted(self, client):
        token = jwt.encode({"sub": USER_A}, "test-session-secret", algorithm="HS256")
        client.cookies.set("vitalis-token", token)
        response = client.get("/api/v1/health/sync/status")
        assert response.status_code == 200


class TestAuthorizationFlow:
    def test_authorization_url(self, client):
        response = client.get("/api/v1/health/auth/fitbit", headers=auth(USER_A))

        assert response.status_code == 200
        body = response.json()
        assert body["provider"] == "fitbit"
        assert "expiresAt" in body
        url = urlparse(body["authorizationUrl"])
        query = parse_qs(url.query)
        assert url.netloc == "www.fitbit.com"
        assert query["client_id"] == ["client-id"]
        assert query["redirect_uri"] == ["http://api.test/api/v1/health/auth/fitbit/callback"]
        assert query["state"][0]

    def test_redirect_mode(self, client):
        response = client.get(
            "/api/v1/health/auth/fitbit?redirect=true", headers=auth(USER_A), follow_redirects=False
        )

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://www.fitbit.com/oauth2/authorize?")

    def test_callback_stores_credential(self, client, credential_store, gateway, fitbit_api):
        state = issue_state(client, USER_A)

        response = client.post(
            "/api/v1/health/auth/fitbit/callback",
            json={"code": "auth-code", "state": state},
            headers=auth(USER_A),
        )

        assert response.status_code == 200
        assert response.json()["externalAccountId"] == "FB123"
        assert fitbit_api.count(FITBIT_TOKEN) == 1

        stored = credential_store.get(USER_A, ProviderId.FITBIT)
        assert stored.access_token == "access-2"
        assert stored.external_account_id == "FB123"
        connection = gateway.get_device_connection(USER_A, ProviderId.FITBIT)
        assert connection.is_connected is True
        assert connection.device_name == "Fitbit"

    def test_callback_connection_write_failure_leaves_no_credential(self, client, session_factory, credential_store):
        client.app.state.gateway = BrokenConnectionGateway(session_factory)
        state = issue_state(client, USER_A)

        response = client.post(
            "/api/v1/health/auth/fitbit/callback",
            json={"code": "auth-code", "state": state},
            headers=auth(USER_A),
        )

        assert response.status_code == 503
        assert response.json()["code"] == "PersistenceError"
        assert credential_store.get(USER_A, ProviderId.FITBIT) is None

    def test_state_from_another_session_rejected(self, client, credential_store, fitbit_api):
        state = issue_state(client, USER_A)

        response = client.post(
            "/api/v1/health/auth/fitbit/callback",
            json={"code": "auth-code", "state": state},
            headers=auth(USER_B),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "InvalidStateError"
        assert fitbit_api.count(FITBIT_TOKEN) == 0
        assert credential_store.get(USER_A, ProviderId.FITBIT) is None
        assert credential_store.get(USER_B, ProviderId.FITBIT) is None

    def test_browser_callback_redirects_to_app(self, client, credential_store):
        state = issue_state(client, USER_A)

        response = client.get(
            "/api/v1/health/auth/fitbit/callback",
            params={"code": "auth-code", "state": state},
            headers=auth(USER_A),
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == "http://app.test/wearables"
        assert parse_qs(location.query) == {"provider": ["fitbit"], "connected": ["true"]}
        assert credential_store.get(USER_A, ProviderId.FITBIT) is not None

    def test_browser_callback_declined(self, client):
        response = client.get(
            "/api/v1/health/auth/fitbit/callback",
            params={"error": "access_denied", "error_description": "user said no"},
            headers=auth(USER_A),
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert "error=access_denied" in response.headers["location"]

    def test_browser_callback_bad_state(self, client):
        response = client.get(
            "/api/v1/health/auth/fitbit/callback",
            params={"code": "auth-code", "state": "forged"},
            headers=auth(USER_A),
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert "error=InvalidStateError" in response.headers["location"]

    @pytest.mark.parametrize("provider", ["garmin", "oura"])
    def test_unknown_or_unregistered_provider(self, client, provider):
        response = client.get(f"/api/v1/health/auth/{provider}", headers=auth(USER_A))

        assert response.status_code == 404
        assert response.json()["code"] == "UnknownProviderError"

    def test_disconnect(self, client, credential_store, gateway):
        credential_store.upsert(USER_A, ProviderId.FITBIT, make_credential())

        response = client.delete("/api/v1/health/auth/fitbit", headers=auth(USER_A))

        assert response.status_code == 200
        assert response.json()["wasConnected"] is True
        assert credential_store.get(USER_A, ProviderId.FITBIT) is None
        assert gateway.get_device_connection(USER_A, ProviderId.FITBIT).is_connected is False


class TestSyncEndpoints:
    def test_sync_summary(self, client, credential_store):
        credential_store.upsert(USER_A, ProviderId.FITBIT, make_credential())

        response = client.post("/api/v1/health/sync", json=SYNC_BODY, headers=auth(USER_A))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["results"]["fitbit"]["recordsProcessed"] == 10
        assert body["summary"] == {
            "totalRecords": 10,
            "successfulSyncs": 1,
            "totalSyncs": 1,
            "syncedSources": ["fitbit"],
            "failedSources": [],
        }

    def test_sync_reports_provider_failure_without_failing_request(self, client):
        response = client.post("/api/v1/health/sync", json=SYNC_BODY, headers=auth(USER_A))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["results"]["fitbit"]["error"] == "NotConnectedError"
        assert body["summary"]["failedSources"] == ["fitbit"]

    def test_sync_unknown_user(self, client):
        response = client.post("/api/v1/health/sync", json=SYNC_BODY, headers=auth("ghost"))

        assert response.status_code == 401
        assert response.json()["code"] == "UnknownUserError"

    def test_sync_inverted_range(self, client):
        body = dict(SYNC_BODY, startDate="2024-01-03T00:00:00Z")

        response = client.post("/api/v1/health/sync", json=body, headers=auth(USER_A))

        assert response.status_code == 422

    def test_sync_mixed_naive_and_aware_dates(self, client, credential_store):
        credential_store.upsert(USER_A, ProviderId.FITBIT, make_credential())
        body = dict(SYNC_BODY, startDate="2024-01-01T00:00:00", endDate="2024-01-02T23:59:00Z")

        response = client.post("/api/v1/health/sync", json=body, headers=auth(USER_A))

        assert response.status_code == 200
        assert response.json()["results"]["fitbit"]["recordsProcessed"] == 10

    def test_sync_mixed_dates_inverted_range(self, client):
        body = dict(SYNC_BODY, startDate="2024-01-03T00:00:00", endDate="2024-01-02T00:00:00Z")

        response = client.post("/api/v1/health/sync", json=body, headers=auth(USER_A))

        assert response.status_code == 422

    def test_sync_status_messages(self, client, credential_store):
        credential_store.upsert(USER_A, ProviderId.FITBIT, make_credential())
        client.post("/api/v1/health/sync", json=SYNC_BODY, headers=auth(USER_A))

        response = client.get("/api/v1/health/sync/status", headers=auth(USER_A))

        assert response.status_code == 200
        [connection] = response.json()["connections"]
        assert connection["provider"] == "fitbit"
        assert connection["displayName"] == "Fitbit"
        assert connection["isConnected"] is True
        assert connection["lastRecordsProcessed"] == 10
        assert connection["statusMessage"] == "up to date"

        client.delete("/api/v1/health/auth/fitbit", headers=auth(USER_A))
        [connection] = client.get("/api/v1/health/sync/status", headers=auth(USER_A)).json()["connections"]
        assert connection["statusMessage"] == "disconnected, please reconnect"
