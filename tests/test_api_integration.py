"""Integration tests for the backend HTTP surface.

Covers login, cookie-based refresh rotation, logout, device sessions,
administrative invalidation, the protected demo resources and the error
envelope.
"""

import base64

import pytest
from fastapi.testclient import TestClient

from authflow import app as app_module

DEVICE_HEADERS = {"X-Device-ID": "device-1", "User-Agent": "pytest-browser"}


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _login(client, headers=DEVICE_HEADERS):
    response = client.post(
        "/api/auth/login", json={"username": "demo", "password": "password123"}, headers=headers
    )
    assert response.status_code == 200
    return response.json()["accessToken"]


def _bearer(token, **extra):
    return {"Authorization": f"Bearer {token}", **extra}


class TestLogin:
    def test_login_returns_access_token_and_cookie(self, client):
        response = client.post(
            "/api/auth/login",
            json={"username": "demo", "password": "password123"},
            headers=DEVICE_HEADERS,
        )

        assert response.status_code == 200
        assert set(response.json()) == {"accessToken"}
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("refreshToken=")
        assert "HttpOnly" in set_cookie
        assert "Path=/api/auth/refresh" in set_cookie
        assert "SameSite=strict" in set_cookie

    def test_wrong_password_is_401_envelope(self, client):
        response = client.post(
            "/api/auth/login",
            json={"username": "demo", "password": "nope"},
            headers=DEVICE_HEADERS,
        )

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "Invalid credentials"
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_missing_device_id_is_400(self, client):
        response = client.post(
            "/api/auth/login",
            json={"username": "demo", "password": "password123"},
            headers={"User-Agent": "pytest-browser"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Device ID is required"

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/api/auth/login",
            json={"username": "demo", "password": "nope"},
            headers={**DEVICE_HEADERS, "X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestProtectedResources:
    def test_users_and_customers_require_token(self, client):
        for path in ("/api/users/list", "/api/customers/list", "/api/users/profile"):
            response = client.get(path)
            assert response.status_code == 401
            assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_lists_with_valid_token(self, client):
        token = _login(client)

        users = client.get("/api/users/list", headers=_bearer(token)).json()
        customers = client.get("/api/customers/list", headers=_bearer(token)).json()
        profile = client.get("/api/users/profile", headers=_bearer(token)).json()

        assert [user["name"] for user in users] == ["John Doe", "Jane Smith", "Bob Johnson"]
        assert len(customers) == 5
        assert customers[0] == {"id": 1, "name": "Acme Corporation", "email": "contact@acme.com"}
        assert profile == {"userId": 1, "username": "demo"}

    def test_garbage_token_is_rejected(self, client):
        response = client.get("/api/users/list", headers=_bearer("not.a.token"))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"

    def test_list_valued_alg_header_is_401(self, client):
        token = _login(client)
        _, payload, signature = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":["HS256"]}').decode().rstrip("=")

        response = client.get("/api/users/list", headers=_bearer(f"{header}.{payload}.{signature}"))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"


class TestRefresh:
    def test_cookie_rotation(self, client):
        first = _login(client)

        response = client.post("/api/auth/refresh", headers=DEVICE_HEADERS)

        assert response.status_code == 200
        second = response.json()["accessToken"]
        assert second != first
        assert client.get("/api/users/list", headers=_bearer(second)).status_code == 200

    def test_replayed_cookie_is_rejected(self, client):
        _login(client)
        old_cookie = client.cookies.get("refreshToken")
        assert client.post("/api/auth/refresh", headers=DEVICE_HEADERS).status_code == 200

        client.cookies.clear()
        replay = client.post(
            "/api/auth/refresh", headers={**DEVICE_HEADERS, "Cookie": f"refreshToken={old_cookie}"}
        )

        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "unauthorized"

    def test_refresh_from_other_device_fails(self, client):
        _login(client)

        response = client.post(
            "/api/auth/refresh", headers={"X-Device-ID": "device-2", "User-Agent": "other"}
        )

        assert response.status_code == 401

    def test_refresh_without_cookie(self, client):
        response = client.post("/api/auth/refresh", headers=DEVICE_HEADERS)

        assert response.status_code == 401


class TestLogout:
    def test_logout_blacklists_access_token_and_clears_cookie(self, client):
        token = _login(client)

        response = client.post("/api/auth/logout", headers=_bearer(token, **DEVICE_HEADERS))

        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}
        assert 'refreshToken=""' in response.headers["set-cookie"]
        assert client.get("/api/users/list", headers=_bearer(token)).status_code == 401
        assert client.post("/api/auth/refresh", headers=DEVICE_HEADERS).status_code == 401

    def test_logout_without_token_still_clears_cookie(self, client):
        _login(client)

        response = client.post("/api/auth/logout", headers=DEVICE_HEADERS)

        assert response.status_code == 401
        assert "refreshToken=" in response.headers["set-cookie"]

    def test_logout_with_foreign_device_id_spares_its_owner(self, client, runtime):
        runtime.credentials.add_user(2, "mallory", "password456")
        _login(client)
        other = TestClient(app_module.app)
        mallory = other.post(
            "/api/auth/login",
            json={"username": "mallory", "password": "password456"},
            headers={"X-Device-ID": "device-9", "User-Agent": "other"},
        ).json()["accessToken"]

        response = other.post("/api/auth/logout", headers=_bearer(mallory, **DEVICE_HEADERS))

        assert response.status_code == 200
        assert client.post("/api/auth/refresh", headers=DEVICE_HEADERS).status_code == 200


class TestSessions:
    def test_list_and_revoke_by_device(self, client):
        token = _login(client)
        _login(client, {"X-Device-ID": "device-2", "User-Agent": "tablet"})

        listed = client.get("/api/auth/sessions", headers=_bearer(token)).json()["sessions"]
        assert len(listed) == 2
        assert {s["deviceInfo"]["userAgent"] for s in listed} == {"pytest-browser", "tablet"}
        assert set(listed[0]) == {"id", "deviceInfo", "lastUsedAt", "expiresAt", "isRevoked"}

        response = client.post(
            "/api/auth/sessions/revoke", json={"deviceId": "device-2"}, headers=_bearer(token)
        )
        assert response.status_code == 200
        remaining = client.get("/api/auth/sessions", headers=_bearer(token)).json()["sessions"]
        assert [s["deviceInfo"]["userAgent"] for s in remaining] == ["pytest-browser"]

    def test_revoke_by_session_id(self, client):
        token = _login(client)
        session_id = client.get("/api/auth/sessions", headers=_bearer(token)).json()["sessions"][0]["id"]

        response = client.post(
            "/api/auth/sessions/revoke", json={"sessionId": session_id}, headers=_bearer(token)
        )

        assert response.status_code == 200
        assert client.get("/api/auth/sessions", headers=_bearer(token)).json() == {"sessions": []}

    def test_revoke_unknown_device_is_404(self, client):
        token = _login(client)

        response = client.post(
            "/api/auth/sessions/revoke", json={"deviceId": "nope"}, headers=_bearer(token)
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_revoke_without_target_is_400(self, client):
        token = _login(client)

        response = client.post("/api/auth/sessions/revoke", json={}, headers=_bearer(token))

        assert response.status_code == 400


class TestInvalidateToken:
    def test_requires_admin_key(self, client):
        token = _login(client)

        response = client.post("/api/auth/invalidate-token", json={"token": token})

        assert response.status_code == 401
        assert client.get("/api/users/list", headers=_bearer(token)).status_code == 200

    def test_admin_can_invalidate_token(self, client):
        token = _login(client)

        response = client.post(
            "/api/auth/invalidate-token",
            json={"token": token},
            headers={"X-Admin-Key": "test-admin-key"},
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Token invalidated successfully"}
        assert client.get("/api/users/list", headers=_bearer(token)).status_code == 401

    def test_falls_back_to_bearer_token(self, client):
        token = _login(client)

        response = client.post(
            "/api/auth/invalidate-token", headers=_bearer(token, **{"X-Admin-Key": "test-admin-key"})
        )

        assert response.status_code == 200
        assert client.get("/api/users/list", headers=_bearer(token)).status_code == 401

    def test_nothing_to_invalidate(self, client):
        response = client.post(
            "/api/auth/invalidate-token", json={}, headers={"X-Admin-Key": "test-admin-key"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "No access token provided"

    def test_disabled_without_configured_key(self, client, runtime):
        runtime.settings.admin_api_key = None

        response = client.post(
            "/api/auth/invalidate-token", json={"jti": "x"}, headers={"X-Admin-Key": "anything"}
        )

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "forbidden"
        assert error["message"] == "token invalidation is disabled"
        assert not runtime.blacklist.contains("x")


class TestHealth:
    def test_health_reports_store_and_sweeper(self):
        with TestClient(app_module.app) as client:
            body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["version"] == app_module.__version__
        assert body["store_backend"] == "memory"
        assert body["checks"] == {"store": "ok", "sweeper": "running"}
