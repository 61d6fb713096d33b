"""End-to-end OAuth round trips between the backend and the mock identity provider."""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from authflow import app as app_module
from authflow import idp_app as idp_module

DEVICE_HEADERS = {"X-Device-ID": "device-1", "User-Agent": "pytest-browser"}
ADMIN = {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def backend(idp_transport):
    return TestClient(app_module.app)


@pytest.fixture
def idp():
    return TestClient(idp_module.app)


def _query(url):
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


def _start(backend, provider="google", **params):
    response = backend.get(f"/api/auth/oauth/{provider}", params=params, headers=DEVICE_HEADERS)
    assert response.status_code == 200
    return response.json()


def _consent(idp, authorize_params, decision="approve"):
    response = idp.post(
        "/oauth/authorize/confirm",
        data={**authorize_params, "decision": decision},
        follow_redirects=False,
    )
    assert response.status_code == 302
    return response


def _callback(backend, provider, redirect_location):
    params = _query(redirect_location)
    response = backend.get(
        f"/api/auth/callback/{provider}",
        params=params,
        headers={"User-Agent": "pytest-browser"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    return response


class TestConsentPage:
    def test_authorize_renders_consent(self, backend, idp):
        started = _start(backend)

        response = idp.get("/oauth/authorize", params=_query(started["redirectUrl"]))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert 'action="/oauth/authorize/confirm"' in response.text
        assert 'value="fake-google-client-id"' in response.text
        assert "<li>email</li>" in response.text

    def test_authorize_rejects_unknown_client(self, idp, runtime):
        client = runtime.settings.provider_client("google")

        response = idp.get(
            "/oauth/authorize",
            params={
                "response_type": "code",
                "client_id": "intruder",
                "redirect_uri": client.redirect_uri,
                "provider": "google",
            },
        )

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_client", "error_description": "Invalid client_id"}


class TestBackendRoundTrip:
    def test_full_login_through_identity_provider(self, backend, idp):
        started = _start(backend)
        assert "codeVerifier" not in started
        consent = _consent(idp, _query(started["redirectUrl"]))
        assert "oauth_sso_session=" in consent.headers["set-cookie"]

        final = _callback(backend, "google", consent.headers["location"])

        location = final.headers["location"]
        assert location.startswith("http://localhost:3000/auth/callback?")
        result = _query(location)
        assert result["success"] == "true"
        assert "refreshToken=" in final.headers["set-cookie"]

        profile = backend.get(
            "/api/users/profile", headers={"Authorization": f"Bearer {result['token']}"}
        ).json()
        assert profile == {"userId": 123, "username": "Google User"}

        refreshed = backend.post("/api/auth/refresh", headers=DEVICE_HEADERS)
        assert refreshed.status_code == 200

    def test_code_replay_fails_everywhere(self, backend, idp, runtime):
        started = _start(backend)
        consent = _consent(idp, _query(started["redirectUrl"]))
        _callback(backend, "google", consent.headers["location"])
        code = _query(consent.headers["location"])["code"]
        client = runtime.settings.provider_client("google")

        direct = idp.post(
            "/oauth/token",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": client.redirect_uri,
                "client_id": client.client_id,
                "client_secret": client.client_secret,
                "provider": "google",
            },
        )
        replay = _callback(backend, "google", consent.headers["location"])

        assert direct.status_code == 400
        assert direct.json()["error"] == "invalid_grant"
        assert direct.headers["cache-control"] == "no-store"
        assert _query(replay.headers["location"])["success"] == "false"

    def test_denied_consent_reports_failure(self, backend, idp):
        started = _start(backend, "microsoft")
        consent = _consent(idp, _query(started["redirectUrl"]), decision="deny")
        assert _query(consent.headers["location"])["error"] == "access_denied"

        final = _callback(backend, "microsoft", consent.headers["location"])

        assert _query(final.headers["location"]) == {
            "success": "false",
            "error": "Missing required parameters",
        }

    def test_tampered_state_is_rejected(self, backend):
        response = backend.get(
            "/api/auth/callback/google",
            params={"code": "anything", "state": "not-base64-json"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert _query(response.headers["location"])["error"] == "Invalid state parameter"

    def test_unknown_provider_is_rejected(self, backend):
        response = backend.get("/api/auth/oauth/myspace", headers=DEVICE_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid provider"


class TestSingleSignOn:
    def test_second_authorize_skips_consent(self, backend, idp):
        first = _start(backend)
        _consent(idp, _query(first["redirectUrl"]))

        second = _start(backend)
        response = idp.get(
            "/oauth/authorize", params=_query(second["redirectUrl"]), follow_redirects=False
        )

        assert response.status_code == 302
        final = _callback(backend, "google", response.headers["location"])
        assert _query(final.headers["location"])["success"] == "true"

    def test_idp_logout_brings_consent_back(self, backend, idp):
        _consent(idp, _query(_start(backend)["redirectUrl"]))

        assert idp.post("/oauth/logout").status_code == 200
        response = idp.get(
            "/oauth/authorize", params=_query(_start(backend)["redirectUrl"]), follow_redirects=False
        )

        assert response.status_code == 200

    def test_session_stats_require_admin_key(self, backend, idp):
        _consent(idp, _query(_start(backend)["redirectUrl"]))

        denied = idp.get("/oauth/sessions/stats")
        assert denied.status_code == 403
        assert denied.json() == {"error": "access_denied", "error_description": "Admin key required"}
        body = idp.get(
            "/oauth/sessions/stats", params={"user_id": "google-123"}, headers=ADMIN
        ).json()
        assert body["stats"] == {"active": 1, "expired": 0, "total": 1}
        assert [s["provider"] for s in body["sessions"]] == ["google"]


class TestStandalonePKCE:
    def _authorize(self, backend, idp):
        started = _start(backend, "strava", pkce="true")
        params = _query(started["redirectUrl"])
        consent = _consent(idp, params)
        location = consent.headers["location"]
        assert location.startswith("http://localhost:3003/callback?")
        return started["codeVerifier"], params, _query(location)["code"]

    def _exchange(self, idp, params, code, verifier):
        return idp.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": params["redirect_uri"],
                "client_id": params["client_id"],
                "provider": "strava",
                "code_verifier": verifier,
            },
        )

    def test_right_verifier_gets_tokens(self, backend, idp):
        verifier, params, code = self._authorize(backend, idp)

        response = self._exchange(idp, params, code, verifier)

        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["scope"] == "read activity:read"
        userinfo = idp.get(
            "/oauth/userinfo", headers={"Authorization": f"Bearer {body['access_token']}"}
        )
        assert userinfo.json()["email"] == "strava.user@example.com"

    def test_wrong_verifier_fails(self, backend, idp):
        _, params, code = self._authorize(backend, idp)

        response = self._exchange(idp, params, code, "x" * 43)

        assert response.status_code == 400
        assert response.json() == {
            "error": "invalid_grant",
            "error_description": "PKCE verification failed",
        }

    def test_retry_after_wrong_verifier_is_refused(self, backend, idp):
        verifier, params, code = self._authorize(backend, idp)
        assert self._exchange(idp, params, code, "x" * 43).status_code == 400

        retry = self._exchange(idp, params, code, verifier)

        assert retry.status_code == 400
        assert retry.json()["error"] == "invalid_grant"
        assert "access_token" not in retry.json()

    def test_userinfo_rejects_missing_token(self, idp):
        response = idp.get("/oauth/userinfo")

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"


def test_idp_health(idp):
    body = idp.get("/health").json()

    assert body["providers"] == ["google", "microsoft", "strava", "company"]
    assert body["sso_sessions"]["total"] == 0
