"""Authorization-code grant of the mock identity provider."""

from urllib.parse import parse_qs, urlparse

import pytest

from authflow.service import pkce
from authflow.service.errors import InvalidClient, InvalidGrant, InvalidRequest, PKCEVerificationFailed
from authflow.service.oauth_provider import AuthorizationRequest, TokenRequest, mock_user


@pytest.fixture
def provider(runtime):
    return runtime.oauth_provider


@pytest.fixture
def client(runtime):
    return runtime.settings.provider_client("google")


def _request(client, **overrides):
    values = dict(
        response_type="code",
        client_id=client.client_id,
        redirect_uri=client.redirect_uri,
        provider="google",
        scope="openid email",
        state="state-xyz",
        nonce="nonce-1",
    )
    values.update(overrides)
    return AuthorizationRequest(**values)


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def _approve(provider, request, sso_session_id=None):
    outcome = provider.confirm(request, "approve", sso_session_id=sso_session_id).value
    return _query(outcome.redirect_url)["code"], outcome


def _token_request(client, code, **overrides):
    values = dict(
        grant_type="authorization_code",
        code=code,
        redirect_uri=client.redirect_uri,
        client_id=client.client_id,
        provider="google",
        client_secret=client.client_secret,
    )
    values.update(overrides)
    return TokenRequest(**values)


def test_mock_user_shape():
    user = mock_user("strava")

    assert user.id == "strava-123"
    assert user.email == "strava.user@example.com"
    assert user.name == "Strava User"


class TestAuthorize:
    def test_valid_request(self, provider, client):
        result = provider.authorize(_request(client))

        assert result.ok
        assert result.value.scopes == ["openid", "email"]

    @pytest.mark.parametrize(
        "overrides,error_type,description",
        [
            ({"response_type": "token"}, InvalidRequest, "response_type must be code"),
            ({"provider": "myspace"}, InvalidRequest, "Invalid provider"),
            ({"client_id": "someone-else"}, InvalidClient, "Invalid client_id"),
            ({"redirect_uri": "https://evil.example/cb"}, InvalidRequest, "Invalid redirect_uri"),
        ],
    )
    def test_rejected_requests(self, provider, client, overrides, error_type, description):
        result = provider.authorize(_request(client, **overrides))

        assert not result.ok
        assert isinstance(result.error, error_type)
        assert result.error.description == description

    def test_public_redirect_requires_challenge(self, provider, client, runtime):
        result = provider.authorize(
            _request(client, redirect_uri=runtime.settings.standalone_redirect_uri)
        )

        assert isinstance(result.error, InvalidRequest)

    def test_challenge_method_defaults_to_s256(self, provider, client):
        result = provider.authorize(_request(client, code_challenge="abc"))

        assert result.value.code_challenge_method == "S256"

    def test_unknown_challenge_method(self, provider, client):
        result = provider.authorize(
            _request(client, code_challenge="abc", code_challenge_method="S512")
        )

        assert result.error.description == "Unsupported code_challenge_method"


class TestConfirm:
    def test_approve_redirects_with_code_and_state(self, provider, client):
        code, outcome = _approve(provider, _request(client))

        assert outcome.redirect_url.startswith(f"{client.redirect_uri}?")
        assert _query(outcome.redirect_url)["state"] == "state-xyz"
        assert code
        assert outcome.sso_session_id

    def test_deny_redirects_with_access_denied(self, provider, client):
        outcome = provider.confirm(_request(client), "deny").value

        params = _query(outcome.redirect_url)
        assert params["error"] == "access_denied"
        assert params["error_description"] == "The user denied access"
        assert params["state"] == "state-xyz"
        assert "code" not in params
        assert outcome.sso_session_id is None

    def test_existing_sso_session_is_reused(self, provider, client):
        _, first = _approve(provider, _request(client))

        _, second = _approve(provider, _request(client), sso_session_id=first.sso_session_id)

        assert second.sso_session_id is None

    def test_confirm_revalidates(self, provider, client):
        result = provider.confirm(_request(client, client_id="tampered"))

        assert isinstance(result.error, InvalidClient)


class TestResumeSSO:
    def test_live_session_skips_consent(self, provider, client):
        _, outcome = _approve(provider, _request(client))

        redirect = provider.resume_sso(_request(client, state="again"), outcome.sso_session_id)

        assert _query(redirect)["state"] == "again"
        assert "code" in _query(redirect)

    def test_prompt_consent_forces_page(self, provider, client):
        _, outcome = _approve(provider, _request(client))

        assert provider.resume_sso(_request(client, prompt="consent"), outcome.sso_session_id) is None

    def test_session_for_other_provider_is_ignored(self, provider, client, runtime):
        _, outcome = _approve(provider, _request(client))
        strava = runtime.settings.provider_client("strava")

        request = AuthorizationRequest(
            response_type="code",
            client_id=strava.client_id,
            redirect_uri=strava.redirect_uri,
            provider="strava",
        )
        assert provider.resume_sso(request, outcome.sso_session_id) is None

    def test_no_cookie(self, provider, client):
        assert provider.resume_sso(_request(client), None) is None


class TestTokenEndpoint:
    def test_confidential_client_receives_tokens(self, provider, client, runtime):
        code, _ = _approve(provider, _request(client))

        body = provider.token(_token_request(client, code)).value

        assert body["token_type"] == "Bearer"
        assert body["scope"] == "openid email"
        assert body["expires_in"] == runtime.settings.idp_access_token_ttl_seconds
        settings = runtime.settings
        id_claims = runtime.codec.verify(
            body["id_token"],
            settings.idp_jwt_secret,
            issuer=settings.idp_issuer,
            audience=settings.idp_audience,
        )
        assert id_claims["nonce"] == "nonce-1"
        assert id_claims["sub"] == "google-123"
        assert id_claims["email"] == "google.user@example.com"

    def test_code_cannot_be_redeemed_twice(self, provider, client):
        code, _ = _approve(provider, _request(client))
        provider.token(_token_request(client, code))

        result = provider.token(_token_request(client, code))

        assert isinstance(result.error, InvalidGrant)

    def test_wrong_secret_does_not_burn_code(self, provider, client):
        code, _ = _approve(provider, _request(client))

        bad = provider.token(_token_request(client, code, client_secret="wrong"))
        good = provider.token(_token_request(client, code))

        assert bad.error.error == "invalid_client"
        assert good.ok

    def test_unsupported_grant_type(self, provider, client):
        result = provider.token(_token_request(client, "x", grant_type="password"))

        assert result.error.error == "unsupported_grant_type"

    def test_redirect_uri_must_match(self, provider, client):
        code, _ = _approve(provider, _request(client))

        result = provider.token(
            _token_request(client, code, redirect_uri="http://localhost:3001/other")
        )

        assert result.error.description == "Invalid redirect_uri"

    def test_redirect_mismatch_burns_code(self, provider, client):
        code, _ = _approve(provider, _request(client))
        provider.token(_token_request(client, code, redirect_uri="http://localhost:3001/other"))

        retry = provider.token(_token_request(client, code))

        assert isinstance(retry.error, InvalidGrant)
        assert retry.error.error == "invalid_grant"

    def test_secretless_client_without_pkce_is_rejected(self, provider, client):
        code, _ = _approve(provider, _request(client))

        result = provider.token(_token_request(client, code, client_secret=None))

        assert result.error.error == "invalid_client"
        assert result.error.description == "Client authentication required"

    def test_unknown_code(self, provider, client):
        result = provider.token(_token_request(client, "made-up"))

        assert result.error.error == "invalid_grant"


class TestPKCE:
    @pytest.fixture
    def verifier(self):
        return pkce.generate_code_verifier()

    def _pkce_code(self, provider, client, runtime, verifier):
        request = _request(
            client,
            redirect_uri=runtime.settings.standalone_redirect_uri,
            code_challenge=pkce.derive_challenge(verifier),
            code_challenge_method="S256",
        )
        code, _ = _approve(provider, request)
        return code

    def _redeem(self, provider, client, runtime, code, verifier):
        return provider.token(
            _token_request(
                client,
                code,
                redirect_uri=runtime.settings.standalone_redirect_uri,
                client_secret=None,
                code_verifier=verifier,
            )
        )

    def test_correct_verifier(self, provider, client, runtime, verifier):
        code = self._pkce_code(provider, client, runtime, verifier)

        assert self._redeem(provider, client, runtime, code, verifier).ok

    def test_wrong_verifier(self, provider, client, runtime, verifier):
        code = self._pkce_code(provider, client, runtime, verifier)

        result = self._redeem(provider, client, runtime, code, pkce.generate_code_verifier())

        assert isinstance(result.error, PKCEVerificationFailed)
        assert result.error.to_dict() == {
            "error": "invalid_grant",
            "error_description": "PKCE verification failed",
        }

    @pytest.mark.parametrize("first_attempt", ["wrong", None, "too-short"])
    def test_failed_exchange_burns_code(self, provider, client, runtime, verifier, first_attempt):
        code = self._pkce_code(provider, client, runtime, verifier)
        if first_attempt == "wrong":
            first_attempt = pkce.generate_code_verifier()
        assert not self._redeem(provider, client, runtime, code, first_attempt).ok

        retry = self._redeem(provider, client, runtime, code, verifier)

        assert retry.error.error == "invalid_grant"
        assert not isinstance(retry.error, PKCEVerificationFailed)

    def test_missing_verifier(self, provider, client, runtime, verifier):
        code = self._pkce_code(provider, client, runtime, verifier)

        result = self._redeem(provider, client, runtime, code, None)

        assert result.error.description == "code_verifier is required"

    def test_malformed_verifier(self, provider, client, runtime, verifier):
        code = self._pkce_code(provider, client, runtime, verifier)

        result = self._redeem(provider, client, runtime, code, "too-short")

        assert result.error.error == "invalid_grant"


class TestUserInfo:
    def test_returns_mock_profile(self, provider, client):
        code, _ = _approve(provider, _request(client))
        access = provider.token(_token_request(client, code)).value["access_token"]

        profile = provider.userinfo(f"Bearer {access}").value

        assert profile == {
            "id": "google-123",
            "email": "google.user@example.com",
            "name": "Google User",
            "provider": "google",
        }

    @pytest.mark.parametrize("header", [None, "", "Token abc", "bearer abc", "Bearer not-a-jwt"])
    def test_rejects_bad_authorization(self, provider, header):
        result = provider.userinfo(header)

        assert result.error.error == "invalid_token"
        assert result.error.status_code == 401
