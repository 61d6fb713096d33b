from __future__ import annotations

import hmac
from dataclasses import asdict, dataclass
from typing import Any, Optional
from urllib.parse import urlencode

from authflow.config import SUPPORTED_PROVIDERS, ProviderClient, Settings
from authflow.logging import get_logger
from authflow.service import pkce
from authflow.service.errors import (
    AccessDenied,
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    InvalidToken,
    OAuthError,
    PKCEVerificationFailed,
    UnsupportedGrantType,
)
from authflow.service.results import Err, Ok, Result
from authflow.service.tokens import TokenCodec, TokenError
from authflow.storage.authorization_codes import AuthorizationCodeStore
from authflow.storage.errors import CodeExpired, CodeNotFound
from authflow.storage.models import OAuthUserInfo
from authflow.storage.sso_sessions import SSOSessionStore

logger = get_logger(__name__)


def mock_user(provider: str) -> OAuthUserInfo:
    """The single account each mock provider signs in."""
    return OAuthUserInfo(
        id=f"{provider}-123",
        email=f"{provider}.user@example.com",
        name=f"{provider.capitalize()} User",
        provider=provider,
    )


MOCK_USERS = {provider: mock_user(provider) for provider in SUPPORTED_PROVIDERS}


@dataclass
class AuthorizationRequest:
    response_type: Optional[str]
    client_id: Optional[str]
    redirect_uri: Optional[str]
    provider: Optional[str]
    scope: str = ""
    state: Optional[str] = None
    nonce: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    prompt: Optional[str] = None

    def to_form(self) -> dict[str, str]:
        """Hidden form fields carried from the consent page to confirm."""
        return {key: value for key, value in asdict(self).items() if value}

    @property
    def scopes(self) -> list[str]:
        return [item for item in self.scope.split(" ") if item]


@dataclass
class TokenRequest:
    grant_type: Optional[str]
    code: Optional[str]
    redirect_uri: Optional[str]
    client_id: Optional[str]
    provider: Optional[str]
    client_secret: Optional[str] = None
    code_verifier: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "TokenRequest":
        def _get(name: str) -> Optional[str]:
            value = data.get(name)
            return str(value) if value not in (None, "") else None

        return cls(
            grant_type=_get("grant_type"),
            code=_get("code"),
            redirect_uri=_get("redirect_uri"),
            client_id=_get("client_id"),
            provider=_get("provider"),
            client_secret=_get("client_secret"),
            code_verifier=_get("code_verifier"),
        )


@dataclass
class ConsentOutcome:
    redirect_url: str
    sso_session_id: Optional[str] = None


def _append_query(uri: str, params: dict[str, str]) -> str:
    separator = "&" if "?" in uri else "?"
    return f"{uri}{separator}{urlencode(params)}"


class OAuthProviderService:
    """Authorization-code grant for the mock identity provider.

    Handles the consent round-trip, code redemption for confidential clients
    (client secret) and public clients (PKCE), and the userinfo lookup. Every
    operation returns ``Ok`` or ``Err(OAuthError)``; routes render errors as
    RFC 6749 bodies.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        codec: TokenCodec,
        codes: AuthorizationCodeStore,
        sso_sessions: SSOSessionStore,
    ) -> None:
        self.settings = settings
        self.codec = codec
        self.codes = codes
        self.sso_sessions = sso_sessions

    # -- consent -----------------------------------------------------------

    def _validate_request(
        self, request: AuthorizationRequest
    ) -> Result[ProviderClient, OAuthError]:
        if request.response_type != "code":
            return Err(InvalidRequest("response_type must be code"))
        client = self.settings.provider_client(request.provider or "")
        if client is None:
            return Err(InvalidRequest("Invalid provider"))
        if request.client_id != client.client_id:
            return Err(InvalidClient("Invalid client_id"))
        if not request.redirect_uri or request.redirect_uri not in client.redirect_uris:
            logger.warning(
                "idp_redirect_uri_rejected",
                provider=request.provider,
                redirect_uri=request.redirect_uri,
            )
            return Err(InvalidRequest("Invalid redirect_uri"))
        if request.code_challenge:
            method = request.code_challenge_method or "S256"
            if method not in pkce.SUPPORTED_METHODS:
                return Err(InvalidRequest("Unsupported code_challenge_method"))
        elif request.redirect_uri != client.redirect_uri:
            # Public redirect URIs belong to clients without a secret
            return Err(InvalidRequest("code_challenge is required for public clients"))
        return Ok(client)

    def authorize(
        self, request: AuthorizationRequest
    ) -> Result[AuthorizationRequest, OAuthError]:
        validated = self._validate_request(request)
        if not validated.ok:
            return validated
        if request.code_challenge and not request.code_challenge_method:
            request.code_challenge_method = "S256"
        logger.info(
            "idp_authorize_request",
            provider=request.provider,
            client_id=request.client_id,
            pkce=bool(request.code_challenge),
        )
        return Ok(request)

    def resume_sso(
        self, request: AuthorizationRequest, sso_session_id: Optional[str]
    ) -> Optional[str]:
        """Redirect URL for an already validated request when consent can be skipped."""
        if request.prompt == "consent":
            return None
        session = self.sso_sessions.find(sso_session_id)
        if session is None or session.provider != request.provider:
            return None
        logger.info("idp_sso_reused", provider=request.provider, user_id=session.user_id)
        return self._issue_redirect(request)

    def _issue_redirect(self, request: AuthorizationRequest) -> str:
        code = self.codes.issue(
            request.client_id,
            request.redirect_uri,
            request.provider,
            request.nonce,
            scope=request.scope,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
        )
        params = {"code": code}
        if request.state:
            params["state"] = request.state
        return _append_query(request.redirect_uri, params)

    def confirm(
        self,
        request: AuthorizationRequest,
        decision: str = "approve",
        *,
        sso_session_id: Optional[str] = None,
    ) -> Result[ConsentOutcome, OAuthError]:
        validated = self._validate_request(request)
        if not validated.ok:
            return validated

        if decision != "approve":
            params = AccessDenied("The user denied access").to_dict()
            if request.state:
                params["state"] = request.state
            logger.info("idp_consent_denied", provider=request.provider)
            return Ok(ConsentOutcome(_append_query(request.redirect_uri, params)))

        redirect_url = self._issue_redirect(request)
        new_session = None
        if self.sso_sessions.find(sso_session_id) is None:
            new_session = self.sso_sessions.create(MOCK_USERS[request.provider].id, request.provider)
        logger.info("idp_consent_approved", provider=request.provider, client_id=request.client_id)
        return Ok(ConsentOutcome(redirect_url, new_session))

    # -- token endpoint ----------------------------------------------------

    def _mint(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        return self.codec.mint(
            claims,
            self.settings.idp_jwt_secret,
            ttl_seconds,
            issuer=self.settings.idp_issuer,
            audience=[self.settings.idp_audience],
        )

    def _authenticate_client(
        self, client: ProviderClient, request: TokenRequest
    ) -> Optional[OAuthError]:
        if request.client_id != client.client_id:
            return InvalidClient("Invalid client_id")
        if request.client_secret is not None and not hmac.compare_digest(
            request.client_secret.encode(), client.client_secret.encode()
        ):
            return InvalidClient("Invalid client credentials")
        return None

    def token(self, request: TokenRequest) -> Result[dict[str, Any], OAuthError]:
        if request.grant_type != "authorization_code":
            return Err(UnsupportedGrantType())
        client = self.settings.provider_client(request.provider or "")
        if client is None:
            return Err(InvalidRequest("Invalid provider"))
        client_error = self._authenticate_client(client, request)
        if client_error is not None:
            logger.warning("idp_client_auth_failed", provider=request.provider)
            return Err(client_error)

        try:
            record = self.codes.consume(request.code or "")
        except CodeExpired:
            return Err(InvalidGrant("Authorization code expired"))
        except CodeNotFound:
            logger.warning("idp_code_not_found", provider=request.provider)
            return Err(InvalidGrant())

        if record.client_id != request.client_id or record.provider != request.provider:
            return Err(InvalidGrant("Authorization code was issued to another client"))
        if record.redirect_uri != request.redirect_uri:
            return Err(InvalidGrant("Invalid redirect_uri"))

        if record.code_challenge:
            if not request.code_verifier:
                return Err(InvalidGrant("code_verifier is required"))
            try:
                pkce.validate_verifier(request.code_verifier)
            except pkce.InvalidVerifierFormat as exc:
                return Err(InvalidGrant(str(exc)))
            if not pkce.verify(
                request.code_verifier,
                record.code_challenge,
                record.code_challenge_method or "S256",
            ):
                logger.warning("idp_pkce_failed", provider=request.provider)
                return Err(PKCEVerificationFailed())
        elif request.client_secret is None:
            return Err(InvalidClient("Client authentication required"))

        user = MOCK_USERS[record.provider]
        base = {"sub": user.id, "provider": record.provider}
        access_ttl = self.settings.idp_access_token_ttl_seconds
        id_claims = {**base, "email": user.email, "name": user.name}
        if record.nonce:
            id_claims["nonce"] = record.nonce
        body = {
            "access_token": self._mint(base, access_ttl),
            "token_type": "Bearer",
            "expires_in": access_ttl,
            "refresh_token": self._mint(base, self.settings.idp_refresh_token_ttl_seconds),
            "id_token": self._mint(id_claims, access_ttl),
            "scope": record.scope,
        }
        logger.info(
            "idp_tokens_issued",
            provider=record.provider,
            client_id=record.client_id,
            pkce=bool(record.code_challenge),
        )
        return Ok(body)

    # -- userinfo ----------------------------------------------------------

    def userinfo(self, authorization: Optional[str]) -> Result[dict[str, Any], OAuthError]:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme != "Bearer" or not token:
            return Err(InvalidToken())
        try:
            claims = self.codec.verify(
                token,
                self.settings.idp_jwt_secret,
                issuer=self.settings.idp_issuer,
                audience=self.settings.idp_audience,
            )
        except TokenError as exc:
            logger.info("idp_userinfo_rejected", reason=type(exc).__name__)
            return Err(InvalidToken())
        user = MOCK_USERS.get(claims.get("provider", ""))
        if user is None:
            return Err(InvalidToken())
        return Ok(user.to_dict())

    def sweep(self) -> dict[str, int]:
        return {
            "authorization_codes": self.codes.sweep(),
            "sso_sessions": self.sso_sessions.sweep(),
        }
