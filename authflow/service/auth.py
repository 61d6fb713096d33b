from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlencode

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service import pkce
from authflow.service.credentials import CredentialDirectory
from authflow.service.errors import (
    InvalidOrExpiredOrUsedToken,
    MissingDeviceContext,
    NotFoundError,
    TokenRevoked,
    UpstreamProviderError,
    UpstreamTimeout,
    ValidationError,
)
from authflow.service.idp_client import IdPClient
from authflow.service.oauth_state import InvalidState, StateExpired, decode_state, encode_state
from authflow.service.results import Err, Ok, Result
from authflow.service.tokens import TokenCodec, TokenError, decode_unverified
from authflow.storage.blacklist import AccessTokenBlacklist
from authflow.storage.models import DeviceInfo, OAuthUserInfo, SessionView
from authflow.storage.nonces import NonceStore
from authflow.storage.oauth_users import OAuthUserStore
from authflow.storage.refresh_tokens import RefreshTokenStore

logger = get_logger(__name__)

PASSWORD_SCOPE = ["read", "write"]
OAUTH_SCOPE = ["read"]
TOKEN_VERSION = "1.0"


@dataclass
class AuthContext:
    user_id: int
    username: str
    jti: str
    expires_at: datetime
    device_id: Optional[str] = None
    scope: list[str] = field(default_factory=list)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class OAuthCallbackError:
    reason: str
    message: str


class AuthService:
    """Password login, refresh rotation, device sessions and the OAuth client side."""

    def __init__(
        self,
        settings: Settings,
        *,
        codec: TokenCodec,
        credentials: CredentialDirectory,
        refresh_tokens: RefreshTokenStore,
        blacklist: AccessTokenBlacklist,
        nonces: NonceStore,
        oauth_users: OAuthUserStore,
        idp_client: IdPClient,
    ) -> None:
        self.settings = settings
        self.codec = codec
        self.credentials = credentials
        self.refresh_tokens = refresh_tokens
        self.blacklist = blacklist
        self.nonces = nonces
        self.oauth_users = oauth_users
        self.idp_client = idp_client
        self.logger = logger

    # -- token minting -----------------------------------------------------

    def _claims(
        self, user_id: int, username: str, device_id: str, scope: list[str], **extra: Any
    ) -> dict[str, Any]:
        return {
            "userId": user_id,
            "username": username,
            "deviceId": device_id,
            "scope": list(scope),
            "version": TOKEN_VERSION,
            **extra,
        }

    def _mint_access(self, claims: dict[str, Any]) -> str:
        return self.codec.mint(
            claims,
            self.settings.jwt_access_secret,
            self.settings.access_token_ttl_seconds,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )

    def _mint_refresh(self, claims: dict[str, Any]) -> str:
        return self.codec.mint(
            claims,
            self.settings.jwt_refresh_secret,
            self.settings.refresh_token_ttl_seconds,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )

    def _issue(
        self, claims: dict[str, Any], device_info: DeviceInfo
    ) -> TokenPair:
        pair = TokenPair(
            access_token=self._mint_access(claims),
            refresh_token=self._mint_refresh(claims),
        )
        self.refresh_tokens.store(
            pair.refresh_token,
            claims["userId"],
            claims["deviceId"],
            device_info,
            self.settings.refresh_token_ttl_seconds,
        )
        return pair

    # -- password flow -----------------------------------------------------

    def login(
        self,
        username: str,
        password: str,
        device_id: Optional[str],
        device_info: Optional[DeviceInfo],
    ) -> TokenPair:
        if not device_id:
            raise MissingDeviceContext("Device ID is required")
        if device_info is None or not device_info.user_agent:
            raise MissingDeviceContext("User agent is required")
        user = self.credentials.authenticate(username, password)
        pair = self._issue(
            self._claims(user.id, user.username, device_id, user.scope), device_info
        )
        self.logger.info(
            "login_success",
            user_id=user.id,
            device_id=device_id,
            platform=device_info.platform,
        )
        return pair

    def refresh(self, refresh_token: Optional[str], device_id: Optional[str]) -> TokenPair:
        """Rotate ``refresh_token``: mark it used, then issue a fresh pair.

        The old token is claimed before anything new is minted, so a replay of
        the same cookie always fails even if it races the first request.
        """
        if not refresh_token or not device_id:
            self.logger.info(
                "refresh_rejected",
                reason="missing_cookie" if not refresh_token else "missing_device",
            )
            raise InvalidOrExpiredOrUsedToken()
        try:
            claims = self.codec.verify(
                refresh_token,
                self.settings.jwt_refresh_secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
            )
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__, device_id=device_id)
            raise InvalidOrExpiredOrUsedToken() from exc

        user_id = claims.get("userId")
        record = self.refresh_tokens.claim(refresh_token, user_id, device_id)
        if record is None:
            self.logger.warning("refresh_rejected", reason="not_claimable", device_id=device_id)
            raise InvalidOrExpiredOrUsedToken()

        extra = {"email": claims["email"]} if claims.get("email") else {}
        new_claims = self._claims(
            user_id, claims.get("username", ""), device_id, claims.get("scope") or [], **extra
        )
        pair = self._issue(new_claims, record.device_info)
        self.logger.info("refresh_rotated", user_id=user_id, device_id=device_id, session_id=record.id)
        return pair

    def logout(
        self,
        access_token: Optional[str],
        device_id: Optional[str],
        *,
        user_id: Optional[int] = None,
    ) -> None:
        """Best effort: failures are logged and the caller still clears the cookie.

        With ``user_id`` only that user's refresh tokens on the device are revoked.
        """
        if device_id:
            try:
                self.refresh_tokens.revoke_all_for_device(device_id, user_id=user_id)
            except Exception as exc:
                self.logger.error(
                    "logout_revoke_failed", device_id=device_id, error_type=type(exc).__name__, error=str(exc)
                )
        if access_token:
            try:
                self._blacklist_token(access_token)
            except Exception as exc:
                self.logger.error(
                    "logout_blacklist_failed", error_type=type(exc).__name__, error=str(exc)
                )
        self.logger.info("logout_complete", device_id=device_id)

    def _blacklist_token(self, token_or_jti: str) -> str:
        if token_or_jti.count(".") == 2:
            payload = decode_unverified(token_or_jti)
            jti = payload.get("jti")
            if not jti:
                raise ValidationError("Token has no jti claim")
            exp = payload.get("exp")
            expires_at = (
                datetime.fromtimestamp(float(exp), tz=timezone.utc)
                if isinstance(exp, (int, float))
                else None
            )
        else:
            jti, expires_at = token_or_jti, None
        self.blacklist.add(jti, expires_at)
        return jti

    def invalidate_token(self, token_or_jti: str) -> str:
        """Blacklist an access token (or bare jti) on an administrator's request."""
        if not token_or_jti:
            raise ValidationError("No access token provided")
        try:
            jti = self._blacklist_token(token_or_jti)
        except TokenError as exc:
            raise ValidationError("Malformed access token") from exc
        self.logger.warning("access_token_invalidated")
        return jti

    # -- sessions ----------------------------------------------------------

    def list_sessions(self, user_id: int) -> list[SessionView]:
        return self.refresh_tokens.list_active_sessions(user_id)

    def revoke_session(
        self,
        user_id: int,
        *,
        device_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        if session_id:
            revoked = self.refresh_tokens.revoke_by_id(user_id, session_id)
        elif device_id:
            revoked = self.refresh_tokens.revoke_latest_for_device(user_id, device_id)
        else:
            raise ValidationError("Device ID or session ID is required")
        if not revoked:
            raise NotFoundError("No active session found")
        self.logger.info(
            "session_revoked", user_id=user_id, device_id=device_id, session_id=session_id
        )

    # -- bearer authentication ---------------------------------------------

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidOrExpiredOrUsedToken("No token provided")
        try:
            claims = self.codec.verify(
                token,
                self.settings.jwt_access_secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
            )
        except TokenError as exc:
            self.logger.info("access_token_rejected", reason=type(exc).__name__)
            raise InvalidOrExpiredOrUsedToken() from exc
        jti = claims.get("jti")
        if not jti or self.blacklist.contains(jti):
            self.logger.info("access_token_blacklisted")
            raise TokenRevoked()
        return AuthContext(
            user_id=claims.get("userId"),
            username=claims.get("username", ""),
            jti=jti,
            expires_at=datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc),
            device_id=claims.get("deviceId"),
            scope=list(claims.get("scope") or []),
        )

    # -- OAuth client side -------------------------------------------------

    def start_oauth(
        self, provider: str, device_id: Optional[str], *, pkce_flow: bool = False
    ) -> dict[str, str]:
        client = self.settings.provider_client(provider)
        if client is None:
            raise ValidationError("Invalid provider")
        if not device_id:
            raise MissingDeviceContext("Device ID is required")

        self.nonces.sweep()
        nonce = self.nonces.generate()
        params = {
            "response_type": "code",
            "client_id": client.client_id,
            "redirect_uri": client.redirect_uri,
            "scope": " ".join(client.scopes),
            "state": encode_state(device_id, now=self.codec.now()),
            "nonce": nonce,
            "provider": provider,
        }
        result: dict[str, str] = {}
        if pkce_flow:
            verifier = pkce.generate_code_verifier()
            params["redirect_uri"] = self.settings.standalone_redirect_uri
            params["code_challenge"] = pkce.derive_challenge(verifier)
            params["code_challenge_method"] = "S256"
            result["codeVerifier"] = verifier
        result["redirectUrl"] = f"{self.settings.idp_authorize_url}?{urlencode(params)}"
        self.logger.info("oauth_started", provider=provider, device_id=device_id, pkce=pkce_flow)
        return result

    async def complete_oauth(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        device_info: DeviceInfo,
    ) -> Result[TokenPair, OAuthCallbackError]:
        client = self.settings.provider_client(provider)
        if client is None:
            return Err(OAuthCallbackError("invalid_provider", "Invalid provider"))
        if not code or not state:
            return Err(OAuthCallbackError("invalid_request", "Missing required parameters"))
        try:
            decoded = decode_state(
                state, ttl_seconds=self.settings.oauth_state_ttl_seconds, now=self.codec.now()
            )
        except StateExpired as exc:
            return Err(OAuthCallbackError("state_expired", str(exc)))
        except InvalidState as exc:
            return Err(OAuthCallbackError("invalid_state", str(exc)))

        try:
            tokens = await self.idp_client.exchange_code(client, code)
            id_token = tokens.get("id_token")
            if not id_token:
                return Err(OAuthCallbackError("missing_id_token", "ID token missing"))
            try:
                id_claims = self.codec.verify(
                    id_token,
                    self.settings.idp_jwt_secret,
                    issuer=self.settings.idp_issuer,
                    audience=self.settings.idp_audience,
                )
            except TokenError:
                return Err(OAuthCallbackError("invalid_id_token", "Invalid ID token"))
            if not self.nonces.validate(id_claims.get("nonce") or ""):
                self.logger.warning("oauth_nonce_rejected", provider=provider)
                return Err(OAuthCallbackError("invalid_nonce", "Invalid nonce parameter"))
            profile = await self.idp_client.fetch_userinfo(provider, tokens.get("access_token", ""))
        except UpstreamTimeout as exc:
            return Err(OAuthCallbackError("upstream_timeout", exc.message))
        except UpstreamProviderError as exc:
            return Err(OAuthCallbackError("upstream_error", exc.message))

        try:
            info = OAuthUserInfo.from_dict({**profile, "provider": profile.get("provider", provider)})
            user_id = int(info.id.rsplit("-", 1)[-1])
        except (KeyError, ValueError, TypeError):
            self.logger.error("oauth_userinfo_invalid", provider=provider)
            return Err(OAuthCallbackError("invalid_userinfo", "Invalid user info"))

        self.oauth_users.put(info)
        claims = self._claims(
            user_id, info.name or info.email, decoded.device_id, OAUTH_SCOPE, email=info.email
        )
        pair = self._issue(claims, device_info)
        self.logger.info(
            "oauth_login_success", provider=provider, user_id=user_id, device_id=decoded.device_id
        )
        return Ok(pair)
