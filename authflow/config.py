from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authflow.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Key-value backends available to the token stores."""

    MEMORY = "memory"
    REDIS = "redis"


SUPPORTED_PROVIDERS = ("google", "microsoft", "strava", "company")

# Strava speaks its own scope dialect; the rest are OIDC-ish.
_PROVIDER_SCOPES: dict[str, list[str]] = {
    "google": ["openid", "profile", "email"],
    "microsoft": ["openid", "profile", "email"],
    "strava": ["read", "activity:read"],
    "company": ["openid", "profile", "email"],
}


@dataclass
class ProviderClient:
    """A client registration shared by the backend and the mock IdP.

    The confidential redirect URI belongs to the backend callback, the public
    one to the PKCE-only standalone client which has no secret.
    """

    provider: str
    client_id: str
    client_secret: str
    redirect_uri: str
    public_redirect_uris: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)

    @property
    def redirect_uris(self) -> list[str]:
        return [self.redirect_uri, *self.public_redirect_uris]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the backend, the mock IdP and the client helpers."""

    environment: str = env_field("development", "NODE_ENV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )

    # Application tokens
    jwt_access_secret: str = env_field("default-access-secret", "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str = env_field("default-refresh-secret", "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("your-app-name", "JWT_ISSUER")
    jwt_audience: str = env_field("api", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")
    access_token_ttl_seconds: int = env_field(
        15,
        "ACCESS_TOKEN_EXPIRY",
        description="Access token lifetime; kept short for the demo refresh cycle.",
    )
    refresh_token_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "REFRESH_TOKEN_EXPIRY")

    # Cookies and CORS
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/api/auth/refresh", "REFRESH_COOKIE_PATH")
    refresh_cookie_httponly: bool = env_field(True, "REFRESH_COOKIE_HTTPONLY")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )

    # Service URLs
    port: int = env_field(3001, "PORT")
    backend_base_url: str = env_field("http://localhost:3001", "BACKEND_BASE_URL")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    standalone_redirect_uri: str = env_field(
        "http://localhost:3003/callback", "STANDALONE_REDIRECT_URI"
    )
    idp_base_url: str = env_field("http://localhost:3002", "OAUTH_SERVER_URL")
    upstream_timeout_seconds: float = env_field(
        10.0,
        "UPSTREAM_TIMEOUT_SECONDS",
        description="Timeout for token and userinfo calls made to the IdP.",
    )

    # Mock identity provider
    idp_port: int = env_field(3002, "IDP_PORT")
    idp_jwt_secret: str = env_field("fake-oauth-secret", "OAUTH_JWT_SECRET")
    idp_issuer: str = env_field("your-oauth-server-name", "OAUTH_ISSUER")
    idp_audience: str = env_field("idp", "OAUTH_AUDIENCE")
    idp_access_token_ttl_seconds: int = env_field(3600, "OAUTH_ACCESS_TOKEN_EXPIRY")
    idp_refresh_token_ttl_seconds: int = env_field(604800, "OAUTH_REFRESH_TOKEN_EXPIRY")
    authorization_code_ttl_seconds: int = env_field(600, "AUTHORIZATION_CODE_TTL")
    sso_session_ttl_seconds: int = env_field(8 * 60 * 60, "SSO_SESSION_TTL")
    sso_cookie_name: str = env_field("oauth_sso_session", "SSO_COOKIE_NAME")

    # One-shot values
    nonce_ttl_seconds: int = env_field(3600, "NONCE_TTL")
    oauth_state_ttl_seconds: int = env_field(3600, "OAUTH_STATE_TTL")

    # Background work and client behaviour
    sweep_interval_seconds: int = env_field(
        5 * 60,
        "CLEANUP_INTERVAL_SECONDS",
        description="Interval between store sweeps; 5 minutes by default.",
    )
    refresh_threshold_seconds: float = env_field(2.0, "REFRESH_THRESHOLD_SECONDS")

    # Storage
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")

    # Administrative token invalidation is disabled unless a key is configured
    admin_api_key: str | None = env_field(None, "ADMIN_API_KEY")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        settings = cls(**merged)
        if settings.is_production and settings.jwt_access_secret.startswith("default-"):
            logger.warning(
                "default_jwt_secret_in_production",
                message="Set JWT_ACCESS_SECRET and JWT_REFRESH_SECRET before deploying",
            )
        return settings

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret", "idp_jwt_secret")
    @classmethod
    def _require_secret(cls, value: str) -> str:
        if not value:
            raise ValueError("JWT secrets must not be empty")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def idp_authorize_url(self) -> str:
        return f"{self.idp_base_url.rstrip('/')}/oauth/authorize"

    @property
    def idp_token_url(self) -> str:
        return f"{self.idp_base_url.rstrip('/')}/oauth/token"

    @property
    def idp_userinfo_url(self) -> str:
        return f"{self.idp_base_url.rstrip('/')}/oauth/userinfo"

    def callback_uri(self, provider: str) -> str:
        return f"{self.backend_base_url.rstrip('/')}/api/auth/callback/{provider}"

    def provider_client(self, provider: str) -> ProviderClient | None:
        """Resolve the client registration for ``provider``.

        ``{PROVIDER}_CLIENT_ID``, ``{PROVIDER}_CLIENT_SECRET`` and
        ``{PROVIDER}_REDIRECT_URI`` override the demo defaults.
        """
        if provider not in SUPPORTED_PROVIDERS:
            return None
        prefix = provider.upper()
        return ProviderClient(
            provider=provider,
            client_id=os.getenv(f"{prefix}_CLIENT_ID", f"fake-{provider}-client-id"),
            client_secret=os.getenv(
                f"{prefix}_CLIENT_SECRET", f"fake-{provider}-client-secret"
            ),
            redirect_uri=os.getenv(f"{prefix}_REDIRECT_URI", self.callback_uri(provider)),
            public_redirect_uris=[self.standalone_redirect_uri],
            scopes=list(_PROVIDER_SCOPES[provider]),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
