from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authflow.config import StoreBackend, get_settings, reset_settings_cache
from authflow.logging import get_logger
from authflow.service.auth import AuthService
from authflow.service.credentials import CredentialDirectory
from authflow.service.idp_client import IdPClient
from authflow.service.oauth_provider import OAuthProviderService
from authflow.service.scheduler import PeriodicSweeper, Scheduler, SweepJob
from authflow.service.tokens import TokenCodec
from authflow.storage.authorization_codes import AuthorizationCodeStore
from authflow.storage.blacklist import AccessTokenBlacklist
from authflow.storage.memory import MemoryKV
from authflow.storage.nonces import NonceStore
from authflow.storage.oauth_users import OAuthUserStore
from authflow.storage.redis_cache import RedisKV
from authflow.storage.refresh_tokens import RefreshTokenStore
from authflow.storage.sso_sessions import SSOSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the backend and IdP apps."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.kv: Union[MemoryKV, RedisKV]
        if self.settings.store_backend == StoreBackend.REDIS:
            try:
                kv = RedisKV(self.settings.redis_url)
                kv.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="redis",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is configured as the token store but is unreachable; "
                    "start Redis or set STORE_BACKEND=memory."
                ) from exc
            self.kv = kv
        else:
            self.kv = MemoryKV()

        self.codec = TokenCodec(leeway_seconds=self.settings.jwt_leeway_seconds)
        self.credentials = CredentialDirectory()
        self.refresh_tokens = RefreshTokenStore(self.kv)
        self.blacklist = AccessTokenBlacklist(
            self.kv, default_ttl_seconds=self.settings.access_token_ttl_seconds
        )
        self.nonces = NonceStore(self.kv, ttl_seconds=self.settings.nonce_ttl_seconds)
        self.oauth_users = OAuthUserStore(self.kv)
        self.authorization_codes = AuthorizationCodeStore(
            self.kv, ttl_seconds=self.settings.authorization_code_ttl_seconds
        )
        self.sso_sessions = SSOSessionStore(
            self.kv, ttl_seconds=self.settings.sso_session_ttl_seconds
        )
        self.idp_client = IdPClient(self.settings)
        self.auth = AuthService(
            self.settings,
            codec=self.codec,
            credentials=self.credentials,
            refresh_tokens=self.refresh_tokens,
            blacklist=self.blacklist,
            nonces=self.nonces,
            oauth_users=self.oauth_users,
            idp_client=self.idp_client,
        )
        self.oauth_provider = OAuthProviderService(
            self.settings,
            codec=self.codec,
            codes=self.authorization_codes,
            sso_sessions=self.sso_sessions,
        )
        self.sweeper: Optional[PeriodicSweeper] = None

        logger.info(
            "runtime_initialized",
            store_backend=self.settings.store_backend.value,
            environment=self.settings.environment,
            admin_invalidation_enabled=self.settings.admin_api_key is not None,
        )

    def build_sweeper(self, scheduler: Scheduler) -> PeriodicSweeper:
        self.sweeper = PeriodicSweeper(
            scheduler,
            self.settings.sweep_interval_seconds,
            [
                SweepJob("refresh_tokens", self.refresh_tokens.sweep_expired),
                SweepJob("access_blacklist", self.blacklist.sweep),
                SweepJob("nonces", self.nonces.sweep),
                SweepJob("authorization_codes", self.authorization_codes.sweep),
                SweepJob("sso_sessions", self.sso_sessions.sweep),
            ],
        )
        return self.sweeper

    def close(self) -> None:
        if self.sweeper is not None:
            self.sweeper.stop()
        self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path once the
    runtime exists, the locked check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("reset_runtime_for_tests requires TEST_MODE=true")
        runtime = Runtime()
        return runtime
