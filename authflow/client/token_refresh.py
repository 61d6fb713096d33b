"""Proactive access-token refresh for API clients.

One timer is armed per access token, ``threshold`` seconds before its
``exp``. When it fires the client rotates its refresh cookie; a failed
rotation clears the token and calls the logout callback.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from authflow.logging import get_logger
from authflow.service.scheduler import ScheduledHandle, Scheduler
from authflow.service.tokens import TokenError, decode_unverified

logger = get_logger(__name__)

DEFAULT_THRESHOLD_SECONDS = 2.0

RefreshCall = Callable[[], Awaitable[Optional[str]]]


class TokenRefreshScheduler:
    def __init__(
        self,
        scheduler: Scheduler,
        refresh: RefreshCall,
        on_logout: Callable[[], None],
        *,
        threshold_seconds: float = DEFAULT_THRESHOLD_SECONDS,
    ) -> None:
        self.scheduler = scheduler
        self.threshold_seconds = threshold_seconds
        self.access_token: Optional[str] = None
        self.is_refreshing = False
        self._refresh = refresh
        self._on_logout = on_logout
        self._handle: Optional[ScheduledHandle] = None
        # Bumped by start() and stop(); a refresh that straddles either is stale
        self._generation = 0

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def time_until_expiration(self, token: str) -> float:
        exp = decode_unverified(token).get("exp")
        if not isinstance(exp, (int, float)):
            raise TokenError("token has no exp claim")
        return float(exp) - self.scheduler.now()

    def start(self, token: str) -> None:
        """Adopt ``token`` and arm a single check just before it expires."""
        self._generation += 1
        self.access_token = token
        self._cancel()
        delay = max(0.0, self.time_until_expiration(token) - self.threshold_seconds)
        logger.debug("token_refresh_scheduled", delay_seconds=round(delay, 3))
        self._handle = self.scheduler.call_later(delay, self._check)

    def _cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def stop(self) -> None:
        """Cancel the pending check and forget the token."""
        self._generation += 1
        self._cancel()
        self.access_token = None

    async def _check(self) -> None:
        self._handle = None
        token = self.access_token
        if not token:
            return
        try:
            remaining = self.time_until_expiration(token)
        except TokenError as exc:
            logger.error("token_refresh_check_failed", error=str(exc))
            self.stop()
            return
        if remaining > self.threshold_seconds:
            self.start(token)
            return
        await self.refresh_now()

    async def refresh_now(self) -> Optional[str]:
        """Rotate now; ``None`` when another refresh is in flight or this one failed."""
        if self.is_refreshing:
            logger.debug("token_refresh_already_running")
            return None
        self.is_refreshing = True
        generation = self._generation
        try:
            new_token = await self._refresh()
        except Exception as exc:
            logger.warning("token_refresh_failed", error_type=type(exc).__name__, error=str(exc))
            new_token = None
        finally:
            self.is_refreshing = False

        if generation != self._generation:
            # stop() or start() ran while the call was in flight
            logger.info("token_refresh_discarded")
            return None

        if new_token:
            logger.info("token_refreshed")
            self.start(new_token)
            return new_token

        self.stop()
        self._on_logout()
        return None
