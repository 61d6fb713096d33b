from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from authflow.logging import get_logger
from authflow.storage.common import KeyValueStore, digest, utcnow
from authflow.storage.models import BlacklistEntry

logger = get_logger(__name__)


class AccessTokenBlacklist:
    """Revoked access-token ids, stored as SHA-256 digests.

    Each entry lives until the access token it blocks would have expired on
    its own; after that the signature check rejects the token anyway.
    """

    NAMESPACE = "access_blacklist"

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        default_ttl_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.kv = kv
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock

    def add(self, jti: str, expires_at: Optional[datetime] = None) -> None:
        if not jti:
            return
        if expires_at is None:
            expires_at = self._clock() + timedelta(seconds=self.default_ttl_seconds)
        entry = BlacklistEntry(jti_hash=digest(jti), expires_at=expires_at)
        self.kv.put(self.NAMESPACE, entry.jti_hash, entry.to_dict())

    def contains(self, jti: str) -> bool:
        if not jti:
            return False
        return self.kv.get(self.NAMESPACE, digest(jti)) is not None

    def sweep(self) -> int:
        """Drop entries whose token has expired naturally."""
        now = self._clock()
        removed = 0
        for key, data in self.kv.scan(self.NAMESPACE):
            if BlacklistEntry.from_dict(data).expires_at <= now:
                self.kv.delete(self.NAMESPACE, key)
                removed += 1
        if removed:
            logger.debug("access_blacklist_swept", removed=removed)
        return removed
