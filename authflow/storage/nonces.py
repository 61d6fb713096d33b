from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable

from authflow.storage.common import KeyValueStore, utcnow
from authflow.storage.models import NonceRecord


class NonceStore:
    """One-shot values binding an ID token to the request that asked for it."""

    NAMESPACE = "nonces"

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.kv = kv
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def generate(self) -> str:
        nonce = str(uuid.uuid4())
        record = NonceRecord(nonce=nonce, created_at=self._clock())
        self.kv.put(self.NAMESPACE, nonce, record.to_dict())
        return nonce

    def validate(self, nonce: str) -> bool:
        """True once per fresh nonce; the nonce is removed whatever the outcome."""
        if not nonce:
            return False
        data = self.kv.pop(self.NAMESPACE, nonce)
        if data is None:
            return False
        record = NonceRecord.from_dict(data)
        return self._clock() - record.created_at <= self.ttl

    def sweep(self) -> int:
        cutoff = self._clock() - self.ttl
        removed = 0
        for key, data in self.kv.scan(self.NAMESPACE):
            if NonceRecord.from_dict(data).created_at < cutoff:
                self.kv.delete(self.NAMESPACE, key)
                removed += 1
        return removed
