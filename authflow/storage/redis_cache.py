from __future__ import annotations

import json
from typing import ContextManager, Iterator, Optional

from redis import Redis

from authflow.logging import get_logger

logger = get_logger(__name__)


class RedisKV:
    """Redis-backed key-value store shared by several backend processes.

    Uses a synchronous client. The routes are ``async def``, so each command
    runs on the event loop and blocks it for at most ``socket_timeout``.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0
    # Upper bound on how long a critical section may hold its lock
    LOCK_TIMEOUT = 10.0

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "authflow",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def _key(self, namespace: str, key: str) -> str:
        return f"{self.prefix}:{namespace}:{key}"

    def put(self, namespace: str, key: str, value: dict) -> None:
        self.client.set(self._key(namespace, key), json.dumps(value, separators=(",", ":")))

    def get(self, namespace: str, key: str) -> Optional[dict]:
        raw = self.client.get(self._key(namespace, key))
        return self._decode(raw, namespace=namespace)

    def delete(self, namespace: str, key: str) -> bool:
        return bool(self.client.delete(self._key(namespace, key)))

    def pop(self, namespace: str, key: str) -> Optional[dict]:
        full_key = self._key(namespace, key)
        pipe = self.client.pipeline(transaction=True)
        pipe.get(full_key)
        pipe.delete(full_key)
        raw, _ = pipe.execute()
        return self._decode(raw, namespace=namespace)

    def scan(self, namespace: str) -> Iterator[tuple[str, dict]]:
        prefix = self._key(namespace, "")
        for full_key in self.client.scan_iter(match=f"{prefix}*", count=500):
            value = self._decode(self.client.get(full_key), namespace=namespace)
            if value is not None:
                yield full_key[len(prefix):], value

    def lock(self, name: str) -> ContextManager:
        return self.client.lock(
            self._key("locks", name),
            timeout=self.LOCK_TIMEOUT,
            blocking_timeout=self.DEFAULT_OPERATION_TIMEOUT,
        )

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _decode(raw: Optional[str], *, namespace: str) -> Optional[dict]:
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("redis_value_decode_failed", namespace=namespace, error=str(exc))
            return None
        return value if isinstance(value, dict) else None
