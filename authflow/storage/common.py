"""Key-value contract shared by the in-memory and Redis backends.

Stores keep their records as JSON-compatible dicts grouped by namespace so
either backend can hold them without knowing the record types.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import ContextManager, Iterator, Optional, Protocol


class KeyValueStore(Protocol):
    def put(self, namespace: str, key: str, value: dict) -> None: ...

    def get(self, namespace: str, key: str) -> Optional[dict]: ...

    def delete(self, namespace: str, key: str) -> bool: ...

    def pop(self, namespace: str, key: str) -> Optional[dict]:
        """Atomically read and remove a value."""
        ...

    def scan(self, namespace: str) -> Iterator[tuple[str, dict]]: ...

    def lock(self, name: str) -> ContextManager:
        """Critical section for read-modify-write sequences on ``name``."""
        ...


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def digest(value: str) -> str:
    """One-way key for values that must not be readable from a store dump."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


__all__ = ["KeyValueStore", "digest", "format_ts", "parse_ts", "utcnow"]
