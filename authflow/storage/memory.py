from __future__ import annotations

import copy
import threading
from typing import ContextManager, Dict, Iterator, Optional

from authflow.logging import get_logger


class MemoryKV:
    """In-process key-value backend for tests and single-process deployments.

    Values are deep-copied on the way in and out so callers never mutate
    stored state without going through ``put``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._namespaces: Dict[str, Dict[str, dict]] = {}
        # RLock so a store can hold ``lock()`` and still call get/put/delete
        self._data_lock = threading.RLock()

    def _bucket(self, namespace: str) -> Dict[str, dict]:
        return self._namespaces.setdefault(namespace, {})

    def put(self, namespace: str, key: str, value: dict) -> None:
        with self._data_lock:
            self._bucket(namespace)[key] = copy.deepcopy(value)

    def get(self, namespace: str, key: str) -> Optional[dict]:
        with self._data_lock:
            value = self._bucket(namespace).get(key)
            return copy.deepcopy(value) if value is not None else None

    def delete(self, namespace: str, key: str) -> bool:
        with self._data_lock:
            return self._bucket(namespace).pop(key, None) is not None

    def pop(self, namespace: str, key: str) -> Optional[dict]:
        with self._data_lock:
            return self._bucket(namespace).pop(key, None)

    def scan(self, namespace: str) -> Iterator[tuple[str, dict]]:
        # Snapshot under the lock; callers may mutate while iterating
        with self._data_lock:
            items = [
                (key, copy.deepcopy(value))
                for key, value in self._bucket(namespace).items()
            ]
        return iter(items)

    def lock(self, name: str) -> ContextManager:
        return self._data_lock

    def close(self) -> None:
        with self._data_lock:
            dropped = sum(len(bucket) for bucket in self._namespaces.values())
            self._namespaces.clear()
        self.logger.debug("memory_kv_closed", dropped=dropped)
