"""Issued refresh tokens, one record per token, scoped to a device.

Records are keyed by a SHA-256 digest of the token so a dump of the backing
store does not hand out usable credentials.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from authflow.logging import get_logger
from authflow.storage.common import KeyValueStore, digest, utcnow
from authflow.storage.models import DeviceInfo, RefreshTokenRecord, SessionView

logger = get_logger(__name__)


class RefreshTokenStore:
    NAMESPACE = "refresh_tokens"

    def __init__(
        self, kv: KeyValueStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.kv = kv
        self._clock = clock

    def _load(self, key: str) -> Optional[RefreshTokenRecord]:
        data = self.kv.get(self.NAMESPACE, key)
        return RefreshTokenRecord.from_dict(data) if data else None

    def _save(self, key: str, record: RefreshTokenRecord) -> None:
        self.kv.put(self.NAMESPACE, key, record.to_dict())

    def _records(self):
        for key, data in self.kv.scan(self.NAMESPACE):
            yield key, RefreshTokenRecord.from_dict(data)

    def store(
        self,
        token: str,
        user_id: int,
        device_id: str,
        device_info: DeviceInfo,
        ttl_seconds: int,
    ) -> RefreshTokenRecord:
        now = self._clock()
        record = RefreshTokenRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            device_info=device_info,
            created_at=now,
            last_used_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        self._save(digest(token), record)
        return record

    def _find_locked(
        self, key: str, user_id: int, device_id: str
    ) -> Optional[RefreshTokenRecord]:
        record = self._load(key)
        if record is None:
            return None
        if record.expires_at <= self._clock():
            self.kv.delete(self.NAMESPACE, key)
            return None
        if record.is_revoked or record.is_used:
            return None
        if str(record.user_id) != str(user_id) or record.device_id != device_id:
            return None
        return record

    def find(
        self, token: str, user_id: int, device_id: str
    ) -> Optional[RefreshTokenRecord]:
        """Return the record only if it is live and bound to this user and device.

        Every failed predicate yields ``None`` so callers cannot tell a wrong
        device from an expired or revoked token.
        """
        key = digest(token)
        with self.kv.lock(self.NAMESPACE):
            return self._find_locked(key, user_id, device_id)

    def claim(
        self, token: str, user_id: int, device_id: str
    ) -> Optional[RefreshTokenRecord]:
        """Find and mark used in one critical section.

        Two concurrent refreshes presenting the same token cannot both get a
        record back.
        """
        key = digest(token)
        with self.kv.lock(self.NAMESPACE):
            record = self._find_locked(key, user_id, device_id)
            if record is None:
                return None
            record.is_used = True
            record.last_used_at = self._clock()
            self._save(key, record)
            return record

    def touch(self, token: str) -> None:
        key = digest(token)
        with self.kv.lock(self.NAMESPACE):
            record = self._load(key)
            if record is not None:
                record.last_used_at = self._clock()
                self._save(key, record)

    def mark_used(self, token: str) -> None:
        key = digest(token)
        with self.kv.lock(self.NAMESPACE):
            record = self._load(key)
            if record is not None and not record.is_used:
                record.is_used = True
                self._save(key, record)

    def revoke(self, token: str) -> None:
        key = digest(token)
        with self.kv.lock(self.NAMESPACE):
            record = self._load(key)
            if record is not None and not record.is_revoked:
                record.is_revoked = True
                self._save(key, record)

    def revoke_all_for_device(self, device_id: str, user_id: Optional[int] = None) -> int:
        """Revoke every token on ``device_id``; only ``user_id``'s when given."""
        revoked = 0
        with self.kv.lock(self.NAMESPACE):
            for key, record in self._records():
                if record.device_id != device_id or record.is_revoked:
                    continue
                if user_id is not None and str(record.user_id) != str(user_id):
                    continue
                record.is_revoked = True
                self._save(key, record)
                revoked += 1
        if revoked:
            logger.info("refresh_tokens_revoked_for_device", device_id=device_id, count=revoked)
        return revoked

    def revoke_latest_for_device(self, user_id: int, device_id: str) -> bool:
        """Revoke the most recently issued still-valid token for a device."""
        now = self._clock()
        with self.kv.lock(self.NAMESPACE):
            candidates = [
                (key, record)
                for key, record in self._records()
                if str(record.user_id) == str(user_id)
                and record.device_id == device_id
                and record.is_active(now)
            ]
            if not candidates:
                return False
            key, record = max(candidates, key=lambda item: item[1].created_at)
            record.is_revoked = True
            self._save(key, record)
        return True

    def revoke_by_id(self, user_id: int, session_id: str) -> bool:
        now = self._clock()
        with self.kv.lock(self.NAMESPACE):
            for key, record in self._records():
                if (
                    record.id == session_id
                    and str(record.user_id) == str(user_id)
                    and record.is_active(now)
                ):
                    record.is_revoked = True
                    self._save(key, record)
                    return True
        return False

    def list_active_sessions(self, user_id: int) -> List[SessionView]:
        now = self._clock()
        sessions = [
            SessionView.from_record(record)
            for _, record in self._records()
            if str(record.user_id) == str(user_id) and record.is_active(now)
        ]
        sessions.sort(key=lambda view: view.last_used_at, reverse=True)
        return sessions

    def sweep_expired(self) -> int:
        now = self._clock()
        removed = 0
        with self.kv.lock(self.NAMESPACE):
            for key, record in self._records():
                if record.expires_at <= now:
                    self.kv.delete(self.NAMESPACE, key)
                    removed += 1
        return removed
