from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from authflow.logging import get_logger
from authflow.storage.common import KeyValueStore, digest, utcnow
from authflow.storage.models import SSOSession

logger = get_logger(__name__)


class SSOSessionStore:
    """Identity-provider login sessions behind the ``oauth_sso_session`` cookie.

    Only the digest of a session id is stored; the raw id lives in the
    browser cookie.
    """

    NAMESPACE = "sso_sessions"

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.kv = kv
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def create(self, user_id: str, provider: str) -> str:
        session_id = str(uuid.uuid4())
        now = self._clock()
        session = SSOSession(
            id_hash=digest(session_id),
            user_id=user_id,
            provider=provider,
            created_at=now,
            last_used_at=now,
            expires_at=now + self.ttl,
        )
        self.kv.put(self.NAMESPACE, session.id_hash, session.to_dict())
        logger.info("sso_session_created", user_id=user_id, provider=provider)
        return session_id

    def find(self, session_id: Optional[str]) -> Optional[SSOSession]:
        if not session_id:
            return None
        key = digest(session_id)
        with self.kv.lock(self.NAMESPACE):
            data = self.kv.get(self.NAMESPACE, key)
            if data is None:
                return None
            session = SSOSession.from_dict(data)
            if session.expires_at <= self._clock():
                self.kv.delete(self.NAMESPACE, key)
                return None
            if session.is_revoked:
                return None
            session.last_used_at = self._clock()
            self.kv.put(self.NAMESPACE, key, session.to_dict())
        return session

    def revoke(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        key = digest(session_id)
        with self.kv.lock(self.NAMESPACE):
            data = self.kv.get(self.NAMESPACE, key)
            if data is None:
                return False
            session = SSOSession.from_dict(data)
            session.is_revoked = True
            self.kv.put(self.NAMESPACE, key, session.to_dict())
        logger.info("sso_session_revoked", user_id=session.user_id)
        return True

    def list_for_user(self, user_id: str) -> List[SSOSession]:
        now = self._clock()
        sessions = []
        for _, data in self.kv.scan(self.NAMESPACE):
            session = SSOSession.from_dict(data)
            if session.user_id == user_id and session.expires_at > now and not session.is_revoked:
                sessions.append(session)
        return sessions

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for key, data in self.kv.scan(self.NAMESPACE):
            if SSOSession.from_dict(data).expires_at <= now:
                self.kv.delete(self.NAMESPACE, key)
                removed += 1
        return removed

    def stats(self) -> dict[str, int]:
        now = self._clock()
        active = expired = 0
        for _, data in self.kv.scan(self.NAMESPACE):
            session = SSOSession.from_dict(data)
            if session.expires_at > now and not session.is_revoked:
                active += 1
            else:
                expired += 1
        return {"active": active, "expired": expired, "total": active + expired}
