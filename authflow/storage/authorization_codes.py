from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from authflow.storage.common import KeyValueStore, utcnow
from authflow.storage.errors import CodeExpired, CodeNotFound
from authflow.storage.models import AuthorizationCode


class AuthorizationCodeStore:
    """Short-lived single-use authorization codes held by the IdP.

    There is no read-only lookup: the exchange path can only
    ``consume``, which removes the code before the caller sees it.
    """

    NAMESPACE = "authorization_codes"

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.kv = kv
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def issue(
        self,
        client_id: str,
        redirect_uri: str,
        provider: str,
        nonce: Optional[str],
        *,
        scope: str = "",
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> str:
        code = str(uuid.uuid4())
        record = AuthorizationCode(
            code=code,
            client_id=client_id,
            redirect_uri=redirect_uri,
            provider=provider,
            expires_at=self._clock() + self.ttl,
            nonce=nonce,
            scope=scope,
            code_challenge=code_challenge,
            code_challenge_method=(code_challenge_method or "S256") if code_challenge else None,
        )
        self.kv.put(self.NAMESPACE, code, record.to_dict())
        return code

    def consume(self, code: str) -> AuthorizationCode:
        if not code:
            raise CodeNotFound("authorization code missing")
        data = self.kv.pop(self.NAMESPACE, code)
        if data is None:
            raise CodeNotFound("authorization code not found")
        record = AuthorizationCode.from_dict(data)
        if record.expires_at <= self._clock():
            raise CodeExpired("authorization code expired")
        return record

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for key, data in self.kv.scan(self.NAMESPACE):
            if AuthorizationCode.from_dict(data).expires_at <= now:
                self.kv.delete(self.NAMESPACE, key)
                removed += 1
        return removed
