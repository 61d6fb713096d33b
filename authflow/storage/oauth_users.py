from __future__ import annotations

from typing import Optional

from authflow.storage.common import KeyValueStore
from authflow.storage.models import OAuthUserInfo


class OAuthUserStore:
    """Profiles of users who signed in through an identity provider, by email."""

    NAMESPACE = "oauth_users"

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    def put(self, user: OAuthUserInfo) -> None:
        self.kv.put(self.NAMESPACE, user.email.lower(), user.to_dict())

    def get(self, email: str) -> Optional[OAuthUserInfo]:
        data = self.kv.get(self.NAMESPACE, email.lower())
        return OAuthUserInfo.from_dict(data) if data else None

    def remove(self, email: str) -> bool:
        return self.kv.delete(self.NAMESPACE, email.lower())
