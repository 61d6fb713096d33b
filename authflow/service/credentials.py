from __future__ import annotations

import threading
from typing import Iterable, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authflow.logging import get_logger
from authflow.service.errors import InvalidCredentials
from authflow.storage.models import User

logger = get_logger(__name__)

# The single account the demo frontends log in with
DEMO_USERS: List[Tuple[int, str, str]] = [(1, "demo", "password123")]


class CredentialDirectory:
    """Username/password lookup with argon2id hashes."""

    def __init__(self, users: Optional[Iterable[Tuple[int, str, str]]] = None) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._lock = threading.Lock()
        self._users: dict[str, User] = {}
        # Verified against when the username is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("not-a-real-password")
        for user_id, username, password in DEMO_USERS if users is None else users:
            self.add_user(user_id, username, password)

    def add_user(
        self, user_id: int, username: str, password: str, *, scope: Optional[List[str]] = None
    ) -> User:
        user = User(
            id=user_id,
            username=username,
            password_hash=self._pwd_hasher.hash(password),
            scope=list(scope) if scope else ["read", "write"],
        )
        with self._lock:
            self._users[username] = user
        return user

    def get(self, username: str) -> Optional[User]:
        with self._lock:
            return self._users.get(username)

    def authenticate(self, username: str, password: str) -> User:
        user = self.get(username) if username else None
        stored_hash = user.password_hash if user else self._dummy_hash
        try:
            self._pwd_hasher.verify(stored_hash, password or "")
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", username=username)
            raise InvalidCredentials()
        if user is None:
            raise InvalidCredentials()
        return user
