"""Proof Key for Code Exchange (RFC 7636) helpers.

Pure functions; the expected challenge lives with the authorization code.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets

# RFC 7636 unreserved characters
UNRESERVED = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
_VERIFIER_RE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")

SUPPORTED_METHODS = ("S256", "plain")


class InvalidVerifierFormat(ValueError):
    """Verifier is not 43-128 characters over the unreserved alphabet."""


def validate_verifier(verifier: str) -> str:
    if not isinstance(verifier, str) or not _VERIFIER_RE.fullmatch(verifier):
        raise InvalidVerifierFormat(
            "code_verifier must be 43-128 characters of [A-Za-z0-9-._~]"
        )
    return verifier


def derive_challenge(verifier: str) -> str:
    """base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify(verifier: str, challenge: str, method: str = "S256") -> bool:
    if not verifier or not challenge:
        return False
    if method == "S256":
        try:
            expected = derive_challenge(verifier)
        except UnicodeEncodeError:
            return False
    elif method == "plain":
        expected = verifier
    else:
        return False
    return hmac.compare_digest(expected.encode(), challenge.encode())


def _random_string(length: int) -> str:
    return "".join(secrets.choice(UNRESERVED) for _ in range(length))


def generate_code_verifier(length: int = 128) -> str:
    if length < 43 or length > 128:
        raise ValueError(
            "PKCE code_verifier length must be between 43 and 128 characters (RFC 7636)"
        )
    return _random_string(length)


__all__ = [
    "InvalidVerifierFormat",
    "SUPPORTED_METHODS",
    "derive_challenge",
    "generate_code_verifier",
    "validate_verifier",
    "verify",
]
