"""HS256 JSON Web Tokens for the backend and the mock identity provider.

Only HMAC-SHA256 is supported. The header algorithm is checked against the
caller's allow-list before the signature is computed so a token cannot pick
its own verification scheme.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from authflow.logging import get_logger

logger = get_logger(__name__)

_SUPPORTED_ALGORITHMS = {"HS256"}


class TokenError(Exception):
    """Base class for token verification failures."""


class InvalidSignature(TokenError):
    """Malformed token, disallowed algorithm or signature mismatch."""


class TokenExpired(TokenError):
    """The ``exp`` claim is in the past."""


class ClaimMismatch(TokenError):
    """Issuer or audience does not match what the verifier pinned."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def _split(token: str) -> tuple[str, str, str]:
    if not isinstance(token, str):
        raise InvalidSignature("token must be a string")
    parts = token.split(".")
    if len(parts) != 3:
        raise InvalidSignature("malformed token")
    return parts[0], parts[1], parts[2]


def decode_unverified(token: str) -> dict[str, Any]:
    """Return the payload without checking the signature.

    Used by clients that only need ``exp`` and by code paths that must read
    the ``jti`` of a token that may already be expired.
    """
    _, payload_b64, _ = _split(token)
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except Exception as exc:
        raise InvalidSignature("undecodable payload") from exc
    if not isinstance(payload, dict):
        raise InvalidSignature("payload is not an object")
    return payload


class TokenCodec:
    """Mint and verify signed, claims-bearing tokens."""

    def __init__(
        self,
        *,
        leeway_seconds: int = 0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.leeway_seconds = leeway_seconds
        self._clock = clock or time.time

    def now(self) -> int:
        return int(self._clock())

    def mint(
        self,
        claims: dict[str, Any],
        secret: str,
        ttl_seconds: int,
        *,
        issuer: str,
        audience: Union[str, Sequence[str]],
    ) -> str:
        """Sign ``claims`` together with fresh registered claims.

        ``iss``, ``aud``, ``jti``, ``iat`` and ``exp`` are always set here. The
        subject defaults to the stringified ``userId`` claim unless the caller
        passes ``sub`` explicitly.
        """
        issued_at = self.now()
        payload: dict[str, Any] = dict(claims)
        if "sub" not in payload and payload.get("userId") is not None:
            payload["sub"] = str(payload["userId"])
        payload.update(
            {
                "iss": issuer,
                "aud": [audience] if isinstance(audience, str) else list(audience),
                "jti": str(uuid.uuid4()),
                "iat": issued_at,
                "exp": issued_at + int(ttl_seconds),
            }
        )
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(secret, signing_input)}"

    def verify(
        self,
        token: str,
        secret: str,
        *,
        issuer: str,
        audience: str,
        algorithms: Iterable[str] = ("HS256",),
    ) -> dict[str, Any]:
        header_b64, payload_b64, sig_b64 = _split(token)
        allowed = set(algorithms) & _SUPPORTED_ALGORITHMS
        try:
            header = json.loads(_decode_segment(header_b64))
        except Exception as exc:
            raise InvalidSignature("undecodable header") from exc
        alg = header.get("alg") if isinstance(header, dict) else None
        if not isinstance(alg, str) or alg not in allowed:
            logger.warning("jwt_invalid_algorithm", alg=alg if isinstance(alg, str) else repr(alg))
            raise InvalidSignature("algorithm not allowed")

        expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("signature mismatch")

        payload = decode_unverified(token)
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError) as exc:
            raise TokenExpired("missing or invalid exp") from exc
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpired("token expired")

        if payload.get("iss") != issuer:
            raise ClaimMismatch("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == audience
        elif isinstance(aud, list):
            valid_aud = audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise ClaimMismatch("audience mismatch")
        return payload


__all__ = [
    "TokenCodec",
    "TokenError",
    "InvalidSignature",
    "TokenExpired",
    "ClaimMismatch",
    "decode_unverified",
]
