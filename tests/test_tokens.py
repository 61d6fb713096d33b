"""Tests for the HS256 token codec."""

import base64
import json

import pytest

from authflow.service.tokens import (
    ClaimMismatch,
    InvalidSignature,
    TokenCodec,
    TokenExpired,
    decode_unverified,
)

SECRET = "unit-test-secret"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(clock=clock)


def _mint(codec, claims=None, ttl=60, secret=SECRET, issuer="your-app-name", audience="api"):
    return codec.mint(
        claims or {"userId": 1, "username": "demo"},
        secret,
        ttl,
        issuer=issuer,
        audience=audience,
    )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestMint:
    """Registered claims added at mint time."""

    def test_sets_registered_claims(self, codec, clock):
        payload = decode_unverified(_mint(codec, ttl=15))

        assert payload["iss"] == "your-app-name"
        assert payload["aud"] == ["api"]
        assert payload["sub"] == "1"
        assert payload["iat"] == int(clock.now)
        assert payload["exp"] == int(clock.now) + 15
        assert payload["userId"] == 1

    def test_every_token_gets_unique_jti(self, codec):
        first = decode_unverified(_mint(codec))
        second = decode_unverified(_mint(codec))

        assert first["jti"] != second["jti"]

    def test_explicit_subject_is_kept(self, codec):
        token = codec.mint(
            {"sub": "google-123", "provider": "google"},
            SECRET,
            60,
            issuer="your-oauth-server-name",
            audience=["idp"],
        )

        assert decode_unverified(token)["sub"] == "google-123"


class TestVerify:
    """Verification order and failure modes."""

    def test_round_trip_returns_claims(self, codec):
        claims = codec.verify(_mint(codec), SECRET, issuer="your-app-name", audience="api")

        assert claims["username"] == "demo"

    def test_wrong_secret_fails(self, codec):
        with pytest.raises(InvalidSignature):
            codec.verify(_mint(codec), "other-secret", issuer="your-app-name", audience="api")

    def test_tampered_payload_fails(self, codec):
        header, _, signature = _mint(codec).split(".")
        forged = _segment({"userId": 2, "exp": 9_999_999_999, "iss": "your-app-name", "aud": ["api"]})

        with pytest.raises(InvalidSignature):
            codec.verify(f"{header}.{forged}.{signature}", SECRET, issuer="your-app-name", audience="api")

    def test_alg_none_is_rejected(self, codec):
        _, payload, _ = _mint(codec).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})

        with pytest.raises(InvalidSignature):
            codec.verify(f"{header}.{payload}.", SECRET, issuer="your-app-name", audience="api")

    @pytest.mark.parametrize("alg", [["HS256"], {"name": "HS256"}, None, 256])
    def test_non_string_alg_is_rejected(self, codec, alg):
        _, payload, signature = _mint(codec).split(".")
        header = _segment({"alg": alg, "typ": "JWT"})

        with pytest.raises(InvalidSignature):
            codec.verify(
                f"{header}.{payload}.{signature}", SECRET, issuer="your-app-name", audience="api"
            )

    def test_malformed_token_fails(self, codec):
        with pytest.raises(InvalidSignature):
            codec.verify("not-a-jwt", SECRET, issuer="your-app-name", audience="api")

    def test_expired_token_fails(self, codec, clock):
        token = _mint(codec, ttl=15)
        clock.now += 15

        with pytest.raises(TokenExpired):
            codec.verify(token, SECRET, issuer="your-app-name", audience="api")

    def test_leeway_extends_expiry(self, clock):
        codec = TokenCodec(leeway_seconds=5, clock=clock)
        token = _mint(codec, ttl=15)
        clock.now += 17

        assert codec.verify(token, SECRET, issuer="your-app-name", audience="api")["userId"] == 1

    def test_issuer_mismatch_fails(self, codec):
        with pytest.raises(ClaimMismatch):
            codec.verify(_mint(codec), SECRET, issuer="someone-else", audience="api")

    def test_audience_mismatch_fails(self, codec):
        with pytest.raises(ClaimMismatch):
            codec.verify(_mint(codec), SECRET, issuer="your-app-name", audience="idp")

    def test_signature_checked_before_expiry(self, codec, clock):
        token = _mint(codec, ttl=1)
        clock.now += 100

        with pytest.raises(InvalidSignature):
            codec.verify(token, "other-secret", issuer="your-app-name", audience="api")


class TestDecodeUnverified:
    def test_reads_claims_without_secret(self, codec):
        assert decode_unverified(_mint(codec))["username"] == "demo"

    def test_garbage_raises(self):
        with pytest.raises(InvalidSignature):
            decode_unverified("a.b")
