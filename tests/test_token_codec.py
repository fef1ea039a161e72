"""Tests for access-token issuing and verification."""

import base64
import json

import pytest

from micropost.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    TokenNotYetValidError,
)
from micropost.service.tokens import (
    TokenCodec,
    read_unverified_claims,
    read_unverified_expiry,
    strip_bearer,
)
from micropost.storage.models import User


def _segment(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


@pytest.fixture
def user():
    return User(id=7, name="Ann", email="ann@example.com", roles=["user", "admin"])


class TestIssue:
    def test_claims_match_user(self, codec, user, clock):
        tokens = codec.issue(user)
        claims = codec.verify(tokens["access_token"])

        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert claims["sub"] == "7"
        assert claims["email"] == "ann@example.com"
        assert claims["roles"] == ["user", "admin"]
        assert claims["iss"] == claims["aud"] == "api.example.com"
        assert claims["exp"] - claims["iat"] == 3600
        assert claims["iat"] == int(clock().timestamp())

    def test_tokens_minted_together_differ(self, codec, user):
        assert codec.issue(user)["access_token"] != codec.issue(user)["access_token"]

    def test_short_secret_is_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("too-short", issuer="i", audience="a")


class TestVerify:
    def test_valid_until_expiry_then_expired(self, codec, user, clock):
        token = codec.issue(user)["access_token"]

        clock.advance(seconds=3600)
        assert codec.verify(token)["sub"] == "7"

        clock.advance(seconds=1)
        with pytest.raises(TokenExpiredError) as exc_info:
            codec.verify(token)
        assert exc_info.value.error_code == "TOKEN_EXPIRED"
        assert isinstance(exc_info.value, InvalidTokenError)

    def test_bearer_prefix_is_stripped(self, codec, user):
        token = codec.issue(user)["access_token"]
        assert codec.verify(f"Bearer {token}")["sub"] == "7"
        assert strip_bearer("bearer  abc ") == "abc"
        assert strip_bearer(None) == ""

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.%%"])
    def test_malformed_tokens_are_invalid(self, codec, garbage):
        with pytest.raises(InvalidTokenError):
            codec.verify(garbage)

    def test_tampered_payload_fails_signature(self, codec, user):
        header, _payload, signature = codec.issue(user)["access_token"].split(".")
        forged = _segment({"sub": "1", "roles": ["admin"], "iat": 0, "exp": 9999999999,
                           "iss": "api.example.com", "aud": "api.example.com"})

        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{forged}.{signature}")

    def test_other_secret_fails(self, codec, user, clock):
        other = TokenCodec("another-secret-that-is-long-enough-000000",
                           issuer="api.example.com", audience="api.example.com", clock=clock)
        with pytest.raises(InvalidTokenError):
            codec.verify(other.issue(user)["access_token"])

    def test_algorithm_is_pinned(self, codec, clock):
        now = int(clock().timestamp())
        payload = _segment({"sub": "1", "iat": now, "exp": now + 60,
                            "iss": "api.example.com", "aud": "api.example.com"})
        unsigned = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        with pytest.raises(InvalidTokenError):
            codec.verify(unsigned)

    def test_wrong_issuer_or_audience(self, codec, clock):
        now = int(clock().timestamp())
        base = {"sub": "1", "iat": now, "exp": now + 60}
        for claims in (
            {**base, "iss": "evil", "aud": "api.example.com"},
            {**base, "iss": "api.example.com", "aud": "someone-else"},
        ):
            with pytest.raises(InvalidTokenError):
                codec.verify(codec.encode(claims))

    def test_missing_claims(self, codec):
        with pytest.raises(InvalidTokenError):
            codec.verify(codec.encode({"sub": "1", "iss": "api.example.com", "aud": "api.example.com"}))

    def test_not_before_in_future(self, codec, clock):
        now = int(clock().timestamp())
        token = codec.encode({"sub": "1", "iat": now, "nbf": now + 30, "exp": now + 60,
                              "iss": "api.example.com", "aud": "api.example.com"})

        with pytest.raises(TokenNotYetValidError):
            codec.verify(token)
        clock.advance(seconds=31)
        assert codec.verify(token)["sub"] == "1"


class TestUnverifiedClaims:
    def test_reads_expiry_without_signature(self, codec, user):
        token = codec.issue(user)["access_token"]
        claims = read_unverified_claims(token)

        assert read_unverified_expiry(token) == claims["exp"]
        assert read_unverified_expiry("Bearer " + token) == claims["exp"]

    def test_undecodable_returns_none(self):
        assert read_unverified_claims("not-a-token") is None
        assert read_unverified_expiry("a.b.c") is None
        assert read_unverified_expiry(f"x.{_segment({'exp': 'soon'})}.y") is None
