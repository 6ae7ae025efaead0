"""
tests/test_tokens.py -- Unit tests for TokenSigner.

Coverage:
  - issued tokens verify back to the same claims, ver included
  - expired, foreign-key, tampered and garbage tokens verify as None
  - unknown role strings and missing claims are rejected, not defaulted
  - keys shorter than 256 bits are refused at construction
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.models import Role, User
from auth.tokens import TokenSigner

KEY = "k" * 32
OTHER_KEY = "o" * 32


def _user(**overrides) -> User:
    fields = dict(id="user-1", username="bob", email="bob@example.org", role=Role.OPERATOR, token_version=3)
    fields.update(overrides)
    return User(**fields)


class TestIssueVerify:
    def test_round_trip_claims(self) -> None:
        signer = TokenSigner(KEY, ttl_minutes=60)
        claims = signer.verify(signer.issue(_user()))
        assert claims is not None
        assert claims.sub == "user-1"
        assert claims.username == "bob"
        assert claims.role is Role.OPERATOR
        assert claims.ver == 3
        assert claims.exp - claims.iat == 3600

    def test_compact_jws_shape(self) -> None:
        token = TokenSigner(KEY).issue(_user())
        assert token.count(".") == 2

    def test_expired_token_is_none(self) -> None:
        signer = TokenSigner(KEY, ttl_minutes=5)
        token = signer.issue(_user(), now=datetime.now(timezone.utc) - timedelta(hours=1))
        assert signer.verify(token) is None

    def test_foreign_key_is_none(self) -> None:
        token = TokenSigner(OTHER_KEY).issue(_user())
        assert TokenSigner(KEY).verify(token) is None

    def test_tampered_payload_is_none(self) -> None:
        signer = TokenSigner(KEY)
        header, payload, sig = signer.issue(_user()).split(".")
        assert signer.verify(f"{header}.{payload}x.{sig}") is None

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b.c"])
    def test_garbage_is_none(self, garbage: str) -> None:
        assert TokenSigner(KEY).verify(garbage) is None

    def test_unsaved_user_cannot_get_token(self) -> None:
        with pytest.raises(ValueError):
            TokenSigner(KEY).issue(_user(id=None))


class TestClaimValidation:
    def _forge(self, **payload) -> str:
        now = int(datetime.now(timezone.utc).timestamp())
        base = {"sub": "user-1", "username": "bob", "role": "ADMIN", "iat": now, "exp": now + 600, "ver": 0}
        base.update(payload)
        return jwt.encode({k: v for k, v in base.items() if v is not None}, KEY, algorithm="HS256")

    def test_unknown_role_rejected(self) -> None:
        """A correctly signed token with a role outside the enum must not pass."""
        assert TokenSigner(KEY).verify(self._forge(role="SUPERUSER")) is None

    def test_lowercase_role_rejected(self) -> None:
        assert TokenSigner(KEY).verify(self._forge(role="admin")) is None

    def test_missing_username_rejected(self) -> None:
        assert TokenSigner(KEY).verify(self._forge(username=None)) is None

    def test_missing_ver_defaults_to_zero(self) -> None:
        claims = TokenSigner(KEY).verify(self._forge(ver=None))
        assert claims is not None
        assert claims.ver == 0


class TestKeyPolicy:
    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            TokenSigner("short-key")

    def test_thirty_two_byte_key_accepted(self) -> None:
        TokenSigner("x" * 32)
