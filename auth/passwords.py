"""
auth/passwords.py -- Password hashing, legacy-hash migration check, fast digest.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The work factor comes
       from Settings.bcrypt_rounds; tests drop it to 4. Input is truncated to
       bcrypt's 72-byte limit on BOTH hash and verify, because bcrypt 4.x
       raises on longer input instead of truncating silently.

  Legacy hashes: accounts imported from the previous admin system carry an
       unsalted SHA-256 digest (base64, or hex in older exports). They are
       still accepted once, compared in constant time, and the caller re-hashes
       them with bcrypt immediately. check_password() reports which case
       happened via PasswordCheck so the caller cannot forget the upgrade.

  Digest: OTP codes and security answers are stored as base64 SHA-256. These
       are short-lived or low-value secrets verified on a hot path; see
       DESIGN.md for why this stays a fast hash.

  Timing: _DUMMY_HASH is verified when the username does not exist, so an
       unknown account costs the same bcrypt work as a wrong password.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re

import bcrypt

from auth.models import PasswordCheck
from core.config import get_settings

# bcrypt only looks at the first 72 bytes of its input.
_BCRYPT_MAX_BYTES = 72

# Legacy digest shapes: 32-byte SHA-256 as padded base64 (44 chars) or hex (64 chars).
_LEGACY_B64 = re.compile(r"^[A-Za-z0-9+/]{43}=$")
_LEGACY_HEX = re.compile(r"^[0-9a-fA-F]{64}$")


def _bcrypt_input(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(_bcrypt_input(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed or non-bcrypt stored value (including a legacy digest or the
    empty string of a user who never finished setup) returns False.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_bcrypt_input(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at import so the first unknown-user login is not measurably
# faster than later ones.
_DUMMY_HASH: str = hash_password("foundation_timing_dummy")


def burn_dummy_verify(plain: str) -> None:
    """Spend one bcrypt verification on a throwaway hash."""
    verify_password(plain, _DUMMY_HASH)


def digest(value: str) -> str:
    """Base64 SHA-256 of value. Used for OTP codes, security answers and legacy passwords.

    Fast and unsalted. Security answers are low-entropy, so moving them to
    bcrypt is pending review; OTP codes rely on expiry and the attempt cap.
    """
    return base64.b64encode(hashlib.sha256(value.encode("utf-8")).digest()).decode("ascii")


def is_legacy_hash(stored: str) -> bool:
    """True if stored looks like an unsalted legacy SHA-256 digest."""
    return bool(stored) and bool(_LEGACY_B64.match(stored) or _LEGACY_HEX.match(stored))


def _legacy_matches(plain: str, stored: str) -> bool:
    raw = hashlib.sha256(plain.encode("utf-8")).digest()
    if _LEGACY_HEX.match(stored):
        return hmac.compare_digest(raw.hex(), stored.lower())
    return hmac.compare_digest(base64.b64encode(raw).decode("ascii"), stored)


def check_password(plain: str, stored: str) -> PasswordCheck:
    """Verify plain against stored, accepting the legacy format once.

    bcrypt is tried first. Only when that fails AND stored has the legacy
    shape is the legacy digest compared. LEGACY_MATCH obliges the caller to
    re-hash with hash_password() and persist the result.
    """
    if verify_password(plain, stored):
        return PasswordCheck.MATCH
    if is_legacy_hash(stored) and _legacy_matches(plain, stored):
        return PasswordCheck.LEGACY_MATCH
    return PasswordCheck.MISMATCH


def matches_digest(value: str, expected: str) -> bool:
    """Constant-time comparison of digest(value) against a stored digest."""
    return hmac.compare_digest(digest(value), expected)
