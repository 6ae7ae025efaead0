"""
auth/tokens.py -- Session-token signing/verification and the auth cookie.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (user id), username, role,
       iat, exp and ver (the user's token_version at issuance). Verification
       returns None on any failure -- the route layer turns that into a 401.

  Key length: TokenSigner refuses keys shorter than 32 bytes (256 bits) at
       construction. Settings enforces the same rule at startup, so the check
       here only bites when a signer is built by hand (tests, scripts).

  Revocation: tokens are stateless with a validity window fixed at issuance.
       There is no refresh. Outstanding tokens are revoked by bumping the
       user's token_version; the session middleware compares ver against it.

  Roles: the role claim must name a member of the closed Role enum. An
       unrecognized string is a verification failure, never a default role.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import Claims, Role, User
from core.config import MIN_SECRET_KEY_BYTES, get_settings

logger = logging.getLogger("foundation.auth.tokens")

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "username", "role", "iat", "exp")


class TokenSigner:
    """Issues and verifies HS256 session tokens.

    Usage:
        signer = TokenSigner(settings.secret_key, settings.token_expire_minutes)
        token = signer.issue(user)
        claims = signer.verify(token)   # Claims or None
    """

    def __init__(self, secret_key: str, ttl_minutes: int = 60) -> None:
        if len(secret_key.encode("utf-8")) < MIN_SECRET_KEY_BYTES:
            raise ValueError("Token signing key must be at least 32 bytes (256 bits).")
        if ttl_minutes < 1:
            raise ValueError("Token TTL must be at least one minute.")
        self._secret_key = secret_key
        self.ttl_minutes = ttl_minutes

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_minutes * 60

    def issue(self, user: User, now: datetime | None = None) -> str:
        """Encode a signed token for user. The user must already have an id."""
        if user.id is None:
            raise ValueError("Cannot issue a token for an unsaved user.")
        issued = now or datetime.now(timezone.utc)
        expires = issued + timedelta(minutes=self.ttl_minutes)
        payload = {
            "sub": user.id,
            "username": user.username,
            "role": Role(user.role).value,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
            "ver": user.token_version,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> Claims | None:
        """Decode and verify a token. Returns Claims or None on any failure.

        Expiry is routine and logged at INFO; everything else (bad signature,
        garbage input, missing claims, unknown role) is logged at WARNING.
        Callers treat every None the same way.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError:
            logger.info("Session token expired")
            return None
        except JWTError as exc:
            logger.warning("Session token rejected: %s", exc)
            return None

        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            logger.warning("Session token rejected: missing claims")
            return None
        try:
            role = Role(payload["role"])
        except ValueError:
            logger.warning("Session token rejected: unknown role %r", payload["role"])
            return None
        try:
            return Claims(
                sub=str(payload["sub"]),
                username=str(payload["username"]),
                role=role,
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                ver=int(payload.get("ver", 0)),
            )
        except (TypeError, ValueError):
            logger.warning("Session token rejected: malformed claims")
            return None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST; the CSRF double-submit
        check in auth/csrf.py covers the rest.
    secure: only sent over HTTPS when COOKIE_SECURE=true (set in production).
    max_age: matches the token TTL so both expire together.
    """
    settings = get_settings()
    response.set_cookie(
        settings.cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        max_age=max_age,
        domain=settings.cookie_domain or None,
        path="/",
    )


def clear_auth_cookie(response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.cookie_name,
        path="/",
        domain=settings.cookie_domain or None,
    )
