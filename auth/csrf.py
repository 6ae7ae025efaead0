"""
auth/csrf.py -- Double-submit CSRF check for cookie-authenticated requests.

GET /api/auth/csrf sets a random XSRF-TOKEN cookie that page JavaScript can
read (httponly=False). Unsafe requests authenticated by the session cookie
must echo it back in the X-XSRF-TOKEN header; a cross-site attacker can make
the browser send the cookie but cannot read it to fill in the header.

Not checked:
  - safe methods (GET, HEAD, OPTIONS, TRACE)
  - bearer-authenticated and anonymous requests (no ambient credential)
  - login, OTP verification and password setup, which authenticate with
    credentials in the body rather than the cookie

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets

from fastapi import Request

from auth.dependencies import SOURCE_COOKIE
from auth.errors import AuthorizationFailure
from core.config import get_settings

logger = logging.getLogger("foundation.auth.csrf")

CSRF_COOKIE = "XSRF-TOKEN"
CSRF_HEADER = "X-XSRF-TOKEN"

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
_EXEMPT_PREFIXES = ("/api/auth/login", "/api/auth/otp/", "/api/auth/setup-password/")


def issue_csrf_token(response) -> str:
    """Generate a CSRF token, set it as the readable XSRF-TOKEN cookie, and return it."""
    settings = get_settings()
    token = secrets.token_urlsafe(32)
    response.set_cookie(
        CSRF_COOKIE,
        value=token,
        httponly=False,
        samesite="lax",
        secure=settings.cookie_secure,
        domain=settings.cookie_domain or None,
        path="/",
    )
    return token


def csrf_protect(request: Request) -> None:
    """FastAPI dependency. Raises AuthorizationFailure (403) on a missing or mismatched token."""
    if not get_settings().csrf_enabled or request.method in _SAFE_METHODS:
        return
    if getattr(request.state, "auth_source", None) != SOURCE_COOKIE:
        return
    if request.url.path.startswith(_EXEMPT_PREFIXES):
        return

    cookie = request.cookies.get(CSRF_COOKIE, "")
    header = request.headers.get(CSRF_HEADER, "")
    if not cookie or not header or not hmac.compare_digest(cookie.encode(), header.encode()):
        logger.warning("CSRF check failed: %s %s", request.method, request.url.path)
        raise AuthorizationFailure("Invalid or missing CSRF token.")
