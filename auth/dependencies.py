"""
auth/dependencies.py -- Session principal resolution and FastAPI Depends() helpers.

Token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients and the admin SPA.
  2. The auth cookie (COOKIE_NAME, default "admin_jwt") -- only when
     COOKIE_ENABLED is true.

resolve_principal() is run once per request by the session middleware in
api/main.py and its result is stored on request.state.principal. A token
only yields a principal if it verifies AND its user still exists, is active,
and has the token_version the token was issued with. Anything else means
anonymous; this function never raises for a bad token.

get_current_principal() turns anonymous into 401. require_admin() and
require_staff() add the role gate (403). Role checks branch over every Role
member explicitly; an unexpected value is denied.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.errors import AuthenticationFailure, AuthorizationFailure
from auth.models import Principal, Role
from core.config import get_settings

logger = logging.getLogger("foundation.auth.session")

SOURCE_BEARER = "bearer"
SOURCE_COOKIE = "cookie"


def extract_token(request: Request) -> tuple[str | None, str | None]:
    """Return (token, source) from the request, or (None, None)."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token, SOURCE_BEARER

    settings = get_settings()
    if settings.cookie_enabled:
        token = request.cookies.get(settings.cookie_name)
        if token:
            return token, SOURCE_COOKIE
    return None, None


def resolve_principal(request: Request) -> Principal | None:
    """Authenticate the request. Returns the Principal, or None for anonymous.

    Also records how the principal authenticated on request.state.auth_source
    ("bearer", "cookie", or None); the CSRF check only applies to cookies.
    """
    request.state.auth_source = None
    token, source = extract_token(request)
    if not token:
        return None

    claims = request.app.state.token_signer.verify(token)
    if claims is None:
        return None

    user = request.app.state.user_store.get_by_id(claims.sub)
    if user is None or not user.is_active:
        logger.info("Session token for missing or disabled user %s rejected", claims.username)
        return None
    if user.token_version != claims.ver:
        logger.info("Revoked session token for %s rejected", user.username)
        return None

    request.state.auth_source = source
    # Role comes from the store, not the claim, so a role change applies at once.
    return Principal(user_id=user.id, username=user.username, role=user.role)


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises AuthenticationFailure (401) if anonymous.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    if not hasattr(request.state, "principal"):
        request.state.principal = resolve_principal(request)
    principal = request.state.principal
    if principal is None:
        raise AuthenticationFailure("Authentication required.")
    return principal


def require_admin(request: Request) -> Principal:
    """Require the ADMIN role. 401 if unauthenticated, 403 otherwise."""
    principal = get_current_principal(request)
    if principal.role is Role.ADMIN:
        return principal
    if principal.role is Role.OPERATOR:
        raise AuthorizationFailure("Admin access required.")
    raise AuthorizationFailure("Access denied.")


def require_staff(request: Request) -> Principal:
    """Require any admin-panel role (ADMIN or OPERATOR)."""
    principal = get_current_principal(request)
    if principal.role is Role.ADMIN or principal.role is Role.OPERATOR:
        return principal
    raise AuthorizationFailure("Access denied.")
