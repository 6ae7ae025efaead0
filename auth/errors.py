"""
auth/errors.py -- Error taxonomy for the auth core.

Every business-rule failure in auth/ is raised as an AuthError subclass
carrying a human-readable message. The HTTP layer (api/main.py) maps each
class to a status code and a stable machine-readable code via the class
attributes below, so services never import fastapi.

  AuthenticationFailure  bad credentials, disabled account, invalid/expired
                         OTP or setup token. Messages are always user-safe and
                         never distinguish "no such user" from "wrong password".
  AuthorizationFailure   role/ownership rule violated by an authenticated actor.
  RateLimited            too many requests; carries retry_after seconds.
  DependencyFailure      load-bearing side effect failed (OTP/setup email).

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses override status_code and code."""

    status_code: int = 400
    code: str = "auth_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationFailure(AuthError):
    status_code = 401
    code = "authentication_failed"


class AuthorizationFailure(AuthError):
    status_code = 403
    code = "forbidden"


class RateLimited(AuthError):
    """Raised when a client exhausts its window for an endpoint class.

    Must never be folded into AuthenticationFailure: clients back off on 429
    but retry credentials on 401.
    """

    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Too many requests.") -> None:
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))


class DependencyFailure(AuthError):
    status_code = 502
    code = "dependency_failure"


class NotFound(AuthError):
    status_code = 404
    code = "not_found"


class Conflict(AuthError):
    status_code = 409
    code = "conflict"


class ValidationFailure(AuthError):
    status_code = 400
    code = "validation_error"
