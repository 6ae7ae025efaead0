"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and services do the work.

Timestamps are timezone-aware UTC datetimes in the domain. The store owns the
conversion to and from its fixed-width string column format.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of roles. Anything else is rejected, never defaulted."""

    ADMIN = "ADMIN"
    OPERATOR = "OPERATOR"


class PasswordCheck(Enum):
    MATCH = "match"
    LEGACY_MATCH = "legacy_match"  # matched the unsalted legacy digest; caller must re-hash
    MISMATCH = "mismatch"


@dataclass
class User:
    """An admin-panel account.

    password_hash is "" until the user completes password setup from the
    emailed link; such accounts are also inactive.

    is_super_admin marks the single protected identity: it cannot be deleted
    or deactivated, and only it may delete other ADMIN-role users. It is set
    by the default-admin bootstrap, never by ordinary user creation.

    token_version is embedded in every session token and bumped whenever
    outstanding sessions must stop working (password change, deactivation).
    """

    username: str
    email: str
    role: Role
    id: str | None = None
    full_name: str = ""
    password_hash: str = ""
    is_active: bool = False
    is_super_admin: bool = False
    token_version: int = 0
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class OtpChallenge:
    """A pending second-factor code. Only the digest of the code is stored."""

    user_id: str
    code_hash: str
    expires_at: datetime
    id: str | None = None
    attempts: int = 0
    used: bool = False
    created_at: datetime | None = None


@dataclass
class PasswordSetupToken:
    """Single-use onboarding token emailed to newly created users."""

    user_id: str
    token: str
    expires_at: datetime
    id: str | None = None
    used: bool = False
    created_at: datetime | None = None


@dataclass
class SecurityQuestion:
    question: str
    id: str | None = None
    active: bool = True
    display_order: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class SecurityAnswer:
    """answer_hash is the digest of the lowercased, trimmed answer."""

    user_id: str
    question_id: str
    answer_hash: str
    id: str | None = None


@dataclass(frozen=True)
class Claims:
    """Verified session-token payload."""

    sub: str
    username: str
    role: Role
    iat: int
    exp: int
    ver: int = 0


@dataclass(frozen=True)
class Principal:
    """The identity the session middleware attaches to a request."""

    user_id: str
    username: str
    role: Role


@dataclass
class LoginResult:
    """Outcome of a login or OTP verification step.

    token is None exactly when otp_required is True.
    """

    user: User
    token: str | None = None
    otp_required: bool = False
