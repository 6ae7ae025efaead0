"""
API request and response models for the admin auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Role, SecurityQuestion, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Minimum length applied at the HTTP layer. The service enforces no policy.
PASSWORD_MIN_LENGTH = 8
SETUP_PASSWORD_MIN_LENGTH = 6


# ---------------------------------------------------------------------------
# Shared envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Login / session
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=50)
    # max_length keeps request bodies bounded; bcrypt sees at most 72 bytes anyway.
    password: str = Field(min_length=1, max_length=255)


class OtpVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=50)
    code: str = Field(min_length=1, max_length=12)


class LoginResponse(BaseModel):
    """Returned by POST /login and POST /otp/verify.

    token is null exactly when otp_required is true: the client must then
    call /otp/verify with the emailed code.
    """

    token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    username: str
    email: str
    full_name: str
    role: Role
    otp_required: bool = False


class MeResponse(BaseModel):
    user_id: str
    username: str
    email: str
    full_name: str
    role: Role
    is_super_admin: bool


class CsrfResponse(BaseModel):
    message: str = "CSRF token initialized"
    token: str


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


class SecurityQuestionResponse(BaseModel):
    id: str
    question: str
    active: bool
    display_order: Optional[int] = None

    @classmethod
    def from_domain(cls, q: SecurityQuestion) -> "SecurityQuestionResponse":
        return cls(id=q.id, question=q.question, active=q.active, display_order=q.display_order)


class SecurityAnswerRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    question_id: str = Field(min_length=1, max_length=36)
    answer: str = Field(min_length=1, max_length=255)


class PasswordSetupRequest(BaseModel):
    password: str = Field(min_length=SETUP_PASSWORD_MIN_LENGTH, max_length=255)
    security_answers: list[SecurityAnswerRequest] = Field(min_length=2, max_length=10)

    @field_validator("security_answers")
    @classmethod
    def distinct_questions(cls, v: list[SecurityAnswerRequest]) -> list[SecurityAnswerRequest]:
        ids = [a.question_id for a in v]
        if len(set(ids)) != len(ids):
            raise ValueError("each security question can only be answered once")
        return v


class TokenValidationResponse(BaseModel):
    valid: bool = True
    username: str
    email: str
    full_name: str


class SecurityQuestionCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    question: str = Field(min_length=1, max_length=255)
    active: bool = True
    display_order: Optional[int] = Field(default=None, ge=0)


class SecurityQuestionUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    question: Optional[str] = Field(default=None, min_length=1, max_length=255)
    active: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/admin/users.

    No password: the new user chooses one from the emailed setup link.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    full_name: str = Field(min_length=1, max_length=255)
    role: Role


class UserUpdate(BaseModel):
    """Request body for PUT /api/admin/users/{id}. Omitted fields stay unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    role: Optional[Role] = None
    active: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=PASSWORD_MIN_LENGTH, max_length=255)


class UserStatusUpdate(BaseModel):
    active: bool


class PasswordChangeRequest(BaseModel):
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=255)


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    full_name: str
    role: Role
    active: bool
    is_super_admin: bool
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            active=user.is_active,
            is_super_admin=user.is_super_admin,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )
