"""
api/routes/v1/auth.py -- Login, OTP, onboarding and security-question endpoints.

Routes (mounted under /api/auth):
  POST /login                            -- password login; token or otp_required
  POST /otp/verify                       -- second factor; token
  POST /logout                           -- clears the auth cookie
  GET  /me                               -- current principal (requires auth)
  GET  /csrf                             -- sets the XSRF-TOKEN cookie
  GET  /security-questions               -- active questions for the setup page
  GET  /validate-token/{token}           -- check a setup link before showing the form
  POST /setup-password/{token}           -- choose password + security answers
  GET|POST   /admin/security-questions       (admin only)
  PUT|DELETE /admin/security-questions/{id}  (admin only)

Security:
  Login and OTP failures answer with generic messages; see auth/service.py.
  Rate limiting and the CSRF check are router-level dependencies added in
  api/main.py, so every route here is covered.
  Cache-Control: no-store on every response that can carry a token or reveal
  setup-token validity.

Handlers are plain def: bcrypt and the store are blocking, so FastAPI runs
them in its threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    CsrfResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    OtpVerifyRequest,
    PasswordSetupRequest,
    SecurityQuestionCreate,
    SecurityQuestionResponse,
    SecurityQuestionUpdate,
    TokenValidationResponse,
)
from auth.csrf import issue_csrf_token
from auth.dependencies import get_current_principal, require_admin
from auth.models import LoginResult, Principal
from auth.service import AuthService
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.config import get_settings

# Auth policy:
# - login, otp/verify, logout, csrf:            public
# - security-questions, validate-token, setup:  public (the setup token is the credential)
# - me:                                         requires auth (get_current_principal)
# - admin/security-questions*:                  requires admin (require_admin)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _login_response(service: AuthService, result: LoginResult) -> JSONResponse:
    user = result.user
    body = LoginResponse(
        token=result.token,
        expires_in=service.signer.ttl_seconds if result.token else None,
        username=user.username,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        otp_required=result.otp_required,
    )
    resp = JSONResponse(content=body.model_dump(mode="json"))
    if result.token and get_settings().cookie_enabled:
        set_auth_cookie(resp, result.token, max_age=service.signer.ttl_seconds)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Login / session
# ---------------------------------------------------------------------------


@router.post("/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    With OTP enabled the response carries otp_required=true and no token;
    the code goes out by email.
    """
    service = _service(request)
    return _login_response(service, service.login(body.username, body.password))


@router.post("/otp/verify", response_model=LoginResponse)
def verify_otp(request: Request, body: OtpVerifyRequest) -> JSONResponse:
    service = _service(request)
    return _login_response(service, service.verify_otp(body.username, body.code))


@router.post("/logout", response_model=MessageResponse)
def logout() -> JSONResponse:
    """Clear the auth cookie. Bearer clients simply discard their token."""
    resp = JSONResponse(content={"message": "Logged out successfully"})
    if get_settings().cookie_enabled:
        clear_auth_cookie(resp)
    return resp


@router.get("/me", response_model=MeResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    user = _service(request).get_user(principal.user_id)
    return MeResponse(
        user_id=user.id,
        username=user.username,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        is_super_admin=user.is_super_admin,
    )


@router.get("/csrf", response_model=CsrfResponse)
def csrf(response: Response) -> CsrfResponse:
    """Issue a CSRF token cookie for cookie-authenticated clients."""
    token = issue_csrf_token(response)
    response.headers["Cache-Control"] = "no-store"
    return CsrfResponse(token=token)


# ---------------------------------------------------------------------------
# Onboarding (public; the setup token is the credential)
# ---------------------------------------------------------------------------


@router.get("/security-questions", response_model=list[SecurityQuestionResponse])
def security_questions(request: Request) -> list[SecurityQuestionResponse]:
    return [SecurityQuestionResponse.from_domain(q) for q in _service(request).get_active_security_questions()]


@router.get("/validate-token/{token}", response_model=TokenValidationResponse)
def validate_token(request: Request, token: str, response: Response) -> TokenValidationResponse:
    user = _service(request).validate_setup_token(token)
    response.headers["Cache-Control"] = "no-store"
    return TokenValidationResponse(username=user.username, email=user.email, full_name=user.full_name)


@router.post("/setup-password/{token}", response_model=MessageResponse)
def setup_password(request: Request, token: str, body: PasswordSetupRequest, response: Response) -> MessageResponse:
    answers = [(a.question_id, a.answer) for a in body.security_answers]
    _service(request).complete_password_setup(token, body.password, answers)
    response.headers["Cache-Control"] = "no-store"
    return MessageResponse(message="Password set successfully. You can now log in.")


# ---------------------------------------------------------------------------
# Security question administration (admin only)
# ---------------------------------------------------------------------------


@router.get("/admin/security-questions", response_model=list[SecurityQuestionResponse])
def list_security_questions(
    request: Request,
    principal: Principal = Depends(require_admin),
) -> list[SecurityQuestionResponse]:
    return [SecurityQuestionResponse.from_domain(q) for q in _service(request).list_security_questions()]


@router.post("/admin/security-questions", response_model=SecurityQuestionResponse, status_code=201)
def create_security_question(
    request: Request,
    body: SecurityQuestionCreate,
    principal: Principal = Depends(require_admin),
) -> SecurityQuestionResponse:
    question = _service(request).create_security_question(body.question, body.active, body.display_order)
    return SecurityQuestionResponse.from_domain(question)


@router.put("/admin/security-questions/{question_id}", response_model=SecurityQuestionResponse)
def update_security_question(
    request: Request,
    question_id: str,
    body: SecurityQuestionUpdate,
    principal: Principal = Depends(require_admin),
) -> SecurityQuestionResponse:
    question = _service(request).update_security_question(
        question_id,
        question=body.question,
        active=body.active,
        display_order=body.display_order,
    )
    return SecurityQuestionResponse.from_domain(question)


@router.delete("/admin/security-questions/{question_id}", status_code=204)
def delete_security_question(
    request: Request,
    question_id: str,
    principal: Principal = Depends(require_admin),
) -> Response:
    _service(request).delete_security_question(question_id)
    return Response(status_code=204)
