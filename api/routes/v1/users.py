"""
api/routes/v1/users.py -- Admin user management endpoints.

Routes (mounted under /api/admin/users, all admin only):
  GET    /                  -- list users
  POST   /                  -- create user; emails a password-setup link
  GET    /{id}              -- one user
  PUT    /{id}              -- update profile, role, active flag, password
  PATCH  /{id}/status       -- activate / deactivate
  PATCH  /{id}/password     -- set a new password (revokes sessions)
  DELETE /{id}              -- delete user and everything it owns

Protection rules (super admin, self-delete, admin-deletes-admin) live in
AuthService so every caller gets them, not only HTTP.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    MessageResponse,
    PasswordChangeRequest,
    UserCreate,
    UserResponse,
    UserStatusUpdate,
    UserUpdate,
)
from auth.dependencies import require_admin
from auth.models import Principal
from auth.service import AuthService

router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


@router.get("", response_model=list[UserResponse])
def list_users(request: Request, principal: Principal = Depends(require_admin)) -> list[UserResponse]:
    return [UserResponse.from_domain(u) for u in _service(request).list_users()]


@router.post("", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate, principal: Principal = Depends(require_admin)) -> UserResponse:
    """Create an inactive user and email them a password-setup link.

    502 if the email cannot be sent; the user is not kept in that case.
    """
    user = _service(request).create_user(body.username, body.email, body.full_name, body.role)
    return UserResponse.from_domain(user)


@router.get("/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: str, principal: Principal = Depends(require_admin)) -> UserResponse:
    return UserResponse.from_domain(_service(request).get_user(user_id))


@router.put("/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    principal: Principal = Depends(require_admin),
) -> UserResponse:
    user = _service(request).update_user(
        user_id,
        username=body.username,
        email=body.email,
        full_name=body.full_name,
        role=body.role,
        active=body.active,
        password=body.password,
    )
    return UserResponse.from_domain(user)


@router.patch("/{user_id}/status", response_model=UserResponse)
def update_status(
    request: Request,
    user_id: str,
    body: UserStatusUpdate,
    principal: Principal = Depends(require_admin),
) -> UserResponse:
    return UserResponse.from_domain(_service(request).update_user_status(user_id, body.active))


@router.patch("/{user_id}/password", response_model=MessageResponse)
def change_password(
    request: Request,
    user_id: str,
    body: PasswordChangeRequest,
    principal: Principal = Depends(require_admin),
) -> MessageResponse:
    _service(request).change_password(user_id, body.password)
    return MessageResponse(message="Password updated successfully")


@router.delete("/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str, principal: Principal = Depends(require_admin)) -> Response:
    _service(request).delete_user(user_id, principal.username)
    return Response(status_code=204)
