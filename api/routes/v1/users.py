"""
api/routes/v1/users.py -- Admin user management.

Routes:
  GET    /api/v1/users          -- list all accounts, newest first
  GET    /api/v1/users/{id}     -- one account
  PUT    /api/v1/users/role     -- set a user's role
  DELETE /api/v1/users/{id}     -- deactivate (soft delete) an account

Every route requires an active Admin (require_admin). The last active admin
can be neither demoted nor deactivated, and an admin cannot deactivate
themselves.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.errors import raise_for_failure
from api.models import MessageResponse, UpdateRoleRequest, UserResponse
from auth.dependencies import require_admin
from auth.models import User

# Auth policy:
# - all routes: requires Admin role (require_admin)
router = APIRouter()


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, _admin: User = Depends(require_admin)) -> list[UserResponse]:
    result = request.app.state.auth_service.list_users()
    return [UserResponse.from_user(u) for u in result.value]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: str, _admin: User = Depends(require_admin)) -> UserResponse:
    result = request.app.state.auth_service.get_profile(user_id)
    if not result.ok:
        raise_for_failure(result.error)
    return UserResponse.from_user(result.value)


@router.put("/users/role", response_model=UserResponse)
def update_role(
    request: Request,
    body: UpdateRoleRequest,
    _admin: User = Depends(require_admin),
) -> UserResponse:
    """Change a user's role. Takes effect on the user's next access token."""
    result = request.app.state.auth_service.update_role(body.user_id, body.role)
    if not result.ok:
        raise_for_failure(result.error)
    return UserResponse.from_user(result.value)


@router.delete("/users/{user_id}", response_model=MessageResponse)
def deactivate_user(
    request: Request,
    user_id: str,
    admin: User = Depends(require_admin),
) -> MessageResponse:
    """Deactivate an account and end its refresh session. The row is kept."""
    result = request.app.state.auth_service.deactivate(user_id, acting_user_id=admin.id)
    if not result.ok:
        raise_for_failure(result.error)
    return MessageResponse(message="User deactivated")
