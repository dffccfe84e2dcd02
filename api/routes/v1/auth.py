"""
api/routes/v1/auth.py -- Sign-in, session and password-reset endpoints.

Routes:
  POST /api/v1/register          -- create a local account; returns token pair
  POST /api/v1/login            -- password login; returns token pair
  POST /api/v1/google           -- Google id token sign-in; returns token pair
  POST /api/v1/refresh-token    -- rotate refresh token; returns new pair
  POST /api/v1/logout           -- revoke refresh session (requires auth)
  GET  /api/v1/me               -- current profile (requires auth)
  POST /api/v1/change-password  -- change own password (requires auth)
  POST /api/v1/forgot-password  -- email a reset OTP; always a generic ack
  POST /api/v1/verify-otp       -- check an OTP without consuming it
  POST /api/v1/reset-password   -- set a new password with a valid OTP

Security:
  [H2] login, register and the reset routes are rate-limited per client IP.
  [C1] AuthService.login() equalizes timing and returns one generic message.
  [M5] Cache-Control: no-store on every response carrying tokens.
  Enumeration: /forgot-password answers identically for unknown addresses.

Handlers are plain def: the service does blocking DB and bcrypt work, so
FastAPI runs them in its threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.errors import OTP_STATUS_OVERRIDES, raise_for_failure
from api.limiter import LOGIN_LIMIT, OTP_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    GoogleAuthRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyOtpRequest,
)
from auth.dependencies import get_current_user
from auth.errors import ErrorKind
from auth.models import AuthSession, Role, User
from auth.service import AuthService

# Auth policy:
# - POST /register, /login, /google, /refresh-token:   public
# - POST /forgot-password, /verify-otp, /reset-password: public, rate-limited
# - POST /logout, /change-password, GET /me:           requires auth (get_current_user)
router = APIRouter()

_FORGOT_ACK = "If the email exists, an OTP has been sent"
# Unknown user on /logout is a client error, not a missing resource.
_LOGOUT_OVERRIDES = {ErrorKind.NOT_FOUND: 400}


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _token_response(session: AuthSession) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=TokenResponse.from_session(session).model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/register", response_model=TokenResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account and sign it in. Duplicate email -> 400."""
    result = _service(request).register(body.email, body.password)
    if not result.ok:
        raise_for_failure(result.error)
    return _token_response(result.value)


@limiter.limit(LOGIN_LIMIT)  # [H2]
@router.post("/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    The same "Invalid credentials" message is returned for unknown email,
    wrong password, Google-only and deactivated accounts.
    """
    result = _service(request).login(body.email, body.password)
    if not result.ok:
        raise_for_failure(result.error)
    return _token_response(result.value)


@limiter.limit(LOGIN_LIMIT)  # [H2]
@router.post("/google", response_model=TokenResponse)
def google_sign_in(request: Request, body: GoogleAuthRequest) -> JSONResponse:
    """Exchange a Google id token for a token pair, creating or linking the account."""
    result = _service(request).google_sign_in(body.id_token)
    if not result.ok:
        raise_for_failure(result.error)
    return _token_response(result.value)


@router.post("/refresh-token", response_model=TokenResponse)
def refresh_token(request: Request, body: RefreshTokenRequest) -> JSONResponse:
    """Rotate the refresh token. The presented token is dead after this call."""
    result = _service(request).refresh(body.user_id, body.refresh_token)
    if not result.ok:
        raise_for_failure(result.error)
    return _token_response(result.value)


# ---------------------------------------------------------------------------
# Authenticated
# ---------------------------------------------------------------------------


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: LogoutRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Revoke the refresh session of body.user_id.

    Users may only log themselves out; admins may end anyone's session.
    Idempotent: logging out twice is still a 200.
    """
    if body.user_id != current_user.id and current_user.role is not Role.ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You can only log out your own session."},
        )
    result = _service(request).logout(body.user_id)
    if not result.ok:
        raise_for_failure(result.error, _LOGOUT_OVERRIDES)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the profile of the authenticated caller."""
    return UserResponse.from_user(current_user)


@router.post("/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Change the caller's password. All refresh sessions end; access tokens expire naturally."""
    result = _service(request).change_password(current_user.id, body.current_password, body.new_password)
    if not result.ok:
        raise_for_failure(result.error)
    return MessageResponse(message="Password changed successfully")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(OTP_LIMIT)  # [H2]
@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Step 1: email a 6-digit OTP. The answer never reveals whether the account exists.

    A failed delivery for an existing account is a 503 the client may retry;
    the code already stored remains valid until it expires.
    """
    result = _service(request).request_password_reset(body.email)
    if not result.ok:
        raise_for_failure(result.error)
    return MessageResponse(message=_FORGOT_ACK)


@limiter.limit(OTP_LIMIT)  # [H2]
@router.post("/verify-otp", response_model=MessageResponse)
def verify_otp(request: Request, body: VerifyOtpRequest) -> MessageResponse:
    """Step 2 (optional): check the OTP without consuming it."""
    result = _service(request).verify_reset_otp(body.email, body.otp)
    if not result.ok:
        raise_for_failure(result.error, OTP_STATUS_OVERRIDES)
    return MessageResponse(message="OTP verified successfully")


@limiter.limit(OTP_LIMIT)  # [H2]
@router.post("/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Step 3: set a new password. Ends every refresh session of the account."""
    result = _service(request).reset_password(body.email, body.otp, body.new_password)
    if not result.ok:
        raise_for_failure(result.error, OTP_STATUS_OVERRIDES)
    return MessageResponse(message="Password has been reset successfully. Please login with your new password.")
