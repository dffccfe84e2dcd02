"""
API request and response models for PassGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.hashing import MAX_SECRET_BYTES
from auth.models import AuthSession, Role, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OTP_PATTERN = r"^\d{6}$"
MIN_PASSWORD_LENGTH = 6


def _check_password_bytes(value: str) -> str:
    """bcrypt only sees the first 72 bytes. Refuse anything longer.

    Passwords are taken byte for byte: leading and trailing spaces are part
    of the secret and are never stripped.
    """
    if len(value.encode("utf-8")) > MAX_SECRET_BYTES:
        raise ValueError(f"Password must be at most {MAX_SECRET_BYTES} bytes")
    return value


def _strip(value):
    return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=MAX_SECRET_BYTES)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return _strip(value)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=MAX_SECRET_BYTES)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return _strip(value)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class GoogleAuthRequest(BaseModel):
    id_token: str = Field(min_length=1, max_length=8192, alias="idToken")

    model_config = ConfigDict(populate_by_name=True)


class RefreshTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=36, alias="userId")
    refresh_token: str = Field(min_length=1, max_length=255, alias="refreshToken")


class LogoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=36, alias="userId")


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(min_length=1, max_length=MAX_SECRET_BYTES, alias="currentPassword")
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=MAX_SECRET_BYTES, alias="newPassword")

    @field_validator("current_password", "new_password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class UpdateRoleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=36, alias="userId")
    role: Role


class ForgotPasswordRequest(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return _strip(value)


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    otp: str = Field(pattern=OTP_PATTERN)

    @field_validator("email", "otp", mode="before")
    @classmethod
    def strip_email_and_otp(cls, value):
        return _strip(value)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    otp: str = Field(pattern=OTP_PATTERN)
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=MAX_SECRET_BYTES, alias="newPassword")

    @field_validator("email", "otp", mode="before")
    @classmethod
    def strip_email_and_otp(cls, value):
        return _strip(value)

    @field_validator("new_password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair plus the caller's profile, returned by every sign-in route."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: str
    username: str
    email: Optional[str]
    profile_picture: Optional[str]
    role: str

    @classmethod
    def from_session(cls, session: AuthSession) -> "TokenResponse":
        """Factory Method -- the mapping lives beside the output model."""
        return cls(
            access_token=session.tokens.access_token,
            refresh_token=session.tokens.refresh_token,
            expires_in=session.tokens.expires_in,
            user_id=session.user.id,
            username=session.user.username,
            email=session.user.email,
            profile_picture=session.user.profile_picture,
            role=session.user.role.value,
        )


class UserResponse(BaseModel):
    """Public profile. Hashes, OTP state and session fields are never exposed."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: Optional[str]
    role: str
    auth_provider: str
    profile_picture: Optional[str]
    created_at: Optional[datetime]
    last_login_at: Optional[datetime]
    is_active: bool

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role.value,
            auth_provider=user.auth_provider.value,
            profile_picture=user.profile_picture,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
            is_active=user.is_active,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    remaining_attempts: Optional[int] = None


class ErrorResponse(BaseModel):
    """Envelope for every error body: {"error": {"code": ..., "message": ...}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail
