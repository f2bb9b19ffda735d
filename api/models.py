"""
API request and response models for the Stellr auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field limits here are transport hygiene (sizes, shapes), not password policy.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import RefreshTokenRecord, TokenPair, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PHONE_PATTERN = r"^\+[1-9]\d{1,14}$"

# bcrypt truncates at 72 bytes; the cap keeps inputs well below abuse sizes.
# Passwords are compared byte for byte and are never stripped.
_PASSWORD = Field(min_length=1, max_length=128)

# Identifiers and labels tolerate surrounding whitespace.
_Stripped = Annotated[str, StringConstraints(strip_whitespace=True)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    instructor = "instructor"
    admin = "admin"


class StatusEnum(str, Enum):
    active = "active"
    suspended = "suspended"
    deleted = "deleted"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: _Stripped = Field(min_length=3, max_length=255)
    password: str = _PASSWORD
    display_name: _Stripped = Field(min_length=1, max_length=100)
    phone: Optional[_Stripped] = Field(default=None, pattern=PHONE_PATTERN)
    device_name: Optional[_Stripped] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: _Stripped = Field(min_length=1, max_length=255)
    password: str = _PASSWORD
    device_name: Optional[_Stripped] = Field(default=None, max_length=100)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=512)
    new_password: str = _PASSWORD


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1, max_length=512)


class ChangePasswordRequest(BaseModel):
    current_password: str = _PASSWORD
    new_password: str = _PASSWORD


class ProfileUpdate(BaseModel):
    """Request body for PATCH /api/v1/auth/me. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    avatar_url: Optional[str] = Field(default=None, max_length=500)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class UserAdminPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Admin only."""

    role: Optional[RoleEnum] = None
    status: Optional[StatusEnum] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Access + refresh pair. Returned by login, register, refresh, change-password."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.access_expires_in,
            refresh_expires_in=pair.refresh_expires_in,
        )


class AuthResponse(TokenResponse):
    """Token pair plus the id of the signed-in user."""

    user_id: str
    email_verified: bool


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash or token digests."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    display_name: str
    phone: Optional[str]
    avatar_url: Optional[str]
    role: str
    status: str
    email_verified: bool
    phone_verified: bool
    created_at: Optional[str]
    last_login_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            phone=user.phone,
            avatar_url=user.avatar_url,
            role=user.role,
            status=user.status,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            created_at=user.created_at.isoformat() if user.created_at else None,
            last_login_at=user.last_login_at.isoformat() if user.last_login_at else None,
        )


class SessionResponse(BaseModel):
    """One signed-in device, for the session-management UI."""

    model_config = ConfigDict(frozen=True)

    id: str
    device_name: Optional[str]
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: Optional[str]
    expires_at: str

    @classmethod
    def from_record(cls, rec: RefreshTokenRecord) -> "SessionResponse":
        return cls(
            id=rec.id,
            device_name=rec.device_name,
            user_agent=rec.user_agent,
            ip_address=rec.ip_address,
            created_at=rec.created_at.isoformat() if rec.created_at else None,
            expires_at=rec.expires_at.isoformat(),
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


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

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
