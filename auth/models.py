"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and services do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

ROLES = ("user", "instructor", "admin")
STATUSES = ("active", "suspended", "deleted")


@dataclass
class User:
    """An account on the learning platform.

    email is always stored lower-cased; comparisons are case-insensitive
    because callers normalize before every lookup.

    password_hash is None for OAuth-only accounts (they have no local password).
    It never leaves the auth package -- API responses are built field by field.

    token_version is embedded in every access token as the "ver" claim.
    Incrementing it invalidates all previously issued access tokens without a
    revocation list.

    The single-use token columns hold HMAC digests, never raw tokens.
    """

    email: str
    display_name: str
    id: str | None = None
    phone: str | None = None
    avatar_url: str | None = None
    password_hash: str | None = None
    role: str = "user"  # "user", "instructor", "admin"
    status: str = "active"  # "active", "suspended", "deleted"
    email_verified: bool = False
    phone_verified: bool = False
    token_version: int = 0
    email_verification_token: str | None = None
    email_token_expiry: datetime | None = None
    password_reset_token: str | None = None
    password_reset_expiry: datetime | None = None
    oauth_provider: str | None = None
    oauth_subject: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class RefreshTokenRecord:
    """One issued refresh token. The raw JWT is never stored, only its HMAC.

    family_id is shared by every token descended from one login through
    rotation. token_version is the user's version when the token was issued;
    a record older than the user's current version can no longer be rotated.
    """

    user_id: str
    token_hash: str
    expires_at: datetime
    family_id: str
    id: str | None = None
    token_version: int = 0
    is_revoked: bool = False
    revoked_at: datetime | None = None
    revocation_reason: str | None = None
    device_name: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    created_at: datetime | None = None
    last_used_at: datetime | None = None


@dataclass(frozen=True)
class DeviceInfo:
    """Session metadata captured from the request that issued a token."""

    device_name: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthResult:
    """What register/login/oauth_login hand back to the HTTP layer."""

    user: User
    tokens: TokenPair


@dataclass(frozen=True)
class ExternalIdentity:
    """A verified identity returned by an OAuth provider."""

    email: str
    display_name: str
    provider: str
    subject: str
    extra: dict = field(default_factory=dict)
