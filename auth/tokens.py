"""
auth/tokens.py -- Access/refresh JWT issuance, verification, and rotation.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       different secrets and carry a "type" claim, so neither can stand in for
       the other. Both carry iss/aud and are verified against them.

  Access tokens carry "ver", the user's token_version at issue time.
       verify_access_token() re-reads the user and rejects any mismatch, which
       is how logout and password changes invalidate every outstanding access
       token without a revocation list.

  Refresh tokens carry a random "jti" so every raw token is unique. Only
       HMAC-SHA256(TOKEN_HASH_SECRET, raw) is persisted, in the ledger. The
       deterministic hash gives an O(1) lookup; the raw token is a signed JWT
       with enough entropy that bcrypt's slowness would buy nothing.

  Rotation is mandatory: every refresh revokes the presented token and issues
       a new pair. Presenting a token the ledger does not know, or one already
       revoked, is treated as theft -- the whole family of the user's refresh
       tokens is revoked [R5].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpiredError, TokenInvalidError
from auth.models import DeviceInfo, TokenPair, User
from auth.store import utcnow
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.ledger import RefreshTokenLedger
    from auth.store import CredentialStore

logger = logging.getLogger("stellr.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"


def hash_token(raw: str, secret: str | None = None) -> str:
    """Return HMAC-SHA256(secret, raw) as a hex string.

    Used for refresh tokens and single-use tokens. An attacker who reads the
    database cannot replay a stored value without also knowing the secret.
    """
    key = secret if secret is not None else get_settings().token_hash_secret
    return hmac.new(key.encode(), raw.encode(), hashlib.sha256).hexdigest()


class TokenService:
    """Signs and verifies tokens; drives refresh-token rotation through the ledger.

    The service itself holds no state between calls. clock is injectable so
    tests can mint tokens that are already past their expiry.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        ledger: RefreshTokenLedger,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.credentials = credentials
        self.ledger = ledger
        self.settings = settings or get_settings()
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_access_token(self, user_id: str, email: str, role: str, token_version: int) -> str:
        now = self._clock()
        claims = {
            "sub": user_id,
            "email": email,
            "role": role,
            "ver": token_version,
            "type": ACCESS,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + timedelta(seconds=self.settings.access_token_expire_seconds),
        }
        return jwt.encode(claims, self.settings.jwt_access_secret, algorithm=_ALGORITHM)

    def issue_refresh_token(self, user_id: str, email: str, role: str) -> str:
        """Return a signed refresh JWT. The caller is responsible for recording its hash."""
        token, _ = self._encode_refresh(user_id, email, role)
        return token

    def issue_pair(self, user: User, device: DeviceInfo | None = None, family_id: str | None = None) -> TokenPair:
        """Issue an access + refresh pair and record the refresh hash in the ledger.

        family_id=None starts a new family (a fresh login); rotation passes the
        family of the token being replaced.
        """
        access = self.issue_access_token(user.id, user.email, user.role, user.token_version)
        refresh, expires_at = self._encode_refresh(user.id, user.email, user.role)
        self.ledger.record(
            user.id,
            self.hash_refresh_token(refresh),
            expires_at,
            device=device,
            family_id=family_id,
            token_version=user.token_version,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_in=self.settings.access_token_expire_seconds,
            refresh_expires_in=self.settings.refresh_token_expire_seconds,
        )

    def hash_refresh_token(self, raw: str) -> str:
        return hash_token(raw, self.settings.token_hash_secret)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_access_token(self, token: str) -> dict:
        """Return the claims of a valid access token.

        Checks signature, expiry, issuer, audience, type, and that "ver"
        still equals the user's current token_version (read fresh).
        Raises TokenExpiredError or TokenInvalidError.
        """
        claims = self._decode(token, self.settings.jwt_access_secret, ACCESS)
        user = self.credentials.get_by_id(claims["sub"])
        if user is None or claims.get("ver") != user.token_version:
            raise TokenInvalidError()
        return claims

    def decode_refresh_token(self, token: str) -> dict:
        """Verify signature, expiry, issuer, audience, and type of a refresh token."""
        return self._decode(token, self.settings.jwt_refresh_secret, REFRESH)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(
        self,
        raw_refresh_token: str,
        device: DeviceInfo | None = None,
        check: Callable[[User], None] | None = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new access + refresh pair.

        Steps:
          1. Verify the JWT (expired -> TokenExpiredError, bad -> TokenInvalidError).
          2. Look up its hash. Unknown or already revoked -> reuse: revoke every
             refresh token of the user and raise TokenInvalidError [R5].
          3. Load the user and run check(user) before anything is mutated.
          4. A record minted under an older token_version (before a logout or
             password reset raced with it) is revoked and rejected.
          5. Compare-and-set revoke the presented record. Losing the race to a
             concurrent rotation is the same reuse signal as step 2 [R4].
          6. Issue a new pair in the same family, keeping the device metadata
             unless new metadata is supplied.
        """
        claims = self.decode_refresh_token(raw_refresh_token)
        user_id = claims["sub"]
        record = self.ledger.find_by_hash(self.hash_refresh_token(raw_refresh_token))

        if record is None or record.is_revoked or record.user_id != user_id:
            self._handle_reuse(user_id, record.revocation_reason if record else "unknown")
        if record.expires_at <= self._clock():
            raise TokenExpiredError()

        user = self.credentials.get_by_id(user_id)
        if user is None:
            raise TokenInvalidError()
        if check is not None:
            check(user)

        if record.token_version != user.token_version:
            self.ledger.revoke(record.id, "stale-version")
            logger.info("Rejected refresh token issued before token_version bump for user_id=%s", user_id)
            raise TokenInvalidError()

        if not self.ledger.revoke(record.id, "rotated"):
            self._handle_reuse(user_id, "concurrent-rotation")

        if device is None:
            device = DeviceInfo(
                device_name=record.device_name,
                user_agent=record.user_agent,
                ip_address=record.ip_address,
            )
        return self.issue_pair(user, device=device, family_id=record.family_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _handle_reuse(self, user_id: str, prior_state: str | None) -> None:
        """Kill the whole token family and fail. Never returns."""
        revoked = self.ledger.revoke_all_for_user(user_id, "reuse-detected")
        logger.warning(
            "Refresh token reuse detected for user_id=%s (prior state: %s); revoked %d active token(s)",
            user_id,
            prior_state,
            revoked,
        )
        raise TokenInvalidError()

    def _encode_refresh(self, user_id: str, email: str, role: str) -> tuple[str, datetime]:
        now = self._clock()
        expires_at = now + timedelta(seconds=self.settings.refresh_token_expire_seconds)
        claims = {
            "sub": user_id,
            "email": email,
            "role": role,
            "type": REFRESH,
            "jti": secrets.token_urlsafe(16),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": expires_at,
        }
        return jwt.encode(claims, self.settings.jwt_refresh_secret, algorithm=_ALGORITHM), expires_at

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        """Decode a JWT. Returning typed errors keeps callers free of jose imports."""
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise TokenInvalidError() from exc
        if claims.get("type") != expected_type or not claims.get("sub"):
            raise TokenInvalidError()
        return claims
