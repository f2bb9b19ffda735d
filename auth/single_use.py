"""
auth/single_use.py -- One-shot tokens for email verification and password reset.

Each purpose has exactly one slot on the user record. issue() overwrites the
slot, so the previous token for that purpose stops working the moment a new
one is sent. consume() clears the slot with a compare-and-set, so a token
works once even if two requests present it at the same time.

The raw token leaves this module only as the return value of issue(); the
store keeps HMAC-SHA256(TOKEN_HASH_SECRET, token).
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from auth.errors import TokenExpiredError, TokenInvalidError
from auth.store import CredentialStore, utcnow
from auth.tokens import hash_token
from core.config import Settings, get_settings

logger = logging.getLogger("stellr.auth.single_use")


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email-verification"
    PASSWORD_RESET = "password-reset"


class SingleUseTokenManager:
    def __init__(
        self,
        store: CredentialStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock or utcnow

    def default_ttl(self, purpose: TokenPurpose) -> timedelta:
        if purpose is TokenPurpose.EMAIL_VERIFICATION:
            return timedelta(seconds=self.settings.email_verification_ttl_seconds)
        return timedelta(seconds=self.settings.password_reset_ttl_seconds)

    def issue(self, purpose: TokenPurpose, user_id: str, ttl: timedelta | None = None) -> str:
        """Generate a token for purpose, replacing any outstanding one, and return it."""
        token = secrets.token_urlsafe(32)
        expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl(purpose))
        self.store.store_single_use(user_id, purpose.value, self._digest(token), expires_at)
        logger.debug("Issued %s token for user_id=%s", purpose.value, user_id)
        return token

    def consume(self, purpose: TokenPurpose, token: str) -> str:
        """Return the owning user_id and burn the token.

        Raises TokenInvalidError when nothing matches (never issued, already
        used, replaced by a newer token, or another purpose's token) and
        TokenExpiredError when the match is past its expiry.
        """
        if not token:
            raise TokenInvalidError()
        digest = self._digest(token)
        user = self.store.find_by_single_use(purpose.value, digest)
        if user is None:
            raise TokenInvalidError()

        expires_at = (
            user.email_token_expiry if purpose is TokenPurpose.EMAIL_VERIFICATION else user.password_reset_expiry
        )
        if expires_at is None or expires_at <= self._clock():
            raise TokenExpiredError()

        if not self.store.clear_single_use(user.id, purpose.value, digest):
            # Another request consumed it between our read and our write.
            raise TokenInvalidError()
        return user.id

    def _digest(self, token: str) -> str:
        return hash_token(token, self.settings.token_hash_secret)
