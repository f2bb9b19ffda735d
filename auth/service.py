"""
auth/service.py -- SessionOrchestrator: the register / login / refresh / logout /
reset flows, composed from the stores and the token service.

This is the only auth component the HTTP layer calls. It owns no state of its
own; every invariant lives in CredentialStore, RefreshTokenLedger,
SingleUseTokenManager, or TokenService, and this module decides the order
they run in.

Account states: Unverified -> Active -> Suspended | Deleted. Email
verification does not gate sign-in; status does. Any non-active status fails
login, refresh, and access-token authentication with AccountNotActiveError.

Errors propagate untouched, with one exception: forgot_password() never
reveals whether the email exists [E1].
"""

from __future__ import annotations

import logging

from auth.errors import AlreadyVerifiedError, InvalidCredentialsError, UserNotFoundError, ValidationError
from auth.ledger import RefreshTokenLedger
from auth.models import AuthResult, DeviceInfo, ExternalIdentity, RefreshTokenRecord, TokenPair, User
from auth.notify import EMAIL_VERIFICATION, PASSWORD_RESET, NotificationDispatcher, redact_email
from auth.passwords import hash_password, verify_password
from auth.policies import ensure_active
from auth.single_use import SingleUseTokenManager, TokenPurpose
from auth.store import CredentialStore
from auth.tokens import TokenService

logger = logging.getLogger("stellr.auth.service")

GENERIC_RESET_MESSAGE = "If an account exists for that email, a password reset link has been sent."


class SessionOrchestrator:
    def __init__(
        self,
        store: CredentialStore,
        ledger: RefreshTokenLedger,
        tokens: TokenService,
        single_use: SingleUseTokenManager,
        notifier: NotificationDispatcher,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.tokens = tokens
        self.single_use = single_use
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Registration and sign-in
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        phone: str | None = None,
        device: DeviceInfo | None = None,
    ) -> AuthResult:
        """Create the account, sign it in, and send the verification email.

        The verification email is fire-and-forget: a delivery failure is
        logged and the registration still succeeds.
        """
        user = self.store.register(email, password, phone=phone, display_name=display_name)
        pair = self.tokens.issue_pair(user, device=device)
        token = self.single_use.issue(TokenPurpose.EMAIL_VERIFICATION, user.id)
        self._notify(EMAIL_VERIFICATION, user.email, token)
        logger.info("Registered user_id=%s email=%s", user.id, redact_email(user.email))
        return AuthResult(user=user, tokens=pair)

    def login(self, email: str, password: str, device: DeviceInfo | None = None) -> AuthResult:
        try:
            user = self.store.authenticate(email, password)
        except InvalidCredentialsError:
            logger.warning("Failed login for email=%s", redact_email(email or ""))
            raise
        ensure_active(user)
        pair = self.tokens.issue_pair(user, device=device)
        self.store.update_last_login(user.id)
        logger.info("Login user_id=%s", user.id)
        return AuthResult(user=user, tokens=pair)

    def oauth_login(self, identity: ExternalIdentity, device: DeviceInfo | None = None) -> AuthResult:
        """Find-or-create the local account for a provider-verified identity.

        Lookup order: linked (provider, subject) first, then a live account with
        the same email (which gets linked), else a new passwordless account.
        """
        user = self.store.get_by_oauth(identity.provider, identity.subject)
        if user is None:
            existing = self.store.get_by_email(identity.email)
            if existing is not None and existing.status != "deleted":
                self.store.link_oauth(existing.id, identity.provider, identity.subject)
                user = self.store.get_by_id(existing.id)
                logger.info("Linked %s identity to user_id=%s", identity.provider, existing.id)
            else:
                user = self.store.create_oauth_user(identity)
                logger.info("Created user_id=%s from %s identity", user.id, identity.provider)
        ensure_active(user)
        pair = self.tokens.issue_pair(user, device=device)
        self.store.update_last_login(user.id)
        return AuthResult(user=user, tokens=pair)

    def refresh(self, raw_refresh_token: str, device: DeviceInfo | None = None) -> TokenPair:
        """Rotate a refresh token. The account must still be active."""
        return self.tokens.rotate(raw_refresh_token, device=device, check=ensure_active)

    def logout(self, user_id: str) -> None:
        """End every session: access tokens die via token_version, refresh tokens via the ledger."""
        self.store.bump_token_version(user_id)
        self.ledger.revoke_all_for_user(user_id, "logout")
        logger.info("Logout user_id=%s", user_id)

    def authenticate_access_token(self, token: str) -> User:
        """Verify an access token and return its (active) user."""
        claims = self.tokens.verify_access_token(token)
        user = self.store.get_by_id(claims["sub"])
        if user is None:
            raise UserNotFoundError()
        ensure_active(user)
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> str:
        """Send a reset link if the account exists. Always returns the same message [E1]."""
        user = self.store.get_by_email(email or "")
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive email=%s", redact_email(email or ""))
            return GENERIC_RESET_MESSAGE
        token = self.single_use.issue(TokenPurpose.PASSWORD_RESET, user.id)
        self._notify(PASSWORD_RESET, user.email, token)
        logger.info("Password reset issued for user_id=%s", user.id)
        return GENERIC_RESET_MESSAGE

    def reset_password(self, token: str, new_password: str) -> None:
        """Consume the reset token, set the new password, and end every session."""
        if not new_password:
            raise ValidationError("New password is required.")
        user_id = self.single_use.consume(TokenPurpose.PASSWORD_RESET, token)
        self.store.set_password_hash(user_id, hash_password(new_password))
        self.store.bump_token_version(user_id)
        self.ledger.revoke_all_for_user(user_id, "password-reset")
        logger.info("Password reset completed for user_id=%s", user_id)

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        device: DeviceInfo | None = None,
    ) -> TokenPair:
        """Change the password of a signed-in user.

        Every existing session ends, then a fresh pair is issued so the
        caller's own device stays signed in.
        """
        if not new_password:
            raise ValidationError("New password is required.")
        user = self.store.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        if user.password_hash is None or not verify_password(current_password, user.password_hash):
            raise InvalidCredentialsError()
        self.store.set_password_hash(user_id, hash_password(new_password))
        self.store.bump_token_version(user_id)
        self.ledger.revoke_all_for_user(user_id, "password-change")
        logger.info("Password changed for user_id=%s", user_id)
        return self.tokens.issue_pair(self.store.get_by_id(user_id), device=device)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> None:
        user_id = self.single_use.consume(TokenPurpose.EMAIL_VERIFICATION, token)
        self.store.mark_email_verified(user_id)
        logger.info("Email verified for user_id=%s", user_id)

    def resend_verification(self, user_id: str) -> None:
        """Issue a fresh verification token, invalidating the previous one."""
        user = self.store.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        if user.email_verified:
            raise AlreadyVerifiedError()
        token = self.single_use.issue(TokenPurpose.EMAIL_VERIFICATION, user.id)
        self._notify(EMAIL_VERIFICATION, user.email, token)

    # ------------------------------------------------------------------
    # Profile and sessions
    # ------------------------------------------------------------------

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    def update_profile(self, user_id: str, **fields) -> User:
        return self.store.update_profile(user_id, **fields)

    def admin_update_user(self, user_id: str, role: str | None = None, status: str | None = None) -> User:
        """Change role and/or status (admin surface).

        Leaving the active state ends every session immediately; a role change
        also bumps token_version because the role is embedded in access tokens.
        """
        user = self.get_profile(user_id)
        if role is not None and role != user.role:
            self.store.set_role(user_id, role)
            self.store.bump_token_version(user_id)
        if status is not None and status != user.status:
            self.store.set_status(user_id, status)
            if status != "active":
                self.store.bump_token_version(user_id)
                self.ledger.revoke_all_for_user(user_id, f"account-{status}")
        logger.info("Admin update user_id=%s role=%s status=%s", user_id, role, status)
        return self.get_profile(user_id)

    def list_sessions(self, user_id: str) -> list[RefreshTokenRecord]:
        return self.ledger.list_sessions(user_id)

    def revoke_session(self, user_id: str, session_id: str) -> bool:
        return self.ledger.revoke_session(session_id, user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify(self, kind: str, recipient: str, token: str) -> None:
        """Hand a message to the dispatcher; never let delivery fail the caller."""
        try:
            self.notifier.send(kind, recipient, token)
        except Exception:
            logger.exception("Could not queue %s notification for %s", kind, redact_email(recipient))
