"""Unit tests for auth/service.py -- SessionOrchestrator flows.

Covers:
- The register -> login -> refresh -> reuse scenario end to end
- Suspended accounts fail login, refresh, and access-token authentication
- logout() invalidates access and refresh tokens issued before it
- forgot_password() answers identically for known and unknown emails
- reset_password() works once and ends every session
- verify_email() / resend_verification() lifecycle
- A failing notification never fails the request
- OAuth find-or-create and linking
- Admin role/status changes end sessions
"""

import pytest

from auth.errors import (
    AccountNotActiveError,
    AlreadyVerifiedError,
    InvalidCredentialsError,
    TokenInvalidError,
    UserNotFoundError,
)
from auth.models import ExternalIdentity
from auth.notify import EMAIL_VERIFICATION, PASSWORD_RESET
from auth.service import GENERIC_RESET_MESSAGE, SessionOrchestrator


class TestAliceScenario:
    def test_register_login_refresh_reuse(self, orchestrator) -> None:
        registered = orchestrator.register("alice@test.dev", "Secret123!", "Alice")
        assert registered.user.email_verified is False
        assert registered.user.status == "active"

        login = orchestrator.login("alice@test.dev", "Secret123!")
        assert login.user.id == registered.user.id
        assert login.tokens.access_token and login.tokens.refresh_token

        pair_a = orchestrator.refresh(login.tokens.refresh_token)
        assert pair_a.refresh_token != login.tokens.refresh_token

        with pytest.raises(TokenInvalidError):
            orchestrator.refresh(login.tokens.refresh_token)
        with pytest.raises(TokenInvalidError):
            orchestrator.refresh(pair_a.refresh_token)

    def test_register_sends_verification(self, orchestrator, dispatcher) -> None:
        orchestrator.register("verify-me@test.dev", "Secret123!", "V")
        assert dispatcher.last(EMAIL_VERIFICATION, "verify-me@test.dev")


class TestAccountStatus:
    def test_wrong_password(self, orchestrator) -> None:
        orchestrator.register("wrong@test.dev", "Secret123!", "W")
        with pytest.raises(InvalidCredentialsError):
            orchestrator.login("wrong@test.dev", "Secret124!")

    def test_suspended_user_is_locked_out(self, orchestrator, store) -> None:
        result = orchestrator.register("susp@test.dev", "Secret123!", "S")
        store.set_status(result.user.id, "suspended")
        with pytest.raises(AccountNotActiveError):
            orchestrator.login("susp@test.dev", "Secret123!")
        with pytest.raises(AccountNotActiveError):
            orchestrator.refresh(result.tokens.refresh_token)
        with pytest.raises(AccountNotActiveError):
            orchestrator.authenticate_access_token(result.tokens.access_token)

    def test_suspended_user_wrong_password_is_still_invalid_credentials(self, orchestrator, store) -> None:
        result = orchestrator.register("susp2@test.dev", "Secret123!", "S")
        store.set_status(result.user.id, "suspended")
        with pytest.raises(InvalidCredentialsError):
            orchestrator.login("susp2@test.dev", "bad")

    def test_login_stamps_last_login(self, orchestrator, store) -> None:
        result = orchestrator.register("stamp@test.dev", "Secret123!", "S")
        orchestrator.login("stamp@test.dev", "Secret123!")
        assert store.get_by_id(result.user.id).last_login_at is not None


class TestLogout:
    def test_logout_invalidates_everything(self, orchestrator) -> None:
        result = orchestrator.register("bye@test.dev", "Secret123!", "B")
        second = orchestrator.login("bye@test.dev", "Secret123!")
        orchestrator.logout(result.user.id)

        for pair in (result.tokens, second.tokens):
            with pytest.raises(TokenInvalidError):
                orchestrator.authenticate_access_token(pair.access_token)
            with pytest.raises(TokenInvalidError):
                orchestrator.refresh(pair.refresh_token)

    def test_login_after_logout_works(self, orchestrator) -> None:
        result = orchestrator.register("back@test.dev", "Secret123!", "B")
        orchestrator.logout(result.user.id)
        again = orchestrator.login("back@test.dev", "Secret123!")
        assert orchestrator.authenticate_access_token(again.tokens.access_token).id == result.user.id
        assert orchestrator.refresh(again.tokens.refresh_token).access_token


class TestPasswordReset:
    def test_forgot_password_is_generic(self, orchestrator, dispatcher) -> None:
        orchestrator.register("real@test.dev", "Secret123!", "R")
        known = orchestrator.forgot_password("real@test.dev")
        unknown = orchestrator.forgot_password("nobody@x.com")
        assert known == unknown == GENERIC_RESET_MESSAGE
        assert dispatcher.last(PASSWORD_RESET, "real@test.dev")
        assert all(m.recipient != "nobody@x.com" for m in dispatcher.sent)

    def test_reset_once_then_fails(self, orchestrator, dispatcher) -> None:
        result = orchestrator.register("reset@test.dev", "Secret123!", "R")
        orchestrator.forgot_password("reset@test.dev")
        token = dispatcher.last(PASSWORD_RESET, "reset@test.dev")

        orchestrator.reset_password(token, "NewSecret1!")
        with pytest.raises(TokenInvalidError):
            orchestrator.reset_password(token, "Another1!")

        with pytest.raises(TokenInvalidError):
            orchestrator.authenticate_access_token(result.tokens.access_token)
        with pytest.raises(TokenInvalidError):
            orchestrator.refresh(result.tokens.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            orchestrator.login("reset@test.dev", "Secret123!")
        assert orchestrator.login("reset@test.dev", "NewSecret1!").user.id == result.user.id

    def test_change_password(self, orchestrator) -> None:
        result = orchestrator.register("change@test.dev", "Secret123!", "C")
        fresh = orchestrator.change_password(result.user.id, "Secret123!", "Changed123!")
        with pytest.raises(TokenInvalidError):
            orchestrator.authenticate_access_token(result.tokens.access_token)
        assert orchestrator.authenticate_access_token(fresh.access_token).id == result.user.id
        assert orchestrator.login("change@test.dev", "Changed123!")

    def test_change_password_wrong_current(self, orchestrator) -> None:
        result = orchestrator.register("change2@test.dev", "Secret123!", "C")
        with pytest.raises(InvalidCredentialsError):
            orchestrator.change_password(result.user.id, "nope", "Changed123!")


class TestEmailVerification:
    def test_verify_email(self, orchestrator, dispatcher, store) -> None:
        result = orchestrator.register("ev@test.dev", "Secret123!", "E")
        orchestrator.verify_email(dispatcher.last(EMAIL_VERIFICATION, "ev@test.dev"))
        assert store.get_by_id(result.user.id).email_verified is True

    def test_resend_on_verified_user(self, orchestrator, dispatcher) -> None:
        result = orchestrator.register("done@test.dev", "Secret123!", "D")
        orchestrator.verify_email(dispatcher.last(EMAIL_VERIFICATION, "done@test.dev"))
        with pytest.raises(AlreadyVerifiedError):
            orchestrator.resend_verification(result.user.id)

    def test_resend_invalidates_previous_token(self, orchestrator, dispatcher) -> None:
        result = orchestrator.register("again@test.dev", "Secret123!", "A")
        first = dispatcher.last(EMAIL_VERIFICATION, "again@test.dev")
        orchestrator.resend_verification(result.user.id)
        second = dispatcher.last(EMAIL_VERIFICATION, "again@test.dev")
        assert first != second
        with pytest.raises(TokenInvalidError):
            orchestrator.verify_email(first)
        orchestrator.verify_email(second)

    def test_resend_unknown_user(self, orchestrator) -> None:
        with pytest.raises(UserNotFoundError):
            orchestrator.resend_verification("missing")


def test_notification_failure_does_not_fail_register(
    store, ledger, tokens, single_use, failing_dispatcher, caplog
) -> None:
    orchestrator = SessionOrchestrator(store, ledger, tokens, single_use, failing_dispatcher)
    result = orchestrator.register("offline@test.dev", "Secret123!", "O")
    assert result.user.id
    assert "Could not queue" in caplog.text
    assert "offline@test.dev" not in caplog.text


class TestOAuthLogin:
    def _identity(self, email="oauth@test.dev", subject="gh-1") -> ExternalIdentity:
        return ExternalIdentity(email=email, display_name="OAuth User", provider="github", subject=subject)

    def test_creates_verified_account(self, orchestrator) -> None:
        result = orchestrator.oauth_login(self._identity())
        assert result.user.email_verified is True
        assert result.user.password_hash is None
        again = orchestrator.oauth_login(self._identity())
        assert again.user.id == result.user.id

    def test_links_existing_account_by_email(self, orchestrator, store) -> None:
        local = orchestrator.register("linked@test.dev", "Secret123!", "L")
        result = orchestrator.oauth_login(self._identity(email="Linked@test.dev", subject="gh-2"))
        assert result.user.id == local.user.id
        assert store.get_by_oauth("github", "gh-2").id == local.user.id


class TestAdminAndSessions:
    def test_suspend_ends_sessions(self, orchestrator) -> None:
        result = orchestrator.register("admin-target@test.dev", "Secret123!", "T")
        updated = orchestrator.admin_update_user(result.user.id, status="suspended")
        assert updated.status == "suspended"
        assert orchestrator.list_sessions(result.user.id) == []

    def test_role_change_reissues_access(self, orchestrator) -> None:
        result = orchestrator.register("promote@test.dev", "Secret123!", "P")
        orchestrator.admin_update_user(result.user.id, role="instructor")
        with pytest.raises(TokenInvalidError):
            orchestrator.authenticate_access_token(result.tokens.access_token)
        login = orchestrator.login("promote@test.dev", "Secret123!")
        assert login.user.role == "instructor"

    def test_list_and_revoke_session(self, orchestrator) -> None:
        result = orchestrator.register("sess@test.dev", "Secret123!", "S")
        orchestrator.login("sess@test.dev", "Secret123!")
        sessions = orchestrator.list_sessions(result.user.id)
        assert len(sessions) == 2
        assert orchestrator.revoke_session("someone-else", sessions[0].id) is False
        assert orchestrator.revoke_session(result.user.id, sessions[0].id) is True
        assert len(orchestrator.list_sessions(result.user.id)) == 1
