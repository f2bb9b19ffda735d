"""Unit tests for auth/store.py -- CredentialStore registration and lifecycle.

Covers:
- register() normalizes email, hashes the password, starts active + unverified
- Email and phone collisions raise DuplicateCredentialError
- A deleted account frees its email for a new registration
- The unique index rejects a duplicate that slipped past the existence check
- authenticate() returns the same error for unknown email and wrong password
- every failed authenticate() runs exactly one bcrypt comparison
- update_profile() clears verified flags and rejects collisions
- bump_token_version() increments monotonically
- single-use columns: clear_single_use() succeeds once
"""

from datetime import timedelta

import pytest

from auth import passwords
from auth.errors import (
    DuplicateCredentialError,
    InvalidCredentialsError,
    UserNotFoundError,
    ValidationError,
)
from auth.models import ExternalIdentity, User
from auth.store import create_auth_engine, utcnow


class TestRegister:
    def test_register_creates_active_unverified_user(self, store) -> None:
        user = store.register("Alice@Test.dev", "Secret123!", display_name="Alice")
        assert user.id
        assert user.email == "alice@test.dev"
        assert user.status == "active"
        assert user.role == "user"
        assert user.email_verified is False
        assert user.token_version == 0

    def test_password_is_hashed(self, store) -> None:
        user = store.register("hash@test.dev", "Secret123!", display_name="Hash")
        assert user.password_hash is not None
        assert "Secret123!" not in user.password_hash
        assert user.password_hash.startswith("$2")

    def test_duplicate_email_case_insensitive(self, store) -> None:
        store.register("dup@test.dev", "Secret123!", display_name="One")
        with pytest.raises(DuplicateCredentialError):
            store.register("DUP@test.dev", "Other123!", display_name="Two")

    def test_duplicate_phone(self, store) -> None:
        store.register("p1@test.dev", "Secret123!", phone="+15550001111", display_name="One")
        with pytest.raises(DuplicateCredentialError):
            store.register("p2@test.dev", "Secret123!", phone="+15550001111", display_name="Two")

    def test_distinct_phones_allowed(self, store) -> None:
        store.register("p3@test.dev", "Secret123!", phone="+15550002222", display_name="One")
        user = store.register("p4@test.dev", "Secret123!", phone="+15550003333", display_name="Two")
        assert user.phone == "+15550003333"

    def test_deleted_account_frees_email(self, store) -> None:
        old = store.register("reuse@test.dev", "Secret123!", display_name="Old")
        store.set_status(old.id, "deleted")
        new = store.register("reuse@test.dev", "Secret123!", display_name="New")
        assert new.id != old.id
        assert store.get_by_email("reuse@test.dev").id == new.id

    def test_unique_index_backs_the_existence_check(self, store) -> None:
        """A row inserted after the existence query still cannot duplicate the email."""
        store.register("race@test.dev", "Secret123!", display_name="First")
        with pytest.raises(DuplicateCredentialError):
            store._insert(User(id="second-id", email="race@test.dev", display_name="Second"))

    @pytest.mark.parametrize(
        "email,phone,name",
        [
            ("not-an-email", None, "Bad"),
            ("ok@test.dev", "5550001", "Bad"),
            ("ok@test.dev", None, "   "),
        ],
    )
    def test_invalid_input(self, store, email, phone, name) -> None:
        with pytest.raises(ValidationError):
            store.register(email, "Secret123!", phone=phone, display_name=name)

    def test_unknown_role_rejected(self, store) -> None:
        with pytest.raises(ValidationError):
            store.register("role@test.dev", "Secret123!", display_name="R", role="superuser")


class TestAuthenticate:
    def test_valid_credentials(self, store) -> None:
        created = store.register("auth@test.dev", "Secret123!", display_name="A")
        user = store.authenticate("  AUTH@test.dev ", "Secret123!")
        assert user.id == created.id

    def test_wrong_password_and_unknown_email_are_indistinguishable(self, store) -> None:
        store.register("known@test.dev", "Secret123!", display_name="K")
        with pytest.raises(InvalidCredentialsError) as wrong_pw:
            store.authenticate("known@test.dev", "nope")
        with pytest.raises(InvalidCredentialsError) as unknown:
            store.authenticate("nobody@test.dev", "nope")
        assert wrong_pw.value.code == unknown.value.code
        assert wrong_pw.value.message == unknown.value.message

    def test_malformed_email_is_invalid_credentials(self, store) -> None:
        with pytest.raises(InvalidCredentialsError):
            store.authenticate("garbage", "whatever")

    @pytest.mark.parametrize(
        "email",
        ["known-cost@test.dev", "nobody-cost@test.dev", "garbage", ""],
        ids=["wrong-password", "unknown-email", "malformed-email", "empty-email"],
    )
    def test_every_failure_runs_bcrypt_once(self, store, monkeypatch, email) -> None:
        """Failed logins cost one bcrypt comparison whether or not the account exists."""
        store.register("known-cost@test.dev", "Secret123!", display_name="K")
        real_checkpw = passwords.bcrypt.checkpw
        calls = []

        def counting_checkpw(plain, hashed):
            calls.append(hashed)
            return real_checkpw(plain, hashed)

        monkeypatch.setattr(passwords.bcrypt, "checkpw", counting_checkpw)
        with pytest.raises(InvalidCredentialsError):
            store.authenticate(email, "nope")
        assert len(calls) == 1
        # Same "$2b$NN$" work-factor prefix as the dummy hash.
        assert calls[0][:7] == passwords.DUMMY_HASH.encode("utf-8")[:7]

    def test_oauth_only_account_cannot_password_login(self, store) -> None:
        store.create_oauth_user(
            ExternalIdentity(email="gh@test.dev", display_name="GH", provider="github", subject="42")
        )
        with pytest.raises(InvalidCredentialsError):
            store.authenticate("gh@test.dev", "")


class TestProfileAndVersion:
    def test_email_change_clears_verified_flag(self, store) -> None:
        user = store.register("old@test.dev", "Secret123!", display_name="U")
        store.mark_email_verified(user.id)
        updated = store.update_profile(user.id, email="New@test.dev")
        assert updated.email == "new@test.dev"
        assert updated.email_verified is False

    def test_email_change_collision(self, store) -> None:
        store.register("taken@test.dev", "Secret123!", display_name="T")
        user = store.register("mover@test.dev", "Secret123!", display_name="M")
        with pytest.raises(DuplicateCredentialError):
            store.update_profile(user.id, email="taken@test.dev")

    def test_same_email_is_not_a_collision(self, store) -> None:
        user = store.register("same@test.dev", "Secret123!", display_name="S")
        updated = store.update_profile(user.id, email="same@test.dev", display_name="Renamed")
        assert updated.display_name == "Renamed"

    def test_unknown_field_rejected(self, store) -> None:
        user = store.register("field@test.dev", "Secret123!", display_name="F")
        with pytest.raises(ValidationError):
            store.update_profile(user.id, role="admin")

    def test_bump_token_version(self, store) -> None:
        user = store.register("ver@test.dev", "Secret123!", display_name="V")
        assert store.bump_token_version(user.id) == 1
        assert store.bump_token_version(user.id) == 2
        assert store.get_by_id(user.id).token_version == 2

    def test_bump_unknown_user(self, store) -> None:
        with pytest.raises(UserNotFoundError):
            store.bump_token_version("missing")


class TestSingleUseColumns:
    def test_clear_single_use_succeeds_once(self, store) -> None:
        user = store.register("su@test.dev", "Secret123!", display_name="S")
        store.store_single_use(user.id, "password-reset", "digest-1", utcnow() + timedelta(hours=1))
        assert store.find_by_single_use("password-reset", "digest-1").id == user.id
        assert store.clear_single_use(user.id, "password-reset", "digest-1") is True
        assert store.clear_single_use(user.id, "password-reset", "digest-1") is False
        assert store.find_by_single_use("password-reset", "digest-1") is None

    def test_purposes_do_not_share_slots(self, store) -> None:
        user = store.register("slots@test.dev", "Secret123!", display_name="S")
        store.store_single_use(user.id, "email-verification", "digest-v", utcnow() + timedelta(hours=1))
        assert store.find_by_single_use("password-reset", "digest-v") is None


def test_engine_url_is_required(tmp_path) -> None:
    """Settings.database_url is the one default; the engine factory has none."""
    with pytest.raises(TypeError):
        create_auth_engine()
    url = f"sqlite:///{tmp_path / 'stellr_auth.db'}"
    engine = create_auth_engine(url)
    try:
        assert str(engine.url) == url
    finally:
        engine.dispose()
