"""
auth/store.py -- SQLAlchemy Core persistence for user credentials.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user is the mapper. Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email and phone uniqueness is enforced by partial unique indexes that skip
  rows with status = 'deleted'. The existence query in register() gives a
  clean error on the common path; the index is what makes two concurrent
  registrations for the same email yield exactly one success [R1].

  Single-use tokens are stored as HMAC digests. find_by_single_use() matches
  on the digest, clear_single_use() is a compare-and-set on it so a token can
  be consumed once even under concurrent requests [R2].

  token_version is bumped with a single UPDATE ... SET token_version =
  token_version + 1, so concurrent bumps never lose an increment [R3].

Timestamps are stored as ISO 8601 UTC strings with microsecond precision, which
keeps lexicographic order equal to chronological order.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    DuplicateCredentialError,
    InvalidCredentialsError,
    UserNotFoundError,
    ValidationError,
)
from auth.models import STATUSES, ExternalIdentity, User
from auth.passwords import burn_verify, hash_password, verify_password
from auth.policies import validate_role

logger = logging.getLogger("stellr.auth.store")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+[1-9]\d{1,14}$")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),  # lower-cased before write
    Column("phone", String(20)),
    Column("display_name", String(100), nullable=False),
    Column("avatar_url", Text),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("role", String(20), nullable=False, server_default="user"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("phone_verified", Integer, nullable=False, server_default="0"),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("email_verification_token", String(64)),  # HMAC-SHA256 hex
    Column("email_token_expiry", String(40)),
    Column("password_reset_token", String(64)),  # HMAC-SHA256 hex
    Column("password_reset_expiry", String(40)),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("last_login_at", String(40)),
)

_live = _users.c.status != "deleted"

Index("ux_users_email_live", _users.c.email, unique=True, sqlite_where=_live, postgresql_where=_live)
Index(
    "ux_users_phone_live",
    _users.c.phone,
    unique=True,
    sqlite_where=_live & _users.c.phone.isnot(None),
    postgresql_where=_live & _users.c.phone.isnot(None),
)
Index("ix_users_email_verification_token", _users.c.email_verification_token)
Index("ix_users_password_reset_token", _users.c.password_reset_token)

# purpose -> (token column, expiry column)
_SINGLE_USE_COLUMNS = {
    "email-verification": ("email_verification_token", "email_token_expiry"),
    "password-reset": ("password_reset_token", "password_reset_expiry"),
}

_PROFILE_FIELDS = {"display_name", "avatar_url", "phone", "email"}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new SQLite connection.

    WAL lets readers proceed during writes; the busy timeout makes concurrent
    writers wait for the lock instead of failing immediately.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_auth_engine(db_url: str) -> Engine:
    """Build the engine shared by CredentialStore and RefreshTokenLedger.

    The URL comes from Settings.database_url; there is no second default here.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    """Lower-case and strip an email, rejecting anything that is not address-shaped."""
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("A valid email address is required.")
    return normalized


def _normalize_phone(phone: str | None) -> str | None:
    if phone is None:
        return None
    normalized = phone.strip()
    if not normalized:
        return None
    if not _PHONE_RE.match(normalized):
        raise ValidationError("Phone number must be in international format (e.g. +1234567890).")
    return normalized


def _single_use_columns(purpose: str) -> tuple[str, str]:
    columns = _SINGLE_USE_COLUMNS.get(purpose)
    if columns is None:
        raise ValueError(f"Unknown single-use token purpose: {purpose!r}")
    return columns


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User records.

    Usage:
        engine = create_auth_engine("sqlite:///auth.db")
        store = CredentialStore(engine)
        user = store.register("alice@test.dev", "Secret123!", display_name="Alice")
        same = store.authenticate("Alice@Test.dev", "Secret123!")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[_users])

    # ------------------------------------------------------------------
    # Registration and authentication
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        phone: str | None = None,
        display_name: str = "",
        role: str = "user",
    ) -> User:
        """Create a new active, unverified user with a bcrypt password hash.

        Raises DuplicateCredentialError if the email or the phone belongs to
        a live account -- checked with one combined query, then enforced again
        by the unique indexes on insert [R1].
        """
        email = normalize_email(email)
        phone = _normalize_phone(phone)
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("Display name is required.")
        if not password:
            raise ValidationError("Password is required.")
        validate_role(role)

        if self._credential_taken(email, phone):
            raise DuplicateCredentialError()

        user = User(
            id=str(uuid.uuid4()),
            email=email,
            phone=phone,
            display_name=display_name,
            password_hash=hash_password(password),
            role=role,
        )
        self._insert(user)
        return self._require(user.id)

    def authenticate(self, email: str, password: str) -> User:
        """Return the user owning these credentials or raise InvalidCredentialsError.

        Always runs bcrypt whether or not the user exists [C1]:
        - Unknown email: bcrypt runs against the dummy hash (same cost)
        - Wrong password: bcrypt runs against the real hash (same cost)
        Both raise the same error. Account status is NOT checked here; the
        orchestrator does that after the credentials are proven.
        """
        try:
            normalized = normalize_email(email)
        except ValidationError:
            normalized = None
        user = self.get_by_email(normalized) if normalized else None
        if user is None or user.password_hash is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            burn_verify(password)
            raise InvalidCredentialsError()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError()
        return user

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive).

        A deleted account may share its email with a newer live one; the live
        row wins.
        """
        normalized = (email or "").strip().lower()
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users)
                .where(_users.c.email == normalized)
                .order_by(case((_users.c.status == "deleted", 1), else_=0), _users.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users).where(
                    (_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject) & _live
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_profile(self, user_id: str, **fields) -> User:
        """Update profile fields and return the fresh record.

        Accepted fields: display_name, avatar_url, phone, email. Changing the
        email or phone clears the matching verified flag. A value already held
        by another live account raises DuplicateCredentialError.
        """
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown profile fields: {sorted(unknown)!r}")
        user = self._require(user_id)

        values: dict = {}
        if "display_name" in fields:
            name = (fields["display_name"] or "").strip()
            if not name:
                raise ValidationError("Display name is required.")
            values["display_name"] = name
        if "avatar_url" in fields:
            values["avatar_url"] = fields["avatar_url"] or None

        new_email = normalize_email(fields["email"]) if "email" in fields else None
        new_phone = _normalize_phone(fields["phone"]) if "phone" in fields else None
        email_changed = new_email is not None and new_email != user.email
        phone_changed = "phone" in fields and new_phone != user.phone

        if self._credential_taken(
            new_email if email_changed else None,
            new_phone if phone_changed else None,
            exclude_id=user_id,
        ):
            raise DuplicateCredentialError()
        if email_changed:
            values.update(
                email=new_email,
                email_verified=0,
                email_verification_token=None,
                email_token_expiry=None,
            )
        if phone_changed:
            values.update(phone=new_phone, phone_verified=0)

        if values:
            values["updated_at"] = to_iso(utcnow())
            try:
                with self.engine.begin() as conn:
                    conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            except IntegrityError as exc:
                raise DuplicateCredentialError() from exc
        return self._require(user_id)

    def bump_token_version(self, user_id: str) -> int:
        """Atomically increment token_version and return the new value [R3]."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(token_version=_users.c.token_version + 1, updated_at=to_iso(utcnow()))
            )
            if result.rowcount == 0:
                raise UserNotFoundError()
            version = conn.execute(select(_users.c.token_version).where(_users.c.id == user_id)).scalar_one()
        return version

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        self._update(user_id, password_hash=password_hash)

    def mark_email_verified(self, user_id: str) -> None:
        self._update(user_id, email_verified=1, email_verification_token=None, email_token_expiry=None)

    def set_status(self, user_id: str, status: str) -> None:
        """Move an account to active / suspended / deleted (admin surface)."""
        if status not in STATUSES:
            raise ValidationError(f"Unknown status: {status!r}")
        self._update(user_id, status=status)

    def set_role(self, user_id: str, role: str) -> None:
        self._update(user_id, role=validate_role(role))

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC time as last_login_at. Called on every successful sign-in."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=to_iso(utcnow())))

    # ------------------------------------------------------------------
    # OAuth linking
    # ------------------------------------------------------------------

    def create_oauth_user(self, identity: ExternalIdentity) -> User:
        """Create a passwordless account for a provider-verified identity.

        The provider already proved ownership of the email, so the account
        starts verified.
        """
        email = normalize_email(identity.email)
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            display_name=(identity.display_name or email.split("@")[0]).strip(),
            email_verified=True,
            oauth_provider=identity.provider,
            oauth_subject=identity.subject,
        )
        self._insert(user)
        return self._require(user.id)

    def link_oauth(self, user_id: str, provider: str, subject: str) -> None:
        """Associate an OAuth identity with an existing account (matched by verified email)."""
        self._update(user_id, oauth_provider=provider, oauth_subject=subject, email_verified=1)

    # ------------------------------------------------------------------
    # Single-use token columns (driven by SingleUseTokenManager)
    # ------------------------------------------------------------------

    def store_single_use(self, user_id: str, purpose: str, token_hash: str, expires_at: datetime) -> None:
        """Write a token digest + expiry for a purpose, overwriting any previous one."""
        token_col, expiry_col = _single_use_columns(purpose)
        self._update(user_id, **{token_col: token_hash, expiry_col: to_iso(expires_at)})

    def find_by_single_use(self, purpose: str, token_hash: str) -> User | None:
        token_col, _ = _single_use_columns(purpose)
        with self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c[token_col] == token_hash)).fetchone()
        return _row_to_user(row) if row is not None else None

    def clear_single_use(self, user_id: str, purpose: str, token_hash: str) -> bool:
        """Clear the token only if it still holds token_hash [R2].

        Returns True for exactly one caller per issued token.
        """
        token_col, expiry_col = _single_use_columns(purpose)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c[token_col] == token_hash))
                .values(**{token_col: None, expiry_col: None})
            )
        return result.rowcount == 1

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _credential_taken(self, email: str | None, phone: str | None, exclude_id: str | None = None) -> bool:
        """One existence query over both unique credentials among live accounts."""
        conditions = []
        if email:
            conditions.append(_users.c.email == email)
        if phone:
            conditions.append(_users.c.phone == phone)
        if not conditions:
            return False
        query = select(_users.c.id).where(_live & or_(*conditions))
        if exclude_id is not None:
            query = query.where(_users.c.id != exclude_id)
        with self.engine.connect() as conn:
            return conn.execute(query.limit(1)).first() is not None

    def _insert(self, user: User) -> None:
        now = to_iso(utcnow())
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user.id,
                        email=user.email,
                        phone=user.phone,
                        display_name=user.display_name,
                        avatar_url=user.avatar_url,
                        password_hash=user.password_hash,
                        role=user.role,
                        status=user.status,
                        email_verified=1 if user.email_verified else 0,
                        phone_verified=1 if user.phone_verified else 0,
                        token_version=user.token_version,
                        oauth_provider=user.oauth_provider,
                        oauth_subject=user.oauth_subject,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            # A concurrent registration won the race for the same email/phone [R1].
            logger.info("Registration lost a uniqueness race for user_id=%s", user.id)
            raise DuplicateCredentialError() from exc

    def _update(self, user_id: str, **values) -> None:
        values["updated_at"] = to_iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        if result.rowcount == 0:
            raise UserNotFoundError()

    def _require(self, user_id: str) -> User:
        user = self.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        phone=row.phone,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        password_hash=row.password_hash,
        role=row.role,
        status=row.status,
        email_verified=bool(row.email_verified),
        phone_verified=bool(row.phone_verified),
        token_version=row.token_version,
        email_verification_token=row.email_verification_token,
        email_token_expiry=from_iso(row.email_token_expiry),
        password_reset_token=row.password_reset_token,
        password_reset_expiry=from_iso(row.password_reset_expiry),
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        last_login_at=from_iso(row.last_login_at),
    )
