"""
auth/ledger.py -- Persisted record of every refresh token ever issued.

Pattern: Repository + Data Mapper, sharing the engine (and the users table's
MetaData) with CredentialStore.

A row moves issued -> superseded (revoked with reason "rotated") | revoked |
expired, never back. revoke() is a compare-and-set on is_revoked = 0: when two
requests rotate the same token at once, exactly one sees True and the other
takes the reuse-detection path in TokenService.rotate() [R4].

Rows are never deleted by the auth flows. purge_expired() garbage-collects rows
whose expiry or revocation is older than the retention window.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import Column, Index, Integer, String, Table, Text, or_, select
from sqlalchemy.engine import Engine

from auth.models import DeviceInfo, RefreshTokenRecord
from auth.store import from_iso, metadata, to_iso, utcnow

logger = logging.getLogger("stellr.auth.ledger")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", String(36), nullable=False),
    Column("family_id", String(36), nullable=False),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("expires_at", String(40), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(40)),
    Column("revocation_reason", String(100)),
    Column("device_name", String(100)),
    Column("user_agent", Text),
    Column("ip_address", String(45)),
    Column("created_at", String(40), nullable=False),
    Column("last_used_at", String(40)),
)

Index("ix_refresh_tokens_user_revoked", _refresh_tokens.c.user_id, _refresh_tokens.c.is_revoked)


class RefreshTokenLedger:
    """Repository for RefreshTokenRecord entities.

    Usage:
        ledger = RefreshTokenLedger(engine)
        rec = ledger.record(user_id, token_hash, expires_at, DeviceInfo(user_agent="curl"))
        ledger.revoke(rec.id, "logout")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[_refresh_tokens])

    def record(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        device: DeviceInfo | None = None,
        family_id: str | None = None,
        token_version: int = 0,
    ) -> RefreshTokenRecord:
        """Persist a newly issued refresh token. family_id=None starts a new family."""
        device = device or DeviceInfo()
        rec = RefreshTokenRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            family_id=family_id or str(uuid.uuid4()),
            token_version=token_version,
            device_name=device.device_name,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
            created_at=utcnow(),
        )
        with self.engine.begin() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    id=rec.id,
                    token_hash=rec.token_hash,
                    user_id=rec.user_id,
                    family_id=rec.family_id,
                    token_version=rec.token_version,
                    expires_at=to_iso(rec.expires_at),
                    is_revoked=0,
                    device_name=rec.device_name,
                    user_agent=rec.user_agent,
                    ip_address=rec.ip_address,
                    created_at=to_iso(rec.created_at),
                )
            )
        return rec

    def find_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        """Look up a record in any state. Used for reuse detection."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_refresh_tokens).where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_record(row) if row is not None else None

    def find_active(self, token_hash: str) -> RefreshTokenRecord | None:
        """Look up a record that is neither revoked nor expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_refresh_tokens).where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > to_iso(utcnow()))
                )
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def revoke(self, record_id: str, reason: str) -> bool:
        """Revoke one record. Returns True only for the caller that flipped it [R4]."""
        now = to_iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_at=now, revocation_reason=reason, last_used_at=now)
            )
        return result.rowcount == 1

    def revoke_all_for_user(self, user_id: str, reason: str) -> int:
        """Revoke every outstanding refresh token of a user. Returns the number revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_at=to_iso(utcnow()), revocation_reason=reason)
            )
        if result.rowcount:
            logger.info("Revoked %d refresh token(s) for user_id=%s reason=%s", result.rowcount, user_id, reason)
        return result.rowcount

    def revoke_session(self, record_id: str, user_id: str, reason: str = "session-terminated") -> bool:
        """Revoke one session. user_id is checked to prevent IDOR attacks.

        Returns True if a live record owned by user_id was revoked.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.id == record_id)
                    & (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                )
                .values(is_revoked=1, revoked_at=to_iso(utcnow()), revocation_reason=reason)
            )
        return result.rowcount == 1

    def list_sessions(self, user_id: str) -> list[RefreshTokenRecord]:
        """Return the user's active records (one per signed-in device), newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_refresh_tokens)
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > to_iso(utcnow()))
                )
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def purge_expired(self, retention_days: int) -> int:
        """Delete rows expired or revoked more than retention_days ago. Returns rows removed."""
        cutoff = to_iso(utcnow() - timedelta(days=retention_days))
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    or_(
                        _refresh_tokens.c.expires_at < cutoff,
                        (_refresh_tokens.c.is_revoked == 1) & (_refresh_tokens.c.revoked_at < cutoff),
                    )
                )
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        family_id=row.family_id,
        token_version=row.token_version,
        expires_at=from_iso(row.expires_at),
        is_revoked=bool(row.is_revoked),
        revoked_at=from_iso(row.revoked_at),
        revocation_reason=row.revocation_reason,
        device_name=row.device_name,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        created_at=from_iso(row.created_at),
        last_used_at=from_iso(row.last_used_at),
    )
