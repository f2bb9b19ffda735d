"""
auth/passwords.py -- bcrypt password hashing with timing equalization.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Passwords longer than 72 bytes are silently truncated by bcrypt. The API layer
caps password fields at 128 characters (Pydantic max_length).
"""

from __future__ import annotations

import bcrypt

from core.config import get_settings


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load, at the configured cost, so a login for an
# unknown email runs the same bcrypt work as a wrong-password login.
DUMMY_HASH: str = hash_password("stellr_timing_dummy")


def burn_verify(plain: str) -> None:
    """Run a full bcrypt comparison whose result is discarded."""
    verify_password(plain, DUMMY_HASH)
