"""
auth/policies.py -- Composable account predicates.

Authentication ("is this account allowed in at all?") and authorization
("does it hold one of these roles?") are separate functions. Callers combine
them; nothing here subclasses anything. The FastAPI layer composes them in
auth/dependencies.py, the orchestrator uses ensure_active() directly.
"""

from __future__ import annotations

from auth.errors import AccountNotActiveError, ValidationError
from auth.models import ROLES, User


def ensure_active(user: User) -> None:
    """Raise AccountNotActiveError unless the account status is "active"."""
    if not user.is_active:
        raise AccountNotActiveError()


def has_role(user: User, *roles: str) -> bool:
    """True if the user holds any of the given roles. Admin implies every role."""
    return user.role == "admin" or user.role in roles


def validate_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role!r}")
    return role
