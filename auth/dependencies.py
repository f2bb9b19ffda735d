"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>". Verification goes
through SessionOrchestrator.authenticate_access_token(), so signature, expiry,
token_version, and account status are all checked in one place.

Authentication and authorization are separate dependencies:
  get_current_user()      -- proves who the caller is (401 / 403 on failure).
  require_roles(*roles)   -- builds a dependency that adds a role check on top
                             (403 on failure), using auth.policies.has_role.
Routes compose them; there is no guard hierarchy.

Layer rule: this is the one auth/ module that may import fastapi.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import User
from auth.policies import has_role
from auth.service import SessionOrchestrator


def bearer_token(request: Request) -> str | None:
    """Return the bearer token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.auth


def get_current_user(request: Request) -> User:
    """Require authentication.

    A missing token is a plain 401. A present-but-bad token raises the
    orchestrator's AuthError, which the app maps to token_expired /
    token_invalid / account_not_active so clients know whether to refresh.
    """
    token = bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return get_orchestrator(request).authenticate_access_token(token)


def require_roles(*roles: str) -> Callable[..., User]:
    """Build a dependency requiring an authenticated user holding one of roles.

    Use as:
        @router.get("/instructor-only")
        async def route(user: User = Depends(require_roles("instructor"))): ...
    """

    def dependency(user: User = Depends(get_current_user)) -> User:
        if not has_role(user, *roles):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient role for this operation."},
            )
        return user

    return dependency


require_admin = require_roles("admin")
