"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/register                  -- create account; returns token pair
  POST   /api/v1/auth/login                     -- password login; returns token pair
  POST   /api/v1/auth/refresh                   -- rotate refresh token
  POST   /api/v1/auth/logout                    -- end every session (requires auth)
  POST   /api/v1/auth/forgot-password           -- send reset link (generic response)
  POST   /api/v1/auth/reset-password            -- consume reset token
  POST   /api/v1/auth/verify-email              -- consume verification token
  POST   /api/v1/auth/resend-verification       -- new verification email (requires auth)
  POST   /api/v1/auth/change-password           -- requires auth; returns fresh pair
  GET    /api/v1/auth/me                        -- current profile (requires auth)
  PATCH  /api/v1/auth/me                        -- update profile (requires auth)
  GET    /api/v1/auth/sessions                  -- signed-in devices (requires auth)
  DELETE /api/v1/auth/sessions/{id}             -- sign one device out (requires auth)
  GET    /api/v1/auth/providers                 -- enabled OAuth providers (public)
  GET    /api/v1/auth/oauth/{provider}/login    -- redirect to provider
  GET    /api/v1/auth/oauth/{provider}/callback -- provider callback; returns token pair
  PATCH  /api/v1/auth/users/{id}                -- change role/status (admin only)

Security:
  [H2] POST /login and POST /forgot-password are rate-limited per IP.
  [E1] POST /forgot-password answers identically whether or not the email exists.
  [M5] Cache-Control: no-store on every response carrying tokens.
  IDOR guard: DELETE /sessions/{id} passes user_id to the ledger; the ledger
  checks ownership.

Handlers are plain `def` where they call bcrypt or the database, so FastAPI
runs them in its threadpool. Domain errors (AuthError) propagate to the
handler registered in api/main.py.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    TokenResponse,
    UserAdminPatch,
    UserResponse,
    VerifyEmailRequest,
)
from auth.dependencies import get_current_user, get_orchestrator, require_admin
from auth.errors import TokenInvalidError
from auth.models import AuthResult, DeviceInfo, User
from auth.oauth import OAuthBridge
from auth.service import SessionOrchestrator
from core.config import get_settings

logger = logging.getLogger("stellr.api.auth")

_settings = get_settings()

# Auth policy:
# - register, login, refresh, forgot/reset-password, verify-email: public
# - providers, oauth login/callback:                                 public
# - logout, resend-verification, change-password, me, sessions:     requires auth (get_current_user)
# - PATCH /auth/users/{id}:                                          requires admin (require_admin)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Create an account and sign it in. The verification email is sent in the background."""
    result = auth.register(
        body.email,
        body.password,
        body.display_name,
        phone=body.phone,
        device=_device(request, body.device_name),
    )
    return _auth_response(result, status_code=201)


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    body: LoginRequest,
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same invalid_credentials error.
    A suspended or deleted account gets account_not_active only after the
    password has been proven.
    """
    result = auth.login(body.email, body.password, device=_device(request, body.device_name))
    return _auth_response(result)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    body: RefreshRequest,
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is burned."""
    pair = auth.refresh(body.refresh_token, device=_device(request))
    return _no_store(TokenResponse.from_pair(pair).model_dump())


@limiter.limit(_settings.forgot_password_rate_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    """Always 200 with the same message, whether or not the account exists [E1]."""
    return MessageResponse(message=auth.forgot_password(body.email))


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    body: ResetPasswordRequest,
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    auth.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Please sign in again.")


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(
    body: VerifyEmailRequest,
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    auth.verify_email(body.token)
    return MessageResponse(message="Email address verified.")


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    bridge: OAuthBridge = request.app.state.oauth_bridge
    return [OAuthProviderInfo(**p) for p in bridge.get_enabled_providers()]


# ---------------------------------------------------------------------------
# OAuth handshake
#
# authlib stores the state value in the Starlette session between the
# redirect and the callback (CSRF protection for the authorization code flow).
# ---------------------------------------------------------------------------


@router.get("/auth/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    Validates the provider name against the registered providers before
    redirecting, so a spoofed name cannot produce an arbitrary redirect.
    """
    client = _oauth_client(request, provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", response_model=AuthResponse, name="oauth_callback")
async def oauth_callback(
    request: Request,
    provider: str,
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Finish the handshake and sign the user in.

    Flow:
      1. Exchange the authorization code (authlib checks state).
      2. Extract a verified identity. An unverified or missing email means the
         provider vouched for nothing, so the login is token_invalid [H1].
      3. Find-or-create the local account and issue a token pair.
    """
    client = _oauth_client(request, provider)
    bridge: OAuthBridge = request.app.state.oauth_bridge

    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth token exchange failed for provider %r: %s", provider, exc.error)
        raise _oauth_failed() from exc

    try:
        identity = await bridge.resolve_identity(provider, token)
    except ValueError as exc:
        logger.warning("OAuth login rejected for provider %r: %s", provider, exc)
        raise TokenInvalidError("The provider did not supply a verified email.") from exc

    result = auth.oauth_login(identity, device=_device(request))
    return _auth_response(result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    current_user: User = Depends(get_current_user),
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    """Sign out everywhere: every access and refresh token of the user stops working."""
    auth.logout(current_user.id)
    return MessageResponse(message="Logged out.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(
    current_user: User = Depends(get_current_user),
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    auth.resend_verification(current_user.id)
    return MessageResponse(message="Verification email sent.")


@router.post("/auth/change-password", response_model=TokenResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Change the password. Other devices are signed out; this one gets a fresh pair."""
    pair = auth.change_password(current_user.id, body.current_password, body.new_password, device=_device(request))
    return _no_store(TokenResponse.from_pair(pair).model_dump())


@router.get("/auth/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the profile of the currently authenticated user."""
    return UserResponse.from_user(current_user)


@router.patch("/auth/me", response_model=UserResponse)
def update_me(
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> UserResponse:
    """Update profile fields. Changing email or phone clears its verified flag."""
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    return UserResponse.from_user(auth.update_profile(current_user.id, **fields))


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    current_user: User = Depends(get_current_user),
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> list[SessionResponse]:
    return [SessionResponse.from_record(r) for r in auth.list_sessions(current_user.id)]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    session_id: str,
    current_user: User = Depends(get_current_user),
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Sign one device out. Ownership is verified in the ledger [IDOR guard].

    Unknown, foreign, and already-revoked sessions all yield the same 404.
    """
    if not auth.revoke_session(current_user.id, session_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    user_id: str,
    body: UserAdminPatch,
    current_user: User = Depends(require_admin),
    auth: SessionOrchestrator = Depends(get_orchestrator),
) -> UserResponse:
    """Change a user's role or status. Admin only.

    Blocks self-lockout: an admin cannot demote, suspend, or delete themselves.
    """
    if body.role is None and body.status is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if user_id == current_user.id and (
        (body.role is not None and body.role.value != "admin")
        or (body.status is not None and body.status.value != "active")
    ):
        raise HTTPException(
            status_code=400,
            detail={"code": "self_lockout", "message": "You cannot demote or deactivate your own account."},
        )
    updated = auth.admin_update_user(
        user_id,
        role=body.role.value if body.role is not None else None,
        status=body.status.value if body.status is not None else None,
    )
    return UserResponse.from_user(updated)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _device(request: Request, device_name: str | None = None) -> DeviceInfo:
    """Capture session metadata from the request."""
    return DeviceInfo(
        device_name=device_name,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_response(result: AuthResult, status_code: int = 200) -> JSONResponse:
    pair = result.tokens
    body = AuthResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.access_expires_in,
        refresh_expires_in=pair.refresh_expires_in,
        user_id=result.user.id,
        email_verified=result.user.email_verified,
    )
    return _no_store(body.model_dump(), status_code=status_code)


def _oauth_client(request: Request, provider: str):
    bridge: OAuthBridge = request.app.state.oauth_bridge
    client = bridge.client(provider)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": "OAuth provider is not enabled."},
        )
    return client


def _oauth_failed() -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"code": "oauth_failed", "message": "OAuth authentication failed. Please try again."},
    )
