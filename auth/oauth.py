"""
auth/oauth.py -- OAuthBridge: authlib provider registry and identity extraction.

The provider handshake (redirect, state check, code exchange) is authlib's job
and runs in the API layer. This module's contract is narrower: given the token
authlib hands back, produce a verified ExternalIdentity. The orchestrator then
finds or creates the local account.

Security notes:
  [H1] Email verification is mandatory. resolve_identity() raises ValueError
       if the provider does not confirm the email is verified. An unverified
       email could be a victim's address added by an attacker.

  OAuth state (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware -- the session stores the state between the authorization
  redirect and the callback.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import ExternalIdentity
from core.config import Settings

logger = logging.getLogger("stellr.auth.oauth")

_LABELS = {"github": "GitHub", "google": "Google"}


class OAuthBridge:
    """Registers configured providers and turns provider tokens into identities.

    Only providers with both client ID and secret configured are registered.
    """

    def __init__(self, settings: Settings) -> None:
        self.oauth = OAuth()
        self.providers: list[str] = []

        if settings.github_client_id and settings.github_client_secret:
            self.oauth.register(
                name="github",
                client_id=settings.github_client_id,
                client_secret=settings.github_client_secret,
                access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
                authorize_url="https://github.com/login/oauth/authorize",
                api_base_url="https://api.github.com/",
                client_kwargs={"scope": "read:user user:email"},
            )
            self.providers.append("github")
            logger.info("GitHub OAuth provider registered")

        if settings.google_client_id and settings.google_client_secret:
            self.oauth.register(
                name="google",
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
                server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
                client_kwargs={"scope": "openid email profile"},
            )
            self.providers.append("google")
            logger.info("Google OAuth provider registered")

    def get_enabled_providers(self) -> list[dict]:
        """Return [{"name", "label"}] for every registered provider."""
        return [{"name": name, "label": _LABELS[name]} for name in self.providers]

    def client(self, provider: str):
        """Return the authlib client for a registered provider, or None."""
        if provider not in self.providers:
            return None
        return self.oauth.create_client(provider)

    async def resolve_identity(self, provider: str, token: dict) -> ExternalIdentity:
        """Extract a verified identity from the token authlib returned [H1].

        Raises:
            ValueError: unknown provider, or no verified email.
        """
        if provider == "github":
            return await self._github_identity(self.client(provider), token)
        if provider == "google":
            return _oidc_identity(token, provider)
        raise ValueError(f"Unknown OAuth provider: {provider!r}")

    async def _github_identity(self, client, token: dict) -> ExternalIdentity:
        """GitHub needs two calls: GET /user for the stable ID, GET /user/emails for the email.

        Only the entry with both primary=true and verified=true is accepted.
        """
        resp = await client.get("user", token=token)
        resp.raise_for_status()
        profile = resp.json()

        emails_resp = await client.get("user/emails", token=token)
        emails_resp.raise_for_status()
        email = next(
            (e["email"] for e in emails_resp.json() if e.get("primary") and e.get("verified")),
            None,
        )
        if not email:
            raise ValueError(
                "GitHub OAuth: no primary verified email found. "
                "The user must verify their email address on GitHub before logging in."
            )
        return ExternalIdentity(
            email=email,
            display_name=profile.get("name") or profile.get("login") or email.split("@")[0],
            provider="github",
            subject=str(profile["id"]),
        )


def _oidc_identity(token: dict, provider: str) -> ExternalIdentity:
    """Extract the identity from an OIDC id_token's userinfo claims.

    Providers that omit email_verified are treated as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")
    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )
    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")
    return ExternalIdentity(
        email=email,
        display_name=userinfo.get("name") or email.split("@")[0],
        provider=provider,
        subject=subject,
    )
