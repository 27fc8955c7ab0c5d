"""
auth/oauth.py -- Authlib OAuth provider registry and OAuth identity linking.

Reads configuration from core.config.get_settings() to decide which providers
are active. Only providers with both client ID and secret configured get
registered.

Providers form a closed set (OAuthProvider). Each one implements the same
capability: exchange the authorization code for a normalized OAuthProfile
(provider_id, email). link_or_create_oauth_identity() is provider-agnostic
and only ever sees that profile.

Security notes:
  [H1] Email verification is mandatory. exchange_code_for_profile() raises
       ValueError if the provider does not confirm the email is verified. An
       unverified address could belong to someone else, and the email is
       the account key.

  OAuth state parameter (CSRF protection) is handled by authlib via
  Starlette SessionMiddleware.

Account linking policy: an OAuth login whose email matches an existing row
reuses that row unchanged -- auth_provider/provider_id are NOT rewritten, so
a local account stays "local" after a Google login. See DESIGN.md.

Layer rule: no imports from api/, ratelimit/, media/, or waitlist/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth
from sqlalchemy.exc import IntegrityError

from auth.models import User, normalize_email
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("captionme.auth.oauth")


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    GITHUB = "github"

    @property
    def label(self) -> str:
        return {"google": "Google", "github": "GitHub"}[self.value]


@dataclass(frozen=True)
class OAuthProfile:
    provider: OAuthProvider
    provider_id: str
    email: str


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings | None = None) -> OAuth:
    """Create an authlib registry holding every configured provider.

    Built during app lifespan and stored on app.state.oauth so tests can swap
    in a fake registry without touching module globals.
    """
    cfg = settings or get_settings()
    registry = OAuth()

    # Google -- OIDC discovery
    if cfg.google_client_id and cfg.google_client_secret:
        registry.register(
            name=OAuthProvider.GOOGLE.value,
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    # GitHub -- static endpoints (no OIDC discovery document)
    if cfg.github_client_id and cfg.github_client_secret:
        registry.register(
            name=OAuthProvider.GITHUB.value,
            client_id=cfg.github_client_id,
            client_secret=cfg.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    return registry


def get_enabled_providers() -> list[OAuthProvider]:
    """Return the providers that have both client ID and secret configured."""
    cfg = get_settings()
    enabled: list[OAuthProvider] = []
    if cfg.google_client_id and cfg.google_client_secret:
        enabled.append(OAuthProvider.GOOGLE)
    if cfg.github_client_id and cfg.github_client_secret:
        enabled.append(OAuthProvider.GITHUB)
    return enabled


# ---------------------------------------------------------------------------
# Code exchange -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def exchange_code_for_profile(client, provider: OAuthProvider, request) -> OAuthProfile:
    """Exchange the callback's authorization code and return a verified profile.

    Args:
        client:   The authlib client for this provider.
        provider: Which provider the callback belongs to.
        request:  The callback request (carries code + session state).

    Raises:
        authlib.integrations.base_client.OAuthError: code exchange failed.
        ValueError: the provider did not return a verified email.
    """
    token = await client.authorize_access_token(request)
    if provider is OAuthProvider.GITHUB:
        email, provider_id = await _github_profile(client, token)
    else:
        email, provider_id = _google_profile(token)
    return OAuthProfile(provider=provider, provider_id=provider_id, email=email)


async def _github_profile(client, token: dict) -> tuple[str, str]:
    """Extract (email, provider_id) from GitHub.

    GitHub does not include the email in the access token. Two API calls are
    required:
      1. GET /user -- numeric user ID (stable subject).
      2. GET /user/emails -- the primary verified email.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    provider_id = str(resp.json()["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            return entry["email"], provider_id

    raise ValueError("GitHub OAuth: no primary verified email found.")


def _google_profile(token: dict) -> tuple[str, str]:
    """Extract (email, provider_id) from the Google id_token claims.

    [H1] A missing email_verified claim is treated as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("Google OAuth: no userinfo in token response")
    if not userinfo.get("email_verified", False):
        raise ValueError("Google OAuth: email is not verified.")

    email = userinfo.get("email")
    provider_id = userinfo.get("sub")
    if not email or not provider_id:
        raise ValueError("Google OAuth: missing email or sub claim in userinfo")
    return email, provider_id


# ---------------------------------------------------------------------------
# Identity linking
# ---------------------------------------------------------------------------


def link_or_create_oauth_identity(store: UserStore, provider: OAuthProvider, provider_id: str, email: str) -> User:
    """Return the user owning email, creating an OAuth-only account if none exists.

    New accounts get no password, auth_provider/provider_id from the login,
    and is_email_verified=True (the provider vouched for the address).
    Existing accounts are returned unchanged.

    Two first-time callbacks for the same email can race; the loser hits the
    UNIQUE(email) constraint and re-reads the winner's row.
    """
    email = normalize_email(email)
    existing = store.get_by_email(email)
    if existing is not None:
        return existing

    new_user = User(
        email=email,
        auth_provider=provider.value,
        provider_id=provider_id,
        is_email_verified=True,
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError:
        winner = store.get_by_email(email)
        if winner is None:
            raise
        return winner

    logger.info("Created %s account user_id=%s", provider.value, user_id)
    created = store.get_by_id(user_id)
    if created is None:
        raise RuntimeError("User not found after insert")
    return created
