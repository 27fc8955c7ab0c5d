"""
api/routes/v1/auth.py -- Account creation, sessions and OAuth login.

Routes:
  POST /api/v1/auth/register              -- create local account; 201 + tokens
  POST /api/v1/auth/login                 -- password login; 200 + tokens
  POST /api/v1/auth/refresh               -- rotate refresh token; 200 + tokens
  POST /api/v1/auth/logout                -- revoke refresh tokens, clear cookies
  GET  /api/v1/auth/providers             -- list enabled OAuth providers (public)
  GET  /api/v1/auth/{provider}            -- redirect to Google / GitHub
  GET  /api/v1/auth/{provider}/callback   -- finish OAuth, cookies, redirect to frontend
  GET  /api/v1/auth/me                    -- current user (requires auth)
  POST /api/v1/auth/verify-email          -- spend an email verification token

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, slowapi).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Wrong email and wrong password return the same bad_credentials error.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from authlib.integrations.base_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RegisterRequest,
    TokenRequest,
    TokensResponse,
    UserResponse,
)
from auth.dependencies import get_current_user
from auth.models import OneTimeToken, TokenPair, User
from auth.oauth import OAuthProvider, exchange_code_for_profile, get_enabled_providers, link_or_create_oauth_identity
from auth.store import UserStore
from auth.tokens import (
    REFRESH_COOKIE,
    authenticate_user,
    clear_auth_cookies,
    generate_one_time_token,
    hash_password,
    hash_token,
    issue_tokens,
    revoke_user_tokens,
    rotate_refresh_token,
    set_auth_cookies,
)
from core.config import get_settings
from core.errors import AuthError, Conflict, InvalidCredentials, NotFound, ValidationError

logger = logging.getLogger("captionme.api.auth")

# Auth policy:
# - POST /auth/register, /auth/login, /auth/refresh, /auth/verify-email: public
# - GET  /auth/providers, /auth/{provider}, /auth/{provider}/callback:  public
# - POST /auth/logout, GET /auth/me: requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token_response(status_code: int, message: str, user: User, pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse(
            message=message,
            user=UserResponse.from_user(user),
            tokens=TokensResponse.from_pair(pair),
        ).model_dump(by_alias=True),
    )
    set_auth_cookies(resp, pair)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _create_verification_token(store: UserStore, user_id: int) -> str:
    """Store a fresh email verification token and return the raw value.

    There is no mail transport yet; the raw token is logged in debug mode so
    the flow can be exercised locally.
    """
    settings = get_settings()
    raw = generate_one_time_token()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.email_verification_expire_seconds)
    store.add_email_verification_token(OneTimeToken(user_id=user_id, token_hash=hash_token(raw), expires_at=expires_at))
    if settings.debug:
        logger.info("Email verification token for user_id=%s: %s", user_id, raw)
    return raw


def _oauth_client(request: Request, provider: OAuthProvider):
    if provider not in get_enabled_providers():
        raise NotFound(f"{provider.label} login is not configured.", code="provider_not_configured")
    client = request.app.state.oauth.create_client(provider.value)
    if client is None:
        raise NotFound(f"{provider.label} login is not configured.", code="provider_not_configured")
    return client


def _signin_error(reason: str) -> RedirectResponse:
    return RedirectResponse(f"{get_settings().frontend_url}/signin?error={reason}", status_code=302)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account and sign it in.

    The pre-check gives the common duplicate case a clean 409; the UNIQUE
    constraint still decides when two registrations race.
    """
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_email(body.email) is not None:
        raise Conflict("An account with this email already exists.", code="email_taken")

    new_user = User(
        email=body.email,
        hashed_password=hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise Conflict("An account with this email already exists.", code="email_taken") from exc

    _create_verification_token(user_store, user_id)
    user = user_store.get_by_id(user_id)
    pair = issue_tokens(user_store, user)
    logger.info("Registered user_id=%s", user_id)
    return _token_response(201, "Registration successful. Please verify your email.", user, pair)


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(lambda: get_settings().login_rate_limit)  # [H2] per client IP
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Uses authenticate_user() which includes timing equalization [C1]. Do NOT
    inline get_by_email() + verify_password() -- that re-introduces the
    timing attack.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        raise InvalidCredentials()

    user_store.update_last_login(user.id)
    pair = issue_tokens(user_store, user)
    return _token_response(200, "Login successful.", user, pair)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair.

    A token in the body wins over the refreshToken cookie. The presented
    token is revoked; presenting it again is a replay and fails with
    refresh_token_revoked.
    """
    raw = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not raw:
        raise AuthError("Refresh token required.", code="refresh_token_missing")

    user, pair = rotate_refresh_token(request.app.state.user_store, raw)
    return _token_response(200, "Token refreshed.", user, pair)


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, body: TokenRequest) -> MessageResponse:
    user_store: UserStore = request.app.state.user_store
    record = user_store.get_email_verification_token(hash_token(body.token))
    if record is None or record.is_expired(datetime.now(timezone.utc)):
        raise ValidationError("Invalid or expired verification token.", code="invalid_verification_token")
    if not user_store.consume_email_verification_token(record.id, record.user_id):
        raise ValidationError("Invalid or expired verification token.", code="invalid_verification_token")
    logger.info("Email verified for user_id=%s", record.user_id)
    return MessageResponse(message="Email verified successfully.")


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    The login page calls this to decide which provider buttons to render.
    Returns an empty list if no OAuth env vars are set.
    """
    return [OAuthProviderInfo(name=p.value, label=p.label) for p in get_enabled_providers()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Revoke every refresh token of the caller and clear both cookies.

    Outstanding access tokens stay valid until they expire (minutes).
    """
    revoke_user_tokens(request.app.state.user_store, current_user.id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the currently authenticated user."""
    return JSONResponse(content=UserResponse.from_user(current_user).model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: OAuthProvider) -> RedirectResponse:
    """Finish the authorization-code flow and land on the dashboard.

    Tokens travel as cookies only; a redirect cannot carry a JSON body.
    Every failure goes back to the sign-in page with an error reason instead
    of a JSON error, since the browser is mid-navigation.
    """
    client = _oauth_client(request, provider)
    try:
        profile = await exchange_code_for_profile(client, provider, request)
    except (OAuthError, httpx.HTTPError, ValueError, KeyError) as exc:
        logger.warning("%s OAuth callback failed: %s", provider.label, exc)
        return _signin_error("oauth_failed")

    user_store: UserStore = request.app.state.user_store
    user = link_or_create_oauth_identity(user_store, provider, profile.provider_id, profile.email)
    if not user.is_active:
        logger.warning("OAuth login for inactive user_id=%s", user.id)
        return _signin_error("account_inactive")

    user_store.update_last_login(user.id)
    pair = issue_tokens(user_store, user)
    resp = RedirectResponse(f"{get_settings().frontend_url}/dashboard", status_code=302)
    set_auth_cookies(resp, pair)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/{provider}")
async def oauth_login(request: Request, provider: OAuthProvider):
    """Redirect the browser to the provider's consent screen."""
    client = _oauth_client(request, provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider.value))
    return await client.authorize_redirect(request, redirect_uri)
