"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Token transport: the accessToken httpOnly cookie is the primary channel (set
by login, register, refresh and the OAuth callbacks). An Authorization:
Bearer header is read as a fallback for non-browser clients that cannot keep
a cookie jar. Both converge on resolve_access_token(), which re-reads the
user row so deactivated accounts are rejected immediately.

get_current_user() raises the specific AuthError subclass -> 401.
require_verified_email() adds the 403 email-verification gate, active only
when REQUIRE_EMAIL_VERIFICATION is set.

Layer rule: no imports from ratelimit/, media/, or waitlist/.
  auth/dependencies.py may import from fastapi because this module is part
  of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.models import User
from auth.tokens import ACCESS_COOKIE, resolve_access_token
from core.config import get_settings
from core.errors import AuthError, Forbidden


def _extract_access_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def get_current_user(request: Request) -> User:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...

    Raises AuthError (missing token), InvalidToken, ExpiredToken, WrongKind,
    or AccountInactive -- all rendered as 401 with their own error code.
    """
    token = _extract_access_token(request)
    if token is None:
        raise AuthError("Access token required.")
    user = resolve_access_token(request.app.state.user_store, token)
    request.state.user = user
    return user


def require_verified_email(user: User = Depends(get_current_user)) -> User:
    """Gate a route on a verified email address when the deployment asks for it."""
    if get_settings().require_email_verification and not user.is_email_verified:
        raise Forbidden("Email verification required.", code="email_not_verified")
    return user
