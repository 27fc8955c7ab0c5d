"""
auth/tokens.py -- Password hashing, JWT issuance/validation, refresh rotation.

Security design decisions:
  JWT: python-jose with HS256. Two token kinds share one claim layout
       (sub, email, role, type, iat, exp) but are signed with DIFFERENT
       secrets: access tokens with JWT_SECRET, refresh tokens with
       REFRESH_TOKEN_SECRET. decode_token() additionally checks the `type`
       claim, so a refresh token presented as an access token fails twice
       over -- wrong signature, and wrong kind even if the secrets leaked
       into each other.

  Access tokens are stateless and never persisted. resolve_access_token()
       re-reads the user row on every request so deactivating or deleting
       an account kills its outstanding access tokens immediately, before
       their natural expiry.

  Refresh tokens are persisted as SHA-256(token) with an expiry and a
       revoked flag. Each refresh token carries a random jti so two sessions
       issued in the same second never collide on the UNIQUE hash column.
       Rotation is one-shot: the old row is revoked and the new one inserted
       in a single transaction, and presenting a revoked token raises
       TokenRevoked (replay detection) instead of silently re-issuing.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an email is registered [C1].

  Ordering: issue_tokens() and rotate_refresh_token() commit the refresh row
       before returning. A client never holds a refresh token that the next
       rotate call cannot find.

Layer rule: no imports from api/, ratelimit/, media/, or waitlist/. Imports
from core/ are allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import RefreshToken, TokenPair
from core.config import get_settings
from core.errors import (
    AccountInactive,
    ExpiredToken,
    InvalidToken,
    TokenExpired,
    TokenNotFound,
    TokenRevoked,
    WrongKind,
)

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("captionme.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt silently truncates at 72 bytes; the API layer caps passwords at
    128 characters and the strength rules keep real inputs far below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("captionme_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate a local email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email / OAuth-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure (inactive included).
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Opaque token helpers
# ---------------------------------------------------------------------------


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used as the storage key for every persisted token."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_one_time_token() -> str:
    """Random 256-bit token for password reset and email verification links."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _secret_for(kind: str) -> str:
    settings = get_settings()
    return settings.refresh_token_secret if kind == REFRESH else settings.jwt_secret


def _encode(user: User, kind: str, issued_at: datetime, lifetime: timedelta) -> str:
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "type": kind,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    if kind == REFRESH:
        payload["jti"] = secrets.token_hex(16)
    return jwt.encode(payload, _secret_for(kind), algorithm=_ALGORITHM)


def create_access_token(user: User, issued_at: datetime | None = None) -> str:
    """Encode a short-lived access JWT for user."""
    issued_at = issued_at or datetime.now(timezone.utc)
    lifetime = timedelta(seconds=get_settings().access_token_expire_seconds)
    return _encode(user, ACCESS, issued_at, lifetime)


def decode_token(token: str, expected_kind: str) -> dict:
    """Verify signature, expiry and kind of a JWT and return its claims.

    The secret is chosen by expected_kind, so the signature check itself
    already separates the two kinds. The explicit `type` comparison covers a
    token signed with the right secret but the wrong tag.

    Raises:
        ExpiredToken: signature valid, exp in the past.
        InvalidToken: bad signature, malformed token, or missing claims.
        WrongKind:    `type` claim differs from expected_kind.
    """
    try:
        payload = jwt.decode(token, _secret_for(expected_kind), algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise ExpiredToken() from exc
    except JWTError as exc:
        raise InvalidToken() from exc
    if "sub" not in payload or "type" not in payload:
        raise InvalidToken()
    if payload["type"] != expected_kind:
        raise WrongKind()
    return payload


def resolve_access_token(store: UserStore, token: str) -> User:
    """Validate an access token and return the CURRENT user row.

    Raises AccountInactive when the account was deleted or deactivated after
    the token was issued, even though the signature is still good.
    """
    claims = decode_token(token, ACCESS)
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError) as exc:
        raise InvalidToken() from exc
    user = store.get_by_id(user_id)
    if user is None or not user.is_active:
        raise AccountInactive()
    return user


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


def _build_pair(user: User) -> tuple[TokenPair, RefreshToken]:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    refresh_lifetime = timedelta(days=settings.refresh_token_expire_days)
    access = create_access_token(user, issued_at=now)
    refresh = _encode(user, REFRESH, now, refresh_lifetime)
    pair = TokenPair(
        access_token=access,
        refresh_token=refresh,
        access_expires_in=settings.access_token_expire_seconds,
        refresh_expires_in=int(refresh_lifetime.total_seconds()),
    )
    # expires_at is derived from the same `now` as the JWT exp claim, so the
    # row and the signature expire together.
    row = RefreshToken(user_id=user.id, token_hash=hash_token(refresh), expires_at=now + refresh_lifetime)
    return pair, row


def issue_tokens(store: UserStore, user: User) -> TokenPair:
    """Mint an access/refresh pair for user and persist the refresh row.

    Used by register, login, and OAuth callbacks. Concurrent logins each get
    their own valid session -- multiple sessions per user are intended.
    """
    pair, row = _build_pair(user)
    store.add_refresh_token(row)
    return pair


def rotate_refresh_token(store: UserStore, raw_token: str) -> tuple[User, TokenPair]:
    """Exchange a refresh token for a new pair, revoking the old one.

    Check order matches the refresh-row state machine:
      unknown hash          -> TokenNotFound
      revoked (replay)      -> TokenRevoked
      past expires_at       -> TokenExpired
      bad signature / kind  -> InvalidToken / WrongKind
      owner gone / inactive -> AccountInactive

    The revoke+insert pair runs in one transaction conditioned on the old row
    still being live; a concurrent replay that loses the race also gets
    TokenRevoked.
    """
    record = store.get_refresh_token(hash_token(raw_token))
    if record is None:
        raise TokenNotFound()
    if record.revoked:
        logger.warning("Revoked refresh token presented for user_id=%s (possible replay)", record.user_id)
        raise TokenRevoked()
    if record.is_expired(datetime.now(timezone.utc)):
        raise TokenExpired()

    try:
        decode_token(raw_token, REFRESH)
    except ExpiredToken as exc:
        raise TokenExpired() from exc

    user = store.get_by_id(record.user_id)
    if user is None or not user.is_active:
        raise AccountInactive()

    pair, new_row = _build_pair(user)
    if not store.rotate_refresh_token(record.id, new_row):
        logger.warning("Concurrent rotation lost the race for user_id=%s", record.user_id)
        raise TokenRevoked()
    return user, pair


def revoke_user_tokens(store: UserStore, user_id: int) -> int:
    """Revoke every refresh token of user_id. Idempotent; returns rows changed."""
    count = store.revoke_refresh_tokens(user_id)
    logger.info("Revoked %d refresh token(s) for user_id=%s", count, user_id)
    return count


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    secure / samesite come from settings. The frontend is served from a
    different origin in production, which needs samesite="none" + secure.
    max_age matches each JWT's expiry so cookie and token expire together.
    """
    settings = get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        value=pair.access_token,
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.secure_cookies,
        max_age=pair.access_expires_in,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=pair.refresh_token,
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.secure_cookies,
        max_age=pair.refresh_expires_in,
    )


def clear_auth_cookies(response) -> None:
    settings = get_settings()
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            httponly=True,
            samesite=settings.cookie_samesite,
            secure=settings.secure_cookies,
        )
