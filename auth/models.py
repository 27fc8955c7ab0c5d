"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Stores and services do the work; these classes own the
domain shape plus the one comparison every caller needs (expiry).

Layer rule: no imports from api/, ratelimit/, media/, or waitlist/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

LOCAL_PROVIDER = "local"


def normalize_email(email: str) -> str:
    """Canonical form used for every email lookup and insert."""
    return email.strip().lower()


@dataclass
class User:
    """Represents an account in CaptionMe.

    email is the identity key: stored lower-cased and unique across every
    provider, so a Google login and a GitHub login with the same address land
    on the same row.

    hashed_password is None for OAuth-only users (they have no local password).
    auth_provider records how the account was first created; provider_id is
    the provider's stable user id and stays None for local accounts.
    """

    email: str
    role: str = "user"
    id: int | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    auth_provider: str = LOCAL_PROVIDER  # "local", "google", "github"
    provider_id: str | None = None
    is_active: bool = True
    is_email_verified: bool = False
    first_name: str | None = None
    last_name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass
class RefreshToken:
    """A persisted refresh credential.

    Only the SHA-256 of the token string is stored. Rows are never deleted on
    logout or rotation; revoked flips to True and stays there. A row past
    expires_at is treated as dead even while revoked is still False.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    revoked: bool = False
    created_at: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class OneTimeToken:
    """Password-reset or email-verification token row."""

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    used: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
