"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; the _row_to_* functions are the mappers.
Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh, reset, and verification tokens are stored as SHA-256 hex digests.
  A leaked database dump therefore contains no replayable credentials.

Atomicity:
  Every write that must not be observed half-done runs inside
  engine.begin(), which commits on exit and rolls back on exception:
    - rotate_refresh_token(): revoke old row + insert new row.
    - replace_password_reset_token(): drop old reset tokens + insert new one.
    - consume_password_reset_token(): mark used + set password + revoke
      refresh tokens.
  The revoke/consume UPDATEs carry the "not yet revoked/used" condition in
  their WHERE clause and check rowcount, so two concurrent callers holding
  the same token cannot both succeed. The database's row locking serializes
  them; the loser sees rowcount == 0.

Timestamps are ISO 8601 UTC strings. expires_at columns are written by
_expiry_ts() at a fixed width, so purge can compare them in SQL; every other
expiry check happens in Python on parsed datetimes.

Layer rule: no imports from api/, ratelimit/, media/, or waitlist/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import OneTimeToken, RefreshToken, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'captionme_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(50), nullable=False, server_default="user"),
    Column("auth_provider", String(30), nullable=False, server_default="local"),
    Column("provider_id", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_email_verification_tokens = Table(
    "email_verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _expiry_ts(value: datetime) -> str:
    """Fixed-width UTC text, so lexical order in SQL is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users and their refresh / one-time tokens.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(email="a@example.com", hashed_password=hash_password("pw")))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The UNIQUE constraint is the real guard; the pre-check in the register
        route only produces a friendlier error for the common case.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    auth_provider=user.auth_provider,
                    provider_id=user.provider_id,
                    is_active=1 if user.is_active else 0,
                    is_email_verified=1 if user.is_email_verified else 0,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by normalized email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: role, is_active, is_email_verified, hashed_password,
        first_name, last_name. Booleans are converted to int for SQLite.

        Returns True if a row was updated, False if user_id was not found.
        """
        for flag in ("is_active", "is_email_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    def deactivate_user(self, user_id: int) -> bool:
        """Set is_active = False and revoke every refresh token in one transaction.

        Outstanding access tokens die on their next use because the auth
        dependency re-reads is_active on every request.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=0, updated_at=_now_iso())
            )
            conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, token: RefreshToken) -> int:
        """Persist a refresh token row. Committed before this method returns."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_token_insert(token))
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        """Look up a refresh token by hash regardless of state."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, old_id: int, new_token: RefreshToken) -> bool:
        """Revoke the old row and insert its replacement atomically.

        Returns False without inserting anything when the old row was already
        revoked, which is what a concurrent replay of the same token sees.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == old_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
            if result.rowcount == 0:
                return False
            conn.execute(_refresh_token_insert(new_token))
        return True

    def revoke_refresh_tokens(self, user_id: int) -> int:
        """Mark every live refresh token for user_id revoked. Returns rows changed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        """Return every refresh row for user_id, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.user_id == user_id).order_by(_refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def purge_expired_refresh_tokens(self, now: datetime | None = None) -> int:
        """Delete refresh rows whose expiry has passed. Returns rows removed.

        Expired rows are already dead to rotate(); this only reclaims space.
        """
        cutoff = _expiry_ts(now or datetime.now(timezone.utc))
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def replace_password_reset_token(self, token: OneTimeToken) -> None:
        """Drop any outstanding reset tokens for the user and store the new one."""
        with self.engine.begin() as conn:
            conn.execute(_password_reset_tokens.delete().where(_password_reset_tokens.c.user_id == token.user_id))
            conn.execute(
                _password_reset_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=_expiry_ts(token.expires_at),
                    used=0,
                    created_at=_now_iso(),
                )
            )

    def get_password_reset_token(self, token_hash: str) -> OneTimeToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_reset_tokens.select().where(_password_reset_tokens.c.token_hash == token_hash)
            ).fetchone()
        if row is None:
            return None
        return OneTimeToken(
            id=row.id,
            user_id=row.user_id,
            token_hash=row.token_hash,
            expires_at=_parse_ts(row.expires_at),
            used=bool(row.used),
        )

    def consume_password_reset_token(self, token_id: int, user_id: int, hashed_password: str) -> bool:
        """Spend a reset token: mark used, set the password, revoke sessions.

        Returns False if the token was already used (concurrent double submit).
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_reset_tokens.update()
                .where((_password_reset_tokens.c.id == token_id) & (_password_reset_tokens.c.used == 0))
                .values(used=1)
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, updated_at=_now_iso())
            )
            conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return True

    # ------------------------------------------------------------------
    # Email verification tokens
    # ------------------------------------------------------------------

    def add_email_verification_token(self, token: OneTimeToken) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _email_verification_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=_expiry_ts(token.expires_at),
                    created_at=_now_iso(),
                )
            )

    def get_email_verification_token(self, token_hash: str) -> OneTimeToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _email_verification_tokens.select().where(_email_verification_tokens.c.token_hash == token_hash)
            ).fetchone()
        if row is None:
            return None
        return OneTimeToken(
            id=row.id,
            user_id=row.user_id,
            token_hash=row.token_hash,
            expires_at=_parse_ts(row.expires_at),
        )

    def consume_email_verification_token(self, token_id: int, user_id: int) -> bool:
        """Delete the verification token and flag the user verified in one step."""
        with self.engine.begin() as conn:
            result = conn.execute(_email_verification_tokens.delete().where(_email_verification_tokens.c.id == token_id))
            if result.rowcount == 0:
                return False
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_email_verified=1, updated_at=_now_iso())
            )
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _refresh_token_insert(token: RefreshToken):
    return _refresh_tokens.insert().values(
        user_id=token.user_id,
        token_hash=token.token_hash,
        expires_at=_expiry_ts(token.expires_at),
        revoked=1 if token.revoked else 0,
        created_at=_now_iso(),
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        auth_provider=row.auth_provider,
        provider_id=row.provider_id,
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        first_name=row.first_name,
        last_name=row.last_name,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_parse_ts(row.expires_at),
        revoked=bool(row.revoked),
        created_at=row.created_at,
    )
