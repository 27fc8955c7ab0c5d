"""
waitlist/store.py -- Pre-launch waitlist signups.

Same Repository pattern as auth/store.py. The UNIQUE constraint on email is
the duplicate guard; add() turns the IntegrityError into Conflict so two
simultaneous signups for one address cannot both land.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.errors import Conflict

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'captionme_waitlist.db'}"

_metadata = MetaData()

_waitlist = Table(
    "waitlist",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)


@dataclass
class WaitlistEntry:
    email: str
    id: int | None = None
    created_at: str | None = None


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class WaitlistStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def add(self, email: str) -> WaitlistEntry:
        """Insert email (lower-cased, stripped). Raises Conflict on duplicates."""
        email = email.strip().lower()
        created_at = datetime.now(timezone.utc).isoformat()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_waitlist.insert().values(email=email, created_at=created_at))
        except IntegrityError as exc:
            raise Conflict("You're already on the waitlist.", code="already_on_waitlist") from exc
        return WaitlistEntry(id=result.inserted_primary_key[0], email=email, created_at=created_at)

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_waitlist)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()
