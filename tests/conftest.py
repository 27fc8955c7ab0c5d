"""
tests/conftest.py -- Shared test fixtures for CaptionMe integration tests.

This module provides:
  - _make_test_stores(): isolated in-memory DBs for users + waitlist
  - _patch_lifespan(): wires test doubles into app.state, bypassing real startup
  - app_env: one TestClient per test module plus handles on every test double
  - client: the module's TestClient with an empty cookie jar
  - user_store / local_user: a standalone UserStore for unit tests
  - signup, logged_token: factories for API tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

Redis is fakeredis; OAuth and the boto3 clients are MagicMocks, so nothing
here touches the network.

The env vars below must be set before any core/auth import so get_settings()
sees them: DEBUG generates the signing secrets, and the cookie settings let
httpx send cookies back over plain http://testserver.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("COOKIE_SAMESITE", "lax")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("RATE_LIMIT_WINDOW_MS", "60000")
os.environ.setdefault("RATE_LIMIT_MAX_REQUESTS", "3")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-google-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-secret")
os.environ.setdefault("GITHUB_CLIENT_ID", "test-github-id")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "test-github-secret")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("BUCKET_NAME", "test-bucket")

import fakeredis
import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from media.storage import UploadSigner
from media.transcribe import TranscriptionService
from ratelimit.limiter import SlidingWindowLimiter
from waitlist.store import WaitlistStore

TEST_PASSWORD = "secret123"
PRESIGNED_URL = "https://test-bucket.s3.amazonaws.com/clip.mp4?X-Amz-Signature=abc"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str) -> tuple[UserStore, WaitlistStore]:
    """Create isolated named shared-memory SQLite stores for one test module."""
    user_store = UserStore(db_url=_memory_url(f"test_auth_{db_suffix}"))
    waitlist_store = WaitlistStore(db_url=_memory_url(f"test_waitlist_{db_suffix}"))
    return user_store, waitlist_store


def _patch_lifespan(env: SimpleNamespace):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = env.user_store
        app.state.waitlist_store = env.waitlist_store
        app.state.redis = env.redis
        app.state.rate_limiter = SlidingWindowLimiter(env.redis)
        app.state.oauth = env.oauth
        app.state.upload_signer = UploadSigner(env.s3, "test-bucket", 60)
        app.state.transcription = TranscriptionService(env.s3, env.transcribe, "test-bucket")
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def app_env(request) -> Generator[SimpleNamespace, None, None]:
    """Start the real app against test doubles and yield handles to them."""
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, waitlist_store = _make_test_stores(suffix)

    s3 = MagicMock(name="s3")
    s3.generate_presigned_url.return_value = PRESIGNED_URL
    env = SimpleNamespace(
        user_store=user_store,
        waitlist_store=waitlist_store,
        redis=fakeredis.FakeRedis(),
        oauth=MagicMock(name="oauth"),
        s3=s3,
        transcribe=MagicMock(name="transcribe"),
    )

    app.router.lifespan_context = _patch_lifespan(env)

    with TestClient(app, raise_server_exceptions=True) as client:
        env.client = client
        yield env

    user_store.close()
    waitlist_store.close()


@pytest.fixture
def client(app_env: SimpleNamespace) -> TestClient:
    """The module's TestClient with no cookies left over from earlier tests."""
    app_env.client.cookies.clear()
    return app_env.client


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_memory_url(f"test_unit_{uuid.uuid4().hex}"))
    yield store
    store.close()


@pytest.fixture
def local_user(user_store: UserStore) -> User:
    user_id = user_store.create_user(User(email=unique_email("local"), hashed_password=hash_password(TEST_PASSWORD)))
    return user_store.get_by_id(user_id)


@pytest.fixture
def email() -> str:
    """A fresh, never-registered address."""
    return unique_email()


@pytest.fixture
def signup(client: TestClient):
    """Factory: register a local account through the API.

    Returns a namespace with email, password, the raw response, the parsed
    user, and ready-made Bearer headers.
    """

    def _signup(email: str | None = None, password: str = TEST_PASSWORD, **extra) -> SimpleNamespace:
        address = email or unique_email()
        resp = client.post("/api/v1/auth/register", json={"email": address, "password": password, **extra})
        assert resp.status_code == 201, resp.text
        data = resp.json()
        # Tests pass the Bearer header explicitly; cookie behavior is tested on its own.
        client.cookies.clear()
        return SimpleNamespace(
            email=address,
            password=password,
            response=resp,
            user=data["user"],
            tokens=data["tokens"],
            headers={"Authorization": f"Bearer {data['tokens']['accessToken']}"},
        )

    return _signup


@pytest.fixture
def logged_token(caplog):
    """Factory: return the raw one-time token the routes log in debug mode."""
    caplog.set_level(logging.INFO, logger="captionme")

    def _find(prefix: str) -> str:
        for record in reversed(caplog.records):
            if record.getMessage().startswith(prefix):
                return record.args[-1]
        raise AssertionError(f"no log line starting with {prefix!r}")

    return _find
