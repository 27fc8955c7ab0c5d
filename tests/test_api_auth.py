"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> token service -> UserStore -> response serialization and the
error envelope.

Coverage:
  - register: 201 + tokens + cookies, duplicate 409, validation 400
  - login: 200, wrong password / unknown email / inactive 401 with one code
  - refresh: body and cookie transport, replay detection, missing token
  - logout revokes refresh tokens and clears cookies
  - me: Bearer and cookie transport, wrong-kind token, deactivated account
  - verify-email: valid, reused, and unknown tokens
"""

from __future__ import annotations

from fastapi.testclient import TestClient

import pytest

from api.limiter import limiter
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE
from core.config import get_settings


class TestRegister:
    def test_register_returns_user_tokens_and_cookies(self, client: TestClient, email: str) -> None:
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": "secret123", "firstName": "Ada", "lastName": "Lovelace"},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["user"]["email"] == email
        assert data["user"]["firstName"] == "Ada"
        assert data["user"]["provider"] == "local"
        assert data["user"]["isEmailVerified"] is False
        assert "hashed_password" not in data["user"]
        assert data["tokens"]["accessToken"]
        assert data["tokens"]["refreshToken"]
        assert data["tokens"]["tokenType"] == "bearer"
        assert resp.cookies.get(ACCESS_COOKIE) == data["tokens"]["accessToken"]
        assert resp.cookies.get(REFRESH_COOKIE) == data["tokens"]["refreshToken"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_register_normalizes_email(self, client: TestClient, email: str) -> None:
        resp = client.post("/api/v1/auth/register", json={"email": f"  {email.upper()} ", "password": "secret123"})
        assert resp.status_code == 201, resp.text
        assert resp.json()["user"]["email"] == email

    def test_register_persists_one_refresh_row(self, app_env, signup) -> None:
        account = signup()
        assert len(app_env.user_store.list_refresh_tokens(account.user["id"])) == 1

    def test_duplicate_email_conflict(self, client: TestClient, signup) -> None:
        account = signup()
        resp = client.post("/api/v1/auth/register", json={"email": account.email.upper(), "password": "secret123"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "email_taken"

    def test_weak_password_rejected(self, client: TestClient, email: str) -> None:
        for password in ("short1", "lettersonly", "12345678901"):
            resp = client.post("/api/v1/auth/register", json={"email": email, "password": password})
            assert resp.status_code == 400, password
            assert resp.json()["error"]["code"] == "validation_error"

    def test_invalid_email_rejected(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/register", json={"email": "not-an-email", "password": "secret123"})
        assert resp.status_code == 400

    def test_missing_fields_rejected(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/register", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_success(self, client: TestClient, app_env, signup) -> None:
        account = signup()
        resp = client.post("/api/v1/auth/login", json={"email": account.email, "password": account.password})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["user"]["id"] == account.user["id"]
        assert resp.cookies.get(ACCESS_COOKIE)
        assert app_env.user_store.get_by_id(account.user["id"]).last_login is not None

    def test_wrong_password_and_unknown_email_look_the_same(self, client: TestClient, signup) -> None:
        account = signup()
        wrong = client.post("/api/v1/auth/login", json={"email": account.email, "password": "wrong-pass1"})
        unknown = client.post("/api/v1/auth/login", json={"email": "nobody@example.com", "password": "secret123"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"

    def test_inactive_account_cannot_login(self, client: TestClient, app_env, signup) -> None:
        account = signup()
        app_env.user_store.update_user(account.user["id"], is_active=False)
        resp = client.post("/api/v1/auth/login", json={"email": account.email, "password": account.password})
        assert resp.status_code == 401

    def test_missing_password(self, client: TestClient, email: str) -> None:
        resp = client.post("/api/v1/auth/login", json={"email": email})
        assert resp.status_code == 400


class TestLoginRateLimit:
    @pytest.fixture(autouse=True)
    def _low_limit(self, monkeypatch):
        limiter.reset()
        monkeypatch.setattr(get_settings(), "login_rate_limit", "2/minute")
        yield
        limiter.reset()

    def test_login_throttled_per_ip(self, client: TestClient, signup) -> None:
        account = signup()
        body = {"email": account.email, "password": account.password}

        statuses = [client.post("/api/v1/auth/login", json=body).status_code for _ in range(4)]

        assert statuses == [200, 200, 429, 429]
        resp = client.post("/api/v1/auth/login", json=body)
        assert resp.json()["error"]["code"] == "rate_limited"

    def test_failed_attempts_count_too(self, client: TestClient, signup) -> None:
        account = signup()
        wrong = {"email": account.email, "password": "wrong-pass1"}
        assert client.post("/api/v1/auth/login", json=wrong).status_code == 401
        assert client.post("/api/v1/auth/login", json=wrong).status_code == 401

        resp = client.post("/api/v1/auth/login", json={"email": account.email, "password": account.password})
        assert resp.status_code == 429


class TestRefresh:
    def test_refresh_with_body(self, client: TestClient, signup) -> None:
        account = signup()
        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": account.tokens["refreshToken"]})
        assert resp.status_code == 200, resp.text
        tokens = resp.json()["tokens"]
        assert tokens["refreshToken"] != account.tokens["refreshToken"]
        assert resp.cookies.get(REFRESH_COOKIE) == tokens["refreshToken"]

    def test_refresh_with_cookie(self, client: TestClient, signup) -> None:
        account = signup()
        client.cookies.set(REFRESH_COOKIE, account.tokens["refreshToken"])
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 200, resp.text

    def test_replayed_refresh_token_rejected(self, client: TestClient, signup) -> None:
        account = signup()
        first = client.post("/api/v1/auth/refresh", json={"refreshToken": account.tokens["refreshToken"]})
        assert first.status_code == 200
        client.cookies.clear()

        replay = client.post("/api/v1/auth/refresh", json={"refreshToken": account.tokens["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "refresh_token_revoked"

    def test_unknown_refresh_token(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": "never-issued"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "refresh_token_not_found"

    def test_missing_refresh_token(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "refresh_token_missing"

    def test_access_token_is_not_a_refresh_token(self, client: TestClient, signup) -> None:
        account = signup()
        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": account.tokens["accessToken"]})
        assert resp.status_code == 401


class TestLogout:
    def test_logout_revokes_refresh_tokens(self, client: TestClient, signup) -> None:
        account = signup()
        resp = client.post("/api/v1/auth/logout", headers=account.headers)
        assert resp.status_code == 200
        assert resp.json() == {"message": "Logged out."}
        set_cookie = ",".join(resp.headers.get_list("set-cookie"))
        assert ACCESS_COOKIE in set_cookie and REFRESH_COOKIE in set_cookie

        again = client.post("/api/v1/auth/refresh", json={"refreshToken": account.tokens["refreshToken"]})
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "refresh_token_revoked"

    def test_access_token_outlives_logout_until_expiry(self, client: TestClient, signup) -> None:
        account = signup()
        assert client.post("/api/v1/auth/logout", headers=account.headers).status_code == 200
        client.cookies.clear()

        resp = client.get("/api/v1/auth/me", headers=account.headers)
        assert resp.status_code == 200
        assert resp.json()["id"] == account.user["id"]

    def test_logout_requires_auth(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 401


class TestMe:
    def test_me_with_bearer(self, client: TestClient, signup) -> None:
        account = signup()
        resp = client.get("/api/v1/auth/me", headers=account.headers)
        assert resp.status_code == 200
        assert resp.json()["email"] == account.email

    def test_me_with_cookie_after_login(self, client: TestClient, signup) -> None:
        account = signup()
        client.post("/api/v1/auth/login", json={"email": account.email, "password": account.password})
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["id"] == account.user["id"]

    def test_me_without_token(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        body = resp.json()
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "Access token required."

    def test_refresh_token_rejected_as_bearer(self, client: TestClient, signup) -> None:
        account = signup()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {account.tokens['refreshToken']}"})
        assert resp.status_code == 401

    def test_deactivated_user_token_rejected(self, client: TestClient, app_env, signup) -> None:
        account = signup()
        app_env.user_store.update_user(account.user["id"], is_active=False)
        resp = client.get("/api/v1/auth/me", headers=account.headers)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "account_inactive"


class TestVerifyEmail:
    def test_verify_email_flow(self, client: TestClient, signup, logged_token) -> None:
        account = signup()
        token = logged_token("Email verification token")

        resp = client.post("/api/v1/auth/verify-email", json={"token": token})
        assert resp.status_code == 200
        me = client.get("/api/v1/auth/me", headers=account.headers).json()
        assert me["isEmailVerified"] is True

        reused = client.post("/api/v1/auth/verify-email", json={"token": token})
        assert reused.status_code == 400
        assert reused.json()["error"]["code"] == "invalid_verification_token"

    def test_unknown_token(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/verify-email", json={"token": "deadbeef"})
        assert resp.status_code == 400
