"""
tests/test_password.py -- Integration tests for /api/v1/password routes.

The forgot-password route logs the raw reset token in debug mode; the tests
read it from the log (logged_token fixture) the way a developer would.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from auth.models import OneTimeToken
from auth.tokens import hash_token

_FORGOT = "/api/v1/password/forgot-password"
_RESET = "/api/v1/password/reset-password"
_CHANGE = "/api/v1/password/change-password"


def _login(client: TestClient, email: str, password: str):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


class TestForgotPassword:
    def test_known_and_unknown_email_answer_identically(self, client: TestClient, signup) -> None:
        account = signup()
        known = client.post(_FORGOT, json={"email": account.email})
        unknown = client.post(_FORGOT, json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_invalid_email_rejected(self, client: TestClient) -> None:
        assert client.post(_FORGOT, json={"email": "nope"}).status_code == 400


class TestResetPassword:
    def test_reset_flow(self, client: TestClient, signup, logged_token) -> None:
        account = signup()
        client.post(_FORGOT, json={"email": account.email})
        token = logged_token("Password reset token")

        resp = client.post(_RESET, json={"token": token, "newPassword": "brandnew42"})
        assert resp.status_code == 200, resp.text

        assert _login(client, account.email, account.password).status_code == 401
        assert _login(client, account.email, "brandnew42").status_code == 200

    def test_reset_revokes_sessions(self, client: TestClient, signup, logged_token) -> None:
        account = signup()
        client.post(_FORGOT, json={"email": account.email})
        client.post(_RESET, json={"token": logged_token("Password reset token"), "newPassword": "brandnew42"})

        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": account.tokens["refreshToken"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "refresh_token_revoked"

    def test_reset_token_is_single_use(self, client: TestClient, signup, logged_token) -> None:
        account = signup()
        client.post(_FORGOT, json={"email": account.email})
        token = logged_token("Password reset token")

        assert client.post(_RESET, json={"token": token, "newPassword": "brandnew42"}).status_code == 200
        second = client.post(_RESET, json={"token": token, "newPassword": "another42"})
        assert second.status_code == 400
        assert second.json()["error"]["code"] == "invalid_reset_token"

    def test_new_request_invalidates_older_token(self, client: TestClient, signup, logged_token) -> None:
        account = signup()
        client.post(_FORGOT, json={"email": account.email})
        first = logged_token("Password reset token")
        client.post(_FORGOT, json={"email": account.email})

        assert client.post(_RESET, json={"token": first, "newPassword": "brandnew42"}).status_code == 400

    def test_expired_token_rejected(self, client: TestClient, app_env, signup) -> None:
        account = signup()
        app_env.user_store.replace_password_reset_token(
            OneTimeToken(
                user_id=account.user["id"],
                token_hash=hash_token("expired-token"),
                expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            )
        )
        resp = client.post(_RESET, json={"token": "expired-token", "newPassword": "brandnew42"})
        assert resp.status_code == 400

    def test_weak_new_password_rejected(self, client: TestClient, signup, logged_token) -> None:
        account = signup()
        client.post(_FORGOT, json={"email": account.email})
        resp = client.post(_RESET, json={"token": logged_token("Password reset token"), "newPassword": "weak"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestChangePassword:
    def test_change_password(self, client: TestClient, signup) -> None:
        account = signup()
        resp = client.post(
            _CHANGE,
            json={"currentPassword": account.password, "newPassword": "changed99"},
            headers=account.headers,
        )
        assert resp.status_code == 200, resp.text
        assert _login(client, account.email, "changed99").status_code == 200

    def test_wrong_current_password(self, client: TestClient, signup) -> None:
        account = signup()
        resp = client.post(
            _CHANGE,
            json={"currentPassword": "not-my-pass1", "newPassword": "changed99"},
            headers=account.headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "wrong_password"

    def test_requires_auth(self, client: TestClient) -> None:
        resp = client.post(_CHANGE, json={"currentPassword": "secret123", "newPassword": "changed99"})
        assert resp.status_code == 401
