"""
tests/test_user.py -- Integration tests for /api/v1/user routes.
"""

from __future__ import annotations

from fastapi.testclient import TestClient


def test_get_profile(client: TestClient, signup) -> None:
    account = signup(firstName="Grace")
    resp = client.get("/api/v1/user/profile", headers=account.headers)
    assert resp.status_code == 200
    assert resp.json()["firstName"] == "Grace"


def test_update_profile_keeps_omitted_fields(client: TestClient, signup) -> None:
    account = signup(firstName="Grace", lastName="Smith")
    resp = client.put("/api/v1/user/profile", json={"lastName": "Hopper"}, headers=account.headers)
    assert resp.status_code == 200, resp.text
    assert resp.json()["firstName"] == "Grace"
    assert resp.json()["lastName"] == "Hopper"


def test_update_profile_requires_a_field(client: TestClient, signup) -> None:
    account = signup()
    resp = client.put("/api/v1/user/profile", json={}, headers=account.headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "no_changes"


def test_deactivate_kills_access_and_refresh(client: TestClient, signup) -> None:
    account = signup()
    resp = client.delete("/api/v1/user/deactivate", headers=account.headers)
    assert resp.status_code == 200

    assert client.get("/api/v1/user/profile", headers=account.headers).status_code == 401
    refresh = client.post("/api/v1/auth/refresh", json={"refreshToken": account.tokens["refreshToken"]})
    assert refresh.status_code == 401
    login = client.post("/api/v1/auth/login", json={"email": account.email, "password": account.password})
    assert login.status_code == 401


def test_profile_requires_auth(client: TestClient) -> None:
    assert client.get("/api/v1/user/profile").status_code == 401
    assert client.delete("/api/v1/user/deactivate").status_code == 401
