"""Tests for the BFF HTTP routes with a stubbed identity server."""
import time

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from bff.config import COOKIE_NAME
from bff.main import app, get_session_manager
from bff.session_manager import SessionManager
from bff.session_store import SessionStore


def _token_body(refresh_token: str = "rt-1") -> dict:
    claims = {"sub": "alice-t1", "tenant_id": "t1", "preferred_username": "alice", "email": "alice@example.com"}
    return {
        "access_token": jwt.encode(claims, "bff-tests-hs256-key-not-verified-by-bff", algorithm="HS256"),
        "token_type": "Bearer",
        "expires_in": 1800,
        "refresh_token": refresh_token,
    }


def identity_server(request: httpx.Request) -> httpx.Response:
    form = dict(pair.split("=", 1) for pair in request.content.decode().split("&"))
    if request.url.path == "/revoke":
        return httpx.Response(200, json={})
    if form.get("grant_type") == "password":
        if form.get("password") != "pw":
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json=_token_body())
    if form.get("grant_type") == "refresh_token":
        if form.get("refresh_token") == "rt-dead":
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json=_token_body("rt-2"))
    return httpx.Response(400, json={"error": "unsupported_grant_type"})


@pytest.fixture
def manager():
    m = SessionManager(
        SessionStore(),
        http_client=httpx.Client(transport=httpx.MockTransport(identity_server)),
        token_endpoint="https://idp.test/token",
        revocation_endpoint="https://idp.test/revoke",
    )
    app.dependency_overrides[get_session_manager] = lambda: m
    yield m
    app.dependency_overrides.clear()
    m.close()


@pytest.fixture
def client(manager):
    # The session cookie is Secure; the test client must talk https to send it back
    return TestClient(app, base_url="https://testserver")


def _login(client, password="pw"):
    return client.post("/bff/login", data={"username": "alice", "password": password, "tenant_id": "t1"})


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "bff"}


def test_login_sets_opaque_cookie(client, manager):
    r = _login(client)
    assert r.status_code == 200
    assert r.json()["user_id"] == "alice-t1"
    assert "access_token" not in r.json()

    set_cookie = r.headers["set-cookie"]
    assert set_cookie.startswith(f"{COOKIE_NAME}=")
    assert "HttpOnly" in set_cookie
    assert "Secure" in set_cookie
    assert "samesite=strict" in set_cookie.lower()
    session_id = r.cookies[COOKIE_NAME]
    assert manager.store.peek(session_id).access_token not in set_cookie


def test_login_bad_credentials(client):
    r = _login(client, password="nope")
    assert r.status_code == 401
    assert COOKIE_NAME not in r.cookies


def test_login_identity_server_unreachable(client, manager):
    def down(request):
        raise httpx.ConnectError("refused")

    manager.http = httpx.Client(transport=httpx.MockTransport(down))
    assert _login(client).status_code == 502


def test_user_and_auth_check(client):
    assert client.get("/bff/auth/check").json() == {"authenticated": False}
    assert client.get("/bff/user").status_code == 401

    _login(client)
    assert client.get("/bff/auth/check").json() == {"authenticated": True}
    assert client.get("/bff/user").json() == {
        "user_id": "alice-t1",
        "username": "alice",
        "email": "alice@example.com",
        "tenant_id": "t1",
    }


def test_user_refreshes_expiring_tokens(client, manager):
    session_id = _login(client).cookies[COOKIE_NAME]
    session = manager.store.peek(session_id)
    session.access_token_expires_at = time.time() + 5
    manager.store.update(session)

    assert client.get("/bff/user").status_code == 200
    assert manager.store.peek(session_id).refresh_token == "rt-2"


def test_failed_refresh_ends_session(client, manager):
    session_id = _login(client).cookies[COOKIE_NAME]
    stored = manager.store.peek(session_id)
    stored.access_token_expires_at = time.time() - 1
    stored.refresh_token = "rt-dead"
    manager.store.update(stored)

    r = client.get("/bff/user")
    assert r.status_code == 401
    assert r.json() == {"detail": "Session expired"}
    assert manager.store.peek(session_id) is None
    assert client.get("/bff/auth/check").json() == {"authenticated": False}


def test_failed_refresh_before_expiry_keeps_session(client, manager):
    session_id = _login(client).cookies[COOKIE_NAME]
    stored = manager.store.peek(session_id)
    stored.access_token_expires_at = time.time() + 30
    stored.refresh_token = "rt-dead"
    manager.store.update(stored)

    # Inside the refresh margin but still valid
    assert client.get("/bff/user").status_code == 200
    assert manager.store.peek(session_id) is not None


def test_logout(client, manager):
    session_id = _login(client).cookies[COOKIE_NAME]
    r = client.post("/bff/logout")
    assert r.json() == {"authenticated": False}
    assert manager.store.peek(session_id) is None
    assert client.get("/bff/auth/check").json() == {"authenticated": False}
