"""
Pytest configuration for identity_server. In-memory SQLite so tests don't touch the filesystem; schema, caches
and rate-limit windows are reset for every test.
"""
import os

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["AUTH_DATABASE_URL"] = "sqlite:///:memory:"
# No background rotation loop and a stable login-session secret
os.environ["OAUTH_KEY_ROTATION_CHECK_SECONDS"] = "0"
os.environ["OAUTH_SESSION_SECRET"] = "test-session-secret-0123456789abcdef"
for _name in ("OAUTH_SEED_USER", "OAUTH_SEED_PASSWORD", "OAUTH_ADMIN_TOKEN"):
    os.environ.pop(_name, None)

import hashlib
import json
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from identity_server import rate_limit
from identity_server.database import SessionLocal, engine
from identity_server.keys import key_manager
from identity_server.main import app
from identity_server.models import Base, Client, Tenant, User
from identity_server.passwords import hash_password
from identity_server.tenants import clear_tenant_cache

REDIRECT_URI = "http://127.0.0.1:8000/callback"
PASSWORD = "correct-horse"
CLIENT_SECRET = "svc-secret"
FULL_SCOPE = "api email offline_access openid profile"

# bcrypt is slow on purpose; hash once per session
_PASSWORD_HASH = hash_password(PASSWORD)
_SECRET_HASH = hash_password(CLIENT_SECRET)


def pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return verifier, urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@pytest.fixture(autouse=True)
def fresh_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    clear_tenant_cache()
    key_manager.clear_cache()
    rate_limit.reset()
    yield
    clear_tenant_cache()
    key_manager.clear_cache()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def seeded(db):
    """
    Tenants t1, t2 (active) and t3 (inactive); alice in t1 and t2 (separate accounts), bob in t2.
    Clients: "web" (public, shared), "svc" (confidential, t1 only).
    """
    db.add_all(
        [
            Tenant(id="t1", name="Tenant One", domain="t1.example.com"),
            Tenant(id="t2", name="Tenant Two", domain="t2.example.com"),
            Tenant(id="t3", name="Disabled", domain="t3.example.com", is_active=False),
        ]
    )
    db.flush()
    db.add_all(
        [
            User(id="alice-t1", tenant_id="t1", username="alice", password_hash=_PASSWORD_HASH,
                 name="Alice", email="alice@t1.example.com"),
            User(id="alice-t2", tenant_id="t2", username="alice", password_hash=_PASSWORD_HASH,
                 name="Alice Two", email="alice@t2.example.com"),
            User(id="bob-t2", tenant_id="t2", username="bob", password_hash=_PASSWORD_HASH, name="Bob"),
            Client(
                client_id="web",
                display_name="Web app",
                redirect_uris=json.dumps([REDIRECT_URI, "http://127.0.0.1:8000/logged-out"]),
                grant_types="authorization_code refresh_token password",
            ),
            Client(
                client_id="svc",
                display_name="Service",
                redirect_uris=json.dumps([REDIRECT_URI]),
                client_secret_hash=_SECRET_HASH,
                grant_types="client_credentials authorization_code refresh_token",
                tenant_id="t1",
            ),
        ]
    )
    db.commit()
    return db


class OAuthFlow:
    """Drives the login, authorize and token endpoints the way a client application would."""

    redirect_uri = REDIRECT_URI
    password = PASSWORD
    client_secret = CLIENT_SECRET
    full_scope = FULL_SCOPE

    def __init__(self, client: TestClient):
        self.client = client

    def login(self, tenant_id: str = "t1", username: str = "alice", password: str = PASSWORD):
        return self.client.post(
            "/account/login",
            data={"username": username, "password": password, "tenant_id": tenant_id, "return_url": "/"},
            follow_redirects=False,
        )

    def authorize(self, tenant_id: str = "t1", client_id: str = "web", scope: str = FULL_SCOPE, pkce: bool = True, **extra):
        verifier, challenge = pkce_pair()
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": REDIRECT_URI,
            "scope": scope,
            "state": "xyz",
        }
        if pkce:
            params.update({"code_challenge": challenge, "code_challenge_method": "S256"})
        params.update(extra)
        r = self.client.get("/authorize", params=params, headers={"X-Tenant-ID": tenant_id}, follow_redirects=False)
        return r, verifier

    def code(self, tenant_id: str = "t1", client_id: str = "web", scope: str = FULL_SCOPE, **extra) -> tuple[str, str]:
        r, verifier = self.authorize(tenant_id=tenant_id, client_id=client_id, scope=scope, **extra)
        assert r.status_code == 302, r.text
        query = parse_qs(urlparse(r.headers["location"]).query)
        assert "code" in query, r.headers["location"]
        return query["code"][0], verifier

    def token(self, tenant_id: str | None = "t1", **data):
        headers = {"X-Tenant-ID": tenant_id} if tenant_id else {}
        return self.client.post("/token", data=data, headers=headers)

    def exchange(self, code: str, verifier: str, tenant_id: str = "t1", client_id: str = "web", **extra):
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": client_id,
            "code_verifier": verifier,
        }
        data.update(extra)
        return self.token(tenant_id, **data)

    def refresh(self, refresh_token: str, tenant_id: str = "t1", client_id: str = "web", **extra):
        return self.token(tenant_id, grant_type="refresh_token", refresh_token=refresh_token, client_id=client_id, **extra)

    def sign_in(self, tenant_id: str = "t1", username: str = "alice", scope: str = FULL_SCOPE) -> dict:
        """Login + authorize + code exchange; returns the token response body."""
        assert self.login(tenant_id=tenant_id, username=username).status_code == 302
        code, verifier = self.code(tenant_id=tenant_id, scope=scope)
        r = self.exchange(code, verifier, tenant_id=tenant_id)
        assert r.status_code == 200, r.text
        return r.json()


@pytest.fixture
def flow(client, seeded):
    return OAuthFlow(client)
