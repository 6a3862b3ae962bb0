"""Tests for discovery, JWKS and the UserInfo endpoint."""
import jwt

from identity_server import well_known
from identity_server.config import ISSUER
from identity_server.models import User


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "identity_server"}


def test_discovery_document(client):
    doc = client.get("/.well-known/openid-configuration").json()
    assert doc["issuer"] == ISSUER
    assert doc["token_endpoint"] == f"{ISSUER}/token"
    assert doc["end_session_endpoint"] == f"{ISSUER}/logout"
    assert doc["jwks_uri"] == f"{ISSUER}/.well-known/jwks.json"
    assert doc["code_challenge_methods_supported"] == ["S256"]
    assert "password" in doc["grant_types_supported"]
    assert "openid" in doc["scopes_supported"]


def test_discovery_hides_disabled_password_grant(client, monkeypatch):
    monkeypatch.setattr(well_known, "ENABLE_PASSWORD_GRANT", False)
    doc = client.get("/.well-known/openid-configuration").json()
    assert "password" not in doc["grant_types_supported"]


def test_jwks_is_per_tenant(flow):
    body = flow.sign_in()
    kid = jwt.get_unverified_header(body["access_token"])["kid"]

    t1_keys = flow.client.get("/.well-known/jwks.json", headers={"X-Tenant-ID": "t1"}).json()["keys"]
    assert kid in [k["kid"] for k in t1_keys]
    assert all("d" not in k for k in t1_keys)

    t2_keys = flow.client.get("/.well-known/jwks.json", headers={"X-Tenant-ID": "t2"}).json()["keys"]
    assert kid not in [k["kid"] for k in t2_keys]


def _userinfo(flow, token, tenant_id="t1"):
    return flow.client.get("/userinfo", headers={"Authorization": f"Bearer {token}", "X-Tenant-ID": tenant_id})


def test_userinfo_full_scope(flow):
    token = flow.sign_in()["access_token"]
    r = _userinfo(flow, token)
    assert r.status_code == 200
    assert r.json() == {
        "sub": "alice-t1",
        "tenant_id": "t1",
        "preferred_username": "alice",
        "name": "Alice",
        "email": "alice@t1.example.com",
    }


def test_userinfo_openid_only(flow):
    token = flow.sign_in(scope="openid")["access_token"]
    assert _userinfo(flow, token).json() == {"sub": "alice-t1", "tenant_id": "t1"}


def test_userinfo_requires_bearer(client, seeded):
    assert client.get("/userinfo").status_code in (401, 403)


def test_userinfo_invalid_token(flow):
    r = _userinfo(flow, "not-a-token")
    assert r.status_code == 401
    assert r.headers["www-authenticate"] == 'Bearer error="invalid_token"'


def test_userinfo_rejects_token_from_other_tenant(flow):
    token = flow.sign_in()["access_token"]
    assert _userinfo(flow, token, tenant_id="t2").status_code == 401


def test_userinfo_user_deleted(flow, db):
    token = flow.sign_in()["access_token"]
    db.query(User).filter(User.id == "alice-t1").delete()
    db.commit()
    assert _userinfo(flow, token).status_code == 401
