"""Tests for the login form, registration and the authorization endpoint."""
from urllib.parse import parse_qs, urlparse

from identity_server.config import SESSION_COOKIE
from identity_server.models import AuthorizationCode, AuthorizationGrant, User


def _query(response) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(response.headers["location"]).query).items()}


# --- login form ---


def test_login_form_renders(client, seeded):
    r = client.get("/account/login", params={"return_url": "/authorize?x=1", "tenant_id": "t1"})
    assert r.status_code == 200
    assert 'name="tenant_id" value="t1"' in r.text
    assert "/authorize?x=1" in r.text


def test_login_sets_session_cookie(flow):
    r = flow.login()
    assert r.status_code == 302
    assert r.headers["location"] == "/"
    assert SESSION_COOKIE in r.cookies


def test_login_wrong_password(flow):
    r = flow.login(password="nope")
    assert r.status_code == 401
    assert "Invalid username or password" in r.text
    assert SESSION_COOKIE not in r.cookies


def test_login_user_from_other_tenant(flow):
    # bob only exists in t2
    assert flow.login(tenant_id="t1", username="bob").status_code == 401
    assert flow.login(tenant_id="t2", username="bob").status_code == 302


def test_login_unknown_or_inactive_tenant(flow):
    assert flow.login(tenant_id="t3").status_code == 400
    assert flow.login(tenant_id="nowhere").status_code == 400


def test_login_ignores_external_return_url(client, seeded):
    r = client.post(
        "/account/login",
        data={"username": "alice", "password": "correct-horse", "tenant_id": "t1", "return_url": "//evil.example.com/"},
        follow_redirects=False,
    )
    assert r.status_code == 302
    assert r.headers["location"] == "/"


# --- registration ---


def test_register_and_login(client, flow):
    r = client.post("/account/register", data={"username": "carol", "password": "pw-carol", "tenant_id": "t2"})
    assert r.status_code == 201
    assert r.json()["tenant_id"] == "t2"
    assert flow.login(tenant_id="t2", username="carol", password="pw-carol").status_code == 302


def test_register_duplicate_in_same_tenant(client, seeded):
    r = client.post("/account/register", data={"username": "alice", "password": "x", "tenant_id": "t1"})
    assert r.status_code == 409


def test_register_same_username_in_other_tenant(client, seeded):
    r = client.post("/account/register", data={"username": "bob", "password": "x", "tenant_id": "t1"})
    assert r.status_code == 201
    assert seeded.query(User).filter(User.username == "bob").count() == 2


def test_register_requires_valid_tenant(client, seeded):
    r = client.post("/account/register", data={"username": "dave", "password": "x", "tenant_id": "t3"})
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_request", "error_description": "Invalid tenant"}


# --- authorize ---


def test_authorize_without_tenant_fails_closed(client, seeded):
    r = client.get(
        "/authorize",
        params={"response_type": "code", "client_id": "web", "redirect_uri": "http://127.0.0.1:8000/callback"},
        follow_redirects=False,
    )
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_request", "error_description": "Tenant ID is required"}


def test_authorize_inactive_tenant(flow):
    r, _ = flow.authorize(tenant_id="t3")
    assert r.status_code == 400
    assert r.json()["error_description"] == "Invalid tenant"


def test_unauthenticated_user_redirected_to_login(flow):
    r, _ = flow.authorize()
    assert r.status_code == 302
    location = urlparse(r.headers["location"])
    assert location.path == "/account/login"
    query = parse_qs(location.query)
    assert query["tenant_id"] == ["t1"]
    assert query["return_url"][0].startswith("/authorize?")
    assert "client_id=web" in query["return_url"][0]


def test_unknown_client_is_not_redirected(flow):
    flow.login()
    r, _ = flow.authorize(client_id="nope")
    assert r.status_code == 400
    assert r.json()["error_description"] == "Unknown client_id"


def test_client_outside_its_tenant_is_unknown(flow):
    # svc is registered for t1 only
    flow.login(tenant_id="t2")
    r, _ = flow.authorize(tenant_id="t2", client_id="svc")
    assert r.status_code == 400
    assert r.json()["error_description"] == "Unknown client_id"


def test_unregistered_redirect_uri_is_not_redirected(flow):
    flow.login()
    r, _ = flow.authorize(redirect_uri="http://evil.example.com/cb")
    assert r.status_code == 400
    assert r.json()["error_description"] == "redirect_uri not allowed"


def test_invalid_scope_redirected_with_state(flow):
    flow.login()
    r, _ = flow.authorize(scope="openid root")
    assert r.status_code == 302
    query = _query(r)
    assert query["error"] == "invalid_scope"
    assert query["state"] == "xyz"


def test_unsupported_response_type(flow):
    flow.login()
    r, _ = flow.authorize(response_type="token")
    assert _query(r)["error"] == "unsupported_response_type"


def test_public_client_requires_pkce(flow):
    flow.login()
    r, _ = flow.authorize(pkce=False)
    assert _query(r)["error"] == "invalid_request"


def test_plain_pkce_rejected(flow):
    flow.login()
    r, _ = flow.authorize(code_challenge_method="plain")
    assert _query(r)["error"] == "invalid_request"


def test_confidential_client_without_pkce(flow):
    flow.login()
    r, _ = flow.authorize(client_id="svc", pkce=False)
    assert "code" in _query(r)


def test_session_from_other_tenant_rejected(flow):
    flow.login(tenant_id="t1")
    r, _ = flow.authorize(tenant_id="t2")
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_code_issued_and_grant_reused(flow, db):
    flow.login()
    code1, _ = flow.code(scope="openid profile", nonce="n-1")
    code2, _ = flow.code(scope="profile openid")
    assert code1 != code2
    db.expire_all()
    assert db.query(AuthorizationGrant).count() == 1
    row = db.query(AuthorizationCode).filter(AuthorizationCode.code == code1).one()
    assert row.tenant_id == "t1"
    assert row.subject_id == "alice-t1"
    assert row.scope == "openid profile"
    assert row.nonce == "n-1"
    assert row.consumed is False

    # A different scope set is a different grant
    flow.code(scope="openid")
    db.expire_all()
    assert db.query(AuthorizationGrant).count() == 2


def test_authorize_post(flow):
    flow.login()
    r = flow.client.post(
        "/authorize",
        data={
            "response_type": "code",
            "client_id": "svc",
            "redirect_uri": flow.redirect_uri,
            "scope": "openid",
            "state": "s-post",
        },
        headers={"X-Tenant-ID": "t1"},
        follow_redirects=False,
    )
    assert r.status_code == 302
    assert _query(r)["state"] == "s-post"
