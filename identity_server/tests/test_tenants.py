"""Tests for tenant resolution and validation."""
import pytest
from starlette.requests import Request

from identity_server.config import SESSION_COOKIE
from identity_server.errors import OAuthError
from identity_server.models import Tenant, User
from identity_server.sessions import encode_session
from identity_server.tenants import (
    _subdomain,
    clear_tenant_cache,
    require_tenant,
    resolve_tenant_id,
    validate_tenant,
)


def _request(headers: dict | None = None) -> Request:
    raw = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw, "query_string": b""})


def _session_cookie(tenant_id: str) -> str:
    user = User(id="u-1", tenant_id=tenant_id, username="alice", name="Alice", email=None)
    return f"{SESSION_COOKIE}={encode_session(user)}"


@pytest.mark.parametrize(
    "host,expected",
    [
        ("acme.auth.example.com", "acme"),
        ("acme.auth.example.com:8443", "acme"),
        ("auth.example.com", None),
        ("localhost:9000", None),
        ("127.0.0.1:9000", None),
        ("10.0.0.12", None),
        ("[::1]:9000", None),
        ("", None),
        (None, None),
    ],
)
def test_subdomain(host, expected):
    assert _subdomain(host) == expected


def test_header_wins_over_subdomain_and_session():
    request = _request({"X-Tenant-ID": "t-header", "Host": "t-sub.auth.example.com", "Cookie": _session_cookie("t-session")})
    assert resolve_tenant_id(request) == "t-header"


def test_subdomain_wins_over_session():
    request = _request({"Host": "t-sub.auth.example.com", "Cookie": _session_cookie("t-session")})
    assert resolve_tenant_id(request) == "t-sub"


def test_session_claim_is_last_resort():
    request = _request({"Host": "127.0.0.1:9000", "Cookie": _session_cookie("t-session")})
    assert resolve_tenant_id(request) == "t-session"


def test_no_signal_returns_none():
    assert resolve_tenant_id(_request({"Host": "localhost"})) is None


def test_tampered_session_cookie_is_ignored():
    request = _request({"Host": "localhost", "Cookie": f"{SESSION_COOKIE}=not-a-jwt"})
    assert resolve_tenant_id(request) is None


def test_validate_tenant(seeded):
    assert validate_tenant(seeded, "t1") is True
    assert validate_tenant(seeded, "t3") is False  # inactive
    assert validate_tenant(seeded, "nope") is False
    assert validate_tenant(seeded, None) is False


def test_validate_tenant_result_is_cached_until_cleared(seeded):
    assert validate_tenant(seeded, "t2") is True
    seeded.query(Tenant).filter(Tenant.id == "t2").update({"is_active": False})
    seeded.commit()
    assert validate_tenant(seeded, "t2") is True
    clear_tenant_cache()
    assert validate_tenant(seeded, "t2") is False


def test_require_tenant_fails_closed(seeded):
    with pytest.raises(OAuthError) as exc:
        require_tenant(_request({"Host": "localhost"}), seeded)
    assert exc.value.error == "invalid_request"
    assert exc.value.description == "Tenant ID is required"

    with pytest.raises(OAuthError) as exc:
        require_tenant(_request({"X-Tenant-ID": "t3"}), seeded)
    assert exc.value.description == "Invalid tenant"

    assert require_tenant(_request({"X-Tenant-ID": "t1"}), seeded) == "t1"
