"""
Token endpoint (POST /token): authorization_code, refresh_token, client_credentials and password grants.

Every grant runs inside a resolved, active tenant and every artifact presented (code, refresh token, user)
must belong to that tenant. Tokens are signed before any refresh token is rotated, so a signing failure
leaves the presented refresh token usable. Store failures surface as temporarily_unavailable.
"""
import hashlib
import logging
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from identity_server import rate_limit
from identity_server.audit import (
    EVENT_CODE_REPLAY,
    EVENT_LOGIN_FAIL,
    EVENT_REFRESH_REUSE,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from identity_server.claims import Principal, build_client_principal, build_user_principal, normalize_scope
from identity_server.client_auth import require_client_auth
from identity_server.config import (
    ACCESS_TOKEN_EXPIRES,
    ENABLE_PASSWORD_GRANT,
    RATE_LIMIT_TOKEN_PER_MINUTE,
    REFRESH_TOKEN_EXPIRES,
)
from identity_server.database import get_db
from identity_server.errors import (
    INVALID_SCOPE,
    UNAUTHORIZED_CLIENT,
    UNSUPPORTED_GRANT_TYPE,
    CodeReplayError,
    OAuthError,
    TokenAlreadyRotatedError,
    invalid_grant,
    invalid_request,
)
from identity_server.grants import code_expired, find_code, is_grant_valid, redeem_code, revoke_grant
from identity_server.models import Client, RefreshTokenRecord, User, as_utc, split_list
from identity_server.passwords import authenticate_user
from identity_server.tenants import require_tenant
from identity_server.token_store import RefreshTokenStore, new_token_id
from identity_server.tokens import issue_access_token, issue_id_token

logger = logging.getLogger(__name__)
router = APIRouter()

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token", "client_credentials", "password")
# Scopes that describe an end user; meaningless for a client acting on its own behalf
USER_SCOPES = {"openid", "profile", "email", "offline_access"}

_REFRESH_TTL = timedelta(seconds=REFRESH_TOKEN_EXPIRES)


def _pkce_verify(code_verifier: str, code_challenge: str, method: str | None) -> bool:
    """Verify PKCE: S256 only; SHA256(verifier) base64url == challenge."""
    if method != "S256":
        return False
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    computed = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return computed == code_challenge


def _token_response(
    access_token: str,
    scope: str,
    refresh_token: str | None = None,
    id_token: str | None = None,
) -> JSONResponse:
    body = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": ACCESS_TOKEN_EXPIRES,
        "scope": scope,
    }
    if refresh_token:
        body["refresh_token"] = refresh_token
    if id_token:
        body["id_token"] = id_token
    return JSONResponse(content=body, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})


def _load_user(db: Session, user_id: str, tenant_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None or user.tenant_id != tenant_id:
        raise invalid_grant("Subject not found in this tenant")
    return user


def _narrow_scope(requested: str | None, granted: list[str]) -> list[str]:
    """A refresh request may ask for a subset of the originally granted scopes."""
    if not requested or not requested.strip():
        return granted
    wanted = set(requested.split())
    if not wanted <= set(granted):
        raise OAuthError(INVALID_SCOPE, "Requested scope exceeds the original grant")
    return sorted(wanted)


def _mint(db: Session, principal: Principal, client: Client, nonce: str | None = None) -> tuple[str, str | None]:
    return issue_access_token(db, principal, client.client_id), issue_id_token(db, principal, client.client_id, nonce)


@router.post("/token")
def token(
    request: Request,
    grant_type: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    username: str | None = Form(None),
    password: str | None = Form(None),
    scope: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
):
    rate_limit.enforce(request, "token", RATE_LIMIT_TOKEN_PER_MINUTE)
    if not grant_type:
        raise invalid_request("grant_type is required")
    if grant_type not in SUPPORTED_GRANT_TYPES or (grant_type == "password" and not ENABLE_PASSWORD_GRANT):
        raise OAuthError(UNSUPPORTED_GRANT_TYPE, f"Unsupported grant_type: {grant_type}")

    tenant_id = require_tenant(request, db)
    client = require_client_auth(db, request, client_id, client_secret)
    if not client.allowed_for_tenant(tenant_id):
        raise OAuthError(UNAUTHORIZED_CLIENT, "Client is not registered for this tenant")
    if not client.allows_grant(grant_type):
        raise OAuthError(UNAUTHORIZED_CLIENT, f"Client may not use grant_type {grant_type}")

    store = RefreshTokenStore(db)
    if grant_type == "authorization_code":
        return _authorization_code(request, db, store, client, tenant_id, code, redirect_uri, code_verifier)
    if grant_type == "refresh_token":
        return _refresh_token(request, db, store, client, tenant_id, refresh_token, scope)
    if grant_type == "client_credentials":
        return _client_credentials(request, db, client, tenant_id, scope)
    return _password(request, db, store, client, tenant_id, username, password, scope)


def _authorization_code(
    request: Request,
    db: Session,
    store: RefreshTokenStore,
    client: Client,
    tenant_id: str,
    code: str | None,
    redirect_uri: str | None,
    code_verifier: str | None,
):
    if not code or not redirect_uri:
        raise invalid_request("code and redirect_uri are required for authorization_code grant")

    row = find_code(db, code)
    if row is None:
        raise invalid_grant("Invalid or expired authorization code")
    if row.tenant_id != tenant_id:
        raise invalid_grant("Authorization code was issued for another tenant")
    if row.client_id != client.client_id:
        raise invalid_grant("Client mismatch")
    # Only the tenant and client the code was issued to can trigger replay revocation
    if row.consumed:
        _replay(request, db, row.grant_id, tenant_id, client.client_id)
    if row.redirect_uri != redirect_uri:
        raise invalid_grant("redirect_uri mismatch")
    if code_expired(row):
        raise invalid_grant("Authorization code expired")
    if row.code_challenge:
        if not code_verifier:
            raise invalid_request("code_verifier is required")
        if not _pkce_verify(code_verifier, row.code_challenge, row.code_challenge_method):
            raise invalid_grant("PKCE verification failed")

    grant_id = row.grant_id
    subject_id = row.subject_id
    scopes = split_list(row.scope)
    resources = split_list(row.resources)
    nonce = row.nonce
    try:
        redeem_code(db, row)
    except CodeReplayError:
        _replay(request, db, None, tenant_id, client.client_id)
    if not is_grant_valid(db, grant_id):
        raise invalid_grant("Authorization grant has been revoked")

    user = _load_user(db, subject_id, tenant_id)
    principal = build_user_principal(user, tenant_id, scopes, resources)
    access_token, id_token = _mint(db, principal, client, nonce)

    refresh_value = None
    if client.allows_grant("refresh_token"):
        record = store.store(
            RefreshTokenRecord(
                token_id=new_token_id(),
                user_id=user.id,
                tenant_id=tenant_id,
                client_id=client.client_id,
                grant_id=grant_id,
                scope=principal.scope,
                resources=" ".join(principal.resources),
            ),
            _REFRESH_TTL,
        )
        refresh_value = record.token_id

    log_audit(db, EVENT_TOKEN_ISSUED, tenant_id=tenant_id, client_id=client.client_id, user_id=user.id, ip=get_client_ip(request))
    return _token_response(access_token, principal.scope, refresh_value, id_token)


def _replay(request: Request, db: Session, grant_id: str | None, tenant_id: str, client_id: str):
    # grant_id None: redeem_code already revoked the grant
    if grant_id is not None:
        revoke_grant(db, grant_id)
    log_audit(db, EVENT_CODE_REPLAY, tenant_id=tenant_id, client_id=client_id, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
    raise invalid_grant("Authorization code already used")


def _refresh_token(
    request: Request,
    db: Session,
    store: RefreshTokenStore,
    client: Client,
    tenant_id: str,
    refresh_token: str | None,
    scope: str | None,
):
    if not refresh_token:
        raise invalid_request("refresh_token is required")

    # The revocation marker is authoritative even when the record has been purged
    if store.is_revoked(refresh_token):
        logger.warning("Revoked refresh token presented (client=%s tenant=%s)", client.client_id, tenant_id)
        log_audit(db, EVENT_REFRESH_REUSE, tenant_id=tenant_id, client_id=client.client_id, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
        raise invalid_grant("Refresh token has been revoked")
    record = store.get(refresh_token)
    if record is None:
        raise invalid_grant("Invalid refresh token")
    if record.tenant_id != tenant_id:
        raise invalid_grant("Refresh token was issued for another tenant")
    if record.client_id != client.client_id:
        raise invalid_grant("Client mismatch")
    if as_utc(record.expires_at) <= datetime.now(timezone.utc):
        raise invalid_grant("Refresh token expired")
    if not is_grant_valid(db, record.grant_id):
        raise invalid_grant("Authorization grant has been revoked")

    user = _load_user(db, record.user_id, tenant_id)
    scopes = _narrow_scope(scope, split_list(record.scope))
    principal = build_user_principal(user, tenant_id, scopes, split_list(record.resources))
    access_token, id_token = _mint(db, principal, client)

    try:
        successor = store.rotate(record, _REFRESH_TTL)
    except TokenAlreadyRotatedError:
        log_audit(db, EVENT_REFRESH_REUSE, tenant_id=tenant_id, client_id=client.client_id, user_id=user.id, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
        raise invalid_grant("Refresh token has already been used")

    logger.info(
        "refresh_token grant: new tokens issued for client_id=%s sub=%s (rotation=%s)",
        client.client_id,
        user.id,
        successor.rotation_count,
    )
    log_audit(db, EVENT_TOKEN_REFRESHED, tenant_id=tenant_id, client_id=client.client_id, user_id=user.id, ip=get_client_ip(request))
    return _token_response(access_token, principal.scope, successor.token_id, id_token)


def _client_credentials(request: Request, db: Session, client: Client, tenant_id: str, scope: str | None):
    if not client.is_confidential:
        raise OAuthError(UNAUTHORIZED_CLIENT, "client_credentials requires a confidential client")
    ok, normalized = normalize_scope(scope)
    if not ok:
        raise OAuthError(INVALID_SCOPE, normalized)
    scopes = normalized.split()
    if USER_SCOPES & set(scopes):
        raise OAuthError(INVALID_SCOPE, "User scopes are not available to client_credentials")

    principal = build_client_principal(client, tenant_id, scopes)
    access_token = issue_access_token(db, principal, client.client_id)
    log_audit(db, EVENT_TOKEN_ISSUED, tenant_id=tenant_id, client_id=client.client_id, ip=get_client_ip(request))
    return _token_response(access_token, principal.scope)


def _password(
    request: Request,
    db: Session,
    store: RefreshTokenStore,
    client: Client,
    tenant_id: str,
    username: str | None,
    password: str | None,
    scope: str | None,
):
    if not username or not password:
        raise invalid_request("username and password are required for password grant")
    ok, normalized = normalize_scope(scope)
    if not ok:
        raise OAuthError(INVALID_SCOPE, normalized)

    user = authenticate_user(db, tenant_id, username, password)
    if user is None:
        log_audit(db, EVENT_LOGIN_FAIL, tenant_id=tenant_id, client_id=client.client_id, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
        raise invalid_grant("Invalid username or password")

    principal = build_user_principal(user, tenant_id, normalized.split())
    access_token, id_token = _mint(db, principal, client)

    refresh_value = None
    if client.allows_grant("refresh_token"):
        record = store.store(
            RefreshTokenRecord(
                token_id=new_token_id(),
                user_id=user.id,
                tenant_id=tenant_id,
                client_id=client.client_id,
                scope=principal.scope,
                resources=" ".join(principal.resources),
            ),
            _REFRESH_TTL,
        )
        refresh_value = record.token_id

    log_audit(db, EVENT_TOKEN_ISSUED, tenant_id=tenant_id, client_id=client.client_id, user_id=user.id, ip=get_client_ip(request))
    return _token_response(access_token, principal.scope, refresh_value, id_token)
