"""
Token revocation endpoint (POST /revoke). RFC 7009.
Revokes refresh tokens (record flag plus revocation marker); access tokens are stateless JWTs and are left
to expire. Always 200 for well-formed requests, including unknown and already revoked tokens.
Confidential clients must authenticate to revoke their refresh tokens.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from identity_server.audit import EVENT_TOKEN_REVOKED, get_client_ip, log_audit
from identity_server.client_auth import find_client, get_client_credentials_from_request, secret_matches
from identity_server.database import get_db
from identity_server.errors import invalid_client, invalid_request
from identity_server.tenants import optional_tenant
from identity_server.token_store import RefreshTokenStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/revoke")
def revoke(
    request: Request,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    tenant_id: str | None = Depends(optional_tenant),
    db: Session = Depends(get_db),
):
    if not token or not token.strip():
        raise invalid_request("token is required")
    token = token.strip()
    hint = (token_type_hint or "").strip().lower()

    # Access tokens are not stored; nothing to revoke
    if hint == "access_token":
        return JSONResponse(content={})

    store = RefreshTokenStore(db)
    record = store.get(token)
    if record is None:
        return JSONResponse(content={})
    if tenant_id is not None and record.tenant_id != tenant_id:
        logger.info("Ignoring revocation of a refresh token from another tenant")
        return JSONResponse(content={})

    owner = find_client(db, record.client_id)
    if owner is not None and owner.is_confidential:
        cid, csecret = get_client_credentials_from_request(request, client_id, client_secret)
        if cid != owner.client_id or not secret_matches(owner, csecret):
            raise invalid_client("Invalid client credentials")

    if store.revoke(token):
        log_audit(
            db,
            EVENT_TOKEN_REVOKED,
            tenant_id=record.tenant_id,
            client_id=record.client_id,
            user_id=record.user_id,
            ip=get_client_ip(request),
        )
    return JSONResponse(content={})
