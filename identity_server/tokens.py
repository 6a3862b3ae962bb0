"""
Access and ID token minting (RS256, kid header) and verification against the tenant's validation key set.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy.orm import Session

from identity_server.claims import ACCESS_TOKEN, ID_TOKEN, TENANT_CLAIM, Principal
from identity_server.config import ACCESS_TOKEN_EXPIRES, API_AUDIENCE, ISSUER
from identity_server.keys import key_manager

logger = logging.getLogger(__name__)


def _sign(db: Session, tenant_id: str | None, payload: dict) -> str:
    ring = key_manager.ring_for_tenant(db, tenant_id)
    key = key_manager.current_signing_key(db, ring)
    token = jwt.encode(payload, key.private_key, algorithm="RS256", headers={"kid": key.key_id, "typ": "JWT"})
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def issue_access_token(db: Session, principal: Principal, client_id: str) -> str:
    now = datetime.now(timezone.utc)
    payload = principal.claims_for(ACCESS_TOKEN)
    payload.update(
        {
            "iss": ISSUER,
            "aud": principal.resources or [API_AUDIENCE],
            "client_id": client_id,
            "scope": principal.scope,
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ACCESS_TOKEN_EXPIRES)).timestamp()),
        }
    )
    return _sign(db, principal.tenant_id, payload)


def issue_id_token(db: Session, principal: Principal, client_id: str, nonce: str | None = None) -> str | None:
    """ID token for the client; None unless openid was granted."""
    if "openid" not in principal.scopes:
        return None
    now = datetime.now(timezone.utc)
    payload = principal.claims_for(ID_TOKEN)
    payload.update(
        {
            "iss": ISSUER,
            "aud": client_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ACCESS_TOKEN_EXPIRES)).timestamp()),
        }
    )
    if nonce:
        payload["nonce"] = nonce
    return _sign(db, principal.tenant_id, payload)


def verify_token(
    db: Session,
    token: str,
    tenant_id: str | None = None,
    audience: str | None = None,
    verify_exp: bool = True,
) -> dict:
    """
    Verify a token issued by this server: the kid must be in the validation set of the ring of the token's
    tenant, and when tenant_id is given the token must belong to it. Raises jwt.InvalidTokenError.
    """
    header = jwt.get_unverified_header(token)
    kid = header.get("kid")
    if not kid:
        raise jwt.InvalidTokenError("Token has no kid")
    unverified = jwt.decode(token, options={"verify_signature": False})
    token_tenant = unverified.get(TENANT_CLAIM)
    if tenant_id is not None and token_tenant != tenant_id:
        raise jwt.InvalidTokenError("Token was issued for another tenant")
    ring = key_manager.ring_for_tenant(db, token_tenant)
    key = key_manager.find_verification_key(db, ring, kid)
    if key is None:
        raise jwt.InvalidTokenError(f"Unknown or retired signing key {kid}")
    return jwt.decode(
        token,
        key.public_key(),
        algorithms=["RS256"],
        issuer=ISSUER,
        audience=audience,
        options={"verify_aud": audience is not None, "verify_exp": verify_exp},
    )


def verify_access_token(db: Session, token: str, tenant_id: str | None = None) -> dict:
    return verify_token(db, token, tenant_id=tenant_id)
