"""
Well-known endpoints: JWKS and OpenID Connect discovery.
The JWKS lists the validation set of the resolved tenant's key ring (default ring when no tenant resolves).
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from identity_server.config import ALLOWED_SCOPES, ENABLE_PASSWORD_GRANT, ISSUER
from identity_server.database import get_db
from identity_server.keys import key_manager
from identity_server.tenants import optional_tenant

router = APIRouter()


@router.get("/.well-known/jwks.json")
def jwks_json(tenant_id: str | None = Depends(optional_tenant), db: Session = Depends(get_db)):
    """JSON Web Key Set for token signature verification."""
    return key_manager.jwks(db, key_manager.ring_for_tenant(db, tenant_id))


@router.get("/.well-known/openid-configuration")
def openid_configuration():
    """OpenID Connect discovery document."""
    grant_types = ["authorization_code", "refresh_token", "client_credentials"]
    if ENABLE_PASSWORD_GRANT:
        grant_types.append("password")
    return {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "revocation_endpoint": f"{ISSUER}/revoke",
        "end_session_endpoint": f"{ISSUER}/logout",
        "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "grant_types_supported": grant_types,
        "scopes_supported": sorted(ALLOWED_SCOPES),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["RS256"],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
        "code_challenge_methods_supported": ["S256"],
    }
