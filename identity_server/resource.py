"""
Protected resource API (/api/resource/*). Bearer access tokens issued by this server are verified against the
key manager's validation set; the token's tenant must match the tenant the request signals.
"""
import logging
from datetime import datetime, timezone
from typing import Annotated

import jwt
from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from identity_server.claims import TENANT_CLAIM
from identity_server.config import RESOURCE_AUDIENCE, SCOPE_ADMIN, SCOPE_API
from identity_server.database import get_db
from identity_server.errors import INVALID_REQUEST, OAuthError, invalid_request
from identity_server.tenants import resolve_tenant_id, validate_tenant
from identity_server.tokens import verify_token

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/resource")
security = HTTPBearer(auto_error=False)

INVALID_TOKEN = "invalid_token"
INSUFFICIENT_SCOPE = "insufficient_scope"


def _invalid_token(description: str) -> OAuthError:
    return OAuthError(INVALID_TOKEN, description, status_code=401, headers={"WWW-Authenticate": 'Bearer error="invalid_token"'})


def get_claims(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Session = Depends(get_db),
) -> dict:
    """Dependency: valid Bearer access token for this API -> decoded claims."""
    if credentials is None:
        raise OAuthError(INVALID_REQUEST, "Authorization header missing", status_code=401, headers={"WWW-Authenticate": "Bearer"})
    try:
        return verify_token(db, credentials.credentials, tenant_id=resolve_tenant_id(request), audience=RESOURCE_AUDIENCE)
    except jwt.ExpiredSignatureError:
        raise _invalid_token("Token expired")
    except jwt.InvalidAudienceError:
        raise _invalid_token("Invalid audience")
    except jwt.InvalidTokenError as e:
        logger.debug("Resource API token rejected: %s", e)
        raise _invalid_token("Token verification failed")


def _scopes(claims: dict) -> set[str]:
    scope = claims.get("scope")
    if isinstance(scope, list):
        return set(scope)
    return set((scope or "").split())


def require_scope(required: str):
    """Dependency factory: require the given scope in the access token."""

    def _check(claims: Annotated[dict, Depends(get_claims)]) -> dict:
        if required not in _scopes(claims):
            raise OAuthError(INSUFFICIENT_SCOPE, f"Scope '{required}' required", status_code=403)
        return claims

    return Depends(_check)


RequireApi = require_scope(SCOPE_API)
RequireAdmin = require_scope(SCOPE_ADMIN)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/me")
def me(claims: dict = Depends(get_claims)):
    """Caller identity from the access token."""
    return {
        "user_id": claims.get("sub"),
        "username": claims.get("preferred_username"),
        "email": claims.get("email"),
        "tenant_id": claims.get(TENANT_CLAIM),
        "claims": claims,
    }


@router.get("/data")
def data(claims: dict = RequireApi):
    return {
        "message": "This is protected data",
        "tenant_id": claims.get(TENANT_CLAIM),
        "timestamp": _now(),
        "data": ["Item 1", "Item 2", "Item 3"],
    }


@router.get("/tenant-data")
def tenant_data(claims: dict = Depends(get_claims), db: Session = Depends(get_db)):
    """Data for the tenant named in the token; the tenant must still be active."""
    tenant_id = claims.get(TENANT_CLAIM)
    if not tenant_id:
        raise invalid_request("Tenant ID not found in token")
    if not validate_tenant(db, tenant_id):
        raise OAuthError("access_denied", "Invalid or inactive tenant", status_code=403)
    return {
        "message": f"Data for tenant {tenant_id}",
        "tenant_id": tenant_id,
        "tenant_specific_data": {"setting1": "Value1", "setting2": "Value2", "last_updated": _now()},
    }


@router.get("/admin")
def admin(claims: dict = RequireAdmin):
    return {"message": "Admin-only data", "sub": claims.get("sub"), "timestamp": _now()}
