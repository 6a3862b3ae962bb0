"""
OIDC UserInfo endpoint (GET /userinfo). Bearer access token required; returns claims by scope.
"""
import logging

import jwt
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from identity_server.claims import TENANT_CLAIM
from identity_server.database import get_db
from identity_server.models import User
from identity_server.tenants import optional_tenant
from identity_server.tokens import verify_access_token

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=True)

_INVALID_TOKEN = {"WWW-Authenticate": 'Bearer error="invalid_token"'}


@router.get("/userinfo")
def userinfo(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    tenant_id: str | None = Depends(optional_tenant),
    db: Session = Depends(get_db),
):
    """
    Claims for the user behind the access token: sub and tenant_id always; profile -> name,
    preferred_username; email -> email.
    """
    try:
        payload = verify_access_token(db, credentials.credentials, tenant_id=tenant_id)
    except jwt.InvalidTokenError as e:
        logger.debug("UserInfo token invalid: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers=_INVALID_TOKEN)

    user = db.query(User).filter(User.id == payload.get("sub")).first()
    if user is None or user.tenant_id != payload.get(TENANT_CLAIM):
        raise HTTPException(status_code=401, detail="User not found", headers=_INVALID_TOKEN)

    scope = (payload.get("scope") or "").split()
    claims = {"sub": user.id, TENANT_CLAIM: user.tenant_id}
    if "profile" in scope:
        claims["preferred_username"] = user.username
        if user.name is not None:
            claims["name"] = user.name
    if "email" in scope and user.email is not None:
        claims["email"] = user.email
    return claims
