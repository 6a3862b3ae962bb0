"""
Operator endpoints for signing keys: forced rotation and early purge of a compromised key.
Disabled (404) unless OAUTH_ADMIN_TOKEN is set; callers send it as X-Admin-Token.
"""
import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from identity_server.audit import EVENT_KEY_PURGED, EVENT_KEY_ROTATED, get_client_ip, log_audit
from identity_server.config import ADMIN_TOKEN
from identity_server.database import get_db
from identity_server.errors import invalid_request
from identity_server.keys import key_manager
from identity_server.tenants import validate_tenant

logger = logging.getLogger(__name__)


def require_admin(x_admin_token: str | None = Header(None)) -> None:
    if not ADMIN_TOKEN:
        raise HTTPException(status_code=404, detail="Not Found")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, ADMIN_TOKEN):
        raise HTTPException(status_code=403, detail="Forbidden")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/keys/rotate")
def rotate_key(request: Request, tenant_id: str | None = None, db: Session = Depends(get_db)):
    """Publish a new current key for the tenant's ring (default ring without tenant_id)."""
    if tenant_id and not validate_tenant(db, tenant_id):
        raise invalid_request("Invalid tenant")
    ring = key_manager.ring_for_tenant(db, tenant_id)
    material = key_manager.rotate(db, ring)
    log_audit(db, EVENT_KEY_ROTATED, tenant_id=tenant_id, ip=get_client_ip(request))
    return {"ring": ring, "kid": material.key_id, "expires_at": material.expires_at.isoformat()}


@router.post("/keys/{kid}/purge")
def purge_key(request: Request, kid: str, force: bool = False, db: Session = Depends(get_db)):
    """Remove a key from the validation set. force=true skips the grace period (compromised key)."""
    try:
        purged = key_manager.purge(db, kid, force=force)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not purged:
        raise HTTPException(status_code=404, detail="Unknown or already purged key")
    log_audit(db, EVENT_KEY_PURGED, ip=get_client_ip(request))
    return {"kid": kid, "purged": True, "force": force}
