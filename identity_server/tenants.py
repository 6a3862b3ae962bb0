"""
Tenant resolution and validation.

Resolution order: X-Tenant-ID header, then the subdomain when the host has more than two labels,
then the tenant claim of the authenticated login session. Validation results are cached briefly
in-process; nothing here mutates tenants.
"""
import ipaddress
import logging
import threading
import time

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from identity_server.config import TENANT_CACHE_SECONDS, TENANT_HEADER
from identity_server.database import get_db
from identity_server.errors import invalid_request
from identity_server.models import Tenant
from identity_server.sessions import current_session

logger = logging.getLogger(__name__)

_cache: dict[str, tuple[bool, float]] = {}
_lock = threading.Lock()


def _subdomain(host: str | None) -> str | None:
    if not host or host.startswith("["):
        return None
    hostname = host.rsplit(":", 1)[0]
    try:
        ipaddress.ip_address(hostname)
        return None
    except ValueError:
        pass
    parts = hostname.split(".")
    if len(parts) > 2 and parts[0]:
        return parts[0]
    return None


def resolve_tenant_id(request: Request) -> str | None:
    """Return the tenant id signalled by the request, or None. The caller decides if None is fatal."""
    header = (request.headers.get(TENANT_HEADER) or "").strip()
    if header:
        return header
    sub = _subdomain(request.headers.get("host"))
    if sub:
        return sub
    session = current_session(request)
    if session is not None:
        return session.tenant_id
    return None


def validate_tenant(db: Session, tenant_id: str | None) -> bool:
    """True only if the tenant exists and is active."""
    if not tenant_id:
        return False
    now = time.monotonic()
    with _lock:
        hit = _cache.get(tenant_id)
        if hit is not None and hit[1] > now:
            return hit[0]
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    valid = tenant is not None and tenant.is_active
    if TENANT_CACHE_SECONDS > 0:
        with _lock:
            _cache[tenant_id] = (valid, now + TENANT_CACHE_SECONDS)
    return valid


def clear_tenant_cache() -> None:
    with _lock:
        _cache.clear()


def require_tenant(request: Request, db: Session = Depends(get_db)) -> str:
    """Dependency: resolved and active tenant id; fails closed with invalid_request."""
    tenant_id = resolve_tenant_id(request)
    if not tenant_id:
        raise invalid_request("Tenant ID is required")
    if not validate_tenant(db, tenant_id):
        logger.info("Rejected request for unknown or inactive tenant %s", tenant_id)
        raise invalid_request("Invalid tenant")
    return tenant_id


def optional_tenant(request: Request, db: Session = Depends(get_db)) -> str | None:
    """Dependency: resolved tenant id if one is signalled and valid, else None."""
    tenant_id = resolve_tenant_id(request)
    if tenant_id and validate_tenant(db, tenant_id):
        return tenant_id
    return None
