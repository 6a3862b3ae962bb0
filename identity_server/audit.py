"""
Audit logging. Security-relevant events only; no tokens, passwords, or full request bodies.
GET /audit lists recent events as JSON with optional filters.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from identity_server.database import get_db
from identity_server.models import AuditLog

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_USER_REGISTERED = "user_registered"
EVENT_CODE_ISSUED = "code_issued"
EVENT_CODE_REPLAY = "code_replay"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_REFRESH_REUSE = "refresh_reuse"
EVENT_TOKEN_REVOKED = "token_revoked"
EVENT_LOGOUT = "logout"
EVENT_KEY_ROTATED = "key_rotated"
EVENT_KEY_PURGED = "key_purged"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    tenant_id: str | None = None,
    client_id: str | None = None,
    user_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. Never log tokens or passwords."""
    db.add(
        AuditLog(
            event_type=event_type,
            tenant_id=tenant_id,
            client_id=client_id,
            user_id=user_id,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()


router = APIRouter(tags=["audit"])


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    tenant_id: str | None = None,
    client_id: str | None = None,
    db: Session = Depends(get_db),
):
    """List recent audit events (admin token required). No tokens or secrets. Most recent first."""
    q = db.query(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if event_type:
        q = q.filter(AuditLog.event_type == event_type)
    if outcome:
        q = q.filter(AuditLog.outcome == outcome)
    if tenant_id:
        q = q.filter(AuditLog.tenant_id == tenant_id)
    if client_id:
        q = q.filter(AuditLog.client_id == client_id)
    rows = q.limit(min(max(1, limit), 500)).all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "tenant_id": r.tenant_id,
            "client_id": r.client_id,
            "user_id": r.user_id,
            "ip": r.ip,
            "outcome": r.outcome,
        }
        for r in rows
    ]
