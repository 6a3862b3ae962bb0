"""
Authorization grants and single-use authorization codes.

A code is consumed with a conditional UPDATE; presenting a consumed code is treated as replay and revokes
the grant together with every refresh token issued from it.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from identity_server.config import CODE_TTL_SECONDS
from identity_server.errors import CodeReplayError
from identity_server.models import (
    GRANT_STATUS_REVOKED,
    GRANT_STATUS_VALID,
    GRANT_TYPE_PERMANENT,
    AuthorizationCode,
    AuthorizationGrant,
    as_utc,
)
from identity_server.token_store import RefreshTokenStore

logger = logging.getLogger(__name__)


def find_or_create_permanent_grant(
    db: Session, subject_id: str, client_id: str, tenant_id: str, scopes
) -> AuthorizationGrant:
    """Reuse the valid permanent grant for (subject, client, scopes) in the tenant, else create one."""
    scope_str = " ".join(sorted(scopes))
    grant = (
        db.query(AuthorizationGrant)
        .filter(
            AuthorizationGrant.subject_id == subject_id,
            AuthorizationGrant.client_id == client_id,
            AuthorizationGrant.tenant_id == tenant_id,
            AuthorizationGrant.type == GRANT_TYPE_PERMANENT,
            AuthorizationGrant.status == GRANT_STATUS_VALID,
            AuthorizationGrant.scopes == scope_str,
        )
        .first()
    )
    if grant is not None:
        return grant
    grant = AuthorizationGrant(
        subject_id=subject_id,
        client_id=client_id,
        tenant_id=tenant_id,
        type=GRANT_TYPE_PERMANENT,
        scopes=scope_str,
        status=GRANT_STATUS_VALID,
    )
    db.add(grant)
    db.commit()
    logger.info("Created permanent grant %s (client=%s tenant=%s)", grant.id, client_id, tenant_id)
    return grant


def is_grant_valid(db: Session, grant_id: str | None) -> bool:
    # Tokens from the password grant carry no grant
    if grant_id is None:
        return True
    grant = db.query(AuthorizationGrant).filter(AuthorizationGrant.id == grant_id).first()
    return grant is not None and grant.status == GRANT_STATUS_VALID


def revoke_grant(db: Session, grant_id: str) -> int:
    """Mark the grant revoked and revoke its refresh tokens. Returns the number of tokens revoked."""
    db.execute(
        update(AuthorizationGrant)
        .where(AuthorizationGrant.id == grant_id, AuthorizationGrant.status == GRANT_STATUS_VALID)
        .values(status=GRANT_STATUS_REVOKED, revoked_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    revoked = RefreshTokenStore(db).revoke_grant(grant_id)
    logger.warning("Revoked grant %s and %d refresh token(s)", grant_id, revoked)
    return revoked


def create_code(
    db: Session,
    grant: AuthorizationGrant,
    redirect_uri: str,
    scope: str,
    resources: list[str],
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    nonce: str | None = None,
) -> AuthorizationCode:
    row = AuthorizationCode(
        code=secrets.token_urlsafe(32),
        grant_id=grant.id,
        subject_id=grant.subject_id,
        client_id=grant.client_id,
        tenant_id=grant.tenant_id,
        redirect_uri=redirect_uri,
        scope=scope,
        resources=" ".join(resources),
        code_challenge=code_challenge or None,
        code_challenge_method=code_challenge_method or None,
        nonce=nonce or None,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=CODE_TTL_SECONDS),
    )
    db.add(row)
    db.commit()
    return row


def find_code(db: Session, code: str) -> AuthorizationCode | None:
    return db.query(AuthorizationCode).filter(AuthorizationCode.code == code).first()


def code_expired(row: AuthorizationCode) -> bool:
    return as_utc(row.expires_at) < datetime.now(timezone.utc)


def redeem_code(db: Session, row: AuthorizationCode) -> None:
    """
    Consume the code exactly once. A code that is already consumed (including by a concurrent request
    that won the UPDATE) revokes its grant and raises CodeReplayError.
    """
    grant_id = row.grant_id
    if not row.consumed:
        result = db.execute(
            update(AuthorizationCode)
            .where(AuthorizationCode.id == row.id, AuthorizationCode.consumed.is_(False))
            .values(consumed=True, consumed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            return
        db.rollback()
    logger.warning("Authorization code replay detected (client=%s grant=%s)", row.client_id, grant_id)
    revoke_grant(db, grant_id)
    raise CodeReplayError(grant_id)
