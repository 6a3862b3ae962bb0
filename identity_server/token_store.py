"""
Refresh token store: rotation-chain records, revocation markers and the per-user live-token index.

Rotation inserts the successor first, then revokes the old record with a conditional UPDATE, in one
transaction: the old record is never revoked without a committed successor, and a concurrent rotation of
the same token loses (unique previous_token_id or zero rows updated) and rolls back.
Store failures are raised as StoreUnavailableError so callers fail closed.
"""
import functools
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from identity_server.config import REFRESH_RETENTION_SECONDS, REVOCATION_MARKER_TTL_SECONDS
from identity_server.errors import StoreUnavailableError, TokenAlreadyRotatedError
from identity_server.models import LiveRefreshToken, RefreshTokenRecord, RevocationMarker, as_utc

logger = logging.getLogger(__name__)

# Upper bound on index sweeps in revoke_all_for_user; each sweep picks up successors of in-flight rotations
_MAX_REVOKE_PASSES = 5


def _store_call(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except (TokenAlreadyRotatedError, StoreUnavailableError):
            raise
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailableError(f"refresh token store: {fn.__name__} failed") from e
    return wrapper


def _short(token_id: str) -> str:
    return token_id[:8] + "..."


def new_token_id() -> str:
    return secrets.token_urlsafe(48)


class RefreshTokenStore:
    def __init__(
        self,
        db: Session,
        retention: timedelta = timedelta(seconds=REFRESH_RETENTION_SECONDS),
        marker_ttl: timedelta = timedelta(seconds=REVOCATION_MARKER_TTL_SECONDS),
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.retention = retention
        self.marker_ttl = marker_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # --- reads ---

    @_store_call
    def get(self, token_id: str) -> RefreshTokenRecord | None:
        return self.db.query(RefreshTokenRecord).filter(RefreshTokenRecord.token_id == token_id).first()

    @_store_call
    def is_revoked(self, token_id: str) -> bool:
        """True if an unexpired revocation marker exists or the record is flagged revoked."""
        marker = self.db.query(RevocationMarker).filter(RevocationMarker.token_id == token_id).first()
        if marker is not None and as_utc(marker.expires_at) > self.now():
            return True
        record = self.get(token_id)
        return record is not None and record.is_revoked

    @_store_call
    def live_token_ids(self, user_id: str, tenant_id: str | None = None) -> list[str]:
        """Index entries plus any non-revoked, unexpired record for the user."""
        now = self.now()
        q = self.db.query(LiveRefreshToken.token_id).filter(LiveRefreshToken.user_id == user_id)
        r = self.db.query(RefreshTokenRecord.token_id).filter(
            RefreshTokenRecord.user_id == user_id,
            RefreshTokenRecord.is_revoked.is_(False),
            RefreshTokenRecord.expires_at > now,
        )
        if tenant_id is not None:
            q = q.filter(LiveRefreshToken.tenant_id == tenant_id)
            r = r.filter(RefreshTokenRecord.tenant_id == tenant_id)
        ids = {row[0] for row in q.all()}
        ids.update(row[0] for row in r.all())
        return sorted(ids)

    @_store_call
    def chain(self, token_id: str) -> list[RefreshTokenRecord]:
        """Records from token_id back to the chain root (newest first). Purged links end the walk."""
        records = []
        seen = set()
        current = self.get(token_id)
        while current is not None and current.token_id not in seen:
            records.append(current)
            seen.add(current.token_id)
            if not current.previous_token_id:
                break
            current = self.get(current.previous_token_id)
        return records

    # --- writes ---

    @_store_call
    def store(self, record: RefreshTokenRecord, ttl: timedelta) -> RefreshTokenRecord:
        """Persist a chain root (or any record) and add it to the user's live index."""
        now = self.now()
        if record.issued_at is None:
            record.issued_at = now
        record.expires_at = as_utc(record.issued_at) + ttl
        if record.rotation_count is None:
            record.rotation_count = 0
        record.is_revoked = False
        self.db.add(record)
        self.db.flush()
        self.db.add(
            LiveRefreshToken(
                token_id=record.token_id,
                user_id=record.user_id,
                tenant_id=record.tenant_id,
                expires_at=record.expires_at,
            )
        )
        self.db.commit()
        logger.debug("Stored refresh token %s (user=%s rotation=%s)", _short(record.token_id), record.user_id, record.rotation_count)
        return record

    @_store_call
    def rotate(self, old: RefreshTokenRecord, ttl: timedelta) -> RefreshTokenRecord:
        """
        Create the successor of old (rotation_count + 1, previous_token_id = old) and revoke old, atomically.
        Raises TokenAlreadyRotatedError if another request rotated or revoked old first.
        """
        now = self.now()
        successor = RefreshTokenRecord(
            token_id=new_token_id(),
            user_id=old.user_id,
            tenant_id=old.tenant_id,
            client_id=old.client_id,
            grant_id=old.grant_id,
            scope=old.scope,
            resources=old.resources,
            previous_token_id=old.token_id,
            issued_at=now,
            expires_at=now + ttl,
            rotation_count=old.rotation_count + 1,
            is_revoked=False,
        )
        old_token_id = old.token_id
        old_expires_at = as_utc(old.expires_at)
        try:
            self.db.add(successor)
            self.db.flush()
            self.db.add(
                LiveRefreshToken(
                    token_id=successor.token_id,
                    user_id=successor.user_id,
                    tenant_id=successor.tenant_id,
                    expires_at=successor.expires_at,
                )
            )
            result = self.db.execute(
                update(RefreshTokenRecord)
                .where(RefreshTokenRecord.token_id == old_token_id, RefreshTokenRecord.is_revoked.is_(False))
                .values(is_revoked=True, revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise TokenAlreadyRotatedError(old_token_id)
            self._mark(old_token_id, now, old_expires_at)
            self.db.execute(delete(LiveRefreshToken).where(LiveRefreshToken.token_id == old_token_id))
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise TokenAlreadyRotatedError(old_token_id) from e
        logger.debug(
            "Rotated refresh token %s -> %s (rotation=%s)",
            _short(old_token_id),
            _short(successor.token_id),
            successor.rotation_count,
        )
        return successor

    def _mark(self, token_id: str, now: datetime, record_expires_at: datetime | None) -> None:
        """Insert a revocation marker (no-op if present). Marker outlives the record's retention window."""
        if self.db.query(RevocationMarker).filter(RevocationMarker.token_id == token_id).first() is not None:
            return
        expires_at = now + self.marker_ttl
        if record_expires_at is not None:
            expires_at = max(expires_at, record_expires_at + self.retention + timedelta(days=1))
        self.db.add(RevocationMarker(token_id=token_id, revoked_at=now, expires_at=expires_at))

    def _revoke_in_tx(self, token_id: str, now: datetime) -> int:
        record = self.db.query(RefreshTokenRecord).filter(RefreshTokenRecord.token_id == token_id).first()
        changed = 0
        if record is not None:
            result = self.db.execute(
                update(RefreshTokenRecord)
                .where(RefreshTokenRecord.token_id == token_id, RefreshTokenRecord.is_revoked.is_(False))
                .values(is_revoked=True, revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount or 0
            self._mark(token_id, now, as_utc(record.expires_at))
        self.db.execute(delete(LiveRefreshToken).where(LiveRefreshToken.token_id == token_id))
        return changed

    @_store_call
    def revoke(self, token_id: str) -> bool:
        """Revoke one token. Idempotent; unknown tokens are a no-op. Returns True if state changed."""
        now = self.now()
        try:
            changed = self._revoke_in_tx(token_id, now)
            self.db.commit()
        except IntegrityError:
            # Concurrent revoke inserted the marker first
            self.db.rollback()
            return False
        if changed:
            logger.debug("Revoked refresh token %s", _short(token_id))
        return bool(changed)

    @_store_call
    def revoke_all_for_user(self, user_id: str, tenant_id: str | None = None) -> int:
        """
        Revoke every live refresh token of the user (optionally within one tenant).
        Sweeps the live index until it is empty so successors committed by in-flight rotations are caught.
        """
        total = 0
        for _ in range(_MAX_REVOKE_PASSES):
            ids = self.live_token_ids(user_id, tenant_id)
            if not ids:
                break
            now = self.now()
            try:
                for token_id in ids:
                    total += self._revoke_in_tx(token_id, now)
                self.db.commit()
            except IntegrityError:
                # A concurrent revoke wrote a marker first; the next pass re-reads the index
                self.db.rollback()
        else:
            remaining = self.live_token_ids(user_id, tenant_id)
            if remaining:
                logger.warning("revoke_all_for_user: %d token(s) still live for user=%s after %d passes", len(remaining), user_id, _MAX_REVOKE_PASSES)
        logger.info("Revoked %d refresh token(s) for user=%s tenant=%s", total, user_id, tenant_id)
        return total

    @_store_call
    def revoke_grant(self, grant_id: str) -> int:
        """Revoke every non-revoked token issued from an authorization grant."""
        ids = [
            row[0]
            for row in self.db.query(RefreshTokenRecord.token_id)
            .filter(RefreshTokenRecord.grant_id == grant_id, RefreshTokenRecord.is_revoked.is_(False))
            .all()
        ]
        now = self.now()
        total = 0
        for token_id in ids:
            total += self._revoke_in_tx(token_id, now)
        self.db.commit()
        return total

    @_store_call
    def purge_expired(self) -> tuple[int, int]:
        """Garbage-collect records past expires_at + retention and markers past their TTL."""
        now = self.now()
        records = self.db.execute(
            delete(RefreshTokenRecord).where(RefreshTokenRecord.expires_at <= now - self.retention)
        ).rowcount or 0
        self.db.execute(delete(LiveRefreshToken).where(LiveRefreshToken.expires_at <= now))
        markers = self.db.execute(
            delete(RevocationMarker).where(RevocationMarker.expires_at <= now)
        ).rowcount or 0
        self.db.commit()
        if records or markers:
            logger.info("Purged %d refresh token record(s) and %d revocation marker(s)", records, markers)
        return records, markers
