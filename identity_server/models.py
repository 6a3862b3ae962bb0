"""
SQLAlchemy models for the Identity Server: tenants, users, clients, authorization grants and codes,
refresh token records with their revocation markers, signing keys, audit log.
"""
import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

GRANT_TYPE_PERMANENT = "permanent"
GRANT_TYPE_AD_HOC = "ad_hoc"
GRANT_STATUS_VALID = "valid"
GRANT_STATUS_REVOKED = "revoked"

DEFAULT_CLIENT_GRANT_TYPES = "authorization_code refresh_token"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def split_list(value: str | None) -> list[str]:
    return [s for s in (value or "").split() if s]


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    """Isolation boundary. Soft-disabled via is_active; never deleted."""
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Signing-key ring shared by tenants with the same value; None = the tenant's own ring
    signing_key_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Internal claim; changes whenever credentials change. Never leaves the server.
    security_stamp: Mapped[str] = mapped_column(String(64), nullable=False, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    tenant: Mapped["Tenant"] = relationship("Tenant")


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # JSON array of allowed redirect URIs; exact match required
    redirect_uris: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    # Confidential client: bcrypt hash of client_secret; None = public client
    client_secret_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Space-separated grant types this client may use
    grant_types: Mapped[str] = mapped_column(Text, nullable=False, default=DEFAULT_CLIENT_GRANT_TYPES)
    # None = client is shared by every tenant
    tenant_id: Mapped[str | None] = mapped_column(ForeignKey("tenants.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def get_redirect_uris_list(self) -> list[str]:
        return json.loads(self.redirect_uris or "[]")

    def redirect_uri_allowed(self, uri: str) -> bool:
        return uri in self.get_redirect_uris_list()

    def allows_grant(self, grant_type: str) -> bool:
        return grant_type in split_list(self.grant_types)

    def allowed_for_tenant(self, tenant_id: str) -> bool:
        return self.tenant_id is None or self.tenant_id == tenant_id

    @property
    def is_confidential(self) -> bool:
        return self.client_secret_hash is not None and len(self.client_secret_hash) > 0


class AuthorizationGrant(Base):
    """Consent record for (subject, client) within a tenant. Only status ever changes."""
    __tablename__ = "authorization_grants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default=GRANT_TYPE_PERMANENT)
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated, sorted
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=GRANT_STATUS_VALID)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AuthorizationCode(Base):
    __tablename__ = "authorization_codes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    grant_id: Mapped[str] = mapped_column(ForeignKey("authorization_grants.id"), nullable=False)
    subject_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    resources: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    code_challenge: Mapped[str | None] = mapped_column(String(255), nullable=True)
    code_challenge_method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    nonce: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    consumed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class RefreshTokenRecord(Base):
    """
    One link of a rotation chain. previous_token_id is unique so a chain can never fork:
    two concurrent rotations of the same token cannot both commit a successor.
    Revoked records are immutable and kept until expires_at + retention.
    """
    __tablename__ = "refresh_tokens"

    token_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False)
    grant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resources: Mapped[str] = mapped_column(Text, nullable=False, default="")
    previous_token_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    rotation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class LiveRefreshToken(Base):
    """Per-user index of live refresh token ids, updated on every store and revoke."""
    __tablename__ = "live_refresh_tokens"

    token_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class RevocationMarker(Base):
    """Negative cache: authoritative even after the refresh token record is purged."""
    __tablename__ = "revocation_markers"

    token_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    revoked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class SigningKey(Base):
    """RSA signing key. Never mutated except purged_at (and wiping private_pem) on purge."""
    __tablename__ = "signing_keys"

    key_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ring: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    private_pem: Mapped[str] = mapped_column(Text, nullable=False)
    n: Mapped[str] = mapped_column(Text, nullable=False)  # base64url modulus
    e: Mapped[str] = mapped_column(String(16), nullable=False)  # base64url exponent
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    purged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class CurrentSigningKey(Base):
    """Versioned pointer to a ring's current key; writers compare-and-set on version."""
    __tablename__ = "current_signing_keys"

    ring: Mapped[str] = mapped_column(String(64), primary_key=True)
    key_id: Mapped[str] = mapped_column(ForeignKey("signing_keys.key_id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class AuditLog(Base):
    """Audit log for security-relevant events. No tokens or passwords stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # None = anonymous
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
