"""
Seed tenant, user and OAuth client from environment. No hardcoded credentials.
Optional: OAUTH_SEED_TENANT, OAUTH_SEED_USER + OAUTH_SEED_PASSWORD, OAUTH_CLIENT_ID + OAUTH_REDIRECT_URI(s),
OAUTH_SEED_CLIENT_SECRET, OAUTH_SEED_CLIENT_GRANT_TYPES.
"""
import json
import logging
import os

from sqlalchemy.orm import Session

from identity_server.models import DEFAULT_CLIENT_GRANT_TYPES, Client, Tenant, User
from identity_server.passwords import find_user, hash_password

logger = logging.getLogger(__name__)

DEFAULT_TENANT_ID = "tenant1"
DEFAULT_CLIENT_ID = "test-client"
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8000/callback"


def ensure_tenant(db: Session, tenant_id: str, name: str | None = None) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant is None:
        tenant = Tenant(id=tenant_id, name=name or tenant_id, domain=f"{tenant_id}.localhost")
        db.add(tenant)
        db.commit()
        logger.info("Seeded tenant: %s", tenant_id)
    return tenant


def seed_from_env(db: Session) -> None:
    """Create the default tenant and, when configured, one user and one client."""
    tenant_id = os.environ.get("OAUTH_SEED_TENANT") or DEFAULT_TENANT_ID
    ensure_tenant(db, tenant_id)

    # Optional seed user (no default credentials)
    seed_user = os.environ.get("OAUTH_SEED_USER")
    seed_password = os.environ.get("OAUTH_SEED_PASSWORD")
    if seed_user and seed_password:
        if find_user(db, seed_user, tenant_id) is None:
            db.add(User(tenant_id=tenant_id, username=seed_user, password_hash=hash_password(seed_password)))
            db.commit()
            logger.info("Seeded user: %s (tenant %s)", seed_user, tenant_id)
        else:
            logger.debug("User already exists: %s", seed_user)

    # Optional seed client: redirect URIs comma-separated; a secret makes it confidential
    client_id = os.environ.get("OAUTH_CLIENT_ID")
    redirect_uris_str = os.environ.get("OAUTH_REDIRECT_URI") or os.environ.get("OAUTH_REDIRECT_URIS")
    client_secret = os.environ.get("OAUTH_SEED_CLIENT_SECRET")
    grant_types = os.environ.get("OAUTH_SEED_CLIENT_GRANT_TYPES") or DEFAULT_CLIENT_GRANT_TYPES
    if client_id and redirect_uris_str:
        uris = [u.strip() for u in redirect_uris_str.split(",") if u.strip()]
        if uris and db.query(Client).filter(Client.client_id == client_id).first() is None:
            secret_hash = hash_password(client_secret) if client_secret else None
            db.add(
                Client(
                    client_id=client_id,
                    redirect_uris=json.dumps(uris),
                    client_secret_hash=secret_hash,
                    grant_types=grant_types,
                )
            )
            db.commit()
            logger.info("Seeded client: %s (confidential=%s)", client_id, bool(secret_hash))
        elif uris:
            logger.debug("Client already exists: %s", client_id)

    # Development fallback: shared public client so the quick start works
    if db.query(Client).filter(Client.client_id == DEFAULT_CLIENT_ID).first() is None:
        db.add(
            Client(
                client_id=DEFAULT_CLIENT_ID,
                display_name="Test client",
                redirect_uris=json.dumps([DEFAULT_REDIRECT_URI]),
            )
        )
        db.commit()
        logger.info("Seeded default dev client: %s", DEFAULT_CLIENT_ID)
