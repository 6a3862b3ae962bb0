"""
Client authentication. RFC 6749 §2.3.1.
Credentials via Authorization: Basic base64(client_id:client_secret) or client_id + client_secret in form.
Public clients identify themselves with client_id only.
"""
import base64
import logging

from fastapi import Request
from sqlalchemy.orm import Session

from identity_server.errors import invalid_client
from identity_server.models import Client
from identity_server.passwords import verify_password

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header_value.strip()[6:].strip(), validate=True).decode("utf-8")
    except ValueError:
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return client_id.strip(), client_secret


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """(client_id, client_secret) from the form when a secret is posted, else Basic, else form client_id."""
    basic = _parse_basic(request.headers.get("Authorization") or "")
    if client_id_form and client_secret_form is not None:
        return client_id_form.strip(), client_secret_form
    if basic:
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None


def find_client(db: Session, client_id: str) -> Client | None:
    return db.query(Client).filter(Client.client_id == client_id).first()


def secret_matches(client: Client, client_secret: str | None) -> bool:
    if not client.is_confidential:
        return True
    if not client_secret:
        return False
    return verify_password(client_secret, client.client_secret_hash)


def require_client_auth(
    db: Session,
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> Client:
    """Resolve and authenticate the calling client; 401 invalid_client otherwise."""
    client_id, client_secret = get_client_credentials_from_request(request, client_id_form, client_secret_form)
    if not client_id:
        raise invalid_client("client_id is required")
    client = find_client(db, client_id)
    if client is None:
        raise invalid_client("Unknown client")
    if not secret_matches(client, client_secret):
        logger.info("Client authentication failed for client_id=%s", client_id)
        raise invalid_client("Invalid client credentials")
    return client
