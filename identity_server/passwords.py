"""
Credential verification: bcrypt password hashes and tenant-scoped user lookup.
"""
import logging
from datetime import datetime, timezone

import bcrypt
from sqlalchemy.orm import Session

from identity_server.models import User

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    try:
        return bcrypt.checkpw(raw, hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def find_user(db: Session, username: str, tenant_id: str) -> User | None:
    return (
        db.query(User)
        .filter(User.tenant_id == tenant_id, User.username == username)
        .first()
    )


def authenticate_user(db: Session, tenant_id: str, username: str, password: str) -> User | None:
    """
    Return the user if username/password match within tenant_id, else None.
    Records last_login_at on success. Unknown users are never created here.
    """
    user = find_user(db, username, tenant_id)
    if user is None or not verify_password(password, user.password_hash):
        return None
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    return user
