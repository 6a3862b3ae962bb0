"""
Login session cookie for the authorization endpoint.
The cookie carries an HS256 JWT (sub, tenant_id, display claims) signed with SESSION_SECRET;
it is never accepted as an OAuth token.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Request, Response

from identity_server.config import (
    ISSUER,
    SESSION_COOKIE,
    SESSION_COOKIE_SECURE,
    SESSION_LIFETIME_SECONDS,
    SESSION_SECRET,
)
from identity_server.models import User

logger = logging.getLogger(__name__)

_AUDIENCE = "login_session"


@dataclass
class LoginSession:
    user_id: str
    tenant_id: str
    username: str
    name: str | None = None
    email: str | None = None


def encode_session(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "iss": ISSUER,
        "aud": _AUDIENCE,
        "sub": user.id,
        "tenant_id": user.tenant_id,
        "preferred_username": user.username,
        "name": user.name,
        "email": user.email,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=SESSION_LIFETIME_SECONDS)).timestamp()),
    }
    return jwt.encode(payload, SESSION_SECRET, algorithm="HS256")


def decode_session(value: str | None) -> LoginSession | None:
    if not value:
        return None
    try:
        payload = jwt.decode(value, SESSION_SECRET, algorithms=["HS256"], audience=_AUDIENCE, issuer=ISSUER)
    except jwt.InvalidTokenError as e:
        logger.debug("Login session cookie rejected: %s", e)
        return None
    if not payload.get("sub") or not payload.get("tenant_id"):
        return None
    return LoginSession(
        user_id=payload["sub"],
        tenant_id=payload["tenant_id"],
        username=payload.get("preferred_username") or "",
        name=payload.get("name"),
        email=payload.get("email"),
    )


def current_session(request: Request) -> LoginSession | None:
    """Authenticated principal from the login cookie, or None."""
    return decode_session(request.cookies.get(SESSION_COOKIE))


def set_session_cookie(response: Response, user: User) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        encode_session(user),
        max_age=SESSION_LIFETIME_SECONDS,
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite="lax",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE)
