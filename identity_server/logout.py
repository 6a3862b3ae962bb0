"""
Logout (GET/POST /logout), OIDC RP-Initiated Logout.
Revokes every live refresh token of the logged-in user within the current tenant, clears the login session
cookie, then redirects to post_logout_redirect_uri when it is registered for the client named by
id_token_hint.
"""
import logging
from urllib.parse import urlencode

import jwt
from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from identity_server.audit import EVENT_LOGOUT, get_client_ip, log_audit
from identity_server.client_auth import find_client
from identity_server.database import get_db
from identity_server.errors import invalid_request
from identity_server.sessions import clear_session_cookie, current_session
from identity_server.tenants import resolve_tenant_id, validate_tenant
from identity_server.token_store import RefreshTokenStore
from identity_server.tokens import verify_token

logger = logging.getLogger(__name__)
router = APIRouter()

_LOGGED_OUT_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Logged out</title></head>
<body>
  <h1>Logged out</h1>
  <p>You are logged out. Close this window or return to the application.</p>
</body>
</html>"""


def _hint_client_id(db: Session, id_token_hint: str | None) -> str | None:
    """Client (aud) of a valid id_token_hint issued by this server. Expired hints are accepted."""
    if not id_token_hint or not id_token_hint.strip():
        return None
    try:
        payload = verify_token(db, id_token_hint.strip(), verify_exp=False)
    except jwt.InvalidTokenError as e:
        logger.debug("id_token_hint rejected: %s", e)
        return None
    aud = payload.get("aud")
    if isinstance(aud, list):
        aud = aud[0] if aud else None
    return aud


def _logout(
    request: Request,
    db: Session,
    id_token_hint: str | None,
    post_logout_redirect_uri: str | None,
    state: str | None,
):
    # Validate the redirect before any state changes
    redirect_url = None
    if post_logout_redirect_uri and post_logout_redirect_uri.strip():
        client_id = _hint_client_id(db, id_token_hint)
        client = find_client(db, client_id) if client_id else None
        if client is None or not client.redirect_uri_allowed(post_logout_redirect_uri.strip()):
            raise invalid_request("post_logout_redirect_uri not allowed")
        redirect_url = post_logout_redirect_uri.strip()
        if state and state.strip():
            redirect_url = f"{redirect_url}{'&' if '?' in redirect_url else '?'}{urlencode({'state': state.strip()})}"

    session = current_session(request)
    if session is not None:
        tenant_id = resolve_tenant_id(request) or session.tenant_id
        if tenant_id != session.tenant_id or not validate_tenant(db, tenant_id):
            raise invalid_request("Login session does not belong to this tenant")
        revoked = RefreshTokenStore(db).revoke_all_for_user(session.user_id, tenant_id)
        log_audit(db, EVENT_LOGOUT, tenant_id=tenant_id, user_id=session.user_id, ip=get_client_ip(request))
        logger.info("Logged out user %s in tenant %s (%d refresh token(s) revoked)", session.user_id, tenant_id, revoked)

    response = RedirectResponse(url=redirect_url, status_code=302) if redirect_url else HTMLResponse(_LOGGED_OUT_PAGE)
    clear_session_cookie(response)
    return response


@router.get("/logout")
def logout_get(
    request: Request,
    id_token_hint: str | None = None,
    post_logout_redirect_uri: str | None = None,
    state: str | None = None,
    db: Session = Depends(get_db),
):
    return _logout(request, db, id_token_hint, post_logout_redirect_uri, state)


@router.post("/logout")
def logout_post(
    request: Request,
    id_token_hint: str | None = Form(None),
    post_logout_redirect_uri: str | None = Form(None),
    state: str | None = Form(None),
    db: Session = Depends(get_db),
):
    return _logout(request, db, id_token_hint, post_logout_redirect_uri, state)
