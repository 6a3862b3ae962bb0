"""
Account endpoints: login form that establishes the login session cookie, and user registration.
GET /account/login renders a minimal form; POST /account/login checks credentials within the tenant and
redirects to a local return_url. POST /account/register creates a user in an active tenant.
"""
import html
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from identity_server import rate_limit
from identity_server.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    EVENT_USER_REGISTERED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from identity_server.config import RATE_LIMIT_LOGIN_PER_MINUTE
from identity_server.database import get_db
from identity_server.errors import invalid_request
from identity_server.models import User
from identity_server.passwords import authenticate_user, find_user, hash_password
from identity_server.sessions import current_session, set_session_cookie
from identity_server.tenants import resolve_tenant_id, validate_tenant

logger = logging.getLogger(__name__)
router = APIRouter()


def current_principal(request: Request, db: Session) -> User | None:
    """User behind the login session cookie, or None if absent, invalid, or the user no longer exists."""
    session = current_session(request)
    if session is None:
        return None
    user = db.query(User).filter(User.id == session.user_id).first()
    if user is None or user.tenant_id != session.tenant_id:
        return None
    return user


def _safe_return_url(return_url: str | None) -> str:
    # Local paths only; "//host" is protocol-relative
    if not return_url or not return_url.startswith("/") or return_url.startswith("//"):
        return "/"
    return return_url


def _login_form(return_url: str, tenant_id: str, error: str | None = None, username: str = "", status_code: int = 200):
    def e(s: str | None) -> str:
        return html.escape(s or "")

    error_html = f'<p style="color:red;">{e(error)}</p>' if error else ""
    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Log in</title></head>
<body>
  <h1>Log in</h1>
  {error_html}
  <form method="post" action="/account/login">
    <input type="hidden" name="return_url" value="{e(return_url)}"/>
    <label>Tenant: <input type="text" name="tenant_id" value="{e(tenant_id)}" required/></label><br/>
    <label>Username: <input type="text" name="username" value="{e(username)}" required/></label><br/>
    <label>Password: <input type="password" name="password" required/></label><br/>
    <button type="submit">Log in</button>
  </form>
</body>
</html>"""
    return HTMLResponse(body, status_code=status_code)


def _form_tenant(request: Request, tenant_id: str | None) -> str | None:
    return (tenant_id or "").strip() or resolve_tenant_id(request)


@router.get("/account/login", response_class=HTMLResponse)
def login_form(request: Request, return_url: str | None = None, tenant_id: str | None = None):
    return _login_form(_safe_return_url(return_url), _form_tenant(request, tenant_id) or "")


@router.post("/account/login")
def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    return_url: str = Form("/"),
    tenant_id: str | None = Form(None),
    db: Session = Depends(get_db),
):
    rate_limit.enforce(request, "login", RATE_LIMIT_LOGIN_PER_MINUTE)
    return_url = _safe_return_url(return_url)
    tenant = _form_tenant(request, tenant_id)
    if not tenant or not validate_tenant(db, tenant):
        return _login_form(return_url, tenant or "", error="Unknown tenant.", username=username, status_code=400)

    user = authenticate_user(db, tenant, username, password)
    if user is None:
        log_audit(db, EVENT_LOGIN_FAIL, tenant_id=tenant, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
        return _login_form(return_url, tenant, error="Invalid username or password.", username=username, status_code=401)

    log_audit(db, EVENT_LOGIN_OK, tenant_id=tenant, user_id=user.id, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    response = RedirectResponse(url=return_url, status_code=302)
    set_session_cookie(response, user)
    return response


@router.post("/account/register", status_code=201)
def register(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    name: str | None = Form(None),
    email: str | None = Form(None),
    tenant_id: str | None = Form(None),
    db: Session = Depends(get_db),
):
    tenant = _form_tenant(request, tenant_id)
    if not tenant:
        raise invalid_request("Tenant ID is required")
    if not validate_tenant(db, tenant):
        raise invalid_request("Invalid tenant")
    username = username.strip()
    if not username or not password:
        raise invalid_request("username and password are required")
    if find_user(db, username, tenant) is not None:
        return JSONResponse(status_code=409, content={"error": "invalid_request", "error_description": "Username already exists"})

    user = User(tenant_id=tenant, username=username, password_hash=hash_password(password), name=name, email=email)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return JSONResponse(status_code=409, content={"error": "invalid_request", "error_description": "Username already exists"})
    log_audit(db, EVENT_USER_REGISTERED, tenant_id=tenant, user_id=user.id, ip=get_client_ip(request))
    logger.info("Registered user %s in tenant %s", username, tenant)
    return {"id": user.id, "username": user.username, "tenant_id": user.tenant_id}
