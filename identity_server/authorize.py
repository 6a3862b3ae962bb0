"""
Authorization endpoint (GET/POST /authorize), authorization code flow.

Errors detected before client_id and redirect_uri are validated are returned as JSON; once the redirect URI is
trusted, errors are redirected to it (RFC 6749 §4.1.2.1). An unauthenticated user is redirected to the login
form and comes back here afterwards.
"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from identity_server.audit import EVENT_CODE_ISSUED, get_client_ip, log_audit
from identity_server.claims import build_user_principal, normalize_scope
from identity_server.client_auth import find_client
from identity_server.database import get_db
from identity_server.errors import UNAUTHORIZED_CLIENT, OAuthError, invalid_request
from identity_server.grants import create_code, find_or_create_permanent_grant
from identity_server.login import current_principal
from identity_server.tenants import resolve_tenant_id, validate_tenant

logger = logging.getLogger(__name__)
router = APIRouter()


def _append_query(url: str, params: dict) -> str:
    return f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"


def _redirect_error(redirect_uri: str, error: str, error_description: str, state: str | None) -> RedirectResponse:
    params = {"error": error, "error_description": error_description}
    if state:
        params["state"] = state
    return RedirectResponse(url=_append_query(redirect_uri, params), status_code=302)


def _login_redirect(params: dict, tenant_id: str) -> RedirectResponse:
    return_url = "/authorize?" + urlencode({k: v for k, v in params.items() if v})
    return RedirectResponse(
        url="/account/login?" + urlencode({"return_url": return_url, "tenant_id": tenant_id}),
        status_code=302,
    )


def _authorize(request: Request, db: Session, params: dict):
    client_id = params.get("client_id")
    redirect_uri = params.get("redirect_uri")
    state = params.get("state")

    # 1. Tenant; fail closed
    tenant_id = resolve_tenant_id(request)
    if not tenant_id:
        raise invalid_request("Tenant ID is required")
    if not validate_tenant(db, tenant_id):
        raise invalid_request("Invalid tenant")

    if not client_id or not redirect_uri:
        raise invalid_request("client_id and redirect_uri are required")
    client = find_client(db, client_id)
    if client is None or not client.allowed_for_tenant(tenant_id):
        raise invalid_request("Unknown client_id")
    if not client.redirect_uri_allowed(redirect_uri):
        raise invalid_request("redirect_uri not allowed")
    if not client.allows_grant("authorization_code"):
        raise OAuthError(UNAUTHORIZED_CLIENT, "Client may not use the authorization code flow")

    # redirect_uri is trusted from here on
    if params.get("response_type") != "code":
        return _redirect_error(redirect_uri, "unsupported_response_type", "response_type must be 'code'", state)

    # 2. Authentication happens at the login form
    user = current_principal(request, db)
    if user is None:
        return _login_redirect(params, tenant_id)

    # 3. The principal must belong to the resolved tenant
    if user.tenant_id != tenant_id:
        logger.warning("User %s of tenant %s attempted authorization in tenant %s", user.id, user.tenant_id, tenant_id)
        raise invalid_request("Authenticated user does not belong to this tenant")

    ok, scope = normalize_scope(params.get("scope"))
    if not ok:
        return _redirect_error(redirect_uri, "invalid_scope", scope, state)

    code_challenge = params.get("code_challenge")
    code_challenge_method = params.get("code_challenge_method")
    if code_challenge and code_challenge_method != "S256":
        return _redirect_error(redirect_uri, "invalid_request", "code_challenge_method must be S256", state)
    if not code_challenge and not client.is_confidential:
        return _redirect_error(redirect_uri, "invalid_request", "code_challenge is required for public clients", state)

    # 4. Permanent grant for (subject, client, scopes)
    scopes = scope.split()
    grant = find_or_create_permanent_grant(db, user.id, client.client_id, tenant_id, scopes)

    # 5-6. Outgoing principal; claim destinations are applied when tokens are minted from the code
    principal = build_user_principal(user, tenant_id, scopes)

    # 7. Code
    code = create_code(
        db,
        grant,
        redirect_uri=redirect_uri,
        scope=principal.scope,
        resources=principal.resources,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=params.get("nonce"),
    )
    log_audit(
        db,
        EVENT_CODE_ISSUED,
        tenant_id=tenant_id,
        client_id=client.client_id,
        user_id=user.id,
        ip=get_client_ip(request),
    )
    redirect_params = {"code": code.code}
    if state:
        redirect_params["state"] = state
    return RedirectResponse(url=_append_query(redirect_uri, redirect_params), status_code=302)


@router.get("/authorize")
def authorize_get(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    nonce: str | None = None,
    db: Session = Depends(get_db),
):
    return _authorize(
        request,
        db,
        {
            "response_type": response_type,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": code_challenge_method,
            "nonce": nonce,
        },
    )


@router.post("/authorize")
def authorize_post(
    request: Request,
    response_type: str | None = Form(None),
    client_id: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    scope: str | None = Form(None),
    state: str | None = Form(None),
    code_challenge: str | None = Form(None),
    code_challenge_method: str | None = Form(None),
    nonce: str | None = Form(None),
    db: Session = Depends(get_db),
):
    return _authorize(
        request,
        db,
        {
            "response_type": response_type,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": code_challenge_method,
            "nonce": nonce,
        },
    )
