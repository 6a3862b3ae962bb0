"""
Backend-for-Frontend. Holds tokens server-side behind an opaque session cookie.
POST /bff/login, POST /bff/logout, GET /bff/user, GET /bff/auth/check. Port 8000.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Form, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from bff.config import COOKIE_NAME, COOKIE_SECURE, DEFAULT_TENANT_ID, SESSION_MAX_LIFETIME_SECONDS
from bff.session_manager import SessionManager, TokenEndpointError
from bff.session_store import BffSession, SessionStore

logger = logging.getLogger(__name__)

_manager = SessionManager(SessionStore())


def get_session_manager() -> SessionManager:
    return _manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    _manager.close()


app = FastAPI(title="BFF", version="1.0.0", lifespan=lifespan)


def _set_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        COOKIE_NAME,
        session_id,
        max_age=SESSION_MAX_LIFETIME_SECONDS,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="strict",
    )


def _user_body(session: BffSession) -> dict:
    return {
        "user_id": session.user_id,
        "username": session.username,
        "email": session.email,
        "tenant_id": session.tenant_id,
    }


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "bff"}


@app.post("/bff/login")
def login(
    response: Response,
    username: str = Form(...),
    password: str = Form(...),
    tenant_id: str | None = Form(None),
    manager: SessionManager = Depends(get_session_manager),
):
    try:
        session = manager.login(username, password, tenant_id or DEFAULT_TENANT_ID)
    except TokenEndpointError as e:
        logger.error("Login failed: %s", e)
        raise HTTPException(status_code=502, detail="Identity server unavailable")
    if session is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    _set_cookie(response, session.session_id)
    return {"authenticated": True, **_user_body(session)}


@app.post("/bff/logout")
def logout(request: Request, response: Response, manager: SessionManager = Depends(get_session_manager)):
    manager.logout(request.cookies.get(COOKIE_NAME))
    response.delete_cookie(COOKIE_NAME)
    return {"authenticated": False}


def _access_token_expired(manager: SessionManager, session_id: str) -> bool:
    current = manager.store.peek(session_id)
    return current is None or current.access_token_expires_within(0)


@app.get("/bff/user")
def user(request: Request, manager: SessionManager = Depends(get_session_manager)):
    """Current user; refreshes tokens near expiry and ends the session once the access token has expired."""
    session_id = request.cookies.get(COOKIE_NAME)
    session = manager.store.get(session_id)
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if not manager.refresh_tokens(session_id) and _access_token_expired(manager, session_id):
        manager.store.delete(session_id)
        expired = JSONResponse(status_code=401, content={"detail": "Session expired"})
        expired.delete_cookie(COOKIE_NAME)
        return expired
    return _user_body(session)


@app.get("/bff/auth/check")
def auth_check(request: Request, manager: SessionManager = Depends(get_session_manager)):
    session = manager.store.get(request.cookies.get(COOKIE_NAME))
    return {"authenticated": session is not None}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "bff.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
