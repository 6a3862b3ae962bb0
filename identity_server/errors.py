"""
OAuth2 error responses and internal error types.

Protocol and authorization errors are raised as OAuthError and rendered as the flat RFC 6749 §5.2 body
{"error": ..., "error_description": ...}. Store and key failures are raised as StoreUnavailableError /
KeyManagementError, and raw database errors arrive as SQLAlchemy DBAPIError; all of them surface to clients
as temporarily_unavailable and are never treated as success.
"""
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

logger = logging.getLogger(__name__)

INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
INVALID_SCOPE = "invalid_scope"
UNAUTHORIZED_CLIENT = "unauthorized_client"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
SERVER_ERROR = "server_error"


class OAuthError(HTTPException):
    def __init__(self, error: str, description: str | None = None, status_code: int = 400, headers: dict | None = None):
        detail = {"error": error}
        if description:
            detail["error_description"] = description
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error = error
        self.description = description


def invalid_request(description: str) -> OAuthError:
    return OAuthError(INVALID_REQUEST, description)


def invalid_grant(description: str) -> OAuthError:
    return OAuthError(INVALID_GRANT, description)


def invalid_client(description: str) -> OAuthError:
    return OAuthError(INVALID_CLIENT, description, status_code=401)


def temporarily_unavailable(description: str = "Service temporarily unavailable, retry later") -> OAuthError:
    return OAuthError(TEMPORARILY_UNAVAILABLE, description, status_code=503, headers={"Retry-After": "1"})


class StoreUnavailableError(Exception):
    """The backing store could not be reached or failed mid-operation."""


class KeyManagementError(Exception):
    """A signing key could not be generated, persisted or loaded."""


class TokenAlreadyRotatedError(Exception):
    """A concurrent request rotated or revoked the refresh token first."""


class CodeReplayError(Exception):
    """An authorization code was presented after it had already been redeemed."""

    def __init__(self, grant_id: str):
        super().__init__(grant_id)
        self.grant_id = grant_id


def register_exception_handlers(app: FastAPI) -> None:
    """Render OAuthError as a flat JSON body; map infrastructure errors to temporarily_unavailable."""

    @app.exception_handler(OAuthError)
    async def handle_oauth_error(request: Request, exc: OAuthError):
        headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
        if exc.headers:
            headers.update(exc.headers)
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=headers)

    @app.exception_handler(StoreUnavailableError)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
        err = temporarily_unavailable()
        return JSONResponse(status_code=err.status_code, content=err.detail, headers=err.headers)

    @app.exception_handler(KeyManagementError)
    async def handle_key_error(request: Request, exc: KeyManagementError):
        logger.error("Signing key unavailable on %s %s: %s", request.method, request.url.path, exc)
        err = temporarily_unavailable("Signing key unavailable, retry later")
        return JSONResponse(status_code=err.status_code, content=err.detail, headers=err.headers)

    @app.exception_handler(DBAPIError)
    async def handle_database_error(request: Request, exc: DBAPIError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc.orig)
        err = temporarily_unavailable()
        return JSONResponse(status_code=err.status_code, content=err.detail, headers=err.headers)
