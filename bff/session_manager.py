"""
BFF session manager: signs users in with the password grant, refreshes tokens through the Identity Server's
token endpoint, and revokes the refresh token on logout.

refresh_tokens never raises and never treats a timeout as revocation: any failure returns False and leaves the
session as it was, and the caller decides to end the session.
"""
import logging

import httpx
import jwt

from bff.config import (
    CLIENT_ID,
    CLIENT_SECRET,
    DEFAULT_SCOPE,
    HTTP_TIMEOUT,
    REFRESH_MARGIN_SECONDS,
    REVOCATION_ENDPOINT,
    TOKEN_ENDPOINT,
)
from bff.session_store import BffSession, SessionStore

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


class TokenEndpointError(Exception):
    """The Identity Server could not be reached or answered with something other than a token response."""


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        http_client: httpx.Client | None = None,
        token_endpoint: str = TOKEN_ENDPOINT,
        revocation_endpoint: str = REVOCATION_ENDPOINT,
        client_id: str = CLIENT_ID,
        client_secret: str | None = CLIENT_SECRET,
        refresh_margin_seconds: int = REFRESH_MARGIN_SECONDS,
    ):
        self.store = store
        self.http = http_client or httpx.Client(timeout=HTTP_TIMEOUT)
        self.token_endpoint = token_endpoint
        self.revocation_endpoint = revocation_endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_margin_seconds = refresh_margin_seconds

    def close(self) -> None:
        self.http.close()

    def _post(self, url: str, data: dict, tenant_id: str) -> httpx.Response:
        form = {"client_id": self.client_id, **data}
        if self.client_secret:
            form["client_secret"] = self.client_secret
        return self.http.post(url, data=form, headers={"Accept": "application/json", TENANT_HEADER: tenant_id})

    def login(self, username: str, password: str, tenant_id: str, scope: str = DEFAULT_SCOPE) -> BffSession | None:
        """
        Password grant. Returns the new session, or None when the credentials are rejected.
        Raises TokenEndpointError when the Identity Server is unreachable or misbehaves.
        """
        try:
            r = self._post(
                self.token_endpoint,
                {"grant_type": "password", "username": username, "password": password, "scope": scope},
                tenant_id,
            )
        except httpx.HTTPError as e:
            raise TokenEndpointError(f"token endpoint unreachable: {e}") from e
        if r.status_code in (400, 401):
            logger.info("Login rejected for %s in tenant %s (status=%s)", username, tenant_id, r.status_code)
            return None
        if r.status_code != 200:
            raise TokenEndpointError(f"token endpoint returned {r.status_code}")
        try:
            data = r.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 0))
            claims = jwt.decode(access_token, options={"verify_signature": False})
        except (ValueError, KeyError, TypeError, jwt.InvalidTokenError) as e:
            raise TokenEndpointError("malformed token response") from e
        if claims.get("tenant_id") != tenant_id:
            raise TokenEndpointError("token issued for another tenant")

        # Abandoned sessions are swept on login
        self.store.purge_expired()
        session = self.store.create(
            user_id=claims.get("sub", ""),
            username=claims.get("preferred_username") or username,
            tenant_id=tenant_id,
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            email=claims.get("email"),
        )
        logger.info("BFF session created for user %s (tenant %s)", session.user_id, tenant_id)
        return session

    def refresh_tokens(self, session_id: str) -> bool:
        """
        Refresh when the access token is within the margin of expiry and a refresh token is held.
        True when the session holds a usable access token afterwards.
        """
        session = self.store.peek(session_id)
        if session is None:
            return False
        if not session.access_token_expires_within(self.refresh_margin_seconds):
            return True
        if not session.refresh_token:
            return False

        try:
            r = self._post(
                self.token_endpoint,
                {"grant_type": "refresh_token", "refresh_token": session.refresh_token},
                session.tenant_id,
            )
        except httpx.TimeoutException:
            logger.warning("Token refresh timed out for session of user %s", session.user_id)
            return False
        except httpx.HTTPError as e:
            logger.warning("Token refresh failed for session of user %s: %s", session.user_id, e)
            return False
        if r.status_code != 200:
            logger.info("Token refresh rejected for user %s (status=%s)", session.user_id, r.status_code)
            return False
        try:
            data = r.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 0))
        except (ValueError, KeyError, TypeError):
            logger.warning("Malformed refresh response for user %s", session.user_id)
            return False

        replaced = self.store.replace_tokens(
            session_id,
            expected_refresh_token=session.refresh_token,
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=data.get("refresh_token") or session.refresh_token,
            id_token=data.get("id_token"),
        )
        if replaced:
            return True
        # Another request refreshed first; its tokens count if they are fresh
        current = self.store.peek(session_id)
        if current is None:
            return False
        logger.info("Session of user %s changed during refresh; keeping the stored tokens", session.user_id)
        return not current.access_token_expires_within(self.refresh_margin_seconds)

    def logout(self, session_id: str | None) -> bool:
        """Delete the session and revoke its refresh token (best effort). False if there was no session."""
        session = self.store.delete(session_id)
        if session is None:
            return False
        if session.refresh_token:
            try:
                r = self._post(
                    self.revocation_endpoint,
                    {"token": session.refresh_token, "token_type_hint": "refresh_token"},
                    session.tenant_id,
                )
                if r.status_code != 200:
                    logger.warning("Refresh token revocation returned %s for user %s", r.status_code, session.user_id)
            except httpx.HTTPError as e:
                logger.warning("Refresh token revocation failed for user %s: %s", session.user_id, e)
        logger.info("BFF session ended for user %s", session.user_id)
        return True
