"""
In-memory server-side session store for the BFF.
Each session holds the token set for one browser; the browser only sees the opaque session id.
Sessions expire after SESSION_IDLE_SECONDS without access or SESSION_MAX_LIFETIME_SECONDS after creation.
"""
import dataclasses
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable

from bff.config import SESSION_IDLE_SECONDS, SESSION_MAX_LIFETIME_SECONDS


@dataclass
class BffSession:
    session_id: str
    user_id: str
    username: str
    tenant_id: str
    access_token: str
    access_token_expires_at: float
    created_at: float
    last_accessed_at: float
    refresh_token: str | None = None
    id_token: str | None = None
    email: str | None = None

    def access_token_expires_within(self, margin_seconds: int, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.access_token_expires_at - now <= margin_seconds


class SessionStore:
    def __init__(
        self,
        idle_seconds: int = SESSION_IDLE_SECONDS,
        max_lifetime_seconds: int = SESSION_MAX_LIFETIME_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.idle_seconds = idle_seconds
        self.max_lifetime_seconds = max_lifetime_seconds
        self._clock = clock
        self._sessions: dict[str, BffSession] = {}
        self._lock = threading.Lock()

    def _expired(self, session: BffSession, now: float) -> bool:
        return (
            now - session.last_accessed_at > self.idle_seconds
            or now - session.created_at > self.max_lifetime_seconds
        )

    def create(
        self,
        user_id: str,
        username: str,
        tenant_id: str,
        access_token: str,
        expires_in: int,
        refresh_token: str | None = None,
        id_token: str | None = None,
        email: str | None = None,
    ) -> BffSession:
        now = self._clock()
        session = BffSession(
            session_id=secrets.token_urlsafe(32),
            user_id=user_id,
            username=username,
            tenant_id=tenant_id,
            access_token=access_token,
            access_token_expires_at=now + expires_in,
            created_at=now,
            last_accessed_at=now,
            refresh_token=refresh_token,
            id_token=id_token,
            email=email,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return dataclasses.replace(session)

    def _live(self, session_id: str, now: float) -> BffSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._expired(session, now):
            del self._sessions[session_id]
            return None
        return session

    def get(self, session_id: str | None) -> BffSession | None:
        """Copy of the session, sliding its idle expiry. None if unknown or expired."""
        if not session_id:
            return None
        now = self._clock()
        with self._lock:
            session = self._live(session_id, now)
            if session is None:
                return None
            session.last_accessed_at = now
            return dataclasses.replace(session)

    def peek(self, session_id: str | None) -> BffSession | None:
        """Copy of the session without touching last_accessed_at."""
        if not session_id:
            return None
        with self._lock:
            session = self._live(session_id, self._clock())
            return dataclasses.replace(session) if session is not None else None

    def update(self, session: BffSession) -> bool:
        """Overwrite a live session with a modified copy. False if it was deleted or expired meanwhile."""
        with self._lock:
            if self._live(session.session_id, self._clock()) is None:
                return False
            self._sessions[session.session_id] = dataclasses.replace(session)
            return True

    def replace_tokens(
        self,
        session_id: str,
        expected_refresh_token: str | None,
        access_token: str,
        expires_in: int,
        refresh_token: str | None,
        id_token: str | None = None,
    ) -> bool:
        """
        Swap the token set only if the session still holds expected_refresh_token.
        False when the session is gone or another refresh replaced the tokens first.
        """
        now = self._clock()
        with self._lock:
            session = self._live(session_id, now)
            if session is None or session.refresh_token != expected_refresh_token:
                return False
            session.access_token = access_token
            session.access_token_expires_at = now + expires_in
            session.refresh_token = refresh_token
            if id_token:
                session.id_token = id_token
            return True

    def delete(self, session_id: str | None) -> BffSession | None:
        if not session_id:
            return None
        with self._lock:
            return self._sessions.pop(session_id, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)
