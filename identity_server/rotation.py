"""
Background signing-key rotation check.

KeyRotationWorker runs run_once() on a fixed interval as an asyncio task: every known ring gets a usable current
key (expired keys are replaced), keys past their grace period are deleted, and expired refresh token records and
revocation markers are garbage-collected. Failures are logged and retried on the next tick.
"""
import asyncio
import contextlib
import logging

from identity_server.database import SessionLocal
from identity_server.keys import SigningKeyManager, key_manager
from identity_server.token_store import RefreshTokenStore

logger = logging.getLogger(__name__)


class KeyRotationWorker:
    def __init__(self, interval_seconds: int, manager: SigningKeyManager = key_manager, session_factory=SessionLocal):
        self.interval_seconds = interval_seconds
        self.manager = manager
        self.session_factory = session_factory
        self._task: asyncio.Task | None = None

    def run_once(self) -> dict:
        db = self.session_factory()
        try:
            rings = self.manager.known_rings(db)
            for ring in rings:
                self.manager.current_signing_key(db, ring)
            keys_deleted = self.manager.purge_expired(db)
            records, markers = RefreshTokenStore(db).purge_expired()
        finally:
            db.close()
        return {"rings": len(rings), "keys_deleted": keys_deleted, "records_deleted": records, "markers_deleted": markers}

    async def _run(self) -> None:
        while True:
            try:
                summary = await asyncio.to_thread(self.run_once)
                logger.debug("Key rotation check: %s", summary)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Key rotation check failed; retrying in %ss", self.interval_seconds)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info("Key rotation worker started (interval=%ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Key rotation worker stopped")
