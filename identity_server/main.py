"""
Identity Server: multi-tenant OAuth 2.0 / OpenID Connect authorization server.
Port 9000.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from identity_server.admin import require_admin
from identity_server.admin import router as admin_router
from identity_server.audit import router as audit_router
from identity_server.authorize import router as authorize_router
from identity_server.config import KEY_ROTATION_CHECK_SECONDS
from identity_server.database import SessionLocal, init_db
from identity_server.errors import register_exception_handlers
from identity_server.login import router as login_router
from identity_server.logout import router as logout_router
from identity_server.resource import router as resource_router
from identity_server.revoke import router as revoke_router
from identity_server.rotation import KeyRotationWorker
from identity_server.seed import seed_from_env
from identity_server.token_endpoint import router as token_router
from identity_server.userinfo import router as userinfo_router
from identity_server.well_known import router as well_known_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, seed tenant/user/client from env, start the key rotation check."""
    init_db()
    db = SessionLocal()
    try:
        seed_from_env(db)
    finally:
        db.close()
    worker = None
    if KEY_ROTATION_CHECK_SECONDS > 0:
        worker = KeyRotationWorker(KEY_ROTATION_CHECK_SECONDS)
        worker.start()
    yield
    if worker is not None:
        await worker.stop()


app = FastAPI(title="Identity Server", version="1.0.0", lifespan=lifespan)
register_exception_handlers(app)
app.include_router(login_router, tags=["account"])
app.include_router(authorize_router, tags=["authorize"])
app.include_router(token_router, tags=["token"])
app.include_router(revoke_router, tags=["revoke"])
app.include_router(logout_router, tags=["logout"])
app.include_router(userinfo_router, tags=["userinfo"])
app.include_router(well_known_router, tags=["well-known"])
app.include_router(resource_router, tags=["resource"])
app.include_router(audit_router, dependencies=[Depends(require_admin)])
app.include_router(admin_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "identity_server"}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "identity_server.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
