"""Tests for the operator key endpoints and the background rotation worker."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import jwt
import pytest

from identity_server import admin
from identity_server.database import SessionLocal
from identity_server.keys import key_manager
from identity_server.models import RevocationMarker, SigningKey
from identity_server.rotation import KeyRotationWorker

ADMIN = {"X-Admin-Token": "ops-token"}


@pytest.fixture
def admin_enabled(monkeypatch):
    monkeypatch.setattr(admin, "ADMIN_TOKEN", "ops-token")


def test_admin_disabled_without_token(client, seeded):
    assert client.post("/admin/keys/rotate", headers=ADMIN).status_code == 404


def test_admin_requires_matching_token(client, seeded, admin_enabled):
    assert client.post("/admin/keys/rotate").status_code == 403
    assert client.post("/admin/keys/rotate", headers={"X-Admin-Token": "guess"}).status_code == 403


def test_forced_rotation_keeps_old_tokens_valid(flow, db, admin_enabled):
    body = flow.sign_in()
    old_kid = jwt.get_unverified_header(body["access_token"])["kid"]

    r = flow.client.post("/admin/keys/rotate", params={"tenant_id": "t1"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["ring"] == "t1"
    new_kid = r.json()["kid"]
    assert new_kid != old_kid

    # New tokens carry the new kid; the old access token still verifies through userinfo
    refreshed = flow.refresh(body["refresh_token"]).json()
    assert jwt.get_unverified_header(refreshed["access_token"])["kid"] == new_kid
    r = flow.client.get("/userinfo", headers={"Authorization": f"Bearer {body['access_token']}", "X-Tenant-ID": "t1"})
    assert r.status_code == 200


def test_rotation_for_unknown_tenant(client, seeded, admin_enabled):
    r = client.post("/admin/keys/rotate", params={"tenant_id": "t3"}, headers=ADMIN)
    assert r.status_code == 400


def test_purge_compromised_key(flow, admin_enabled):
    body = flow.sign_in()
    old_kid = jwt.get_unverified_header(body["access_token"])["kid"]

    # The current key cannot be purged
    assert flow.client.post(f"/admin/keys/{old_kid}/purge", headers=ADMIN).status_code == 409

    flow.client.post("/admin/keys/rotate", params={"tenant_id": "t1"}, headers=ADMIN)
    # Still inside its lifetime: needs force
    assert flow.client.post(f"/admin/keys/{old_kid}/purge", headers=ADMIN).status_code == 409
    r = flow.client.post(f"/admin/keys/{old_kid}/purge", params={"force": "true"}, headers=ADMIN)
    assert r.json() == {"kid": old_kid, "purged": True, "force": True}

    keys = flow.client.get("/.well-known/jwks.json", headers={"X-Tenant-ID": "t1"}).json()["keys"]
    assert old_kid not in [k["kid"] for k in keys]
    r = flow.client.get("/userinfo", headers={"Authorization": f"Bearer {body['access_token']}", "X-Tenant-ID": "t1"})
    assert r.status_code == 401

    assert flow.client.post(f"/admin/keys/{old_kid}/purge", params={"force": "true"}, headers=ADMIN).status_code == 404


def test_audit_listing_requires_admin(client, seeded, admin_enabled):
    assert client.get("/audit").status_code == 403
    assert client.get("/audit", headers=ADMIN).status_code == 200


# --- worker ---


def test_run_once_maintains_rings_and_purges(db):
    key_manager.current_signing_key(db, "ring-a")
    key_manager.current_signing_key(db, "ring-b")
    past = datetime.now(timezone.utc) - timedelta(days=1)
    db.add(RevocationMarker(token_id="gone", revoked_at=past, expires_at=past))
    db.commit()

    summary = KeyRotationWorker(60).run_once()
    assert summary == {"rings": 2, "keys_deleted": 0, "records_deleted": 0, "markers_deleted": 1}
    db.expire_all()
    assert db.query(SigningKey).count() == 2
    assert db.query(RevocationMarker).count() == 0


def test_worker_runs_until_stopped():
    manager = MagicMock()
    manager.known_rings.return_value = ["ring-a"]
    manager.purge_expired.return_value = 0

    async def scenario():
        worker = KeyRotationWorker(3600, manager=manager, session_factory=SessionLocal)
        worker.start()
        for _ in range(100):
            if manager.current_signing_key.called:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        return worker

    worker = asyncio.run(scenario())
    manager.current_signing_key.assert_called_once()
    assert worker._task is None


def test_worker_survives_failures():
    manager = MagicMock()
    manager.known_rings.side_effect = RuntimeError("database is down")

    async def scenario():
        worker = KeyRotationWorker(0.01, manager=manager, session_factory=SessionLocal)
        worker.start()
        for _ in range(200):
            if manager.known_rings.call_count >= 3:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

    asyncio.run(scenario())
    assert manager.known_rings.call_count >= 3
