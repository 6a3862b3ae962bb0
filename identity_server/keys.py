"""
Signing key lifecycle: one current RSA key per ring (tenant or "default") for new signatures, plus every
key whose expires_at + grace period has not elapsed for verification (JWKS).

Publishing a new current key is a compare-and-set on the ring's versioned pointer row: only one writer
wins a race; losers read back the winner's key. Key generation happens outside any transaction.
Private key material is never logged and never leaves this module except as a signing key object.
"""
import base64
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers, generate_private_key
from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from identity_server.config import (
    KEY_BITS,
    KEY_CACHE_SECONDS,
    KEY_GRACE_DAYS,
    KEY_LIFETIME_DAYS,
    KEYS_PER_TENANT,
)
from identity_server.errors import KeyManagementError
from identity_server.models import CurrentSigningKey, SigningKey, Tenant, as_utc

logger = logging.getLogger(__name__)

DEFAULT_RING = "default"


def _generate_key(bits: int):
    return generate_private_key(65537, bits, default_backend())


def _serialize_private(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _deserialize_private(pem: str):
    return serialization.load_pem_private_key(pem.encode("ascii"), password=None, backend=default_backend())


def _b64_int(value: int) -> str:
    return base64.urlsafe_b64encode(value.to_bytes((value.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")


def _int_b64(value: str) -> int:
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), "big")


@dataclass(frozen=True)
class SigningKeyMaterial:
    """Current key for new signatures."""
    key_id: str
    ring: str
    private_key: object = field(repr=False)
    created_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class VerificationKey:
    """Public half of a key in the validation set."""
    key_id: str
    ring: str
    n: str
    e: str
    created_at: datetime
    expires_at: datetime

    def public_key(self):
        return RSAPublicNumbers(_int_b64(self.e), _int_b64(self.n)).public_key(default_backend())

    def to_jwk(self) -> dict:
        return {
            "kty": "RSA",
            "kid": self.key_id,
            "alg": "RS256",
            "use": "sig",
            "n": self.n,
            "e": self.e,
        }


def _verification_key(row: SigningKey) -> VerificationKey:
    return VerificationKey(
        key_id=row.key_id,
        ring=row.ring,
        n=row.n,
        e=row.e,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
    )


class SigningKeyManager:
    def __init__(
        self,
        lifetime: timedelta = timedelta(days=KEY_LIFETIME_DAYS),
        grace: timedelta = timedelta(days=KEY_GRACE_DAYS),
        cache_seconds: int = KEY_CACHE_SECONDS,
        key_bits: int = KEY_BITS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.lifetime = lifetime
        self.grace = grace
        self.cache_seconds = cache_seconds
        self.key_bits = key_bits
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: dict[str, tuple[SigningKeyMaterial, float]] = {}
        self._lock = threading.Lock()

    # --- ring selection ---

    def ring_for_tenant(self, db: Session, tenant_id: str | None) -> str:
        if not KEYS_PER_TENANT or not tenant_id:
            return DEFAULT_RING
        tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if tenant is None:
            return DEFAULT_RING
        return tenant.signing_key_id or tenant.id

    # --- cache ---

    def _cached(self, ring: str) -> SigningKeyMaterial | None:
        with self._lock:
            hit = self._cache.get(ring)
        if hit is None:
            return None
        material, valid_until = hit
        if valid_until < time.monotonic() or material.expires_at <= self._clock():
            return None
        return material

    def _remember(self, material: SigningKeyMaterial) -> None:
        if self.cache_seconds <= 0:
            return
        with self._lock:
            self._cache[material.ring] = (material, time.monotonic() + self.cache_seconds)

    def clear_cache(self, ring: str | None = None) -> None:
        with self._lock:
            if ring is None:
                self._cache.clear()
            else:
                self._cache.pop(ring, None)

    # --- current key ---

    def _read_pointer(self, db: Session, ring: str) -> tuple[CurrentSigningKey | None, SigningKey | None]:
        pointer = db.query(CurrentSigningKey).filter(CurrentSigningKey.ring == ring).first()
        if pointer is None:
            return None, None
        row = db.query(SigningKey).filter(SigningKey.key_id == pointer.key_id).first()
        return pointer, row

    def _usable(self, row: SigningKey | None) -> bool:
        return row is not None and row.purged_at is None and as_utc(row.expires_at) > self._clock()

    def _material(self, row: SigningKey) -> SigningKeyMaterial:
        try:
            private_key = _deserialize_private(row.private_pem)
        except (ValueError, TypeError) as e:
            raise KeyManagementError(f"Signing key {row.key_id} could not be loaded") from e
        return SigningKeyMaterial(
            key_id=row.key_id,
            ring=row.ring,
            private_key=private_key,
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
        )

    def current_signing_key(self, db: Session, ring: str = DEFAULT_RING) -> SigningKeyMaterial:
        """Current key for ring; generates and publishes one if none exists or it expired."""
        cached = self._cached(ring)
        if cached is not None:
            return cached
        try:
            pointer, row = self._read_pointer(db, ring)
        except SQLAlchemyError as e:
            raise KeyManagementError(f"Could not read current signing key for ring {ring}") from e
        if self._usable(row):
            material = self._material(row)
            self._remember(material)
            return material
        if row is not None:
            logger.info("Signing key kid=%s for ring %s expired or purged; publishing a new key", row.key_id, ring)
        return self._publish_new_key(db, ring, pointer.version if pointer is not None else None)

    def rotate(self, db: Session, ring: str = DEFAULT_RING) -> SigningKeyMaterial:
        """Force a new current key without waiting for expiry. The previous key stays in the validation set."""
        try:
            pointer, _ = self._read_pointer(db, ring)
        except SQLAlchemyError as e:
            raise KeyManagementError(f"Could not read current signing key for ring {ring}") from e
        self.clear_cache(ring)
        return self._publish_new_key(db, ring, pointer.version if pointer is not None else None)

    def _publish_new_key(self, db: Session, ring: str, expected_version: int | None) -> SigningKeyMaterial:
        private_key = _generate_key(self.key_bits)
        numbers = private_key.public_key().public_numbers()
        now = self._clock()
        row = SigningKey(
            key_id=uuid.uuid4().hex,
            ring=ring,
            private_pem=_serialize_private(private_key),
            n=_b64_int(numbers.n),
            e=_b64_int(numbers.e),
            created_at=now,
            expires_at=now + self.lifetime,
        )
        try:
            db.add(row)
            db.flush()
            if expected_version is None:
                db.add(CurrentSigningKey(ring=ring, key_id=row.key_id, version=1))
                db.flush()
            else:
                result = db.execute(
                    update(CurrentSigningKey)
                    .where(CurrentSigningKey.ring == ring, CurrentSigningKey.version == expected_version)
                    .values(key_id=row.key_id, version=expected_version + 1)
                )
                if result.rowcount != 1:
                    db.rollback()
                    return self._read_winner(db, ring)
            db.commit()
        except IntegrityError:
            db.rollback()
            return self._read_winner(db, ring)
        except SQLAlchemyError as e:
            db.rollback()
            raise KeyManagementError(f"Could not persist new signing key for ring {ring}") from e

        logger.info("Published signing key kid=%s for ring %s (expires %s)", row.key_id, ring, row.expires_at.isoformat())
        material = SigningKeyMaterial(
            key_id=row.key_id,
            ring=ring,
            private_key=private_key,
            created_at=now,
            expires_at=now + self.lifetime,
        )
        self._remember(material)
        return material

    def _read_winner(self, db: Session, ring: str) -> SigningKeyMaterial:
        logger.info("Lost signing key publication race for ring %s; using the winner's key", ring)
        try:
            _, row = self._read_pointer(db, ring)
        except SQLAlchemyError as e:
            raise KeyManagementError(f"Could not read current signing key for ring {ring}") from e
        if not self._usable(row):
            raise KeyManagementError(f"No usable signing key for ring {ring} after publication race")
        material = self._material(row)
        self._remember(material)
        return material

    # --- validation set ---

    def validation_keys(self, db: Session, ring: str = DEFAULT_RING) -> list[VerificationKey]:
        """Current key plus every key whose expires_at + grace has not elapsed. Newest first."""
        self.current_signing_key(db, ring)
        cutoff = self._clock() - self.grace
        try:
            rows = (
                db.query(SigningKey)
                .filter(
                    SigningKey.ring == ring,
                    SigningKey.purged_at.is_(None),
                    SigningKey.expires_at > cutoff,
                )
                .order_by(SigningKey.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            raise KeyManagementError(f"Could not load validation keys for ring {ring}") from e
        return [_verification_key(r) for r in rows]

    def find_verification_key(self, db: Session, ring: str, kid: str) -> VerificationKey | None:
        for key in self.validation_keys(db, ring):
            if key.key_id == kid:
                return key
        return None

    def jwks(self, db: Session, ring: str = DEFAULT_RING) -> dict:
        return {"keys": [k.to_jwk() for k in self.validation_keys(db, ring)]}

    def known_rings(self, db: Session) -> list[str]:
        return [p.ring for p in db.query(CurrentSigningKey).all()]

    # --- purge ---

    def purge(self, db: Session, key_id: str, force: bool = False) -> bool:
        """
        Remove a key from the validation set. Without force the grace period must have elapsed;
        force is for compromised keys. The current key cannot be purged (rotate first).
        Returns False if the key is unknown or already purged.
        """
        row = db.query(SigningKey).filter(SigningKey.key_id == key_id).first()
        if row is None or row.purged_at is not None:
            return False
        if db.query(CurrentSigningKey).filter(CurrentSigningKey.key_id == key_id).first() is not None:
            raise ValueError("Cannot purge the current signing key; rotate first")
        now = self._clock()
        if not force and as_utc(row.expires_at) + self.grace > now:
            raise ValueError("Signing key is still within its grace period")
        row.purged_at = now
        row.private_pem = ""
        db.commit()
        logger.warning("Purged signing key kid=%s from ring %s (force=%s)", key_id, row.ring, force)
        return True

    def purge_expired(self, db: Session) -> int:
        """Delete keys past grace (and manually purged keys) that are not current."""
        cutoff = self._clock() - self.grace
        current_ids = [p.key_id for p in db.query(CurrentSigningKey).all()]
        stmt = delete(SigningKey).where(
            or_(SigningKey.expires_at <= cutoff, SigningKey.purged_at.is_not(None))
        )
        if current_ids:
            stmt = stmt.where(SigningKey.key_id.not_in(current_ids))
        result = db.execute(stmt)
        db.commit()
        if result.rowcount:
            logger.info("Deleted %d signing key(s) past grace period", result.rowcount)
        return result.rowcount or 0


# Module-level manager shared by the app (cache is per process; state lives in the DB)
key_manager = SigningKeyManager()
