"""Key lifecycle management.

Rotation, revocation, deferred deletion of retired keys, expiry, and
password-protected export/import.

Deferred deletion is a durable record (``PendingDeletion``) in the key
store, swept by the rotation scheduler. With the in-memory store, pending
deletions are lost on restart; rotated keys then stay until a new
deletion is scheduled for them.
"""

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from cryptography.exceptions import InvalidTag
from pydantic import BaseModel, ConfigDict, Field

from orgkeys.core.audit import AuditAction, AuditRecorder
from orgkeys.core.envelope_cipher import NONCE_SIZE, open_sealed, seal
from orgkeys.core.errors import (
    ImportDecryptionError,
    KeyManagementError,
    KeyNotFoundError,
    KeyUnavailableError,
    NoActiveKeyError,
)
from orgkeys.core.kdf_engine import KDFEngine
from orgkeys.core.key_factory import Clock, KeyFactory
from orgkeys.core.key_store import KeyStore
from orgkeys.core.logging import get_logger
from orgkeys.models import (
    KEY_LENGTH,
    SUPPORTED_ALGORITHMS,
    KeyPurpose,
    KeyRecord,
    KeyStatus,
    PendingDeletion,
    utcnow,
)

logger = get_logger(__name__)

EXPORT_ALGORITHM = "aes-256-gcm"
EXPORT_KDF = "pbkdf2-sha256"
EXPORT_SALT_SIZE = 32
MAX_EXPORT_ITERATIONS = 10_000_000


@dataclass
class ExportedKey:
    """A password-wrapped key backup."""
    wrapped_key: str  # base64 ciphertext
    export_metadata: dict[str, Any]


class ExportMetadata(BaseModel):
    """Unwrapping parameters that travel next to an exported key."""
    model_config = ConfigDict(extra="ignore")

    salt: str
    iv: str
    auth_tag: str
    algorithm: str = EXPORT_ALGORITHM
    kdf: str = EXPORT_KDF
    iterations: int = Field(default=100_000, ge=1, le=MAX_EXPORT_ITERATIONS)
    exported_at: str | None = None
    key_id: str | None = None


class ExportedKeyPayload(BaseModel):
    """Canonical serialized form of a key inside an export."""
    model_config = ConfigDict(extra="forbid")

    key_id: str
    organization_id: str
    algorithm: str
    key_version: int = Field(ge=1)
    key_material: str  # base64
    purpose: KeyPurpose
    created_at: datetime
    expires_at: datetime | None = None
    derived_from: str | None = None


class KeyLifecycleManager:
    """Rotates, revokes, deletes, expires, exports and imports keys."""

    def __init__(
        self,
        store: KeyStore,
        factory: KeyFactory,
        audit: AuditRecorder,
        kdf: KDFEngine | None = None,
        export_iterations: int = 100_000,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.factory = factory
        self.audit = audit
        self.kdf = kdf or factory.kdf
        self.export_iterations = export_iterations
        self.clock = clock

    def rotate(self, organization_id: str, purpose: KeyPurpose) -> KeyRecord:
        """Replace the active key of a pair with a new version.

        The old key becomes ``rotated`` and the new key ``active`` in one
        store operation. Concurrent rotations of the same pair are
        serialized, each producing the next version.

        Raises:
            NoActiveKeyError: If the pair has no active key
            KeyGenerationError: If the randomness source fails
        """
        purpose = KeyPurpose(purpose)
        with self.store.lineage_lock(organization_id, purpose):
            old = self.store.find_active(organization_id, purpose)
            if old is None:
                raise NoActiveKeyError(organization_id, purpose.value)

            material = self.factory.generate_material()
            now = self.clock()
            lifetime = old.expires_at - old.created_at if old.expires_at else None
            new = KeyRecord(
                key_id=self.factory.new_key_id(organization_id, purpose),
                organization_id=organization_id,
                key_material=material,
                purpose=purpose,
                algorithm=old.algorithm,
                key_version=self.store.next_version(organization_id, purpose),
                created_at=now,
                expires_at=now + lifetime if lifetime else None,
            )
            self.store.activate(new, now)

        self.audit.record(
            organization_id,
            AuditAction.KEY_ROTATED,
            resource_id=new.key_id,
            business_context={
                "old_key_id": old.key_id,
                "new_key_id": new.key_id,
                "purpose": purpose.value,
                "old_version": old.key_version,
                "new_version": new.key_version,
            },
        )
        logger.info(
            "Rotated encryption key",
            organization_id=organization_id,
            purpose=purpose.value,
            old_key_id=old.key_id,
            new_key_id=new.key_id,
            key_version=new.key_version,
        )

        policy = self.store.get_policy(organization_id, purpose)
        if policy is not None:
            self.schedule_deletion(old.key_id, policy.grace_period_days)

        return new

    def revoke(self, key_id: str, reason: str) -> KeyRecord:
        """Revoke a key, whatever its current status.

        Envelopes under the key stop decrypting with ``KeyUnavailableError``.

        Raises:
            KeyNotFoundError: If the key does not exist
        """
        record = self.store.transition(key_id, KeyStatus.REVOKED, self.clock())
        self.store.remove_pending_deletion(key_id)

        self.audit.record(
            record.organization_id,
            AuditAction.KEY_REVOKED,
            resource_id=key_id,
            business_context={
                "reason": reason,
                "purpose": record.purpose.value,
                "key_version": record.key_version,
            },
        )
        logger.warning("Revoked encryption key", key_id=key_id, reason=reason)
        return record

    def schedule_deletion(self, key_id: str, grace_period_days: int) -> PendingDeletion:
        """Delete ``key_id`` once ``grace_period_days`` have passed.

        The deletion only happens if the key is still ``rotated`` at that time.

        Raises:
            KeyNotFoundError: If the key does not exist
        """
        if self.store.get(key_id) is None:
            raise KeyNotFoundError(f"Key not found: {key_id}", key_id=key_id)
        now = self.clock()
        pending = PendingDeletion(
            key_id=key_id,
            delete_after=now + timedelta(days=grace_period_days),
            grace_period_days=grace_period_days,
            scheduled_at=now,
        )
        self.store.put_pending_deletion(pending)
        logger.info(
            "Scheduled key deletion",
            key_id=key_id,
            delete_after=pending.delete_after.isoformat(),
        )
        return pending

    def cancel_deletion(self, key_id: str) -> bool:
        """Cancel a pending deletion. Returns False if none was pending."""
        return self.store.remove_pending_deletion(key_id)

    def process_due_deletions(self, now: datetime | None = None) -> list[str]:
        """Carry out every pending deletion whose grace period has ended.

        Returns:
            IDs of the keys actually deleted
        """
        now = now or self.clock()
        deleted = []
        for pending in self.store.list_due_deletions(now):
            key = self.store.get(pending.key_id)
            if key is not None:
                with self.store.lineage_lock(key.organization_id, key.purpose):
                    key = self.store.get(pending.key_id)
                    if key is not None and key.status == KeyStatus.ROTATED:
                        self.store.delete(key.key_id)
                        deleted.append(key.key_id)
                        self.audit.record(
                            key.organization_id,
                            AuditAction.KEY_DELETED,
                            resource_id=key.key_id,
                            business_context={
                                "grace_period_days": pending.grace_period_days,
                                "purpose": key.purpose.value,
                            },
                        )
                        logger.info("Deleted rotated encryption key after grace period", key_id=key.key_id)
            self.store.remove_pending_deletion(pending.key_id)
        return deleted

    def expire_due_keys(self, now: datetime | None = None) -> list[str]:
        """Mark active keys past their ``expires_at`` as expired.

        Returns:
            IDs of the keys expired
        """
        now = now or self.clock()
        expired = []
        for key in self.store.list_keys(status=KeyStatus.ACTIVE):
            if not key.is_past_expiry(now):
                continue
            with self.store.lineage_lock(key.organization_id, key.purpose):
                current = self.store.get(key.key_id)
                if current is None or current.status != KeyStatus.ACTIVE:
                    continue
                self.store.transition(key.key_id, KeyStatus.EXPIRED, now)
            expired.append(key.key_id)
            self.audit.record(
                key.organization_id,
                AuditAction.KEY_EXPIRED,
                resource_id=key.key_id,
                business_context={
                    "purpose": key.purpose.value,
                    "expires_at": key.expires_at.isoformat(),
                },
            )
            logger.info("Expired encryption key", key_id=key.key_id)
        return expired

    def export_key(self, key_id: str, export_password: str) -> ExportedKey:
        """Export a key wrapped under a password-derived key.

        Raises:
            KeyNotFoundError: If the key does not exist
            KeyManagementError: If the password is empty
        """
        key = self.store.get(key_id)
        if key is None:
            raise KeyNotFoundError(f"Key not found: {key_id}", key_id=key_id)
        if not export_password:
            raise KeyManagementError("Export password required", key_id=key_id)

        salt = self.kdf.generate_salt(EXPORT_SALT_SIZE)
        wrapping_key = self.kdf.derive_from_password(export_password, salt, self.export_iterations)
        payload = ExportedKeyPayload(
            key_id=key.key_id,
            organization_id=key.organization_id,
            algorithm=key.algorithm,
            key_version=key.key_version,
            key_material=base64.b64encode(key.key_material).decode("ascii"),
            purpose=key.purpose,
            created_at=key.created_at,
            expires_at=key.expires_at,
            derived_from=key.derived_from,
        )
        iv = self.factory.provider.generate_random_bytes(NONCE_SIZE)
        ciphertext, tag = seal(wrapping_key, iv, payload.model_dump_json().encode("utf-8"), None)

        export_metadata = {
            "salt": base64.b64encode(salt).decode("ascii"),
            "iv": base64.b64encode(iv).decode("ascii"),
            "auth_tag": base64.b64encode(tag).decode("ascii"),
            "algorithm": EXPORT_ALGORITHM,
            "kdf": EXPORT_KDF,
            "iterations": self.export_iterations,
            "exported_at": self.clock().isoformat(),
            "key_id": key.key_id,
        }

        self.audit.record(
            key.organization_id,
            AuditAction.KEY_EXPORTED,
            resource_id=key_id,
        )
        logger.info("Exported encryption key", key_id=key_id)
        return ExportedKey(
            wrapped_key=base64.b64encode(ciphertext).decode("ascii"),
            export_metadata=export_metadata,
        )

    def import_key(
        self,
        wrapped_key: str,
        export_metadata: dict[str, Any],
        import_password: str,
    ) -> KeyRecord:
        """Restore a key produced by :meth:`export_key` as the active key of its pair.

        The restored key keeps its exported version unless the lineage has
        moved past it, in which case it takes the next version.

        Raises:
            ImportDecryptionError: On a wrong password or a corrupted
                payload; the two are indistinguishable
            KeyUnavailableError: If the key id is stored and revoked
        """
        try:
            meta = ExportMetadata.model_validate(export_metadata)
            if meta.algorithm != EXPORT_ALGORITHM or meta.kdf != EXPORT_KDF:
                raise ValueError("Unsupported export format")
            salt = base64.b64decode(meta.salt, validate=True)
            iv = base64.b64decode(meta.iv, validate=True)
            tag = base64.b64decode(meta.auth_tag, validate=True)
            ciphertext = base64.b64decode(wrapped_key, validate=True)

            wrapping_key = self.kdf.derive_from_password(import_password, salt, meta.iterations)
            plaintext = open_sealed(wrapping_key, iv, ciphertext, tag, None)

            payload = ExportedKeyPayload.model_validate_json(plaintext)
            material = base64.b64decode(payload.key_material, validate=True)
            if len(material) != KEY_LENGTH or payload.algorithm not in SUPPORTED_ALGORITHMS:
                raise ValueError("Unsupported key material")
        except (InvalidTag, ValueError, TypeError, KeyManagementError):
            # ValueError covers pydantic validation and base64 decoding errors
            logger.warning("Key import failed")
            raise ImportDecryptionError() from None

        record = KeyRecord(
            key_id=payload.key_id,
            organization_id=payload.organization_id,
            key_material=material,
            purpose=payload.purpose,
            algorithm=payload.algorithm,
            key_version=payload.key_version,
            derived_from=payload.derived_from,
            created_at=payload.created_at,
            expires_at=payload.expires_at,
            status=KeyStatus.ACTIVE,
        )
        with self.store.lineage_lock(record.organization_id, record.purpose):
            existing = self.store.get(record.key_id)
            if existing is not None and existing.status == KeyStatus.REVOKED:
                logger.warning(
                    "Refused import over revoked key",
                    key_id=record.key_id,
                    organization_id=existing.organization_id,
                )
                raise KeyUnavailableError(
                    f"Key {record.key_id} is revoked and cannot be restored",
                    key_id=record.key_id,
                    status=existing.status.value,
                )
            record, superseded = self.factory.install(record)
            self.store.remove_pending_deletion(record.key_id)

        self.audit.record(
            record.organization_id,
            AuditAction.KEY_IMPORTED,
            resource_id=record.key_id,
            business_context={
                "purpose": record.purpose.value,
                "key_version": record.key_version,
                "exported_version": payload.key_version,
                "previous_status": existing.status.value if existing else None,
                "superseded_key_id": superseded.key_id if superseded else None,
            },
        )
        logger.info(
            "Imported encryption key",
            key_id=record.key_id,
            organization_id=record.organization_id,
            key_version=record.key_version,
        )
        return record
