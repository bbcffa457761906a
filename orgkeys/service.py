"""Encryption service handle.

Wires the key store, key factory, envelope cipher, lifecycle manager and
rotation scheduler into one object built at startup and passed to callers.
Separate instances share nothing, so tests build one per test.

Usage:
    service = create_encryption_service()
    envelope = service.encrypt("42.00 USD", "acme", KeyPurpose.FINANCIAL, "invoice_total")
    service.decrypt_string(envelope)
"""

import asyncio
from datetime import datetime
from typing import Any

from orgkeys.config import Settings, get_settings
from orgkeys.core.audit import AuditAction, AuditRecorder, AuditSink, LoggingAuditSink
from orgkeys.core.envelope_cipher import EnvelopeCipher
from orgkeys.core.errors import (
    DecryptionFailedError,
    KeyDerivationTimeoutError,
    KeyNotFoundError,
)
from orgkeys.core.kdf_engine import KDFEngine
from orgkeys.core.key_factory import Clock, KeyFactory
from orgkeys.core.key_store import InMemoryKeyStore, KeyStore
from orgkeys.core.kms import KeyBackingProvider, config_from_settings, create_provider
from orgkeys.core.lifecycle import ExportedKey, KeyLifecycleManager
from orgkeys.core.logging import get_logger, log_operation, operation_context, setup_logging
from orgkeys.core.scheduler import RotationScheduler, SweepReport
from orgkeys.core.sql_key_store import SQLKeyStore
from orgkeys.models import (
    EncryptedEnvelope,
    KeyDerivationConfig,
    KeyPurpose,
    KeyRecord,
    PendingDeletion,
    RotationPolicy,
    utcnow,
)

logger = get_logger(__name__)

SYSTEM_ORGANIZATION = "system"
SYSTEM_MASTER_KEY_ID = "system_master_001"


class EncryptionService:
    """Organization-scoped key management and envelope encryption."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: KeyStore | None = None,
        audit_sink: AuditSink | None = None,
        provider: KeyBackingProvider | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.provider = provider or create_provider(config_from_settings(self.settings))

        if store is None:
            if self.settings.database_url:
                store = SQLKeyStore(self.provider, database_url=self.settings.database_url)
            else:
                store = InMemoryKeyStore()
        self.store = store

        self.audit = AuditRecorder(audit_sink or LoggingAuditSink())
        self.kdf = KDFEngine(
            default_pbkdf2_iterations=self.settings.default_pbkdf2_iterations,
            default_scrypt_cost=self.settings.default_scrypt_cost,
        )
        self.factory = KeyFactory(
            self.store,
            self.provider,
            self.audit,
            kdf=self.kdf,
            clock=self.clock,
            algorithm=self.settings.default_algorithm,
        )
        self.cipher = EnvelopeCipher(
            self.store,
            self.factory,
            self.audit,
            auto_provision=self.settings.auto_provision_keys,
            clock=self.clock,
        )
        self.lifecycle = KeyLifecycleManager(
            self.store,
            self.factory,
            self.audit,
            kdf=self.kdf,
            export_iterations=self.settings.export_kdf_iterations,
            clock=self.clock,
        )
        self.scheduler = RotationScheduler(
            self.store,
            self.lifecycle,
            self.audit,
            interval_seconds=self.settings.rotation_check_interval_seconds,
            clock=self.clock,
        )

        if self.settings.bootstrap_system_key:
            self._bootstrap_system_key()

    def _bootstrap_system_key(self) -> None:
        if self.store.get(SYSTEM_MASTER_KEY_ID) is not None:
            return
        self.factory.generate(SYSTEM_ORGANIZATION, KeyPurpose.GENERAL, key_id=SYSTEM_MASTER_KEY_ID)
        logger.info("Initialized system master key", key_id=SYSTEM_MASTER_KEY_ID)

    # Key creation

    @log_operation("generate_key")
    def generate_key(
        self,
        organization_id: str,
        purpose: KeyPurpose = KeyPurpose.GENERAL,
        expiration_days: int | None = None,
    ) -> KeyRecord:
        with operation_context(organization_id=organization_id):
            return self.factory.generate(organization_id, purpose, expiration_days)

    @log_operation("derive_key")
    def derive_key(
        self,
        master_key_id: str,
        config: KeyDerivationConfig,
        organization_id: str,
        purpose: KeyPurpose = KeyPurpose.GENERAL,
    ) -> KeyRecord:
        with operation_context(organization_id=organization_id):
            return self.factory.derive(master_key_id, config, organization_id, purpose)

    @log_operation("derive_key_async")
    async def derive_key_async(
        self,
        master_key_id: str,
        config: KeyDerivationConfig,
        organization_id: str,
        purpose: KeyPurpose = KeyPurpose.GENERAL,
        timeout: float | None = None,
    ) -> KeyRecord:
        """Derive a key in a worker thread, bounded by a timeout.

        On timeout nothing is stored; the worker finishes in the background
        and its result is discarded.

        Raises:
            KeyDerivationTimeoutError: If derivation takes longer than
                ``timeout`` (default ``derivation_timeout_seconds``)
        """
        timeout = timeout if timeout is not None else self.settings.derivation_timeout_seconds
        with operation_context(organization_id=organization_id):
            try:
                master, material = await asyncio.wait_for(
                    asyncio.to_thread(self.factory.derive_material, master_key_id, config),
                    timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Key derivation timed out",
                    master_key_id=master_key_id,
                    timeout_seconds=timeout,
                )
                raise KeyDerivationTimeoutError(
                    f"Key derivation exceeded {timeout} seconds",
                    key_id=master_key_id,
                ) from None
            return self.factory.register_derived(master, material, config, organization_id, purpose)

    # Encryption

    def encrypt(
        self,
        plaintext: str | bytes,
        organization_id: str,
        purpose: KeyPurpose = KeyPurpose.GENERAL,
        data_type: str = "generic",
    ) -> EncryptedEnvelope:
        return self.cipher.encrypt(plaintext, organization_id, purpose, data_type)

    def encrypt_with_key(
        self,
        plaintext: str | bytes,
        key_id: str,
        data_type: str = "generic",
    ) -> EncryptedEnvelope:
        return self.cipher.encrypt_with_key(plaintext, key_id, data_type)

    def decrypt(self, envelope: EncryptedEnvelope | dict[str, Any]) -> bytes:
        """Decrypt an envelope or its :meth:`EncryptedEnvelope.to_dict` form."""
        return self.cipher.decrypt(self._as_envelope(envelope))

    def decrypt_string(self, envelope: EncryptedEnvelope | dict[str, Any]) -> str:
        return self.cipher.decrypt_string(self._as_envelope(envelope))

    def reencrypt(self, envelope: EncryptedEnvelope | dict[str, Any], new_key_id: str) -> EncryptedEnvelope:
        return self.cipher.reencrypt(self._as_envelope(envelope), new_key_id)

    @staticmethod
    def _as_envelope(envelope: EncryptedEnvelope | dict[str, Any]) -> EncryptedEnvelope:
        if isinstance(envelope, EncryptedEnvelope):
            return envelope
        try:
            return EncryptedEnvelope.from_dict(envelope)
        except ValueError:
            raise DecryptionFailedError() from None

    # Lifecycle

    @log_operation("rotate_key")
    def rotate_key(self, organization_id: str, purpose: KeyPurpose = KeyPurpose.GENERAL) -> KeyRecord:
        with operation_context(organization_id=organization_id):
            return self.lifecycle.rotate(organization_id, purpose)

    @log_operation("revoke_key")
    def revoke_key(self, key_id: str, reason: str) -> KeyRecord:
        return self.lifecycle.revoke(key_id, reason)

    def schedule_key_deletion(self, key_id: str, grace_period_days: int) -> PendingDeletion:
        return self.lifecycle.schedule_deletion(key_id, grace_period_days)

    def cancel_key_deletion(self, key_id: str) -> bool:
        return self.lifecycle.cancel_deletion(key_id)

    def process_due_deletions(self, now: datetime | None = None) -> list[str]:
        return self.lifecycle.process_due_deletions(now)

    @log_operation("export_key")
    def export_key(self, key_id: str, export_password: str) -> ExportedKey:
        return self.lifecycle.export_key(key_id, export_password)

    @log_operation("import_key")
    def import_key(
        self,
        wrapped_key: str,
        export_metadata: dict[str, Any],
        import_password: str,
    ) -> KeyRecord:
        return self.lifecycle.import_key(wrapped_key, export_metadata, import_password)

    # Rotation policies

    def set_rotation_policy(self, policy: RotationPolicy | dict[str, Any]) -> RotationPolicy:
        """Create or replace the rotation policy of an (organization, purpose) pair.

        Accepts a policy or a dict with snake_case or camelCase keys.
        """
        if not isinstance(policy, RotationPolicy):
            policy = RotationPolicy.model_validate(policy)
        self.store.put_policy(policy)
        self.audit.record(
            policy.organization_id,
            AuditAction.ROTATION_POLICY_SET,
            resource_type="key_rotation_policy",
            resource_id=f"{policy.organization_id}:{policy.purpose.value}",
            business_context=policy.model_dump(mode="json"),
        )
        logger.info(
            "Set key rotation policy",
            organization_id=policy.organization_id,
            purpose=policy.purpose.value,
            rotation_interval_days=policy.rotation_interval_days,
        )
        return policy

    def get_rotation_policy(self, organization_id: str, purpose: KeyPurpose) -> RotationPolicy | None:
        return self.store.get_policy(organization_id, purpose)

    def remove_rotation_policy(self, organization_id: str, purpose: KeyPurpose) -> bool:
        return self.store.delete_policy(organization_id, purpose)

    # Queries

    def get_active_keys(self, organization_id: str) -> list[dict[str, Any]]:
        """Metadata of every active key of an organization. Never includes material."""
        return [key.metadata() for key in self.store.list_active(organization_id)]

    def get_key_metadata(self, key_id: str) -> dict[str, Any]:
        key = self.store.get(key_id)
        if key is None:
            raise KeyNotFoundError(f"Key not found: {key_id}", key_id=key_id)
        return key.metadata()

    # Scheduler

    def run_rotation_sweep(self, now: datetime | None = None) -> SweepReport:
        return self.scheduler.run_once(now)

    def start_scheduler(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()

    def __enter__(self) -> "EncryptionService":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()


def create_encryption_service(
    settings: Settings | None = None,
    audit_sink: AuditSink | None = None,
) -> EncryptionService:
    """Build a service from settings, configure logging and start the scheduler."""
    settings = settings or get_settings()
    setup_logging(json_output=settings.log_json, level=settings.log_level)
    service = EncryptionService(settings=settings, audit_sink=audit_sink)
    if settings.scheduler_enabled:
        service.start_scheduler()
    return service
