"""Key generation and derivation.

New keys are always installed through ``KeyStore.activate`` under the
lineage lock, so creating a key for an (organization, purpose) pair that
already has an active key retires the old one and continues its version
sequence. A brand new lineage starts at version 1.
"""

import secrets
import time
from datetime import datetime, timedelta
from typing import Callable

from orgkeys.core.audit import AuditAction, AuditRecorder
from orgkeys.core.errors import KeyGenerationError, MasterKeyNotFoundError
from orgkeys.core.kdf_engine import KDFEngine
from orgkeys.core.key_store import KeyStore
from orgkeys.core.kms import KeyBackingProvider
from orgkeys.core.logging import get_logger
from orgkeys.models import (
    DEFAULT_ALGORITHM,
    KEY_LENGTH,
    KeyDerivationConfig,
    KeyPurpose,
    KeyRecord,
    utcnow,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
        if value == 0:
            return "".join(reversed(digits))


class KeyFactory:
    """Creates keys: fresh random keys and keys derived from a master key."""

    def __init__(
        self,
        store: KeyStore,
        provider: KeyBackingProvider,
        audit: AuditRecorder,
        kdf: KDFEngine | None = None,
        clock: Clock = utcnow,
        algorithm: str = DEFAULT_ALGORITHM,
    ):
        self.store = store
        self.provider = provider
        self.audit = audit
        self.kdf = kdf or KDFEngine()
        self.clock = clock
        self.algorithm = algorithm

    def new_key_id(self, organization_id: str, purpose: KeyPurpose) -> str:
        """Organization prefix + purpose + base36 millisecond timestamp + random suffix."""
        purpose = KeyPurpose(purpose)
        while True:
            key_id = (
                f"{organization_id[:8]}_{purpose.value}_"
                f"{_base36(int(time.time() * 1000))}_{secrets.token_hex(4)}"
            )
            if self.store.get(key_id) is None:
                return key_id

    def generate_material(self) -> bytes:
        """Draw fresh 256-bit key material.

        Raises:
            KeyGenerationError: If the randomness source fails
        """
        try:
            material = self.provider.generate_random_bytes(KEY_LENGTH)
        except Exception as e:
            logger.critical("Randomness source failed", error=str(e), exc_info=True)
            raise KeyGenerationError("Failed to generate encryption key") from e
        if len(material) != KEY_LENGTH:
            logger.critical("Randomness source returned short read", length=len(material))
            raise KeyGenerationError("Failed to generate encryption key")
        return material

    def install(self, record: KeyRecord) -> tuple[KeyRecord, KeyRecord | None]:
        """Activate ``record`` for its lineage, continuing the lineage version.

        The record's version is raised above every other key of the
        lineage, whatever their status.

        Returns:
            The installed record and the record it superseded, if any
        """
        with self.store.lineage_lock(record.organization_id, record.purpose):
            floor = self.store.next_version(
                record.organization_id, record.purpose, exclude_key_id=record.key_id
            )
            if record.key_version < floor:
                record = record.copy(key_version=floor)
            superseded = self.store.activate(record, self.clock())
        return record, superseded

    def generate(
        self,
        organization_id: str,
        purpose: KeyPurpose = KeyPurpose.GENERAL,
        expiration_days: int | None = None,
        key_id: str | None = None,
    ) -> KeyRecord:
        """Generate and activate a random key.

        Args:
            organization_id: Owning organization
            purpose: Key purpose
            expiration_days: Optional lifetime after which the key expires
            key_id: Fixed identifier for well-known keys; generated if omitted

        Returns:
            The new active key

        Raises:
            KeyGenerationError: If the randomness source fails
        """
        purpose = KeyPurpose(purpose)
        material = self.generate_material()
        now = self.clock()

        record = KeyRecord(
            key_id=key_id or self.new_key_id(organization_id, purpose),
            organization_id=organization_id,
            key_material=material,
            purpose=purpose,
            algorithm=self.algorithm,
            key_version=1,
            created_at=now,
            expires_at=now + timedelta(days=expiration_days) if expiration_days else None,
        )
        record, superseded = self.install(record)

        self.audit.record(
            organization_id,
            AuditAction.KEY_GENERATED,
            resource_id=record.key_id,
            business_context={
                "purpose": purpose.value,
                "algorithm": record.algorithm,
                "key_version": record.key_version,
                "expires_at": record.expires_at.isoformat() if record.expires_at else None,
                "superseded_key_id": superseded.key_id if superseded else None,
            },
        )
        logger.info(
            "Generated encryption key",
            organization_id=organization_id,
            purpose=purpose.value,
            key_id=record.key_id,
            key_version=record.key_version,
        )
        return record

    def derive_material(self, master_key_id: str, config: KeyDerivationConfig) -> tuple[KeyRecord, bytes]:
        """Run the KDF without touching the store.

        Returns:
            The master record and the derived key material

        Raises:
            MasterKeyNotFoundError: If the master key does not exist
            UnsupportedDerivationAlgorithmError: If the algorithm is unknown
            KeyDerivationError: If the derivation parameters are invalid
        """
        master = self.store.get(master_key_id)
        if master is None:
            raise MasterKeyNotFoundError(f"Master key not found: {master_key_id}", key_id=master_key_id)
        # Reject unknown algorithms before doing any expensive work
        self.kdf.resolve_algorithm(config.algorithm)
        return master, self.kdf.derive(master.key_material, config)

    def register_derived(
        self,
        master: KeyRecord,
        material: bytes,
        config: KeyDerivationConfig,
        organization_id: str,
        purpose: KeyPurpose = KeyPurpose.GENERAL,
    ) -> KeyRecord:
        """Activate a key whose material came from :meth:`derive_material`."""
        purpose = KeyPurpose(purpose)
        record = KeyRecord(
            key_id=self.new_key_id(organization_id, purpose),
            organization_id=organization_id,
            key_material=material,
            purpose=purpose,
            algorithm=master.algorithm,
            key_version=1,
            derived_from=master.key_id,
            created_at=self.clock(),
        )
        record, superseded = self.install(record)

        self.audit.record(
            organization_id,
            AuditAction.KEY_DERIVED,
            resource_id=record.key_id,
            business_context={
                "master_key_id": master.key_id,
                "derivation_algorithm": self.kdf.resolve_algorithm(config.algorithm).value,
                "purpose": purpose.value,
                "superseded_key_id": superseded.key_id if superseded else None,
            },
        )
        logger.info(
            "Derived encryption key",
            organization_id=organization_id,
            purpose=purpose.value,
            key_id=record.key_id,
            master_key_id=master.key_id,
        )
        return record

    def derive(
        self,
        master_key_id: str,
        config: KeyDerivationConfig,
        organization_id: str,
        purpose: KeyPurpose = KeyPurpose.GENERAL,
    ) -> KeyRecord:
        """Derive and activate a subordinate key from a master key."""
        master, material = self.derive_material(master_key_id, config)
        return self.register_derived(master, material, config, organization_id, purpose)
