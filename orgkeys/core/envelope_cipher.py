"""Envelope encryption with organization-scoped keys.

Encrypts with AES-256-GCM under the active key of an (organization,
purpose) pair and returns a self-describing :class:`EncryptedEnvelope`.

Auto-provisioning: when ``auto_provision`` is on (the default, setting
``auto_provision_keys``) and the pair has no active key, :meth:`encrypt`
generates one first. That key is durable key material like any other.
Turn the setting off to make :meth:`encrypt` raise ``NoActiveKeyError``
instead.

Decryption failures are deliberately undifferentiated: tag mismatch,
malformed hex, truncated nonce and wrong key all raise the same
``DecryptionFailedError``.
"""

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from orgkeys.core.audit import AuditAction, AuditRecorder
from orgkeys.core.errors import (
    DecryptionFailedError,
    KeyNotFoundError,
    KeyUnavailableError,
    NoActiveKeyError,
)
from orgkeys.core.key_factory import Clock, KeyFactory
from orgkeys.core.key_store import KeyStore
from orgkeys.core.logging import get_logger
from orgkeys.models import (
    SENSITIVE_PURPOSES,
    SUPPORTED_ALGORITHMS,
    EncryptedEnvelope,
    EnvelopeMetadata,
    KeyPurpose,
    KeyRecord,
    KeyStatus,
    utcnow,
)

logger = get_logger(__name__)

NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16    # 128-bit authentication tag


def associated_data(key: KeyRecord) -> bytes:
    """Bind the ciphertext to the key id, organization and purpose."""
    return f"{key.key_id}|{key.organization_id}|{key.purpose.value}".encode()


def seal(key_material: bytes, nonce: bytes, plaintext: bytes, aad: bytes | None) -> tuple[bytes, bytes]:
    """AES-256-GCM encrypt, returning (ciphertext, tag)."""
    sealed = AESGCM(key_material).encrypt(nonce, plaintext, aad)
    return sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]


def open_sealed(
    key_material: bytes,
    nonce: bytes,
    ciphertext: bytes,
    tag: bytes,
    aad: bytes | None,
) -> bytes:
    """AES-256-GCM decrypt and verify.

    Raises:
        InvalidTag: If authentication fails
        ValueError: If the nonce or key is malformed
    """
    if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
        raise ValueError("Malformed nonce or tag")
    return AESGCM(key_material).decrypt(nonce, ciphertext + tag, aad)


class EnvelopeCipher:
    """Encrypts and decrypts payloads under managed keys."""

    def __init__(
        self,
        store: KeyStore,
        factory: KeyFactory,
        audit: AuditRecorder,
        auto_provision: bool = True,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.factory = factory
        self.audit = audit
        self.auto_provision = auto_provision
        self.clock = clock

    def resolve_active_key(self, organization_id: str, purpose: KeyPurpose) -> KeyRecord:
        """The active key for a pair, auto-provisioning one if allowed.

        Raises:
            NoActiveKeyError: If none exists and auto-provisioning is off
        """
        key = self.store.find_active(organization_id, purpose)
        if key is not None:
            return key
        if not self.auto_provision:
            raise NoActiveKeyError(organization_id, KeyPurpose(purpose).value)

        with self.store.lineage_lock(organization_id, purpose):
            # Another caller may have provisioned while we waited
            key = self.store.find_active(organization_id, purpose)
            if key is None:
                logger.info(
                    "Auto-provisioning encryption key",
                    organization_id=organization_id,
                    purpose=KeyPurpose(purpose).value,
                )
                key = self.factory.generate(organization_id, purpose)
        return key

    def encrypt(
        self,
        plaintext: str | bytes,
        organization_id: str,
        purpose: KeyPurpose = KeyPurpose.GENERAL,
        data_type: str = "generic",
    ) -> EncryptedEnvelope:
        """Encrypt under the active key of (organization, purpose).

        Args:
            plaintext: Data to encrypt; strings are encoded as UTF-8
            organization_id: Owning organization
            purpose: Key purpose
            data_type: Free-form label stored in the envelope metadata

        Returns:
            Self-describing envelope

        Raises:
            NoActiveKeyError: If no key exists and auto-provisioning is off
            KeyGenerationError: If auto-provisioning fails
        """
        purpose = KeyPurpose(purpose)
        key = self.resolve_active_key(organization_id, purpose)
        return self._encrypt_with(key, plaintext, data_type)

    def encrypt_with_key(
        self,
        plaintext: str | bytes,
        key_id: str,
        data_type: str = "generic",
    ) -> EncryptedEnvelope:
        """Encrypt under a specific key, which must be active.

        Raises:
            KeyNotFoundError: If the key does not exist
            KeyUnavailableError: If the key is not active
        """
        return self._encrypt_with(self._encryption_key(key_id), plaintext, data_type)

    def _encryption_key(self, key_id: str) -> KeyRecord:
        key = self.store.get(key_id)
        if key is None:
            raise KeyNotFoundError(f"Key not found: {key_id}", key_id=key_id)
        if key.status != KeyStatus.ACTIVE:
            raise KeyUnavailableError(
                f"Key {key_id} is {key.status.value} and cannot encrypt",
                key_id=key_id,
                status=key.status.value,
            )
        return key

    def _encrypt_with(self, key: KeyRecord, plaintext: str | bytes, data_type: str) -> EncryptedEnvelope:
        if key.algorithm not in SUPPORTED_ALGORITHMS:
            raise KeyUnavailableError(
                f"Key {key.key_id} uses unsupported algorithm {key.algorithm!r}",
                key_id=key.key_id,
                status=key.status.value,
            )
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        # Fresh nonce for every message; never reused under the same key
        nonce = self.factory.provider.generate_random_bytes(NONCE_SIZE)
        ciphertext, tag = seal(key.key_material, nonce, plaintext, associated_data(key))

        return EncryptedEnvelope(
            ciphertext=ciphertext.hex(),
            key_id=key.key_id,
            key_version=key.key_version,
            algorithm=key.algorithm,
            iv=nonce.hex(),
            auth_tag=tag.hex(),
            metadata=EnvelopeMetadata(
                purpose=key.purpose.value,
                organization_id=key.organization_id,
                data_type=data_type,
                encrypted_at=self.clock(),
            ),
        )

    def decrypt(self, envelope: EncryptedEnvelope) -> bytes:
        """Decrypt an envelope.

        Raises:
            KeyNotFoundError: If the envelope's key no longer exists
            KeyUnavailableError: If the key is revoked or expired
            DecryptionFailedError: On any tampering, malformed field or wrong key
        """
        key = self.store.get(envelope.key_id)
        if key is None:
            raise KeyNotFoundError("Encryption key not found", key_id=envelope.key_id)
        if not key.is_decryptable:
            raise KeyUnavailableError(
                "Encryption key is not available for decryption",
                key_id=key.key_id,
                status=key.status.value,
            )

        try:
            if envelope.algorithm.lower() != key.algorithm or key.algorithm not in SUPPORTED_ALGORITHMS:
                raise ValueError("Algorithm mismatch")
            plaintext = open_sealed(
                key.key_material,
                bytes.fromhex(envelope.iv),
                bytes.fromhex(envelope.ciphertext),
                bytes.fromhex(envelope.auth_tag),
                associated_data(key),
            )
        except (InvalidTag, ValueError, TypeError, AttributeError):
            logger.warning("Decryption failed", key_id=key.key_id)
            raise DecryptionFailedError(key_id=key.key_id) from None

        if key.purpose in SENSITIVE_PURPOSES:
            self.audit.record(
                key.organization_id,
                AuditAction.DATA_DECRYPTED,
                resource_type="encrypted_data",
                business_context={
                    "key_id": key.key_id,
                    "data_type": envelope.metadata.data_type,
                    "purpose": key.purpose.value,
                },
            )
        return plaintext

    def decrypt_string(self, envelope: EncryptedEnvelope) -> str:
        plaintext = self.decrypt(envelope)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailedError(key_id=envelope.key_id) from None

    def reencrypt(self, envelope: EncryptedEnvelope, new_key_id: str) -> EncryptedEnvelope:
        """Move an envelope onto another key, typically after rotation.

        Raises:
            KeyNotFoundError: If either key does not exist
            KeyUnavailableError: If the new key is not active or the old one
                is revoked or expired
            DecryptionFailedError: If the envelope does not authenticate
        """
        new_key = self._encryption_key(new_key_id)
        plaintext = self.decrypt(envelope)
        return self._encrypt_with(new_key, plaintext, envelope.metadata.data_type)
