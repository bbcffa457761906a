"""Local key-backing provider.

The local provider:
- Draws randomness from the operating system CSPRNG
- Wraps key material with AES-256-GCM under a key-encryption key (KEK)
  derived by HKDF from the configured master key
- Does not provide HSM protection or FIPS compliance

Without a configured master key a random KEK is generated per process, so
wrapped references do not survive a restart.
"""

import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from orgkeys.core.errors import KeyBackingError
from orgkeys.core.logging import get_logger

from .base import KeyBackingConfig, KeyBackingProvider

logger = get_logger(__name__)

WRAP_INFO = b"orgkeys:local-kek:v1"
NONCE_SIZE = 12


class LocalKeyBackingProvider(KeyBackingProvider):
    """In-process key-backing provider."""

    def __init__(self, config: KeyBackingConfig):
        super().__init__(config)
        master_key = config.master_key
        if master_key:
            if len(master_key) < 32:
                logger.warning(
                    "Local key-backing master key is shorter than 32 characters. "
                    "This is insecure for production use."
                )
            ikm = master_key.encode()
        else:
            logger.warning(
                "No local key-backing master key configured; using an ephemeral "
                "key-encryption key. Wrapped keys will not survive a restart."
            )
            ikm = secrets.token_bytes(32)

        salt = config.options.get("salt", "orgkeys-local-salt")
        self._kek = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            info=WRAP_INFO,
        ).derive(ikm)

    def generate_random_bytes(self, n: int) -> bytes:
        try:
            return os.urandom(n)
        except (NotImplementedError, OSError) as e:
            raise KeyBackingError(f"Randomness source unavailable: {e}") from e

    def wrap_key(self, material: bytes) -> bytes:
        nonce = self.generate_random_bytes(NONCE_SIZE)
        return nonce + AESGCM(self._kek).encrypt(nonce, material, WRAP_INFO)

    def unwrap_key(self, external_ref: bytes) -> bytes:
        if len(external_ref) <= NONCE_SIZE:
            raise KeyBackingError("Invalid wrapped key: too short")
        nonce, ciphertext = external_ref[:NONCE_SIZE], external_ref[NONCE_SIZE:]
        try:
            return AESGCM(self._kek).decrypt(nonce, ciphertext, WRAP_INFO)
        except InvalidTag as e:
            raise KeyBackingError("Failed to unwrap key material") from e
