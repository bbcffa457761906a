"""orgkeys - Organization-scoped key management and envelope encryption.

Provides:
- AES-256-GCM envelope encryption under per-organization, per-purpose keys
- Key generation and derivation (PBKDF2, scrypt)
- Rotation, revocation, deferred deletion and expiry
- Password-protected key export and import
- Policy-driven background key rotation
"""

__version__ = "0.1.0"
__author__ = "orgkeys Contributors"

from orgkeys.service import EncryptionService, create_encryption_service
from orgkeys.models import (
    EncryptedEnvelope,
    KeyDerivationConfig,
    KeyPurpose,
    KeyRecord,
    KeyStatus,
    RotationPolicy,
)

__all__ = [
    "EncryptionService",
    "create_encryption_service",
    "EncryptedEnvelope",
    "KeyDerivationConfig",
    "KeyPurpose",
    "KeyRecord",
    "KeyStatus",
    "RotationPolicy",
]
