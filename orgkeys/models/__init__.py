"""Data model for managed keys, envelopes and policies."""

from orgkeys.models.key import (
    DECRYPTABLE_STATUSES,
    DEFAULT_ALGORITHM,
    KEY_LENGTH,
    SENSITIVE_PURPOSES,
    SUPPORTED_ALGORITHMS,
    KeyPurpose,
    KeyRecord,
    KeyStatus,
    utcnow,
)
from orgkeys.models.envelope import EncryptedEnvelope, EnvelopeMetadata
from orgkeys.models.policy import (
    DerivationAlgorithm,
    KeyDerivationConfig,
    PendingDeletion,
    RotationPolicy,
)

__all__ = [
    "DECRYPTABLE_STATUSES",
    "DEFAULT_ALGORITHM",
    "KEY_LENGTH",
    "SENSITIVE_PURPOSES",
    "SUPPORTED_ALGORITHMS",
    "KeyPurpose",
    "KeyRecord",
    "KeyStatus",
    "utcnow",
    "EncryptedEnvelope",
    "EnvelopeMetadata",
    "DerivationAlgorithm",
    "KeyDerivationConfig",
    "PendingDeletion",
    "RotationPolicy",
]
