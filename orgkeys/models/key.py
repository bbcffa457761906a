"""Managed key records."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class KeyStatus(str, Enum):
    """Status of an encryption key."""
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


class KeyPurpose(str, Enum):
    """What a key protects. Each purpose has its own active key per organization."""
    GENERAL = "general"
    CREDENTIALS = "credentials"
    PII = "pii"
    FINANCIAL = "financial"
    HEALTHCARE = "healthcare"


# Decryptions under these purposes are audited
SENSITIVE_PURPOSES = frozenset({
    KeyPurpose.CREDENTIALS,
    KeyPurpose.PII,
    KeyPurpose.FINANCIAL,
    KeyPurpose.HEALTHCARE,
})

# Statuses that still allow decryption
DECRYPTABLE_STATUSES = frozenset({KeyStatus.ACTIVE, KeyStatus.ROTATED})

DEFAULT_ALGORITHM = "aes-256-gcm"
SUPPORTED_ALGORITHMS = frozenset({DEFAULT_ALGORITHM})
KEY_LENGTH = 32  # 256 bits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class KeyRecord:
    """A managed symmetric key.

    ``key_material`` only ever lives in process memory (or wrapped by the
    key-backing provider in a durable store).
    """

    key_id: str
    organization_id: str
    key_material: bytes = field(repr=False)
    purpose: KeyPurpose = KeyPurpose.GENERAL
    algorithm: str = DEFAULT_ALGORITHM
    key_version: int = 1
    derived_from: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    status: KeyStatus = KeyStatus.ACTIVE

    def __post_init__(self):
        self.purpose = KeyPurpose(self.purpose)
        self.status = KeyStatus(self.status)

    @property
    def lineage(self) -> tuple[str, KeyPurpose]:
        """The (organization, purpose) pair this key belongs to."""
        return (self.organization_id, self.purpose)

    @property
    def is_decryptable(self) -> bool:
        return self.status in DECRYPTABLE_STATUSES

    def is_past_expiry(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def copy(self, **changes: Any) -> "KeyRecord":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def metadata(self) -> dict[str, Any]:
        """Everything about the key except its material."""
        return {
            "key_id": self.key_id,
            "organization_id": self.organization_id,
            "purpose": self.purpose.value,
            "algorithm": self.algorithm,
            "key_version": self.key_version,
            "derived_from": self.derived_from,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "rotated_at": self.rotated_at.isoformat() if self.rotated_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "status": self.status.value,
        }
