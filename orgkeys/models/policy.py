"""Rotation policies, deferred deletions and derivation parameters."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from orgkeys.models.key import KEY_LENGTH, KeyPurpose


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    components = string.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


class RotationPolicy(BaseModel):
    """Rotation policy for one (organization, purpose) pair.

    Created and updated by an administrator; read-only to the scheduler.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    organization_id: str = Field(min_length=1, description="Owning organization")
    purpose: KeyPurpose = Field(description="Key purpose the policy applies to")
    rotation_interval_days: int = Field(ge=1, description="Days between rotations")
    grace_period_days: int = Field(
        default=30, ge=0,
        description="Days a rotated key stays available for decryption",
    )
    auto_rotation: bool = Field(default=True, description="Rotate from the scheduler")
    notify_before_rotation_days: int = Field(
        default=7, ge=0,
        description="Days before rotation to emit an upcoming-rotation event",
    )
    requires_approval: bool = Field(default=False, description="Rotation needs sign-off")
    approvers: list[str] = Field(default_factory=list, description="Who may approve")

    @property
    def lineage(self) -> tuple[str, KeyPurpose]:
        return (self.organization_id, self.purpose)


@dataclass(frozen=True)
class PendingDeletion:
    """A rotated key waiting out its grace period."""

    key_id: str
    delete_after: datetime
    grace_period_days: int
    scheduled_at: datetime


class DerivationAlgorithm(str, Enum):
    """Supported key derivation algorithms."""
    PBKDF2 = "pbkdf2"  # PBKDF2-HMAC-SHA256
    SCRYPT = "scrypt"  # Memory-hard


@dataclass(frozen=True)
class KeyDerivationConfig:
    """Parameters for deriving a subordinate key from a master key.

    Attributes:
        algorithm: Name of the KDF; anything but "pbkdf2" or "scrypt" is rejected
        salt: Hex-encoded salt. The caller keeps it to re-derive the key later.
        key_length: Output length in bytes, fixed to the 256-bit key size
        iterations: PBKDF2 iteration count, or the scrypt cost parameter N
        memory: scrypt memory ceiling hint in bytes
        parallelism: scrypt parallelization parameter p
    """

    algorithm: str
    salt: str
    key_length: int = KEY_LENGTH
    iterations: Optional[int] = None
    memory: Optional[int] = None
    parallelism: Optional[int] = None
