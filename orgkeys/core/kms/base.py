"""Base key-backing provider interface.

A key-backing provider supplies randomness for new keys and wraps key
material for storage outside process memory. Real deployments implement
this against a cloud KMS or an HSM; the local provider is the default.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class KeyBackingBackend(str, Enum):
    """Known key-backing backends."""
    LOCAL = "local"           # In-process randomness and AES-GCM wrapping
    AWS_KMS = "aws_kms"       # AWS Key Management Service
    GCP_KMS = "gcp_kms"       # Google Cloud Key Management
    AZURE_KV = "azure_kv"     # Azure Key Vault
    HASHICORP = "hashicorp"   # HashiCorp Vault Transit


@dataclass
class KeyBackingConfig:
    """Configuration for a key-backing provider.

    Attributes:
        backend: Which backend to use
        enabled: Whether an external backend was requested at startup
        master_key: Key-encryption key for the local backend
        region: Cloud region for cloud providers
        endpoint: Custom endpoint (for local testing or private endpoints)
        credentials: Provider-specific credentials
        options: Additional provider-specific options
    """
    backend: KeyBackingBackend = KeyBackingBackend.LOCAL
    enabled: bool = False
    master_key: str | None = None
    region: str = ""
    endpoint: str | None = None
    credentials: dict[str, str] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)


class KeyBackingProvider(ABC):
    """Abstract base class for key-backing providers."""

    def __init__(self, config: KeyBackingConfig):
        self.config = config

    @abstractmethod
    def generate_random_bytes(self, n: int) -> bytes:
        """Return ``n`` cryptographically secure random bytes.

        Raises:
            KeyBackingError: If the randomness source fails
        """

    @abstractmethod
    def wrap_key(self, material: bytes) -> bytes:
        """Protect key material for storage, returning an opaque reference."""

    @abstractmethod
    def unwrap_key(self, external_ref: bytes) -> bytes:
        """Recover key material from a reference produced by :meth:`wrap_key`.

        Raises:
            KeyBackingError: If the reference was tampered with or belongs
                to a different key-encryption key
        """

    def verify_health(self) -> dict[str, Any]:
        """Round-trip a throwaway key through the provider.

        Returns:
            Health status dict with healthy, backend, latency_ms
        """
        start = time.monotonic()

        try:
            probe = self.generate_random_bytes(32)
            healthy = self.unwrap_key(self.wrap_key(probe)) == probe
            latency = (time.monotonic() - start) * 1000
            return {
                "healthy": healthy,
                "backend": self.config.backend.value,
                "latency_ms": round(latency, 2),
            }
        except Exception as e:
            latency = (time.monotonic() - start) * 1000
            return {
                "healthy": False,
                "backend": self.config.backend.value,
                "error": str(e),
                "latency_ms": round(latency, 2),
            }
