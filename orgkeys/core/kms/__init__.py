"""Key-backing providers.

Supported backends:
- local: In-process randomness with AES-GCM wrapping (default)

Recognised but not implemented here: aws_kms, gcp_kms, azure_kv, hashicorp.
"""

from .base import KeyBackingBackend, KeyBackingConfig, KeyBackingProvider
from .factory import config_from_settings, create_provider, register_provider
from .local import LocalKeyBackingProvider

__all__ = [
    "KeyBackingBackend",
    "KeyBackingConfig",
    "KeyBackingProvider",
    "LocalKeyBackingProvider",
    "config_from_settings",
    "create_provider",
    "register_provider",
]
