"""
Exception classes for the key-management core.

Every public operation surfaces one of these. Exceptions raised by the
``cryptography`` package never cross a public boundary.
"""


class KeyManagementError(Exception):
    """Base exception for key-management errors."""

    def __init__(self, message: str, key_id: str | None = None):
        super().__init__(message)
        self.key_id = key_id


class KeyNotFoundError(KeyManagementError):
    """The referenced key does not exist in the key store."""
    pass


class MasterKeyNotFoundError(KeyNotFoundError):
    """The master key named for a derivation does not exist."""
    pass


class KeyUnavailableError(KeyManagementError):
    """The key exists but its status does not allow the requested operation."""

    def __init__(self, message: str, key_id: str | None = None, status: str | None = None):
        super().__init__(message, key_id=key_id)
        self.status = status


class NoActiveKeyError(KeyManagementError):
    """No active key exists for an (organization, purpose) pair."""

    def __init__(self, organization_id: str, purpose: str):
        super().__init__(f"No active encryption key found for {organization_id}:{purpose}")
        self.organization_id = organization_id
        self.purpose = purpose


class KeyGenerationError(KeyManagementError):
    """The randomness source failed while generating key material."""
    pass


class KeyDerivationError(KeyManagementError):
    """Key derivation parameters were rejected."""
    pass


class UnsupportedDerivationAlgorithmError(KeyDerivationError):
    """The derivation algorithm name is not recognised."""

    def __init__(self, algorithm: str):
        super().__init__(f"Unsupported key derivation algorithm: {algorithm}")
        self.algorithm = algorithm


class KeyDerivationTimeoutError(KeyDerivationError):
    """Key derivation did not finish within the allowed time."""
    pass


class DecryptionFailedError(KeyManagementError):
    """Decryption failed.

    Tag mismatch, malformed encoding and wrong key all raise this same
    error with the same message.
    """

    def __init__(self, key_id: str | None = None):
        super().__init__("Failed to decrypt data", key_id=key_id)


class ImportDecryptionError(KeyManagementError):
    """An exported key could not be unwrapped (wrong password or corrupted payload)."""

    def __init__(self):
        super().__init__("Failed to import encryption key")


class KeyBackingError(KeyManagementError):
    """The key-backing provider is misconfigured or failed."""
    pass
