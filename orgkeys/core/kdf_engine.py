"""Key Derivation Function Engine.

Derives fixed-length subordinate keys from a master key or a password:
- PBKDF2-HMAC-SHA256: iterative hash, FIPS-compliant
- scrypt: memory-hard (RFC 7914)

Derivation is deterministic: the same input, salt, algorithm and
parameters always give the same key. Salts are never persisted here; a
caller who wants to re-derive a key keeps its salt.

Both functions are deliberately expensive. Keep them off latency-sensitive
paths or bound them with a timeout (see ``EncryptionService.derive_key_async``).
"""

import os
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from orgkeys.core.errors import KeyDerivationError, UnsupportedDerivationAlgorithmError
from orgkeys.models import KEY_LENGTH, DerivationAlgorithm, KeyDerivationConfig


@dataclass
class PBKDF2Params:
    """PBKDF2 parameters."""
    iterations: int = 100_000


@dataclass
class ScryptParams:
    """scrypt parameters."""
    n: int = 32768  # CPU/memory cost, power of two
    r: int = 8      # Block size
    p: int = 1      # Parallelization


class KDFEngine:
    """Key derivation for subordinate and password-wrapping keys.

    Usage:
        engine = KDFEngine()

        # Subordinate key from a master key
        derived = engine.derive(
            master_key,
            KeyDerivationConfig(algorithm="scrypt", salt=salt_hex),
        )

        # Wrapping key from a password
        wrapping_key = engine.derive_from_password("hunter2", salt)
    """

    def __init__(
        self,
        default_pbkdf2_iterations: int = PBKDF2Params.iterations,
        default_scrypt_cost: int = ScryptParams.n,
    ):
        self.default_pbkdf2_iterations = default_pbkdf2_iterations
        self.default_scrypt_cost = default_scrypt_cost

    @staticmethod
    def resolve_algorithm(name: str | DerivationAlgorithm) -> DerivationAlgorithm:
        """Map an algorithm name to a supported algorithm.

        Raises:
            UnsupportedDerivationAlgorithmError: For unrecognised names
        """
        try:
            return DerivationAlgorithm(str(getattr(name, "value", name)).lower())
        except ValueError:
            raise UnsupportedDerivationAlgorithmError(str(name))

    def derive(self, input_key_material: bytes, config: KeyDerivationConfig) -> bytes:
        """Derive a 256-bit key as described by ``config``.

        Args:
            input_key_material: Master key bytes
            config: Algorithm, hex salt and cost parameters

        Returns:
            Derived key bytes (always KEY_LENGTH long)

        Raises:
            UnsupportedDerivationAlgorithmError: If the algorithm is unknown
            KeyDerivationError: If the salt or parameters are invalid
        """
        algorithm = self.resolve_algorithm(config.algorithm)

        if not input_key_material:
            raise KeyDerivationError("Input key material cannot be empty")
        if config.key_length != KEY_LENGTH:
            raise KeyDerivationError(
                f"Derived key length must be {KEY_LENGTH} bytes, got {config.key_length}"
            )
        try:
            salt = bytes.fromhex(config.salt)
        except (TypeError, ValueError):
            raise KeyDerivationError("Salt must be a hex string")
        if not salt:
            raise KeyDerivationError("Salt cannot be empty")

        if algorithm == DerivationAlgorithm.PBKDF2:
            return self.pbkdf2(
                input_key_material,
                salt,
                self.default_pbkdf2_iterations if config.iterations is None else config.iterations,
            )

        params = ScryptParams(
            n=self.default_scrypt_cost if config.iterations is None else config.iterations,
            p=ScryptParams.p if config.parallelism is None else config.parallelism,
        )
        # scrypt needs 128 * r * N bytes; memory is the caller's ceiling
        if config.memory is not None and 128 * params.r * params.n > config.memory:
            raise KeyDerivationError(
                f"scrypt N={params.n} r={params.r} needs more than {config.memory} bytes"
            )
        return self.scrypt(input_key_material, salt, params)

    def pbkdf2(self, secret: bytes, salt: bytes, iterations: int) -> bytes:
        """PBKDF2-HMAC-SHA256 to KEY_LENGTH bytes."""
        if iterations < 1:
            raise KeyDerivationError("PBKDF2 iterations must be positive")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(secret)

    def scrypt(self, secret: bytes, salt: bytes, params: ScryptParams) -> bytes:
        """scrypt to KEY_LENGTH bytes."""
        try:
            kdf = Scrypt(
                salt=salt,
                length=KEY_LENGTH,
                n=params.n,
                r=params.r,
                p=params.p,
            )
            return kdf.derive(secret)
        except (ValueError, MemoryError) as e:
            # n not a power of two, or the memory limit was exceeded
            raise KeyDerivationError(f"Invalid scrypt parameters: {e}") from e

    def derive_from_password(self, password: str, salt: bytes, iterations: int | None = None) -> bytes:
        """Derive a wrapping key from a password with PBKDF2-HMAC-SHA256."""
        return self.pbkdf2(
            password.encode("utf-8"),
            salt,
            self.default_pbkdf2_iterations if iterations is None else iterations,
        )

    def generate_salt(self, length: int = 32) -> bytes:
        """Generate a random salt for key derivation.

        Args:
            length: Salt length in bytes

        Returns:
            Random salt bytes
        """
        return os.urandom(length)
