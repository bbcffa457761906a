"""Tests for the Key Derivation Function engine."""

import os

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from orgkeys.core.errors import KeyDerivationError, UnsupportedDerivationAlgorithmError
from orgkeys.core.kdf_engine import KDFEngine, ScryptParams
from orgkeys.models import DerivationAlgorithm, KeyDerivationConfig


@pytest.fixture
def engine():
    """Create a KDF engine with cheap defaults."""
    return KDFEngine(default_pbkdf2_iterations=1000, default_scrypt_cost=1024)


@pytest.fixture
def master_key():
    """Generate a random master key."""
    return os.urandom(32)


@pytest.fixture
def salt_hex():
    return os.urandom(16).hex()


class TestResolveAlgorithm:
    """Tests for algorithm name resolution."""

    @pytest.mark.parametrize("name,expected", [
        ("pbkdf2", DerivationAlgorithm.PBKDF2),
        ("PBKDF2", DerivationAlgorithm.PBKDF2),
        ("scrypt", DerivationAlgorithm.SCRYPT),
        (DerivationAlgorithm.SCRYPT, DerivationAlgorithm.SCRYPT),
    ])
    def test_known(self, name, expected):
        """Test supported names resolve."""
        assert KDFEngine.resolve_algorithm(name) == expected

    def test_unknown(self):
        """Test unknown names are rejected with the name attached."""
        with pytest.raises(UnsupportedDerivationAlgorithmError) as exc_info:
            KDFEngine.resolve_algorithm("bcrypt")
        assert exc_info.value.algorithm == "bcrypt"


class TestPBKDF2:
    """Tests for PBKDF2-HMAC-SHA256."""

    def test_matches_reference(self, engine, master_key, salt_hex):
        """Test output matches PBKDF2HMAC directly."""
        derived = engine.derive(
            master_key, KeyDerivationConfig(algorithm="pbkdf2", salt=salt_hex, iterations=2000)
        )
        expected = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=bytes.fromhex(salt_hex),
            iterations=2000,
        ).derive(master_key)

        assert derived == expected

    def test_default_iterations(self, engine, master_key, salt_hex):
        """Test the engine default applies when iterations are omitted."""
        implicit = engine.derive(master_key, KeyDerivationConfig(algorithm="pbkdf2", salt=salt_hex))
        explicit = engine.derive(
            master_key, KeyDerivationConfig(algorithm="pbkdf2", salt=salt_hex, iterations=1000)
        )
        assert implicit == explicit

    def test_iterations_change_output(self, engine, master_key, salt_hex):
        """Test the iteration count is part of the derivation."""
        first = engine.derive(master_key, KeyDerivationConfig("pbkdf2", salt_hex, iterations=1000))
        second = engine.derive(master_key, KeyDerivationConfig("pbkdf2", salt_hex, iterations=1001))
        assert first != second

    def test_invalid_iterations(self, engine, master_key, salt_hex):
        """Test negative iteration counts are rejected."""
        with pytest.raises(KeyDerivationError):
            engine.derive(master_key, KeyDerivationConfig("pbkdf2", salt_hex, iterations=-1))


class TestScrypt:
    """Tests for scrypt."""

    def test_deterministic(self, engine, master_key, salt_hex):
        """Test scrypt gives the same key for the same inputs."""
        config = KeyDerivationConfig(algorithm="scrypt", salt=salt_hex)
        assert engine.derive(master_key, config) == engine.derive(master_key, config)

    def test_output_length(self, engine, master_key, salt_hex):
        """Test scrypt output is 256 bits."""
        derived = engine.derive(master_key, KeyDerivationConfig(algorithm="scrypt", salt=salt_hex))
        assert len(derived) == 32

    def test_cost_not_power_of_two(self, engine, master_key, salt_hex):
        """Test an invalid cost parameter is rejected."""
        with pytest.raises(KeyDerivationError):
            engine.derive(master_key, KeyDerivationConfig("scrypt", salt_hex, iterations=1000))

    def test_memory_ceiling(self, engine, master_key, salt_hex):
        """Test the memory hint caps the cost parameter."""
        needed = 128 * ScryptParams.r * 1024
        config = KeyDerivationConfig("scrypt", salt_hex, iterations=1024, memory=needed - 1)

        with pytest.raises(KeyDerivationError):
            engine.derive(master_key, config)

        allowed = KeyDerivationConfig("scrypt", salt_hex, iterations=1024, memory=needed)
        assert len(engine.derive(master_key, allowed)) == 32


class TestValidation:
    """Tests for derivation input validation."""

    def test_empty_master(self, engine, salt_hex):
        """Test empty input key material is rejected."""
        with pytest.raises(KeyDerivationError):
            engine.derive(b"", KeyDerivationConfig("pbkdf2", salt_hex))

    def test_wrong_key_length(self, engine, master_key, salt_hex):
        """Test only 256-bit output is allowed."""
        with pytest.raises(KeyDerivationError):
            engine.derive(master_key, KeyDerivationConfig("pbkdf2", salt_hex, key_length=16))

    @pytest.mark.parametrize("salt", ["", "zz", "abc"])
    def test_bad_salt(self, engine, master_key, salt):
        """Test empty or non-hex salts are rejected."""
        with pytest.raises(KeyDerivationError):
            engine.derive(master_key, KeyDerivationConfig("pbkdf2", salt))

    @pytest.mark.parametrize("config", [
        KeyDerivationConfig("pbkdf2", "ab" * 16, iterations=0),
        KeyDerivationConfig("scrypt", "ab" * 16, iterations=0),
        KeyDerivationConfig("scrypt", "ab" * 16, iterations=1024, parallelism=0),
    ])
    def test_explicit_zero_rejected(self, engine, master_key, config):
        """Test an explicit zero is an error rather than a request for the default."""
        with pytest.raises(KeyDerivationError):
            engine.derive(master_key, config)

    def test_password_zero_iterations_rejected(self, engine):
        """Test password derivation refuses zero iterations."""
        with pytest.raises(KeyDerivationError):
            engine.derive_from_password("hunter2", engine.generate_salt(), 0)

    def test_unsupported_algorithm(self, engine, master_key, salt_hex):
        """Test unknown algorithms are rejected before any work."""
        with pytest.raises(UnsupportedDerivationAlgorithmError):
            engine.derive(master_key, KeyDerivationConfig("argon2id", salt_hex))


class TestPasswordDerivation:
    """Tests for password-based wrapping keys."""

    def test_derive_from_password(self, engine):
        """Test password derivation is deterministic per salt."""
        salt = engine.generate_salt()

        first = engine.derive_from_password("hunter2", salt)
        second = engine.derive_from_password("hunter2", salt)
        other = engine.derive_from_password("hunter3", salt)

        assert first == second
        assert first != other
        assert len(first) == 32

    def test_generate_salt(self, engine):
        """Test salt generation."""
        assert len(engine.generate_salt()) == 32
        assert len(engine.generate_salt(16)) == 16
        assert engine.generate_salt() != engine.generate_salt()
