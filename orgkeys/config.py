"""Application configuration."""

import secrets
from functools import lru_cache
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from orgkeys.models.key import SUPPORTED_ALGORITHMS


class Settings(BaseSettings):
    """Settings loaded from ORGKEYS_* environment variables at process start."""

    # Environment
    environment: str = "development"  # development, staging, production

    # Development mode - generates throwaway secrets, MUST be False in production
    dev_mode: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Key-backing provider (local, aws_kms, gcp_kms, azure_kv, hashicorp)
    key_backing_enabled: bool = False
    key_backing_provider: str = "local"
    key_backing_endpoint: Optional[str] = None
    key_backing_region: str = ""
    # Key-encryption key for the local provider (hex or passphrase)
    key_backing_master_key: Optional[str] = None

    # Durable store. None keeps every key in process memory.
    database_url: Optional[str] = None

    # Encryption defaults
    default_algorithm: str = "aes-256-gcm"
    # encrypt() creates the first key of an (organization, purpose) pair on demand
    auto_provision_keys: bool = True

    # Key derivation
    export_kdf_iterations: int = 100_000
    default_pbkdf2_iterations: int = 100_000
    default_scrypt_cost: int = 32768
    derivation_timeout_seconds: float = 10.0

    # Rotation scheduler
    scheduler_enabled: bool = True
    rotation_check_interval_seconds: int = 3600  # hourly

    # Create the "system_master_001" key for the "system" organization on startup
    bootstrap_system_key: bool = True

    model_config = SettingsConfigDict(
        env_prefix="ORGKEYS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("default_algorithm")
    @classmethod
    def _check_algorithm(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"Unsupported default_algorithm {value!r}; "
                f"expected one of {sorted(SUPPORTED_ALGORITHMS)}"
            )
        return value

    @model_validator(mode="after")
    def _set_dev_defaults(self) -> "Settings":
        """Generate a local key-encryption key in dev mode; require one in production."""
        if self.dev_mode:
            if not self.key_backing_master_key:
                self.key_backing_master_key = secrets.token_hex(32)
        elif (
            self.is_production
            and self.key_backing_provider == "local"
            and not self.key_backing_master_key
        ):
            raise ValueError(
                "Missing required secret ORGKEYS_KEY_BACKING_MASTER_KEY "
                "(set ORGKEYS_DEV_MODE=true for development)"
            )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
