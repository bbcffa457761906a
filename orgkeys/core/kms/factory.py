"""Key-backing provider factory.

Creates the appropriate provider from configuration read at startup.
"""

from orgkeys.config import Settings
from orgkeys.core.errors import KeyBackingError
from orgkeys.core.logging import get_logger

from .base import KeyBackingBackend, KeyBackingConfig, KeyBackingProvider
from .local import LocalKeyBackingProvider

logger = get_logger(__name__)

# Registry of key-backing providers
_providers: dict[KeyBackingBackend, type[KeyBackingProvider]] = {
    KeyBackingBackend.LOCAL: LocalKeyBackingProvider,
}


def register_provider(
    backend: KeyBackingBackend,
    provider_class: type[KeyBackingProvider],
) -> None:
    """Register a key-backing provider class.

    Allows adding cloud providers without modifying this module.

    Args:
        backend: Backend identifier
        provider_class: Provider class implementing KeyBackingProvider
    """
    _providers[backend] = provider_class
    logger.info("Registered key-backing provider", backend=backend.value)


def config_from_settings(settings: Settings) -> KeyBackingConfig:
    """Build provider configuration from application settings.

    When no external provider is enabled the local backend is used
    regardless of ``key_backing_provider``.
    """
    backend_str = settings.key_backing_provider.lower()
    try:
        backend = KeyBackingBackend(backend_str)
    except ValueError:
        raise KeyBackingError(
            f"Unknown key-backing backend: {backend_str}. "
            f"Supported: {', '.join(b.value for b in KeyBackingBackend)}"
        )

    if not settings.key_backing_enabled:
        backend = KeyBackingBackend.LOCAL

    return KeyBackingConfig(
        backend=backend,
        enabled=settings.key_backing_enabled,
        master_key=settings.key_backing_master_key,
        region=settings.key_backing_region,
        endpoint=settings.key_backing_endpoint,
    )


def create_provider(config: KeyBackingConfig) -> KeyBackingProvider:
    """Instantiate the provider for ``config.backend``.

    Raises:
        KeyBackingError: If the backend has no registered implementation
    """
    provider_class = _providers.get(config.backend)
    if provider_class is None:
        raise KeyBackingError(
            f"Key-backing backend '{config.backend.value}' is not yet implemented. "
            f"Available backends: {', '.join(p.value for p in _providers)}"
        )

    provider = provider_class(config)
    logger.info("Created key-backing provider", backend=config.backend.value)
    return provider
