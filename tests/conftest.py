"""Test configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone

import pytest

# Set up test environment variables BEFORE importing orgkeys modules
os.environ.setdefault("ORGKEYS_KEY_BACKING_MASTER_KEY", "test-master-key-for-testing-only-32chars")
os.environ.setdefault("ORGKEYS_SCHEDULER_ENABLED", "false")

from orgkeys.config import Settings
from orgkeys.core.audit import InMemoryAuditSink
from orgkeys.core.key_store import InMemoryKeyStore
from orgkeys.core.kms import KeyBackingConfig, LocalKeyBackingProvider
from orgkeys.service import EncryptionService


class MutableClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock frozen at a fixed instant."""
    return MutableClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    """Settings with cheap key derivation and no background work."""
    return Settings(
        key_backing_master_key="test-master-key-for-testing-only-32chars",
        database_url=None,
        export_kdf_iterations=1000,
        default_pbkdf2_iterations=1000,
        default_scrypt_cost=1024,
        scheduler_enabled=False,
        bootstrap_system_key=False,
        rotation_check_interval_seconds=3600,
    )


@pytest.fixture
def provider():
    """Local key-backing provider with a fixed master key."""
    return LocalKeyBackingProvider(
        KeyBackingConfig(master_key="test-master-key-for-testing-only-32chars")
    )


@pytest.fixture
def audit_sink():
    """In-memory audit sink."""
    return InMemoryAuditSink()


@pytest.fixture
def store():
    """Fresh in-memory key store."""
    return InMemoryKeyStore()


@pytest.fixture
def service(settings, store, audit_sink, provider, clock):
    """Fresh encryption service per test."""
    svc = EncryptionService(
        settings=settings,
        store=store,
        audit_sink=audit_sink,
        provider=provider,
        clock=clock,
    )
    yield svc
    svc.shutdown()
