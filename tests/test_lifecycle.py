"""Tests for key rotation, revocation, deletion, expiry and export."""

import base64
from datetime import timedelta

import pytest

from orgkeys.core.audit import AuditAction
from orgkeys.core.errors import (
    ImportDecryptionError,
    KeyManagementError,
    KeyNotFoundError,
    KeyUnavailableError,
    NoActiveKeyError,
)
from orgkeys.core.envelope_cipher import seal
from orgkeys.core.key_store import InMemoryKeyStore
from orgkeys.core.lifecycle import ExportedKeyPayload
from orgkeys.models import KeyPurpose, KeyStatus, RotationPolicy
from orgkeys.service import EncryptionService


class TestRotate:
    """Tests for key rotation."""

    def test_rotate(self, service, store, clock):
        """Test rotating the active key."""
        old = service.generate_key("acme", KeyPurpose.FINANCIAL)
        clock.advance(hours=1)

        new = service.rotate_key("acme", KeyPurpose.FINANCIAL)

        assert new.key_id != old.key_id
        assert new.key_version == 2
        assert new.status == KeyStatus.ACTIVE
        assert new.created_at == clock.now
        assert new.key_material != old.key_material

        retired = store.get(old.key_id)
        assert retired.status == KeyStatus.ROTATED
        assert retired.rotated_at == clock.now
        assert store.find_active("acme", KeyPurpose.FINANCIAL).key_id == new.key_id

    def test_rotate_without_active_key(self, service):
        """Test rotating a pair with no active key."""
        with pytest.raises(NoActiveKeyError):
            service.rotate_key("acme", KeyPurpose.PII)

    def test_rotation_monotonic(self, service, store):
        """Test N rotations give version N+1 and N rotated keys."""
        service.generate_key("acme", KeyPurpose.PII)
        for _ in range(5):
            service.rotate_key("acme", KeyPurpose.PII)

        keys = store.list_keys("acme", KeyPurpose.PII)
        active = [k for k in keys if k.status == KeyStatus.ACTIVE]
        rotated = [k for k in keys if k.status == KeyStatus.ROTATED]

        assert len(active) == 1
        assert active[0].key_version == 6
        assert len(rotated) == 5
        assert sorted(k.key_version for k in keys) == [1, 2, 3, 4, 5, 6]

    def test_rotate_keeps_key_lifetime(self, service, clock):
        """Test the new key gets the same lifetime as the old one."""
        service.generate_key("acme", expiration_days=30)
        clock.advance(days=10)

        new = service.rotate_key("acme")

        assert new.expires_at == clock.now + timedelta(days=30)

    def test_rotate_audited(self, service, audit_sink):
        """Test rotation emits an audit event with both keys."""
        old = service.generate_key("acme")
        new = service.rotate_key("acme")

        events = audit_sink.get_events(action=AuditAction.KEY_ROTATED)
        assert len(events) == 1
        context = events[0].business_context
        assert context["old_key_id"] == old.key_id
        assert context["new_key_id"] == new.key_id
        assert context["old_version"] == 1
        assert context["new_version"] == 2

    def test_rotate_without_policy_keeps_old_key(self, service, store):
        """Test no deletion is scheduled without a policy."""
        old = service.generate_key("acme")
        service.rotate_key("acme")

        assert store.get_pending_deletion(old.key_id) is None

    def test_rotate_with_policy_schedules_deletion(self, service, store, clock):
        """Test a policy's grace period schedules deletion of the old key."""
        service.set_rotation_policy(RotationPolicy(
            organization_id="acme",
            purpose=KeyPurpose.GENERAL,
            rotation_interval_days=90,
            grace_period_days=14,
        ))
        old = service.generate_key("acme")

        service.rotate_key("acme")

        pending = store.get_pending_deletion(old.key_id)
        assert pending is not None
        assert pending.delete_after == clock.now + timedelta(days=14)
        assert pending.grace_period_days == 14


class TestRevoke:
    """Tests for key revocation."""

    def test_revoke_active_key(self, service, store, clock):
        """Test revoking the active key."""
        key = service.generate_key("acme")

        revoked = service.revoke_key(key.key_id, "suspected compromise")

        assert revoked.status == KeyStatus.REVOKED
        assert revoked.revoked_at == clock.now
        assert store.find_active("acme", KeyPurpose.GENERAL) is None

    def test_revoke_rotated_key(self, service, store):
        """Test revoking a retired key."""
        old = service.generate_key("acme")
        service.rotate_key("acme")

        service.revoke_key(old.key_id, "cleanup")

        assert store.get(old.key_id).status == KeyStatus.REVOKED

    def test_revoke_missing_key(self, service):
        """Test revoking an unknown key."""
        with pytest.raises(KeyNotFoundError):
            service.revoke_key("missing", "reason")

    def test_revoke_cancels_pending_deletion(self, service, store):
        """Test revocation removes a scheduled deletion."""
        old = service.generate_key("acme")
        service.rotate_key("acme")
        service.schedule_key_deletion(old.key_id, 30)

        service.revoke_key(old.key_id, "compromised")

        assert store.get_pending_deletion(old.key_id) is None

    def test_revoke_audited(self, service, audit_sink):
        """Test revocation emits an audit event with the reason."""
        key = service.generate_key("acme")
        service.revoke_key(key.key_id, "employee departure")

        events = audit_sink.get_events(action=AuditAction.KEY_REVOKED)
        assert len(events) == 1
        assert events[0].resource_id == key.key_id
        assert events[0].business_context["reason"] == "employee departure"

    def test_encrypt_after_revoking_active_key(self, service):
        """Test a new key is provisioned after the active one is revoked."""
        envelope = service.encrypt("a", "acme")
        service.revoke_key(envelope.key_id, "compromised")

        fresh = service.encrypt("b", "acme")

        assert fresh.key_id != envelope.key_id
        assert service.decrypt_string(fresh) == "b"


class TestDeferredDeletion:
    """Tests for deletion after the grace period."""

    def test_deleted_after_grace_period(self, service, store, clock, audit_sink):
        """Test a rotated key is deleted once its grace period ends."""
        old = service.generate_key("acme")
        service.rotate_key("acme")
        service.schedule_key_deletion(old.key_id, 7)

        clock.advance(days=6)
        assert service.process_due_deletions() == []
        assert store.get(old.key_id) is not None

        clock.advance(days=1)
        assert service.process_due_deletions() == [old.key_id]
        assert store.get(old.key_id) is None
        assert store.get_pending_deletion(old.key_id) is None

        events = audit_sink.get_events(action=AuditAction.KEY_DELETED)
        assert [e.resource_id for e in events] == [old.key_id]

    def test_active_key_not_deleted(self, service, store, clock, audit_sink):
        """Test a key that is not rotated survives its deletion date."""
        key = service.generate_key("acme")
        service.schedule_key_deletion(key.key_id, 1)
        clock.advance(days=2)

        assert service.process_due_deletions() == []
        assert store.get(key.key_id).status == KeyStatus.ACTIVE
        assert store.get_pending_deletion(key.key_id) is None
        assert audit_sink.get_events(action=AuditAction.KEY_DELETED) == []

    def test_already_deleted_key(self, service, store, clock):
        """Test a pending deletion for a vanished key is consumed."""
        old = service.generate_key("acme")
        service.rotate_key("acme")
        service.schedule_key_deletion(old.key_id, 1)
        store.delete(old.key_id)
        clock.advance(days=2)

        assert service.process_due_deletions() == []
        assert store.get_pending_deletion(old.key_id) is None

    def test_cancel_deletion(self, service, store, clock):
        """Test a cancelled deletion never happens."""
        old = service.generate_key("acme")
        service.rotate_key("acme")
        service.schedule_key_deletion(old.key_id, 1)

        assert service.cancel_key_deletion(old.key_id) is True
        assert service.cancel_key_deletion(old.key_id) is False

        clock.advance(days=2)
        assert service.process_due_deletions() == []
        assert store.get(old.key_id) is not None

    def test_schedule_missing_key(self, service):
        """Test scheduling deletion of an unknown key."""
        with pytest.raises(KeyNotFoundError):
            service.schedule_key_deletion("missing", 1)


class TestExpiry:
    """Tests for key expiry."""

    def test_expire_due_keys(self, service, store, clock, audit_sink):
        """Test active keys past expires_at become expired."""
        key = service.generate_key("acme", expiration_days=1)
        permanent = service.generate_key("acme", KeyPurpose.PII)
        clock.advance(days=1)

        expired = service.lifecycle.expire_due_keys()

        assert expired == [key.key_id]
        assert store.get(key.key_id).status == KeyStatus.EXPIRED
        assert store.get(permanent.key_id).status == KeyStatus.ACTIVE
        assert [e.resource_id for e in audit_sink.get_events(action=AuditAction.KEY_EXPIRED)] == [key.key_id]

    def test_not_yet_expired(self, service, clock):
        """Test keys before expires_at stay active."""
        service.generate_key("acme", expiration_days=2)
        clock.advance(days=1)

        assert service.lifecycle.expire_due_keys() == []

    def test_expired_key_blocks_decryption(self, service, clock):
        """Test envelopes under an expired key cannot be decrypted."""
        service.generate_key("acme", expiration_days=1)
        envelope = service.encrypt("data", "acme")
        clock.advance(days=1)
        service.lifecycle.expire_due_keys()

        with pytest.raises(KeyUnavailableError):
            service.decrypt(envelope)


class TestExportImport:
    """Tests for password-protected key export."""

    def test_export_metadata(self, service, clock, settings):
        """Test the export carries everything needed to unwrap it."""
        key = service.generate_key("acme", KeyPurpose.PII)

        exported = service.export_key(key.key_id, "correct horse battery staple")

        meta = exported.export_metadata
        assert meta["key_id"] == key.key_id
        assert meta["algorithm"] == "aes-256-gcm"
        assert meta["kdf"] == "pbkdf2-sha256"
        assert meta["iterations"] == settings.export_kdf_iterations
        assert meta["exported_at"] == clock.now.isoformat()
        assert len(base64.b64decode(meta["salt"])) == 32
        assert len(base64.b64decode(meta["iv"])) == 12
        assert len(base64.b64decode(meta["auth_tag"])) == 16
        assert key.key_material not in base64.b64decode(exported.wrapped_key)

    def test_round_trip(self, service, store):
        """Test import reconstructs the exported key."""
        key = service.generate_key("acme", KeyPurpose.FINANCIAL, expiration_days=365)
        exported = service.export_key(key.key_id, "pw")
        store.delete(key.key_id)

        imported = service.import_key(exported.wrapped_key, exported.export_metadata, "pw")

        assert imported.key_id == key.key_id
        assert imported.key_material == key.key_material
        assert imported.organization_id == "acme"
        assert imported.purpose == KeyPurpose.FINANCIAL
        assert imported.key_version == key.key_version
        assert imported.created_at == key.created_at
        assert imported.expires_at == key.expires_at
        assert imported.status == KeyStatus.ACTIVE
        assert store.find_active("acme", KeyPurpose.FINANCIAL).key_id == key.key_id

    def test_import_into_other_service(self, service, settings, provider, audit_sink, clock):
        """Test envelopes decrypt after the key moves to another instance."""
        envelope = service.encrypt("42.00 USD", "acme", KeyPurpose.FINANCIAL)
        exported = service.export_key(envelope.key_id, "pw")

        other = EncryptionService(
            settings=settings,
            store=InMemoryKeyStore(),
            audit_sink=audit_sink,
            provider=provider,
            clock=clock,
        )
        other.import_key(exported.wrapped_key, exported.export_metadata, "pw")

        assert other.decrypt_string(envelope) == "42.00 USD"

    def test_wrong_password(self, service, store):
        """Test a wrong password fails the import."""
        key = service.generate_key("acme")
        exported = service.export_key(key.key_id, "right")
        store.delete(key.key_id)

        with pytest.raises(ImportDecryptionError) as exc_info:
            service.import_key(exported.wrapped_key, exported.export_metadata, "wrong")

        assert str(exc_info.value) == "Failed to import encryption key"
        assert store.get(key.key_id) is None

    def test_corrupted_payload(self, service):
        """Test a corrupted payload fails like a wrong password."""
        key = service.generate_key("acme")
        exported = service.export_key(key.key_id, "pw")
        data = bytearray(base64.b64decode(exported.wrapped_key))
        data[0] ^= 0x01

        with pytest.raises(ImportDecryptionError):
            service.import_key(base64.b64encode(bytes(data)).decode(), exported.export_metadata, "pw")

    @pytest.mark.parametrize("change", [
        {"salt": None},
        {"iv": "!!!"},
        {"auth_tag": base64.b64encode(b"short").decode()},
        {"iterations": 0},
        {"kdf": "md5"},
    ])
    def test_malformed_metadata(self, service, change):
        """Test malformed export metadata fails the import."""
        key = service.generate_key("acme")
        exported = service.export_key(key.key_id, "pw")
        metadata = {**exported.export_metadata, **change}

        with pytest.raises(ImportDecryptionError):
            service.import_key(exported.wrapped_key, metadata, "pw")

    def test_import_supersedes_active_key(self, service, store):
        """Test an imported key becomes the active key of its pair."""
        old = service.generate_key("acme")
        exported = service.export_key(old.key_id, "pw")
        current = service.rotate_key("acme")

        service.import_key(exported.wrapped_key, exported.export_metadata, "pw")

        assert store.find_active("acme", KeyPurpose.GENERAL).key_id == old.key_id
        assert store.get(current.key_id).status == KeyStatus.ROTATED

    def test_import_old_backup_keeps_versions_increasing(self, service, store):
        """Test restoring a v1 backup over a v3 lineage never reuses a version."""
        first = service.generate_key("acme", KeyPurpose.PII)
        exported = service.export_key(first.key_id, "pw")
        service.rotate_key("acme", KeyPurpose.PII)
        service.rotate_key("acme", KeyPurpose.PII)

        imported = service.import_key(exported.wrapped_key, exported.export_metadata, "pw")
        assert imported.key_id == first.key_id
        assert imported.key_version == 4

        rotated = service.rotate_key("acme", KeyPurpose.PII)
        assert rotated.key_version == 5

        versions = [k.key_version for k in store.list_keys("acme", KeyPurpose.PII)]
        assert sorted(versions) == [2, 3, 4, 5]

    def test_import_audits_versions(self, service, audit_sink):
        """Test the import event records the exported and assigned versions."""
        key = service.generate_key("acme")
        exported = service.export_key(key.key_id, "pw")
        service.rotate_key("acme")

        service.import_key(exported.wrapped_key, exported.export_metadata, "pw")

        event = audit_sink.get_events(action=AuditAction.KEY_IMPORTED)[0]
        assert event.business_context["exported_version"] == 1
        assert event.business_context["key_version"] == 3
        assert event.business_context["previous_status"] == "rotated"

    def test_import_over_revoked_key_refused(self, service, store):
        """Test an import cannot undo a revocation."""
        key = service.generate_key("acme")
        exported = service.export_key(key.key_id, "pw")
        service.revoke_key(key.key_id, "compromised")

        with pytest.raises(KeyUnavailableError):
            service.import_key(exported.wrapped_key, exported.export_metadata, "pw")

        assert store.get(key.key_id).status == KeyStatus.REVOKED
        assert store.find_active("acme", KeyPurpose.GENERAL) is None

    @pytest.mark.parametrize("material,algorithm", [
        (b"\x01" * 16, "aes-256-gcm"),
        (b"\x01" * 32, "chacha20-poly1305"),
    ])
    def test_import_rejects_unusable_key(self, service, store, material, algorithm):
        """Test a correctly wrapped export of a key we cannot use is refused."""
        lifecycle = service.lifecycle
        payload = ExportedKeyPayload(
            key_id="acme_general_crafted",
            organization_id="acme",
            algorithm=algorithm,
            key_version=1,
            key_material=base64.b64encode(material).decode(),
            purpose=KeyPurpose.GENERAL,
            created_at=service.clock(),
        )
        salt = lifecycle.kdf.generate_salt()
        iv = b"\x00" * 12
        wrapping_key = lifecycle.kdf.derive_from_password("pw", salt, lifecycle.export_iterations)
        ciphertext, tag = seal(wrapping_key, iv, payload.model_dump_json().encode(), None)
        metadata = {
            "salt": base64.b64encode(salt).decode(),
            "iv": base64.b64encode(iv).decode(),
            "auth_tag": base64.b64encode(tag).decode(),
            "iterations": lifecycle.export_iterations,
        }

        with pytest.raises(ImportDecryptionError):
            service.import_key(base64.b64encode(ciphertext).decode(), metadata, "pw")

        assert store.get("acme_general_crafted") is None

    def test_export_missing_key(self, service):
        """Test exporting an unknown key."""
        with pytest.raises(KeyNotFoundError):
            service.export_key("missing", "pw")

    def test_export_requires_password(self, service):
        """Test an empty export password is rejected."""
        key = service.generate_key("acme")
        with pytest.raises(KeyManagementError):
            service.export_key(key.key_id, "")

    def test_export_import_audited(self, service, audit_sink):
        """Test export and import emit audit events."""
        key = service.generate_key("acme")
        exported = service.export_key(key.key_id, "pw")
        service.import_key(exported.wrapped_key, exported.export_metadata, "pw")

        assert [e.resource_id for e in audit_sink.get_events(action=AuditAction.KEY_EXPORTED)] == [key.key_id]
        assert [e.resource_id for e in audit_sink.get_events(action=AuditAction.KEY_IMPORTED)] == [key.key_id]
