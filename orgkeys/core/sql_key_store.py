"""Durable key store backed by SQLAlchemy.

Key material is persisted only in wrapped form, through the configured
key-backing provider. Pending deletions are rows, so scheduled deletions
survive a process restart and are picked up by the next scheduler sweep.
"""

import threading
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from orgkeys.core.errors import KeyNotFoundError
from orgkeys.core.key_store import KeyStore
from orgkeys.core.kms import KeyBackingProvider
from orgkeys.database import (
    KeyRow,
    PendingDeletionRow,
    RotationPolicyRow,
    create_session_factory,
)
from orgkeys.models import (
    KeyPurpose,
    KeyRecord,
    KeyStatus,
    PendingDeletion,
    RotationPolicy,
)


class SQLKeyStore(KeyStore):
    """Key store persisting to any SQLAlchemy-supported database."""

    def __init__(
        self,
        provider: KeyBackingProvider,
        session_factory: sessionmaker | None = None,
        database_url: str = "sqlite://",
    ):
        super().__init__()
        self._provider = provider
        self._session_factory = session_factory or create_session_factory(database_url)
        # Serializes writers so activate() is one unit for every reader in this process
        self._lock = threading.RLock()

    def _to_record(self, row: KeyRow) -> KeyRecord:
        return KeyRecord(
            key_id=row.key_id,
            organization_id=row.organization_id,
            key_material=self._provider.unwrap_key(row.wrapped_material),
            purpose=KeyPurpose(row.purpose),
            algorithm=row.algorithm,
            key_version=row.key_version,
            derived_from=row.derived_from,
            created_at=row.created_at,
            expires_at=row.expires_at,
            rotated_at=row.rotated_at,
            revoked_at=row.revoked_at,
            status=KeyStatus(row.status),
        )

    def _write_row(self, session: Session, record: KeyRecord) -> None:
        row = session.get(KeyRow, record.key_id)
        if row is None:
            row = KeyRow(key_id=record.key_id)
            session.add(row)
        row.organization_id = record.organization_id
        row.purpose = record.purpose.value
        row.algorithm = record.algorithm
        row.key_version = record.key_version
        row.wrapped_material = self._provider.wrap_key(record.key_material)
        row.derived_from = record.derived_from
        row.created_at = record.created_at
        row.expires_at = record.expires_at
        row.rotated_at = record.rotated_at
        row.revoked_at = record.revoked_at
        row.status = record.status.value

    @staticmethod
    def _active_row(session: Session, organization_id: str, purpose: KeyPurpose) -> Optional[KeyRow]:
        return session.scalars(
            select(KeyRow)
            .where(KeyRow.organization_id == organization_id)
            .where(KeyRow.purpose == KeyPurpose(purpose).value)
            .where(KeyRow.status == KeyStatus.ACTIVE.value)
        ).first()

    def put(self, record: KeyRecord) -> None:
        with self._lock, self._session_factory.begin() as session:
            if record.status == KeyStatus.ACTIVE:
                current = self._active_row(session, record.organization_id, record.purpose)
                if current is not None and current.key_id != record.key_id:
                    raise ValueError(
                        f"{record.organization_id}:{record.purpose.value} already has "
                        f"active key {current.key_id}"
                    )
            self._write_row(session, record)

    def get(self, key_id: str) -> Optional[KeyRecord]:
        with self._lock, self._session_factory() as session:
            row = session.get(KeyRow, key_id)
            return self._to_record(row) if row else None

    def delete(self, key_id: str) -> bool:
        with self._lock, self._session_factory.begin() as session:
            result = session.execute(delete(KeyRow).where(KeyRow.key_id == key_id))
            return result.rowcount > 0

    def find_active(self, organization_id: str, purpose: KeyPurpose) -> Optional[KeyRecord]:
        with self._lock, self._session_factory() as session:
            row = self._active_row(session, organization_id, purpose)
            return self._to_record(row) if row else None

    def list_keys(
        self,
        organization_id: str | None = None,
        purpose: KeyPurpose | None = None,
        status: KeyStatus | None = None,
    ) -> list[KeyRecord]:
        query = select(KeyRow).order_by(KeyRow.created_at, KeyRow.key_version)
        if organization_id is not None:
            query = query.where(KeyRow.organization_id == organization_id)
        if purpose is not None:
            query = query.where(KeyRow.purpose == KeyPurpose(purpose).value)
        if status is not None:
            query = query.where(KeyRow.status == KeyStatus(status).value)
        with self._lock, self._session_factory() as session:
            return [self._to_record(row) for row in session.scalars(query)]

    def activate(self, record: KeyRecord, now: datetime) -> Optional[KeyRecord]:
        record = record.copy(status=KeyStatus.ACTIVE)
        with self._lock, self._session_factory.begin() as session:
            superseded = None
            current = self._active_row(session, record.organization_id, record.purpose)
            if current is not None and current.key_id != record.key_id:
                current.status = KeyStatus.ROTATED.value
                current.rotated_at = now
                superseded = self._to_record(current)
            self._write_row(session, record)
            return superseded

    def transition(self, key_id: str, status: KeyStatus, now: datetime) -> KeyRecord:
        status = KeyStatus(status)
        with self._lock:
            with self._session_factory() as session:
                row = session.get(KeyRow, key_id)
                if row is None:
                    raise KeyNotFoundError(f"Key not found: {key_id}", key_id=key_id)
                record = self._to_record(row)

            if status == KeyStatus.ACTIVE:
                self.activate(record, now)
                return self.get(key_id)

            with self._session_factory.begin() as session:
                row = session.get(KeyRow, key_id)
                row.status = status.value
                if status == KeyStatus.ROTATED:
                    row.rotated_at = now
                elif status == KeyStatus.REVOKED:
                    row.revoked_at = now
                return self._to_record(row)

    def put_policy(self, policy: RotationPolicy) -> None:
        with self._lock, self._session_factory.begin() as session:
            row = session.get(RotationPolicyRow, (policy.organization_id, policy.purpose.value))
            if row is None:
                row = RotationPolicyRow(
                    organization_id=policy.organization_id,
                    purpose=policy.purpose.value,
                )
                session.add(row)
            row.rotation_interval_days = policy.rotation_interval_days
            row.grace_period_days = policy.grace_period_days
            row.auto_rotation = policy.auto_rotation
            row.notify_before_rotation_days = policy.notify_before_rotation_days
            row.requires_approval = policy.requires_approval
            row.approvers = list(policy.approvers)

    @staticmethod
    def _to_policy(row: RotationPolicyRow) -> RotationPolicy:
        return RotationPolicy(
            organization_id=row.organization_id,
            purpose=KeyPurpose(row.purpose),
            rotation_interval_days=row.rotation_interval_days,
            grace_period_days=row.grace_period_days,
            auto_rotation=row.auto_rotation,
            notify_before_rotation_days=row.notify_before_rotation_days,
            requires_approval=row.requires_approval,
            approvers=list(row.approvers or []),
        )

    def get_policy(self, organization_id: str, purpose: KeyPurpose) -> Optional[RotationPolicy]:
        with self._lock, self._session_factory() as session:
            row = session.get(RotationPolicyRow, (organization_id, KeyPurpose(purpose).value))
            return self._to_policy(row) if row else None

    def delete_policy(self, organization_id: str, purpose: KeyPurpose) -> bool:
        with self._lock, self._session_factory.begin() as session:
            result = session.execute(
                delete(RotationPolicyRow)
                .where(RotationPolicyRow.organization_id == organization_id)
                .where(RotationPolicyRow.purpose == KeyPurpose(purpose).value)
            )
            return result.rowcount > 0

    def list_policies(self) -> list[RotationPolicy]:
        with self._lock, self._session_factory() as session:
            return [self._to_policy(row) for row in session.scalars(select(RotationPolicyRow))]

    @staticmethod
    def _to_pending(row: PendingDeletionRow) -> PendingDeletion:
        return PendingDeletion(
            key_id=row.key_id,
            delete_after=row.delete_after,
            grace_period_days=row.grace_period_days,
            scheduled_at=row.scheduled_at,
        )

    def put_pending_deletion(self, pending: PendingDeletion) -> None:
        with self._lock, self._session_factory.begin() as session:
            row = session.get(PendingDeletionRow, pending.key_id)
            if row is None:
                row = PendingDeletionRow(key_id=pending.key_id)
                session.add(row)
            row.delete_after = pending.delete_after
            row.grace_period_days = pending.grace_period_days
            row.scheduled_at = pending.scheduled_at

    def get_pending_deletion(self, key_id: str) -> Optional[PendingDeletion]:
        with self._lock, self._session_factory() as session:
            row = session.get(PendingDeletionRow, key_id)
            return self._to_pending(row) if row else None

    def remove_pending_deletion(self, key_id: str) -> bool:
        with self._lock, self._session_factory.begin() as session:
            result = session.execute(
                delete(PendingDeletionRow).where(PendingDeletionRow.key_id == key_id)
            )
            return result.rowcount > 0

    def list_due_deletions(self, now: datetime) -> list[PendingDeletion]:
        query = (
            select(PendingDeletionRow)
            .where(PendingDeletionRow.delete_after <= now)
            .order_by(PendingDeletionRow.delete_after)
        )
        with self._lock, self._session_factory() as session:
            return [self._to_pending(row) for row in session.scalars(query)]
