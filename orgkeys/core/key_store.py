"""Key store.

The persistence abstraction every other component depends on. Holds key
records, rotation policies and pending deletions.

Consistency guarantees:
- Every operation reflects the most recent write (no stale reads)
- :meth:`KeyStore.activate` retires the previous active key and installs
  the new one in a single critical section, so a concurrent
  :meth:`KeyStore.find_active` never sees zero or two active keys
- Records are copied on the way in and out; callers cannot mutate stored
  state without going through the store
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from orgkeys.core.errors import KeyNotFoundError
from orgkeys.models import (
    KeyPurpose,
    KeyRecord,
    KeyStatus,
    PendingDeletion,
    RotationPolicy,
)

Lineage = tuple[str, KeyPurpose]


class KeyStore(ABC):
    """Storage interface for keys, rotation policies and pending deletions."""

    def __init__(self):
        self._lineage_guard = threading.Lock()
        self._lineage_locks: dict[Lineage, threading.RLock] = {}

    def lineage_lock(self, organization_id: str, purpose: KeyPurpose) -> threading.RLock:
        """Lock serializing read-modify-write sequences on one (organization, purpose) pair."""
        lineage = (organization_id, KeyPurpose(purpose))
        with self._lineage_guard:
            lock = self._lineage_locks.get(lineage)
            if lock is None:
                lock = self._lineage_locks[lineage] = threading.RLock()
            return lock

    # Keys

    @abstractmethod
    def put(self, record: KeyRecord) -> None:
        """Insert or replace a record.

        Raises:
            ValueError: If the record is active and another key of its
                lineage already is (use :meth:`activate`)
        """

    @abstractmethod
    def get(self, key_id: str) -> Optional[KeyRecord]:
        """Get a record by id, or None."""

    @abstractmethod
    def delete(self, key_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""

    @abstractmethod
    def find_active(self, organization_id: str, purpose: KeyPurpose) -> Optional[KeyRecord]:
        """The active key of a lineage, or None."""

    @abstractmethod
    def list_keys(
        self,
        organization_id: str | None = None,
        purpose: KeyPurpose | None = None,
        status: KeyStatus | None = None,
    ) -> list[KeyRecord]:
        """Records matching every given filter, oldest first."""

    def list_active(self, organization_id: str) -> list[KeyRecord]:
        return self.list_keys(organization_id=organization_id, status=KeyStatus.ACTIVE)

    def next_version(
        self,
        organization_id: str,
        purpose: KeyPurpose,
        exclude_key_id: str | None = None,
    ) -> int:
        """One past the highest version of any stored key in the lineage.

        Revoked and expired keys count, so versions never repeat.
        """
        versions = [
            k.key_version
            for k in self.list_keys(organization_id=organization_id, purpose=purpose)
            if k.key_id != exclude_key_id
        ]
        return max(versions, default=0) + 1

    @abstractmethod
    def activate(self, record: KeyRecord, now: datetime) -> Optional[KeyRecord]:
        """Install ``record`` as the active key of its lineage.

        Any other active key of the lineage becomes ``rotated`` with
        ``rotated_at = now`` in the same critical section.

        Returns:
            The superseded record, or None
        """

    @abstractmethod
    def transition(self, key_id: str, status: KeyStatus, now: datetime) -> KeyRecord:
        """Change a key's status, stamping ``rotated_at``/``revoked_at``.

        Raises:
            KeyNotFoundError: If the key does not exist
        """

    # Rotation policies

    @abstractmethod
    def put_policy(self, policy: RotationPolicy) -> None:
        """Insert or replace the policy of a lineage."""

    @abstractmethod
    def get_policy(self, organization_id: str, purpose: KeyPurpose) -> Optional[RotationPolicy]:
        """Get the policy of a lineage, or None."""

    @abstractmethod
    def delete_policy(self, organization_id: str, purpose: KeyPurpose) -> bool:
        """Delete a policy. Returns False if it did not exist."""

    @abstractmethod
    def list_policies(self) -> list[RotationPolicy]:
        """All policies."""

    # Pending deletions

    @abstractmethod
    def put_pending_deletion(self, pending: PendingDeletion) -> None:
        """Insert or replace the pending deletion of a key."""

    @abstractmethod
    def get_pending_deletion(self, key_id: str) -> Optional[PendingDeletion]:
        """Get the pending deletion of a key, or None."""

    @abstractmethod
    def remove_pending_deletion(self, key_id: str) -> bool:
        """Remove a pending deletion. Returns False if there was none."""

    @abstractmethod
    def list_due_deletions(self, now: datetime) -> list[PendingDeletion]:
        """Pending deletions with ``delete_after <= now``."""


def _apply_status(record: KeyRecord, status: KeyStatus, now: datetime) -> None:
    record.status = status
    if status == KeyStatus.ROTATED:
        record.rotated_at = now
    elif status == KeyStatus.REVOKED:
        record.revoked_at = now


class InMemoryKeyStore(KeyStore):
    """Process-memory key store guarded by a single lock.

    Stands in for a secret-management backend; everything is lost when the
    process exits, including pending deletions.
    """

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._keys: dict[str, KeyRecord] = {}
        self._active: dict[Lineage, str] = {}  # lineage -> active key_id
        self._policies: dict[Lineage, RotationPolicy] = {}
        self._pending: dict[str, PendingDeletion] = {}

    def put(self, record: KeyRecord) -> None:
        record = record.copy()
        with self._lock:
            self._unindex(record.key_id)
            if record.status == KeyStatus.ACTIVE:
                current = self._active.get(record.lineage)
                if current is not None and current != record.key_id:
                    raise ValueError(
                        f"{record.organization_id}:{record.purpose.value} already has "
                        f"active key {current}"
                    )
                self._active[record.lineage] = record.key_id
            self._keys[record.key_id] = record

    def get(self, key_id: str) -> Optional[KeyRecord]:
        with self._lock:
            record = self._keys.get(key_id)
            return record.copy() if record else None

    def delete(self, key_id: str) -> bool:
        with self._lock:
            self._unindex(key_id)
            return self._keys.pop(key_id, None) is not None

    def find_active(self, organization_id: str, purpose: KeyPurpose) -> Optional[KeyRecord]:
        with self._lock:
            key_id = self._active.get((organization_id, KeyPurpose(purpose)))
            if key_id is None:
                return None
            return self._keys[key_id].copy()

    def list_keys(
        self,
        organization_id: str | None = None,
        purpose: KeyPurpose | None = None,
        status: KeyStatus | None = None,
    ) -> list[KeyRecord]:
        with self._lock:
            records = [
                r.copy()
                for r in self._keys.values()
                if (organization_id is None or r.organization_id == organization_id)
                and (purpose is None or r.purpose == purpose)
                and (status is None or r.status == status)
            ]
        return sorted(records, key=lambda r: (r.created_at, r.key_version))

    def activate(self, record: KeyRecord, now: datetime) -> Optional[KeyRecord]:
        record = record.copy(status=KeyStatus.ACTIVE)
        with self._lock:
            superseded = None
            current_id = self._active.get(record.lineage)
            if current_id is not None and current_id != record.key_id:
                current = self._keys[current_id]
                _apply_status(current, KeyStatus.ROTATED, now)
                superseded = current.copy()
            self._unindex(record.key_id)
            self._keys[record.key_id] = record
            self._active[record.lineage] = record.key_id
            return superseded

    def transition(self, key_id: str, status: KeyStatus, now: datetime) -> KeyRecord:
        with self._lock:
            record = self._keys.get(key_id)
            if record is None:
                raise KeyNotFoundError(f"Key not found: {key_id}", key_id=key_id)
            if status == KeyStatus.ACTIVE:
                self.activate(record, now)
                return self._keys[key_id].copy()
            self._unindex(key_id)
            _apply_status(record, status, now)
            return record.copy()

    def _unindex(self, key_id: str) -> None:
        record = self._keys.get(key_id)
        if record is not None and self._active.get(record.lineage) == key_id:
            del self._active[record.lineage]

    def put_policy(self, policy: RotationPolicy) -> None:
        with self._lock:
            self._policies[policy.lineage] = policy

    def get_policy(self, organization_id: str, purpose: KeyPurpose) -> Optional[RotationPolicy]:
        with self._lock:
            return self._policies.get((organization_id, KeyPurpose(purpose)))

    def delete_policy(self, organization_id: str, purpose: KeyPurpose) -> bool:
        with self._lock:
            return self._policies.pop((organization_id, KeyPurpose(purpose)), None) is not None

    def list_policies(self) -> list[RotationPolicy]:
        with self._lock:
            return list(self._policies.values())

    def put_pending_deletion(self, pending: PendingDeletion) -> None:
        with self._lock:
            self._pending[pending.key_id] = pending

    def get_pending_deletion(self, key_id: str) -> Optional[PendingDeletion]:
        with self._lock:
            return self._pending.get(key_id)

    def remove_pending_deletion(self, key_id: str) -> bool:
        with self._lock:
            return self._pending.pop(key_id, None) is not None

    def list_due_deletions(self, now: datetime) -> list[PendingDeletion]:
        with self._lock:
            due = [p for p in self._pending.values() if p.delete_after <= now]
        return sorted(due, key=lambda p: p.delete_after)
