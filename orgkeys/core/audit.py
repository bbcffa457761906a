"""Audit event sink.

Every mutating key operation emits an :class:`AuditEvent`. The sink itself
lives outside this package (a SIEM, a database table, ...); the core only
sees the :class:`AuditSink` interface. Delivery is fire-and-forget: an
audit failure is logged locally and never undoes or blocks the key
operation that produced it.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from orgkeys.core.logging import get_logger

logger = get_logger(__name__)


class AuditAction(str, Enum):
    """Audited key-management actions."""

    KEY_GENERATED = "encryption_key_generated"
    KEY_DERIVED = "encryption_key_derived"
    KEY_ROTATED = "encryption_key_rotated"
    KEY_REVOKED = "encryption_key_revoked"
    KEY_DELETED = "encryption_key_deleted"
    KEY_EXPIRED = "encryption_key_expired"
    KEY_EXPORTED = "encryption_key_exported"
    KEY_IMPORTED = "encryption_key_imported"
    ROTATION_UPCOMING = "encryption_key_rotation_upcoming"
    ROTATION_POLICY_SET = "encryption_key_rotation_policy_set"
    DATA_DECRYPTED = "data_decrypted"


@dataclass
class AuditEvent:
    """A structured audit record."""

    organization_id: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    business_context: dict[str, Any] = field(default_factory=dict)
    compliance_relevant: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(ABC):
    """Destination for audit events."""

    @abstractmethod
    def log_event(self, event: AuditEvent) -> None:
        """Record one event. May raise; callers go through :class:`AuditRecorder`."""


class InMemoryAuditSink(AuditSink):
    """Bounded in-process audit log, mainly for tests and development."""

    def __init__(self, max_events: int = 10000):
        self._lock = threading.Lock()
        self._events: list[AuditEvent] = []
        self._max_events = max_events

    def log_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._max_events:
                self._events = self._events[-(self._max_events // 2):]

    def get_events(
        self,
        action: str | AuditAction | None = None,
        organization_id: str | None = None,
        resource_id: str | None = None,
    ) -> list[AuditEvent]:
        """Get recorded events, oldest first, optionally filtered."""
        if isinstance(action, AuditAction):
            action = action.value
        with self._lock:
            events = list(self._events)
        if action:
            events = [e for e in events if e.action == action]
        if organization_id:
            events = [e for e in events if e.organization_id == organization_id]
        if resource_id:
            events = [e for e in events if e.resource_id == resource_id]
        return events

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class LoggingAuditSink(AuditSink):
    """Writes audit events to the structured ``orgkeys.audit`` logger."""

    def __init__(self):
        self._logger = get_logger("orgkeys.audit")

    def log_event(self, event: AuditEvent) -> None:
        self._logger.info(
            "Audit event",
            organization_id=event.organization_id,
            action=event.action,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            business_context=event.business_context,
            compliance_relevant=event.compliance_relevant,
        )


class AuditRecorder:
    """Best-effort front for an :class:`AuditSink`."""

    def __init__(self, sink: AuditSink):
        self.sink = sink

    def record(
        self,
        organization_id: str,
        action: AuditAction,
        resource_type: str = "encryption_key",
        resource_id: str | None = None,
        business_context: dict[str, Any] | None = None,
        compliance_relevant: bool = True,
    ) -> None:
        event = AuditEvent(
            organization_id=organization_id,
            action=action.value,
            resource_type=resource_type,
            resource_id=resource_id,
            business_context=business_context or {},
            compliance_relevant=compliance_relevant,
        )
        try:
            self.sink.log_event(event)
        except Exception as e:
            logger.warning(
                "Audit event dropped",
                action=event.action,
                resource_id=resource_id,
                error=str(e),
            )
