"""Rotation scheduler.

A single daemon thread sweeps every rotation policy on a fixed interval,
independent of request traffic. One sweep:

1. rotates the active key of each ``auto_rotation`` policy once it is
   ``rotation_interval_days`` old (whole days since ``created_at``)
2. emits one ``encryption_key_rotation_upcoming`` event per key when it
   enters the ``notify_before_rotation_days`` window
3. deletes rotated keys whose grace period has ended
4. expires active keys past their ``expires_at``

Policies are processed independently. A failing policy is logged and
reported in :attr:`SweepReport.failures`; the sweep carries on.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime

from orgkeys.core.audit import AuditAction, AuditRecorder
from orgkeys.core.key_factory import Clock
from orgkeys.core.key_store import KeyStore
from orgkeys.core.lifecycle import KeyLifecycleManager
from orgkeys.core.logging import get_logger
from orgkeys.models import KeyStatus, RotationPolicy, utcnow

logger = get_logger(__name__)


@dataclass
class SweepReport:
    """Outcome of one scheduler sweep."""
    started_at: datetime
    rotated: list[str] = field(default_factory=list)    # new key IDs
    notified: list[str] = field(default_factory=list)   # key IDs
    deleted: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)  # "org:purpose" -> error


class RotationScheduler:
    """Applies rotation policies on a fixed interval."""

    def __init__(
        self,
        store: KeyStore,
        lifecycle: KeyLifecycleManager,
        audit: AuditRecorder,
        interval_seconds: float = 3600,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.audit = audit
        self.interval_seconds = interval_seconds
        self.clock = clock

        self._lock = threading.Lock()
        self._notified: set[str] = set()
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background sweep thread. Does nothing if already running."""
        if self.running:
            return
        self._shutdown.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop,
            name="orgkeys-rotation-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Rotation scheduler started", interval_seconds=self.interval_seconds)

    def shutdown(self) -> None:
        """Stop the sweep thread."""
        self._shutdown.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None

    def _sweep_loop(self) -> None:
        while not self._shutdown.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                logger.error("Rotation sweep failed", error=str(e), exc_info=True)

    def run_once(self, now: datetime | None = None) -> SweepReport:
        """Run one sweep over every policy, then deletions and expiry."""
        now = now or self.clock()
        report = SweepReport(started_at=now)

        with self._lock:
            for policy in self.store.list_policies():
                if not policy.auto_rotation:
                    continue
                lineage = f"{policy.organization_id}:{policy.purpose.value}"
                try:
                    self._apply_policy(policy, now, report)
                except Exception as e:
                    report.failures[lineage] = str(e)
                    logger.error(
                        "Scheduled rotation failed",
                        organization_id=policy.organization_id,
                        purpose=policy.purpose.value,
                        error=str(e),
                        exc_info=True,
                    )

            try:
                report.deleted = self.lifecycle.process_due_deletions(now)
            except Exception as e:
                report.failures["deletions"] = str(e)
                logger.error("Processing due deletions failed", error=str(e), exc_info=True)

            try:
                report.expired = self.lifecycle.expire_due_keys(now)
            except Exception as e:
                report.failures["expiry"] = str(e)
                logger.error("Expiring keys failed", error=str(e), exc_info=True)

            # Only active keys can still be due a notice
            if self._notified:
                active = {k.key_id for k in self.store.list_keys(status=KeyStatus.ACTIVE)}
                self._notified &= active

        if report.rotated or report.deleted or report.expired or report.failures:
            logger.info(
                "Rotation sweep finished",
                rotated=len(report.rotated),
                deleted=len(report.deleted),
                expired=len(report.expired),
                failures=len(report.failures),
            )
        return report

    def _apply_policy(self, policy: RotationPolicy, now: datetime, report: SweepReport) -> None:
        key = self.store.find_active(policy.organization_id, policy.purpose)
        if key is None:
            return

        elapsed_days = (now - key.created_at).days
        if elapsed_days >= policy.rotation_interval_days:
            new_key = self.lifecycle.rotate(policy.organization_id, policy.purpose)
            report.rotated.append(new_key.key_id)
            return

        days_until = policy.rotation_interval_days - elapsed_days
        if days_until <= policy.notify_before_rotation_days and key.key_id not in self._notified:
            self._notified.add(key.key_id)
            report.notified.append(key.key_id)
            self.audit.record(
                policy.organization_id,
                AuditAction.ROTATION_UPCOMING,
                resource_id=key.key_id,
                business_context={
                    "purpose": policy.purpose.value,
                    "days_until_rotation": days_until,
                    "requires_approval": policy.requires_approval,
                },
            )
