"""
Escalation monitor for unread CRITICAL notifications.

A sweep selects CRITICAL notifications that are still unread (SENT or
DELIVERED) ``escalation_timeout_hours`` after creation and have not been
escalated, then for each one:

1. Claims it with a conditional UPDATE on ``escalated = false``. A sweep
   that loses the claim skips the row, so concurrent sweeps never
   double-escalate.
2. Resolves the worker's supervisor. Nobody found: FAILED/NO_SUPERVISOR.
3. Creates an ESCALATION_ALERT for the supervisor through the ordinary
   creation pipeline (CRITICAL, acknowledgment required).
4. Records SUCCESS/ESCALATED_TO_SUPERVISOR, or FAILED/ESCALATION_FAILED if
   step 3 failed. The outcome is written without a version check, so a
   concurrent read or acknowledgment never leaves it unset.

Escalation failures are terminal: the flag stays set and the row is never
retried automatically; FAILED outcomes are audited for operator follow-up.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.db.database import session_scope
from fieldnotify.src.models.notification import (
    EscalationStatus,
    NotificationPriority,
    NotificationType,
)
from fieldnotify.src.schemas.notification import NotificationRequest
from fieldnotify.src.services.audit_service import AuditEventType, AuditRecorder
from fieldnotify.src.services.exceptions import ConflictError, ServiceError
from fieldnotify.src.services.notification_repository import NotificationRepository
from fieldnotify.src.services.notification_service import DispatchFn, NotificationService
from fieldnotify.src.services.notification_validator import format_content
from fieldnotify.src.services.supervisor_resolver import SupervisorInfo, SupervisorResolver
from fieldnotify.src.utils.clock import Clock, SystemClock, hours_between, to_local
from fieldnotify.src.utils.logging_config import get_logger
from fieldnotify.src.utils.scheduler import PeriodicTask


logger = get_logger("escalation")

ESCALATION_TITLE = "ESCALATION: Unread Critical Notification"
ESCALATION_TYPE_UNREAD_CRITICAL = "UNREAD_CRITICAL"

REASON_ESCALATED = "ESCALATED_TO_SUPERVISOR"
REASON_NO_SUPERVISOR = "NO_SUPERVISOR"
REASON_FAILED = "ESCALATION_FAILED"


class EscalationOutcome(str, enum.Enum):
    ESCALATED = "ESCALATED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class SweepResult:
    """Summary of one escalation sweep."""
    started_at: Optional[datetime] = None
    candidates: int = 0
    escalated: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class _Snapshot:
    id: int
    recipient_id: int
    title: str
    message: str
    created_at: datetime


# ============================================================================
# Session-bound sweep
# ============================================================================


class EscalationSweep:
    """Escalation logic bound to one session."""

    def __init__(
        self,
        db: Session,
        resolver: SupervisorResolver,
        settings: NotifySettings,
        clock: Optional[Clock] = None,
        dispatch: Optional[DispatchFn] = None,
    ):
        self.db = db
        self.resolver = resolver
        self.settings = settings
        self.clock = clock or SystemClock()
        self.dispatch = dispatch
        self.repository = NotificationRepository(db)
        self.audit = AuditRecorder(db, self.clock, source="escalation_monitor")

    def run(self) -> SweepResult:
        """Escalate every overdue candidate; one failure never stops the sweep."""
        now = self.clock.now()
        cutoff = now - self.settings.escalation_timeout
        candidate_ids = [n.id for n in self.repository.find_escalation_candidates(cutoff)]
        result = SweepResult(started_at=now, candidates=len(candidate_ids))

        for notification_id in candidate_ids:
            try:
                outcome = self.escalate(notification_id)
            except Exception as e:
                self.db.rollback()
                logger.exception(
                    "Escalation failed unexpectedly",
                    extra={"notification_id": notification_id},
                )
                result.failed += 1
                result.errors.append({"notification_id": notification_id, "error": str(e)})
                continue

            if outcome == EscalationOutcome.ESCALATED:
                result.escalated += 1
            elif outcome == EscalationOutcome.FAILED:
                result.failed += 1
            else:
                result.skipped += 1

        logger.info(
            "Escalation sweep complete",
            extra={
                "candidates": result.candidates,
                "escalated": result.escalated,
                "failed": result.failed,
                "skipped": result.skipped,
            },
        )
        return result

    def force(self, notification_id: int) -> EscalationOutcome:
        """
        Escalate one notification now, regardless of age, priority or read state.

        Raises:
            NotFoundError: If the notification does not exist
            ConflictError: If it has already been escalated
        """
        notification = self.repository.get_or_raise(notification_id)
        if notification.escalated:
            raise ConflictError(
                f"Notification {notification_id} has already been escalated",
                notification_id=notification_id,
            )
        outcome = self.escalate(notification_id, require_unread=False)
        if outcome == EscalationOutcome.SKIPPED:
            raise ConflictError(
                f"Notification {notification_id} has already been escalated",
                notification_id=notification_id,
            )
        return outcome

    def escalate(self, notification_id: int, require_unread: bool = True) -> EscalationOutcome:
        """Claim and escalate one notification."""
        notification = self.repository.get_or_raise(notification_id)
        snapshot = _Snapshot(
            id=notification.id,
            recipient_id=notification.recipient_id,
            title=notification.title,
            message=notification.message,
            created_at=notification.created_at,
        )

        now = self.clock.now()
        if not self.repository.claim_escalation(notification_id, now, require_unread=require_unread):
            logger.info(
                "Escalation already claimed",
                extra={"notification_id": notification_id},
            )
            return EscalationOutcome.SKIPPED

        try:
            info = self.resolver.resolve_supervisor(snapshot.recipient_id)
        except Exception as e:
            logger.warning(
                f"Supervisor lookup failed: {e}",
                extra={"notification_id": notification_id, "worker_id": snapshot.recipient_id},
            )
            self._record_failure(snapshot, REASON_FAILED, {"error": str(e)})
            return EscalationOutcome.FAILED

        if not info.supervisor_id:
            logger.warning(
                "No supervisor found, escalation not possible",
                extra={"notification_id": notification_id, "worker_id": snapshot.recipient_id},
            )
            self._record_failure(snapshot, REASON_NO_SUPERVISOR, {})
            return EscalationOutcome.FAILED

        hours_unread = hours_between(snapshot.created_at, now)
        try:
            escalation_id = self._create_escalation_notification(snapshot, info, hours_unread)
        except Exception as e:
            self.db.rollback()
            logger.warning(
                f"Escalation notification could not be created: {e}",
                extra={"notification_id": notification_id, "supervisor_id": info.supervisor_id},
            )
            self._record_failure(
                snapshot, REASON_FAILED, {"error": str(e), "escalated_to": info.supervisor_id}
            )
            return EscalationOutcome.FAILED

        self._record_outcome(
            snapshot,
            EscalationStatus.SUCCESS,
            REASON_ESCALATED,
            AuditEventType.ESCALATED,
            {
                "escalated_to": info.supervisor_id,
                "escalation_notification_id": escalation_id,
                "hours_unread": hours_unread,
                "escalation_type": ESCALATION_TYPE_UNREAD_CRITICAL,
            },
        )
        logger.info(
            "Notification escalated to supervisor",
            extra={
                "notification_id": notification_id,
                "supervisor_id": info.supervisor_id,
                "escalation_notification_id": escalation_id,
                "hours_unread": hours_unread,
            },
        )
        return EscalationOutcome.ESCALATED

    def _create_escalation_notification(
        self, snapshot: _Snapshot, info: SupervisorInfo, hours_unread: int
    ) -> int:
        title, message = format_content(
            ESCALATION_TITLE,
            (
                f'Worker {info.worker_name} has not read critical notification: '
                f'"{snapshot.title}" for {hours_unread} hours. '
                f"Original message: {snapshot.message}"
            ),
        )
        request = NotificationRequest(
            type=NotificationType.ESCALATION_ALERT.value,
            title=title,
            message=message,
            sender_id=self.settings.system_sender_id,
            recipients=[info.supervisor_id],
            priority=NotificationPriority.CRITICAL.value,
            requires_acknowledgment=True,
            language="en",
            action_data={
                "originalNotificationId": snapshot.id,
                "workerId": snapshot.recipient_id,
                "workerName": info.worker_name,
                "escalationType": ESCALATION_TYPE_UNREAD_CRITICAL,
                "originalCreatedAt": snapshot.created_at.isoformat(),
                "hoursUnread": hours_unread,
            },
        )
        service = NotificationService(self.db, self.settings, self.clock, dispatch=self.dispatch)
        result = service.create_notification(request)
        if result.created == 0:
            raise ServiceError("Failed to create escalation notification")
        return result.notification_ids[0]

    def _record_failure(self, snapshot: _Snapshot, reason: str, details: Dict[str, Any]) -> None:
        self._record_outcome(
            snapshot,
            EscalationStatus.FAILED,
            reason,
            AuditEventType.ESCALATION_FAILED,
            dict(details, reason=reason),
        )

    def _record_outcome(
        self,
        snapshot: _Snapshot,
        status: EscalationStatus,
        reason: str,
        event: AuditEventType,
        details: Dict[str, Any],
    ) -> None:
        # Terminal write: concurrent status changes never leave the outcome unset
        self.repository.record_escalation_outcome(snapshot.id, status, reason, self.clock.now())
        self.audit.record(snapshot.id, snapshot.recipient_id, event, details)
        self.db.commit()


# ============================================================================
# Long-lived monitor
# ============================================================================


class EscalationMonitor:
    """
    Runs escalation sweeps on a schedule and on demand.

    Each sweep opens its own session. Sweeps interrupted by ``stop()`` are
    safe to re-run: every decision is derived from persisted state.

    Usage:
        >>> monitor = EscalationMonitor(factory, resolver, settings)
        >>> monitor.start()
        >>> monitor.trigger_sweep()
        SweepResult(...)
        >>> monitor.stop()
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        resolver: SupervisorResolver,
        settings: NotifySettings,
        clock: Optional[Clock] = None,
        dispatch: Optional[DispatchFn] = None,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.settings = settings
        self.clock = clock or SystemClock()
        self.dispatch = dispatch
        self._task = PeriodicTask(
            "escalation-sweep",
            settings.escalation_sweep_interval_minutes * 60,
            self._sweep,
        )

    @property
    def is_running(self) -> bool:
        return self._task.is_running

    def start(self) -> bool:
        """Start periodic sweeps (first sweep runs immediately)."""
        started = self._task.start()
        if started:
            logger.info("Escalation monitor started", extra=self.get_configuration())
        return started

    def stop(self) -> bool:
        stopped = self._task.stop()
        if stopped:
            logger.info("Escalation monitor stopped")
        return stopped

    def trigger_sweep(self) -> SweepResult:
        """Run one sweep now in the caller's thread."""
        return self._task.run_now()

    def force_escalate(self, notification_id: int) -> EscalationOutcome:
        """
        Escalate one notification immediately.

        Raises:
            NotFoundError: If the notification does not exist
            ConflictError: If it has already been escalated
        """
        with session_scope(self.session_factory) as db:
            sweep = EscalationSweep(db, self.resolver, self.settings, self.clock, self.dispatch)
            return sweep.force(notification_id)

    def get_configuration(self) -> Dict[str, Any]:
        return {
            "escalation_timeout_hours": self.settings.escalation_timeout_hours,
            "sweep_interval_minutes": self.settings.escalation_sweep_interval_minutes,
            "system_sender_id": self.settings.system_sender_id,
            "is_running": self.is_running,
        }

    def get_status(self) -> Dict[str, Any]:
        """Configuration plus escalation counts and the last sweep's result."""
        with session_scope(self.session_factory) as db:
            counts = NotificationRepository(db).count_escalations()
        status = self.get_configuration()
        status["escalations"] = counts
        status["sweeps_run"] = self._task.run_count
        status["last_sweep"] = self._task.last_result
        return status

    def get_escalation_stats(self, days: int = 7) -> Dict[str, Any]:
        """
        Successful escalations over the last ``days`` days.

        Counted from ESCALATED audit facts; the daily breakdown uses local
        dates in ``quota_timezone``.
        """
        since = self.clock.now() - timedelta(days=days)
        tz_name = self.settings.quota_timezone
        daily: Dict[str, int] = {}
        workers = set()
        with session_scope(self.session_factory) as db:
            events = AuditRecorder(db, self.clock).list_since(AuditEventType.ESCALATED, since)
            for audit in events:
                day = to_local(audit.created_at, tz_name).date().isoformat()
                daily[day] = daily.get(day, 0) + 1
                workers.add(audit.worker_id)
        return {
            "total_escalations": len(events),
            "unique_workers_escalated": len(workers),
            "daily_breakdown": [{"date": day, "count": count} for day, count in sorted(daily.items())],
            "period_days": days,
            "escalation_timeout_hours": self.settings.escalation_timeout_hours,
        }

    def _sweep(self) -> SweepResult:
        with session_scope(self.session_factory) as db:
            return EscalationSweep(db, self.resolver, self.settings, self.clock, self.dispatch).run()
