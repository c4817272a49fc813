"""
Maintenance reapers for the notification store.

One pass, in order:
- Expire notifications whose expires_at has passed (audited EXPIRED)
- Release due scheduled (PENDING) notifications to SENT and dispatch them
- Re-dispatch SENT notifications with failed attempts left once the retry
  backoff has elapsed
- Mark notifications that used up their delivery attempts FAILED
- Purge notifications past the retention period
- Purge inactive, long-unseen or persistently failing device endpoints

Design:
- Each step is isolated: a failing step is logged and recorded in the
  stats, and the remaining steps still run
- Each row change is an optimistic read-modify-write (version checked)
- Steps work in bounded batches; anything left over is picked up by the
  next pass
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.db.database import session_scope
from fieldnotify.src.models.notification import Notification, NotificationStatus
from fieldnotify.src.services.audit_service import AuditEventType, AuditRecorder
from fieldnotify.src.services.device_endpoint_repository import DeviceEndpointRepository
from fieldnotify.src.services.exceptions import ServiceError
from fieldnotify.src.services.notification_repository import NotificationRepository
from fieldnotify.src.services.notification_service import DispatchFn
from fieldnotify.src.services.status_transitions import is_valid_transition
from fieldnotify.src.utils.clock import Clock, SystemClock
from fieldnotify.src.utils.logging_config import get_logger
from fieldnotify.src.utils.scheduler import PeriodicTask


logger = get_logger("services")

# Rows handled per step per pass
DEFAULT_BATCH_SIZE = 100


@dataclass
class MaintenanceStats:
    """
    Statistics from one maintenance pass.

    Attributes:
        expired: Notifications moved to EXPIRED
        released: Scheduled notifications released to SENT
        retried: Notifications re-dispatched after a failed attempt
        failed: Notifications marked FAILED after exhausting attempts
        notifications_purged: Notifications deleted by retention
        endpoints_purged: Device endpoints deleted
        errors: Error messages from failed steps or rows
    """
    expired: int = 0
    released: int = 0
    retried: int = 0
    failed: int = 0
    notifications_purged: int = 0
    endpoints_purged: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expired": self.expired,
            "released": self.released,
            "retried": self.retried,
            "failed": self.failed,
            "notifications_purged": self.notifications_purged,
            "endpoints_purged": self.endpoints_purged,
            "errors": len(self.errors),
        }


class MaintenanceService:
    """
    Runs the maintenance reapers against one session.

    Usage:
        >>> service = MaintenanceService(db, settings, clock, dispatch=executor.submit)
        >>> stats = service.run()
        >>> print(f"Released {stats.released}, expired {stats.expired}")
    """

    def __init__(
        self,
        db: Session,
        settings: NotifySettings,
        clock: Optional[Clock] = None,
        dispatch: Optional[DispatchFn] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock or SystemClock()
        self.dispatch = dispatch
        self.batch_size = batch_size
        self.notifications = NotificationRepository(db)
        self.endpoints = DeviceEndpointRepository(db)
        self.audit = AuditRecorder(db, self.clock, source="maintenance")

    def run(self) -> MaintenanceStats:
        """
        Run every reaper once.

        Returns:
            MaintenanceStats with counts and any errors
        """
        stats = MaintenanceStats()
        steps = [
            ("expire", self.expire_notifications, "expired"),
            ("release", self.release_scheduled, "released"),
            ("retry", self.retry_failed_attempts, "retried"),
            ("exhausted", self.fail_exhausted, "failed"),
            ("purge_notifications", self.purge_old_notifications, "notifications_purged"),
            ("purge_endpoints", self.purge_stale_endpoints, "endpoints_purged"),
        ]

        for name, step, counter in steps:
            try:
                setattr(stats, counter, step(stats.errors))
            except Exception as e:
                self.db.rollback()
                error_msg = f"Error in maintenance step {name}: {e}"
                logger.error(error_msg)
                stats.errors.append(error_msg)

        logger.info("Maintenance pass completed", extra=stats.to_dict())
        return stats

    # ========================================================================
    # Lifecycle reapers
    # ========================================================================

    def expire_notifications(self, errors: Optional[List[str]] = None) -> int:
        """Move notifications past their expires_at to EXPIRED."""
        now = self.clock.now()

        def apply(notification: Notification) -> bool:
            if notification.expires_at is None or notification.expires_at >= now:
                return False
            if not is_valid_transition(notification.status, NotificationStatus.EXPIRED):
                return False
            previous = notification.status
            notification.status = NotificationStatus.EXPIRED
            notification.updated_at = now
            self.audit.record(
                notification.id,
                notification.recipient_id,
                AuditEventType.EXPIRED,
                {"previous_status": previous, "expires_at": notification.expires_at},
            )
            return True

        ids = [n.id for n in self.notifications.find_expired(now, self.batch_size)]
        return self._apply_each(ids, apply, "expire", errors)

    def release_scheduled(self, errors: Optional[List[str]] = None) -> int:
        """Release due PENDING notifications to SENT and dispatch them."""
        now = self.clock.now()

        def apply(notification: Notification) -> bool:
            if notification.status != NotificationStatus.PENDING:
                return False
            notification.status = NotificationStatus.SENT
            notification.updated_at = now
            self.audit.record(
                notification.id,
                notification.recipient_id,
                AuditEventType.RELEASED,
                {"scheduled_at": notification.scheduled_at},
            )
            return True

        ids = [n.id for n in self.notifications.find_due_scheduled(now, self.batch_size)]
        released = self._collect_each(ids, apply, "release", errors)
        self._dispatch(released)
        return len(released)

    def retry_failed_attempts(self, errors: Optional[List[str]] = None) -> int:
        """Re-dispatch SENT notifications whose last attempt failed and whose backoff elapsed."""
        attempted_before = self.clock.now() - timedelta(minutes=self.settings.retry_backoff_minutes)
        rows = self.notifications.find_retryable(
            self.settings.max_delivery_attempts, attempted_before, self.batch_size
        )
        ids = [n.id for n in rows]
        self._dispatch(ids)
        return len(ids)

    def fail_exhausted(self, errors: Optional[List[str]] = None) -> int:
        """Mark SENT notifications that used every delivery attempt as FAILED."""
        now = self.clock.now()
        max_attempts = self.settings.max_delivery_attempts

        def apply(notification: Notification) -> bool:
            if notification.status != NotificationStatus.SENT:
                return False
            if notification.delivery_attempts < max_attempts:
                return False
            notification.status = NotificationStatus.FAILED
            notification.updated_at = now
            self.audit.record(
                notification.id,
                notification.recipient_id,
                AuditEventType.FAILED,
                {
                    "reason": "MAX_ATTEMPTS_EXCEEDED",
                    "delivery_attempts": notification.delivery_attempts,
                    "max_delivery_attempts": max_attempts,
                },
            )
            return True

        ids = [n.id for n in self.notifications.find_exhausted(max_attempts, self.batch_size)]
        return self._apply_each(ids, apply, "exhausted", errors)

    # ========================================================================
    # Retention
    # ========================================================================

    def purge_old_notifications(self, errors: Optional[List[str]] = None) -> int:
        cutoff = self.clock.now() - timedelta(days=self.settings.notification_retention_days)
        deleted = self.notifications.delete_created_before(cutoff)
        if deleted:
            logger.info(
                "Purged old notifications",
                extra={"deleted": deleted, "cutoff": cutoff.isoformat()},
            )
        return deleted

    def purge_stale_endpoints(self, errors: Optional[List[str]] = None) -> int:
        cutoff = self.clock.now() - timedelta(days=self.settings.inactive_device_days)
        deleted = self.endpoints.delete_stale(cutoff)
        if deleted:
            logger.info(
                "Purged stale device endpoints",
                extra={"deleted": deleted, "cutoff": cutoff.isoformat()},
            )
        return deleted

    # ========================================================================
    # Helpers
    # ========================================================================

    def _apply_each(
        self,
        notification_ids: List[int],
        apply: Callable[[Notification], bool],
        step: str,
        errors: Optional[List[str]],
    ) -> int:
        return len(self._collect_each(notification_ids, apply, step, errors))

    def _collect_each(
        self,
        notification_ids: List[int],
        apply: Callable[[Notification], bool],
        step: str,
        errors: Optional[List[str]],
    ) -> List[int]:
        """Apply a change to each row; returns ids for which it reported a change."""
        changed = []
        for notification_id in notification_ids:
            try:
                if self.notifications.mutate(notification_id, apply):
                    changed.append(notification_id)
            except ServiceError as e:
                self.db.rollback()
                logger.warning(
                    f"Maintenance {step} failed for notification: {e}",
                    extra={"notification_id": notification_id},
                )
                if errors is not None:
                    errors.append(f"{step} {notification_id}: {e}")
        return changed

    def _dispatch(self, notification_ids: List[int]) -> None:
        if not notification_ids or self.dispatch is None:
            return
        try:
            self.dispatch(notification_ids)
        except Exception:
            logger.exception(
                "Failed to hand notifications to delivery",
                extra={"notification_ids": notification_ids},
            )


class MaintenanceScheduler:
    """
    Runs maintenance passes on a schedule and on demand.

    Usage:
        >>> scheduler = MaintenanceScheduler(factory, settings, dispatch=executor.submit)
        >>> scheduler.start()
        >>> scheduler.run_once()
        MaintenanceStats(...)
        >>> scheduler.stop()
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: NotifySettings,
        clock: Optional[Clock] = None,
        dispatch: Optional[DispatchFn] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock or SystemClock()
        self.dispatch = dispatch
        self._task = PeriodicTask(
            "maintenance",
            settings.maintenance_interval_minutes * 60,
            self._run,
        )

    @property
    def is_running(self) -> bool:
        return self._task.is_running

    def start(self) -> bool:
        return self._task.start()

    def stop(self) -> bool:
        return self._task.stop()

    def run_once(self) -> MaintenanceStats:
        """Run one pass now in the caller's thread."""
        return self._task.run_now()

    @property
    def last_stats(self) -> Optional[MaintenanceStats]:
        return self._task.last_result

    def _run(self) -> MaintenanceStats:
        with session_scope(self.session_factory) as db:
            return MaintenanceService(db, self.settings, self.clock, self.dispatch).run()
