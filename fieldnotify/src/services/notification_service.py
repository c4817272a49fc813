"""
Notification service: the creation pipeline.

Stages, each independently testable:
    validate -> classify -> format -> quota gate -> persist/audit -> deliver

Validation fails closed: any violation rejects the whole request and
nothing is persisted. Quota rejections are per recipient and never affect
the other recipients of the same request. Delivery is handed to a dispatch
callable (normally the DeliveryExecutor) after the rows are committed, so
the caller never waits on the push service.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.models.notification import (
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from fieldnotify.src.schemas.notification import NotificationRequest
from fieldnotify.src.services.audit_service import AuditEventType, AuditRecorder
from fieldnotify.src.services.notification_repository import NotificationRepository
from fieldnotify.src.services.notification_validator import (
    NotificationValidator,
    classify_priority,
    format_content,
)
from fieldnotify.src.services.quota_gate import DAILY_LIMIT_EXCEEDED, QuotaGate
from fieldnotify.src.utils.clock import Clock, SystemClock, local_midnight_utc, to_local
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("services")

# Callable receiving the ids of newly created notifications to deliver
DispatchFn = Callable[[List[int]], Any]

# Share of the daily limit at which a worker counts as near it
NEAR_LIMIT_RATIO = 0.8


@dataclass
class CreationResult:
    """Outcome of one creation request."""
    created: int = 0
    skipped: int = 0
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    skipped_recipients: List[Dict[str, Any]] = field(default_factory=list)
    audit_event_ids: List[int] = field(default_factory=list)

    @property
    def notification_ids(self) -> List[int]:
        return [n["id"] for n in self.notifications]


class NotificationService:
    """
    Service for creating notifications and reporting on them.

    Usage:
        >>> service = NotificationService(db, settings, clock, dispatch=executor.submit)
        >>> result = service.create_notification(request)
        >>> result.created, result.skipped
        (2, 1)
    """

    def __init__(
        self,
        db: Session,
        settings: NotifySettings,
        clock: Optional[Clock] = None,
        dispatch: Optional[DispatchFn] = None,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock or SystemClock()
        self.dispatch = dispatch
        self.repository = NotificationRepository(db)
        self.audit = AuditRecorder(db, self.clock, source="notification_service")
        self.validator = NotificationValidator(self.clock)
        self.quota = QuotaGate(self.repository, self.audit, settings, self.clock)

    # ========================================================================
    # Creation pipeline
    # ========================================================================

    def create_notification(
        self, request: Union[NotificationRequest, Dict[str, Any]]
    ) -> CreationResult:
        """
        Create one notification per recipient and hand them to delivery.

        Args:
            request: NotificationRequest or a client payload dict (camelCase keys)

        Returns:
            CreationResult with created summaries and per-recipient skips

        Raises:
            ValidationError: If the request is invalid (nothing is created)
        """
        if isinstance(request, dict):
            request = NotificationRequest.from_payload(request)

        self.validator.validate_or_raise(request)
        priority = classify_priority(request)
        title, message = format_content(request.title, request.message, request.language)
        notification_type = NotificationType(request.type_name)

        now = self.clock.now()
        scheduled = request.scheduled_at is not None and request.scheduled_at > now
        status = NotificationStatus.PENDING if scheduled else NotificationStatus.SENT

        result = CreationResult()
        for recipient_id in dict.fromkeys(request.recipient_list):
            with self.quota.reserve(recipient_id, priority, notification_type.value) as decision:
                if not decision.allowed:
                    self.db.commit()
                    result.skipped_recipients.append(decision.to_skip(recipient_id))
                    continue

                notification = Notification(
                    type=notification_type,
                    priority=priority,
                    title=title,
                    message=message,
                    action_data=dict(request.action_data or {}),
                    language=request.language or "en",
                    sender_id=request.sender_id,
                    recipient_id=recipient_id,
                    status=status,
                    requires_acknowledgment=bool(request.requires_acknowledgment),
                    scheduled_at=request.scheduled_at,
                    expires_at=request.expires_at,
                    delivery_attempts=0,
                    escalated=False,
                    content_hash=Notification.compute_content_hash(
                        notification_type.value, priority.value, title, message
                    ),
                    created_at=now,
                    updated_at=now,
                )
                self.repository.create(notification)
                audit_event = self.audit.record(
                    notification.id,
                    recipient_id,
                    AuditEventType.CREATED,
                    {
                        "original_priority": request.priority or "AUTO_CLASSIFIED",
                        "classified_priority": priority,
                        "status": status,
                        "content_length": {"title": len(title), "message": len(message)},
                    },
                )
                self.db.commit()
                result.notifications.append(notification.to_summary())
                result.audit_event_ids.append(audit_event.id)

        result.created = len(result.notifications)
        result.skipped = len(result.skipped_recipients)

        logger.info(
            "Notifications created",
            extra={
                "type": notification_type.value,
                "priority": priority.value,
                "created_count": result.created,
                "skipped_count": result.skipped,
                "scheduled": scheduled,
            },
        )

        if not scheduled:
            self._dispatch(result.notification_ids)
        return result

    def _dispatch(self, notification_ids: List[int]) -> None:
        if not notification_ids or self.dispatch is None:
            return
        try:
            self.dispatch(notification_ids)
        except Exception:
            # Rows stay SENT; the maintenance retry sweep picks them up after the backoff
            logger.exception(
                "Failed to hand notifications to delivery",
                extra={"notification_ids": notification_ids},
            )

    # ========================================================================
    # Reporting
    # ========================================================================

    def check_availability(
        self, worker_id: int, priority: Union[NotificationPriority, str] = NotificationPriority.NORMAL
    ) -> Dict[str, Any]:
        """Whether the worker can receive another notification of ``priority`` today."""
        return self.quota.availability(worker_id, priority)

    def get_notification_stats(self, worker_id: int, days: int = 7) -> Dict[str, Any]:
        """
        Notification statistics for a worker over the last ``days`` days.

        Returns:
            Dict with totals by status, type and priority, unread count,
            today's count and the daily limit
        """
        now = self.clock.now()
        since = now - timedelta(days=days)
        by_status = self.repository.count_by(Notification.status, worker_id, since)
        return {
            "total_notifications": sum(by_status.values()),
            "by_status": by_status,
            "by_type": self.repository.count_by(Notification.type, worker_id, since),
            "by_priority": self.repository.count_by(Notification.priority, worker_id, since),
            "unread_count": self.repository.count_unread(worker_id),
            "today_count": self.repository.count_created_since(
                worker_id, local_midnight_utc(now, self.settings.quota_timezone)
            ),
            "daily_limit": self.settings.daily_limit,
            "period_days": days,
        }

    def get_daily_limit_stats(self, worker_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        """
        Today's quota usage across workers.

        Args:
            worker_ids: Restrict to these workers (all workers when empty)

        Returns:
            Dict with per-worker counts by priority (busiest first), how many
            workers are at or near the limit, and averages
        """
        now = self.clock.now()
        tz_name = self.settings.quota_timezone
        limit = self.settings.daily_limit
        counts = self.repository.count_created_since_by_recipient(
            local_midnight_utc(now, tz_name), worker_ids
        )

        breakdown = []
        for worker_id, by_priority in counts.items():
            total = sum(by_priority.values())
            breakdown.append({
                "worker_id": worker_id,
                "total_count": total,
                "critical_count": by_priority.get(NotificationPriority.CRITICAL.value, 0),
                "high_count": by_priority.get(NotificationPriority.HIGH.value, 0),
                "normal_count": by_priority.get(NotificationPriority.NORMAL.value, 0),
                "low_count": by_priority.get(NotificationPriority.LOW.value, 0),
                "is_at_limit": total >= limit,
                "remaining_today": max(0, limit - total),
            })
        breakdown.sort(key=lambda s: (-s["total_count"], s["worker_id"]))

        total_today = sum(s["total_count"] for s in breakdown)
        workers = len(breakdown)
        return {
            "date": to_local(now, tz_name).date().isoformat(),
            "daily_limit": limit,
            "total_notifications_today": total_today,
            "workers_at_limit": sum(1 for s in breakdown if s["is_at_limit"]),
            "workers_near_limit": sum(
                1 for s in breakdown
                if not s["is_at_limit"] and s["total_count"] >= limit * NEAR_LIMIT_RATIO
            ),
            "total_workers_with_notifications": workers,
            "worker_breakdown": breakdown,
            "summary": {
                "average_notifications_per_worker": round(total_today / workers, 2) if workers else 0,
                "limit_utilization": round(total_today * 100 / (workers * limit)) if workers else 0,
            },
        }

    def check_daily_limit_enforcement(self, worker_id: int) -> Dict[str, Any]:
        """
        Whether the worker is at the daily limit and how many creations were
        rejected for it today. CRITICAL notifications always bypass the limit.
        """
        now = self.clock.now()
        limit = self.settings.daily_limit
        today_count = self.quota.daily_count(worker_id)
        at_limit = today_count >= limit
        violations = self.audit.count_with_reason(
            AuditEventType.FAILED,
            DAILY_LIMIT_EXCEEDED,
            local_midnight_utc(now, self.settings.quota_timezone),
            worker_id,
        )
        return {
            "worker_id": worker_id,
            "today_count": today_count,
            "daily_limit": limit,
            "is_at_limit": at_limit,
            "limit_violations_today": violations,
            "can_receive_normal": not at_limit,
            "can_receive_critical": True,
            "status": "AT_LIMIT" if at_limit else "WITHIN_LIMIT",
        }
