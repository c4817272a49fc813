"""
Per-recipient daily quota.

Non-critical notifications are capped per recipient per local calendar day
(``daily_limit``, default 10). CRITICAL notifications are always accepted;
they still count toward the day's total seen by later non-critical checks.

Concurrency:
    ``reserve()`` holds a per-recipient lock from the count until the caller
    has committed its insert, so creations for one recipient are strictly
    serialized within one process. Across processes the count-then-insert is
    not serialized and a burst may overshoot the limit by a small margin.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Generator, Optional

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.models.notification import NotificationPriority
from fieldnotify.src.services.audit_service import AuditEventType, AuditRecorder
from fieldnotify.src.services.notification_repository import NotificationRepository
from fieldnotify.src.utils.clock import Clock, SystemClock, local_midnight_utc
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("services")

DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"


class _RecipientLocks:
    """Process-wide registry of one lock per recipient."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def get(self, recipient_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(recipient_id)
            if lock is None:
                lock = self._locks[recipient_id] = threading.Lock()
            return lock


_recipient_locks = _RecipientLocks()


@dataclass
class QuotaDecision:
    """Result of a quota check."""
    allowed: bool
    daily_count: int
    daily_limit: int
    reason: Optional[str] = None

    def to_skip(self, recipient_id: int) -> Dict[str, Any]:
        """Per-recipient skip entry reported back to the caller."""
        return {
            "recipient_id": recipient_id,
            "reason": self.reason,
            "daily_count": self.daily_count,
            "daily_limit": self.daily_limit,
        }


class QuotaGate:
    """Accepts or rejects a pending creation against the recipient's daily count."""

    def __init__(
        self,
        repository: NotificationRepository,
        audit: AuditRecorder,
        settings: NotifySettings,
        clock: Optional[Clock] = None,
    ):
        self.repository = repository
        self.audit = audit
        self.settings = settings
        self.clock = clock or SystemClock()

    def daily_count(self, recipient_id: int) -> int:
        """Notifications created for the recipient since local midnight."""
        since = local_midnight_utc(self.clock.now(), self.settings.quota_timezone)
        return self.repository.count_created_since(recipient_id, since)

    def check_and_consume(
        self,
        recipient_id: int,
        priority: NotificationPriority,
        notification_type: Optional[str] = None,
    ) -> QuotaDecision:
        """
        Decide whether one more notification may be created for ``recipient_id``.

        A rejection appends a FAILED audit fact (notification id 0) carrying the
        observed count and the limit; it is committed with the caller's batch.

        Args:
            recipient_id: Worker ID
            priority: Classified priority of the pending notification
            notification_type: Included in the audit fact when given
        """
        limit = self.settings.daily_limit
        count = self.daily_count(recipient_id)

        if priority == NotificationPriority.CRITICAL or count < limit:
            return QuotaDecision(allowed=True, daily_count=count, daily_limit=limit)

        self.audit.record(
            None,
            recipient_id,
            AuditEventType.FAILED,
            {
                "reason": DAILY_LIMIT_EXCEEDED,
                "daily_count": count,
                "daily_limit": limit,
                "notification_type": notification_type,
                "priority": priority,
            },
            source="quota_gate",
        )
        logger.info(
            "Daily notification limit exceeded",
            extra={"recipient_id": recipient_id, "daily_count": count, "daily_limit": limit},
        )
        return QuotaDecision(
            allowed=False,
            daily_count=count,
            daily_limit=limit,
            reason=DAILY_LIMIT_EXCEEDED,
        )

    @contextmanager
    def reserve(
        self,
        recipient_id: int,
        priority: NotificationPriority,
        notification_type: Optional[str] = None,
    ) -> Generator[QuotaDecision, None, None]:
        """
        Check the quota while holding the recipient's lock.

        The caller must insert and commit inside the ``with`` block so the next
        check for this recipient sees the new row.

        Usage:
            with gate.reserve(worker_id, priority) as decision:
                if decision.allowed:
                    repo.create(notification)
                    db.commit()
        """
        with _recipient_locks.get(recipient_id):
            yield self.check_and_consume(recipient_id, priority, notification_type)

    def availability(self, recipient_id: int, priority=NotificationPriority.NORMAL) -> Dict[str, Any]:
        """
        Report whether the recipient can receive another notification today.

        Returns:
            Dict with can_receive, today_count, daily_limit, remaining_today, priority
        """
        value = getattr(priority, "value", priority)
        count = self.daily_count(recipient_id)
        limit = self.settings.daily_limit
        return {
            "can_receive": value == NotificationPriority.CRITICAL.value or count < limit,
            "today_count": count,
            "daily_limit": limit,
            "remaining_today": max(0, limit - count),
            "priority": value,
        }
