"""
Store interface for notifications.

Encapsulates every query the engine runs against the notifications table so
the lifecycle logic stays storage-agnostic: create, find-by-id,
find-by-recipient/status/date-range, update-by-id, plus the sweep queries
(quota counts, escalation candidates, scheduled, expired and retryable rows).

Writes go through ``save()``, which turns an optimistic version mismatch
into ``ConcurrentUpdateError`` after rolling the session back.
"""

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from fieldnotify.src.models.notification import (
    EscalationStatus,
    Notification,
    NotificationPriority,
    NotificationStatus,
)
from fieldnotify.src.services.exceptions import ConcurrentUpdateError, NotFoundError
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("db")

UNREAD_STATUSES = (NotificationStatus.SENT, NotificationStatus.DELIVERED)

# Attempts for one optimistic read-modify-write
MAX_UPDATE_RETRIES = 3

T = TypeVar("T")


class NotificationRepository:
    """
    Notification persistence operations.

    Usage:
        >>> repo = NotificationRepository(db)
        >>> notification = repo.get_or_raise(42)
        >>> notification.status = NotificationStatus.READ
        >>> repo.save(notification)
    """

    def __init__(self, db: Session):
        self.db = db

    # ========================================================================
    # Create / read / update
    # ========================================================================

    def create(self, notification: Notification) -> Notification:
        """Add a new notification and flush so it receives an id."""
        self.db.add(notification)
        self.db.flush()
        return notification

    def get(self, notification_id: int) -> Optional[Notification]:
        return self.db.get(Notification, notification_id)

    def get_or_raise(self, notification_id: int) -> Notification:
        notification = self.get(notification_id)
        if notification is None:
            raise NotFoundError("Notification", notification_id)
        return notification

    def get_for_recipient(self, notification_id: int, recipient_id: int) -> Optional[Notification]:
        """Find a notification only if it is addressed to ``recipient_id``."""
        return (
            self.db.query(Notification)
            .filter(
                Notification.id == notification_id,
                Notification.recipient_id == recipient_id,
            )
            .first()
        )

    def find_by_recipient(
        self,
        recipient_id: int,
        statuses: Optional[Iterable[NotificationStatus]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Notification]:
        """
        Notifications for a recipient, newest first.

        Args:
            recipient_id: Worker ID
            statuses: Restrict to these statuses
            start: Created at or after this instant
            end: Created before this instant
            limit: Maximum rows to return
        """
        query = self.db.query(Notification).filter(Notification.recipient_id == recipient_id)
        if statuses:
            query = query.filter(Notification.status.in_(list(statuses)))
        if start is not None:
            query = query.filter(Notification.created_at >= start)
        if end is not None:
            query = query.filter(Notification.created_at < end)
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def update(self, notification_id: int, **fields) -> Notification:
        """Update fields on one notification and commit (version checked)."""
        notification = self.get_or_raise(notification_id)
        for key, value in fields.items():
            setattr(notification, key, value)
        return self.save(notification)

    def save(self, notification: Notification) -> Notification:
        """
        Commit pending changes for ``notification``.

        Raises:
            ConcurrentUpdateError: If another writer bumped the row's version
        """
        notification_id = notification.id
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            logger.info(
                "Concurrent notification update detected",
                extra={"notification_id": notification_id},
            )
            raise ConcurrentUpdateError("Notification", notification_id) from e
        return notification

    # ========================================================================
    # Quota
    # ========================================================================

    def count_created_since(self, recipient_id: int, since: datetime) -> int:
        """Notifications of any priority created for a recipient since ``since``."""
        return (
            self.db.query(func.count(Notification.id))
            .filter(
                Notification.recipient_id == recipient_id,
                Notification.created_at >= since,
            )
            .scalar()
        ) or 0

    def count_created_since_by_recipient(
        self, since: datetime, recipient_ids: Optional[Iterable[int]] = None
    ) -> Dict[int, Dict[str, int]]:
        """
        Notifications created since ``since``, per recipient and priority.

        Returns:
            ``{recipient_id: {priority: count}}`` for recipients with any rows
        """
        query = (
            self.db.query(Notification.recipient_id, Notification.priority, func.count(Notification.id))
            .filter(Notification.created_at >= since)
        )
        if recipient_ids:
            query = query.filter(Notification.recipient_id.in_(list(recipient_ids)))
        counts: Dict[int, Dict[str, int]] = {}
        for recipient_id, priority, count in query.group_by(Notification.recipient_id, Notification.priority):
            counts.setdefault(recipient_id, {})[getattr(priority, "value", priority)] = count
        return counts

    # ========================================================================
    # Escalation
    # ========================================================================

    def find_escalation_candidates(self, cutoff: datetime, limit: Optional[int] = None) -> List[Notification]:
        """
        Unread CRITICAL notifications created before ``cutoff`` and not yet escalated.
        """
        query = (
            self.db.query(Notification)
            .filter(
                Notification.priority == NotificationPriority.CRITICAL,
                Notification.status.in_(UNREAD_STATUSES),
                Notification.created_at < cutoff,
                Notification.escalated.is_(False),
            )
            .order_by(Notification.created_at.asc(), Notification.id.asc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def claim_escalation(self, notification_id: int, now: datetime, require_unread: bool = True) -> bool:
        """
        Atomically flip ``escalated`` from false to true.

        Only one caller can win for a given row: the UPDATE is conditional on
        ``escalated = false`` (and, by default, on the row still being unread)
        and bumps the version so concurrent ORM writers see a stale row.
        Commits immediately.

        Returns:
            True if this call claimed the notification
        """
        conditions = [
            Notification.id == notification_id,
            Notification.escalated.is_(False),
        ]
        if require_unread:
            conditions.append(Notification.status.in_(UNREAD_STATUSES))

        result = self.db.execute(
            update(Notification)
            .where(*conditions)
            .values(
                escalated=True,
                escalated_at=now,
                updated_at=now,
                version=Notification.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def record_escalation_outcome(
        self,
        notification_id: int,
        status: EscalationStatus,
        reason: str,
        now: datetime,
    ) -> bool:
        """
        Stamp the outcome of a claimed escalation.

        Only the claimant writes the escalation columns, so the UPDATE is not
        conditional on the version and cannot lose to concurrent status
        changes. The version is still bumped. Does not commit.

        Returns:
            True if the row exists
        """
        result = self.db.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(
                escalation_status=status,
                escalation_reason=reason,
                updated_at=now,
                version=Notification.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ========================================================================
    # Sync
    # ========================================================================

    def find_modified_since(
        self,
        recipient_id: int,
        since: datetime,
        since_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Notification]:
        """
        Notifications for a recipient modified after a ``(since, since_id)``
        cursor, oldest first.

        Without ``since_id`` every row with ``updated_at > since`` qualifies.
        With it, rows sharing ``updated_at == since`` and a larger id qualify
        too, so pages cut in the middle of a timestamp lose nothing.
        """
        if since_id is None:
            after_cursor = Notification.updated_at > since
        else:
            after_cursor = or_(
                Notification.updated_at > since,
                and_(Notification.updated_at == since, Notification.id > since_id),
            )
        query = (
            self.db.query(Notification)
            .filter(Notification.recipient_id == recipient_id, after_cursor)
            .order_by(Notification.updated_at.asc(), Notification.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    # ========================================================================
    # Maintenance
    # ========================================================================

    def find_due_scheduled(self, now: datetime, limit: int) -> List[Notification]:
        """PENDING notifications whose scheduled time has arrived."""
        return (
            self.db.query(Notification)
            .filter(
                Notification.status == NotificationStatus.PENDING,
                (Notification.scheduled_at.is_(None)) | (Notification.scheduled_at <= now),
            )
            .order_by(Notification.scheduled_at.asc(), Notification.id.asc())
            .limit(limit)
            .all()
        )

    def find_expired(self, now: datetime, limit: int) -> List[Notification]:
        """Notifications past expires_at that may still move to EXPIRED."""
        return (
            self.db.query(Notification)
            .filter(
                Notification.expires_at.isnot(None),
                Notification.expires_at < now,
                Notification.status.notin_([NotificationStatus.EXPIRED, NotificationStatus.FAILED]),
            )
            .order_by(Notification.expires_at.asc(), Notification.id.asc())
            .limit(limit)
            .all()
        )

    def find_retryable(
        self, max_attempts: int, attempted_before: datetime, limit: int
    ) -> List[Notification]:
        """
        SENT notifications with attempts left that are due another try.

        A row qualifies once its last attempt (or deferral) is older than
        ``attempted_before``. Rows never attempted at all, because the
        hand-off to delivery failed, qualify once they have been untouched
        for as long.
        """
        last_touched = func.coalesce(Notification.last_attempt_at, Notification.updated_at)
        return (
            self.db.query(Notification)
            .filter(
                Notification.status == NotificationStatus.SENT,
                Notification.delivery_attempts < max_attempts,
                last_touched <= attempted_before,
            )
            .order_by(last_touched.asc(), Notification.id.asc())
            .limit(limit)
            .all()
        )

    def find_exhausted(self, max_attempts: int, limit: int) -> List[Notification]:
        """SENT notifications that used up their delivery attempts."""
        return (
            self.db.query(Notification)
            .filter(
                Notification.status == NotificationStatus.SENT,
                Notification.delivery_attempts >= max_attempts,
            )
            .order_by(Notification.id.asc())
            .limit(limit)
            .all()
        )

    def delete_created_before(self, cutoff: datetime) -> int:
        """Delete notifications created before ``cutoff``; returns the row count."""
        deleted = (
            self.db.query(Notification)
            .filter(Notification.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    # ========================================================================
    # Statistics
    # ========================================================================

    def count_by(
        self,
        column,
        recipient_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Group counts by an enum column (status, type or priority)."""
        query = self.db.query(column, func.count(Notification.id))
        if recipient_id is not None:
            query = query.filter(Notification.recipient_id == recipient_id)
        if since is not None:
            query = query.filter(Notification.created_at >= since)
        rows = query.group_by(column).all()
        return {getattr(key, "value", key): count for key, count in rows}

    def count_unread(self, recipient_id: int) -> int:
        return (
            self.db.query(func.count(Notification.id))
            .filter(
                Notification.recipient_id == recipient_id,
                Notification.status.in_(UNREAD_STATUSES),
            )
            .scalar()
        ) or 0

    def count_escalations(self) -> Dict[str, int]:
        """Escalated notifications grouped by escalation status."""
        rows = (
            self.db.query(Notification.escalation_status, func.count(Notification.id))
            .filter(Notification.escalated.is_(True))
            .group_by(Notification.escalation_status)
            .all()
        )
        return {getattr(key, "value", key) or "IN_PROGRESS": count for key, count in rows}

    # ========================================================================
    # Optimistic read-modify-write
    # ========================================================================

    def mutate(
        self,
        notification_id: int,
        apply: Callable[[Notification], T],
        retries: int = MAX_UPDATE_RETRIES,
    ) -> T:
        """
        Load a notification, apply a change and commit it.

        On a version conflict the session is rolled back and ``apply`` runs
        again against freshly loaded state, so decisions are always made on
        the row as it is now. Audit events added by ``apply`` are discarded
        with the rolled-back attempt.

        Args:
            notification_id: Notification to change
            apply: Callable that mutates the notification and returns a result
            retries: Attempts before giving up

        Returns:
            Whatever ``apply`` returned on the committed attempt

        Raises:
            NotFoundError: If the notification does not exist
            ConcurrentUpdateError: If every attempt lost the race
        """
        for attempt in range(1, retries + 1):
            notification = self.get_or_raise(notification_id)
            result = apply(notification)
            try:
                self.save(notification)
                return result
            except ConcurrentUpdateError:
                if attempt >= retries:
                    raise
                logger.debug(
                    "Retrying notification update",
                    extra={"notification_id": notification_id, "attempt": attempt},
                )
