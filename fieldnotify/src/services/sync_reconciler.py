"""
Offline sync reconciliation.

Mobile clients replay status changes they made while offline. Each update
is checked against the notification's current server state:

1. Missing (or not addressed to this worker): NOT_FOUND, reported per item.
2. The server timestamp relevant to the update kind (read_at for READ,
   acknowledged_at for ACKNOWLEDGED, updated_at otherwise) is strictly after
   the client timestamp: TIMESTAMP_CONFLICT, resolved as
   - CLIENT_UPDATE_APPLIED if the requested status is a valid transition,
   - SERVER_STATE_PRESERVED if the client is newer but the transition is not,
   - SERVER_STATE_KEPT otherwise.
3. Otherwise an invalid transition is INVALID_STATUS_TRANSITION: not
   resolvable, server state preserved.
4. Otherwise the update is applied.

The decision depends only on (server state, update), so replaying the same
update, or the same batch in another order, always resolves the same way.
Each item is an optimistic read-modify-write; a version conflict re-runs
the decision against fresh state.
"""

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.models.notification import Notification, NotificationStatus
from fieldnotify.src.schemas.sync import ReadReceipt, SyncUpdate, UpdateType
from fieldnotify.src.services.audit_service import AuditEventType, AuditRecorder
from fieldnotify.src.services.exceptions import ServiceError
from fieldnotify.src.services.notification_repository import NotificationRepository
from fieldnotify.src.services.status_transitions import is_valid_transition
from fieldnotify.src.utils.clock import Clock, SystemClock
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("sync")

EPOCH = datetime(1970, 1, 1)


class ConflictType(str, enum.Enum):
    TIMESTAMP_CONFLICT = "TIMESTAMP_CONFLICT"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"


class Resolution(str, enum.Enum):
    CLIENT_UPDATE_APPLIED = "CLIENT_UPDATE_APPLIED"
    SERVER_STATE_PRESERVED = "SERVER_STATE_PRESERVED"
    SERVER_STATE_KEPT = "SERVER_STATE_KEPT"


@dataclass
class ConflictAnalysis:
    """Decision for one update against one server state."""
    has_conflict: bool
    conflict_type: Optional[ConflictType]
    current_status: NotificationStatus
    requested_status: NotificationStatus
    server_timestamp: Optional[datetime]
    client_timestamp: datetime
    can_resolve: bool = True
    resolution: Optional[Resolution] = None

    @property
    def should_apply(self) -> bool:
        if not self.has_conflict:
            return True
        return self.resolution == Resolution.CLIENT_UPDATE_APPLIED


@dataclass
class ItemOutcome:
    """Per-update result reported back to the client."""
    notification_id: int
    applied: bool
    had_conflict: bool
    resolved: bool
    final_status: Optional[str] = None
    conflict_type: Optional[str] = None
    resolution: Optional[str] = None
    offline_queue_id: Optional[str] = None


@dataclass
class SyncResult:
    """Aggregate result of one reconcile call."""
    processed: int = 0
    conflicts: int = 0
    resolved: int = 0
    failed: int = 0
    batches: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    resolutions: List[Dict[str, Any]] = field(default_factory=list)
    outcomes: List[ItemOutcome] = field(default_factory=list)


@dataclass
class ReceiptSyncResult:
    processed: int = 0
    duplicates: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


def server_timestamp_for(notification: Notification, update: SyncUpdate) -> Optional[datetime]:
    """The server-side time the client's update competes with."""
    if update.update_type == UpdateType.READ:
        return notification.read_at
    if update.update_type == UpdateType.ACKNOWLEDGED:
        return notification.acknowledged_at
    return notification.updated_at


def analyze_conflict(notification: Notification, update: SyncUpdate) -> ConflictAnalysis:
    """
    Classify an update against the notification's current state.

    Pure: reads ``notification`` and ``update`` only.
    """
    current = notification.status
    requested = update.status
    server_ts = server_timestamp_for(notification, update)
    client_ts = update.timestamp
    valid = is_valid_transition(current, requested)

    analysis = ConflictAnalysis(
        has_conflict=False,
        conflict_type=None,
        current_status=current,
        requested_status=requested,
        server_timestamp=server_ts,
        client_timestamp=client_ts,
    )

    if server_ts is not None and server_ts > client_ts:
        analysis.has_conflict = True
        analysis.conflict_type = ConflictType.TIMESTAMP_CONFLICT
        if valid:
            analysis.resolution = Resolution.CLIENT_UPDATE_APPLIED
        elif client_ts > server_ts:
            # Unreachable while the conflict requires server_ts > client_ts;
            # kept so the policy table stays complete if the trigger changes
            analysis.resolution = Resolution.SERVER_STATE_PRESERVED
        else:
            analysis.resolution = Resolution.SERVER_STATE_KEPT
        return analysis

    if not valid:
        analysis.has_conflict = True
        analysis.conflict_type = ConflictType.INVALID_STATUS_TRANSITION
        analysis.can_resolve = False

    return analysis


def apply_status(notification: Notification, status: NotificationStatus, at: datetime, now: datetime) -> None:
    """
    Move a notification to ``status`` as of client time ``at``.

    READ sets read_at; ACKNOWLEDGED sets acknowledged_at and backfills read_at
    (acknowledging implies reading), keeping read_at <= acknowledged_at.
    """
    notification.status = status
    if status == NotificationStatus.READ:
        notification.read_at = at
    elif status == NotificationStatus.ACKNOWLEDGED:
        notification.acknowledged_at = at
        if notification.read_at is None or notification.read_at > at:
            notification.read_at = at
    notification.updated_at = now


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SyncReconciler:
    """
    Reconciles client-reported status updates with server state.

    Usage:
        >>> reconciler = SyncReconciler(db, settings, clock)
        >>> result = reconciler.reconcile(worker_id=7, updates=[{...}, {...}])
        >>> result.processed, result.conflicts
        (2, 1)
    """

    def __init__(self, db: Session, settings: NotifySettings, clock: Optional[Clock] = None):
        self.db = db
        self.settings = settings
        self.clock = clock or SystemClock()
        self.repository = NotificationRepository(db)
        self.audit = AuditRecorder(db, self.clock, source="sync_reconciler")

    # ========================================================================
    # Status updates
    # ========================================================================

    def reconcile(
        self, worker_id: int, updates: List[Union[SyncUpdate, Dict[str, Any]]]
    ) -> SyncResult:
        """
        Apply a worker's queued status updates in fixed-size batches.

        Args:
            worker_id: Worker whose client is syncing
            updates: SyncUpdate objects or raw client dicts (camelCase)

        Returns:
            SyncResult with counters, per-item errors and outcomes
        """
        result = SyncResult()
        items = list(updates or [])

        for batch in _chunks(items, self.settings.sync_batch_size):
            result.batches += 1
            for raw in batch:
                self._process_item(worker_id, raw, result)

        self.audit.record(
            None,
            worker_id,
            AuditEventType.SYNC_COMPLETED,
            {
                "total_updates": len(items),
                "processed": result.processed,
                "conflicts": result.conflicts,
                "resolved": result.resolved,
                "failed": result.failed,
                "sync_type": "STATUS_UPDATES",
            },
        )
        self.db.commit()

        logger.info(
            "Status sync completed",
            extra={
                "worker_id": worker_id,
                "total_updates": len(items),
                "processed": result.processed,
                "conflicts": result.conflicts,
                "resolved": result.resolved,
                "failed": result.failed,
            },
        )
        return result

    def _process_item(self, worker_id: int, raw: Any, result: SyncResult) -> None:
        try:
            update = raw if isinstance(raw, SyncUpdate) else SyncUpdate.model_validate(raw)
        except PydanticValidationError as e:
            result.failed += 1
            notification_id = raw.get("notificationId") if isinstance(raw, dict) else None
            result.errors.append({
                "notification_id": notification_id,
                "error": "INVALID_UPDATE",
                "details": [err.get("msg") for err in e.errors()],
            })
            return

        try:
            outcome = self.process_update(worker_id, update)
        except ServiceError as e:
            self.db.rollback()
            result.failed += 1
            result.errors.append({"notification_id": update.notification_id, "error": str(e)})
            logger.warning(
                f"Sync update failed: {e}",
                extra={"worker_id": worker_id, "notification_id": update.notification_id},
            )
            return

        if outcome is None:
            result.failed += 1
            result.errors.append({"notification_id": update.notification_id, "error": "NOT_FOUND"})
            return

        result.processed += 1
        result.outcomes.append(outcome)
        if outcome.had_conflict:
            result.conflicts += 1
            if outcome.resolved:
                result.resolved += 1
                result.resolutions.append({
                    "notification_id": outcome.notification_id,
                    "conflict_type": outcome.conflict_type,
                    "resolution": outcome.resolution,
                    "final_status": outcome.final_status,
                })

    def process_update(self, worker_id: int, update: SyncUpdate) -> Optional[ItemOutcome]:
        """
        Reconcile one update.

        Returns:
            ItemOutcome, or None if the notification does not exist for this worker
        """
        if self.repository.get_for_recipient(update.notification_id, worker_id) is None:
            return None

        def apply(notification: Notification) -> ItemOutcome:
            analysis = analyze_conflict(notification, update)
            if analysis.should_apply:
                apply_status(notification, update.status, update.timestamp, self.clock.now())
                self._audit_applied(notification, update, analysis)
            elif not analysis.can_resolve:
                self._audit_conflict(
                    notification, update, analysis, AuditEventType.SYNC_CONFLICT_UNRESOLVABLE
                )
            else:
                self._audit_conflict(
                    notification, update, analysis, AuditEventType.SYNC_CONFLICT_RESOLVED
                )

            return ItemOutcome(
                notification_id=notification.id,
                applied=analysis.should_apply,
                had_conflict=analysis.has_conflict,
                resolved=analysis.can_resolve,
                final_status=notification.status.value,
                conflict_type=analysis.conflict_type.value if analysis.conflict_type else None,
                resolution=analysis.resolution.value if analysis.resolution else None,
                offline_queue_id=update.offline_queue_id,
            )

        return self.repository.mutate(update.notification_id, apply)

    def _audit_applied(self, notification: Notification, update: SyncUpdate, analysis: ConflictAnalysis) -> None:
        event = {
            UpdateType.READ: AuditEventType.READ,
            UpdateType.ACKNOWLEDGED: AuditEventType.ACKNOWLEDGED,
        }.get(update.update_type, AuditEventType.STATUS_UPDATED)
        self.audit.record(
            notification.id,
            notification.recipient_id,
            event,
            {
                "sync_update": True,
                "previous_status": analysis.current_status,
                "new_status": notification.status,
                "client_timestamp": update.timestamp,
                "device_info": update.device_info,
                "offline_queue_id": update.offline_queue_id,
                "had_conflict": analysis.has_conflict,
                "conflict_resolution": analysis.resolution,
            },
        )

    def _audit_conflict(
        self,
        notification: Notification,
        update: SyncUpdate,
        analysis: ConflictAnalysis,
        event: AuditEventType,
    ) -> None:
        self.audit.record(
            notification.id,
            notification.recipient_id,
            event,
            {
                "conflict_type": analysis.conflict_type,
                "resolution": analysis.resolution,
                "current_status": analysis.current_status,
                "requested_status": analysis.requested_status,
                "server_timestamp": analysis.server_timestamp,
                "client_timestamp": analysis.client_timestamp,
                "offline_queue_id": update.offline_queue_id,
            },
        )
        logger.info(
            "Sync conflict",
            extra={
                "notification_id": notification.id,
                "conflict_type": analysis.conflict_type.value,
                "resolution": analysis.resolution.value if analysis.resolution else None,
            },
        )

    # ========================================================================
    # Read receipts
    # ========================================================================

    def sync_read_receipts(
        self, worker_id: int, receipts: List[Union[ReadReceipt, Dict[str, Any]]]
    ) -> ReceiptSyncResult:
        """
        Apply offline read receipts.

        A receipt no later than the recorded read_at is a duplicate: counted,
        not written and not audited.
        """
        result = ReceiptSyncResult()
        for raw in receipts or []:
            try:
                receipt = raw if isinstance(raw, ReadReceipt) else ReadReceipt.model_validate(raw)
            except PydanticValidationError as e:
                result.failed += 1
                result.errors.append({
                    "notification_id": raw.get("notificationId") if isinstance(raw, dict) else None,
                    "error": "INVALID_RECEIPT",
                    "details": [err.get("msg") for err in e.errors()],
                })
                continue

            if self.repository.get_for_recipient(receipt.notification_id, worker_id) is None:
                result.failed += 1
                result.errors.append({"notification_id": receipt.notification_id, "error": "NOT_FOUND"})
                continue

            try:
                applied = self.repository.mutate(receipt.notification_id, self._receipt_applier(receipt))
            except ServiceError as e:
                self.db.rollback()
                result.failed += 1
                result.errors.append({"notification_id": receipt.notification_id, "error": str(e)})
                continue

            if applied:
                result.processed += 1
            else:
                result.duplicates += 1

        logger.info(
            "Read receipt sync completed",
            extra={"worker_id": worker_id, **asdict(result)},
        )
        return result

    def _receipt_applier(self, receipt: ReadReceipt):
        def apply(notification: Notification) -> bool:
            if notification.read_at is not None and receipt.read_at <= notification.read_at:
                return False

            read_at = receipt.read_at
            if notification.acknowledged_at is not None and read_at > notification.acknowledged_at:
                read_at = notification.acknowledged_at
            notification.read_at = read_at
            if is_valid_transition(notification.status, NotificationStatus.READ):
                notification.status = NotificationStatus.READ
            notification.updated_at = self.clock.now()
            self.audit.record(
                notification.id,
                notification.recipient_id,
                AuditEventType.READ,
                {
                    "synced_read_receipt": True,
                    "original_read_at": receipt.read_at,
                    "device_info": receipt.device_info,
                    "offline_queue_id": receipt.offline_queue_id,
                },
            )
            return True

        return apply

    # ========================================================================
    # Pull
    # ========================================================================

    def pull_changes(
        self,
        worker_id: int,
        since: Optional[datetime] = None,
        since_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Notifications modified after the client's last sync watermark.

        The cursor is ``(since, since_id)``: the ``updated_at`` and ``id`` of
        the last change the client holds. Without ``limit`` every change is
        returned, read in keyset pages of ``sync_batch_size``. With ``limit``
        one page is returned and the client continues from its last entry.

        Returns:
            Oldest-first list of id, status, read/ack timestamps, updated_at and version
        """
        cursor_at, cursor_id = since or EPOCH, since_id
        if limit is not None:
            rows = self.repository.find_modified_since(worker_id, cursor_at, cursor_id, limit)
        else:
            rows = []
            page_size = self.settings.sync_batch_size
            while True:
                page = self.repository.find_modified_since(worker_id, cursor_at, cursor_id, page_size)
                rows.extend(page)
                if len(page) < page_size:
                    break
                cursor_at, cursor_id = page[-1].updated_at, page[-1].id
        return [
            {
                "id": n.id,
                "status": n.status.value,
                "read_at": n.read_at,
                "acknowledged_at": n.acknowledged_at,
                "escalated": n.escalated,
                "updated_at": n.updated_at,
                "version": n.version,
            }
            for n in rows
        ]
