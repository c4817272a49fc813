"""
Audit sink for notification lifecycle facts.

Audit events are appended to the caller's session and committed together
with the state change they describe, so a fact is never recorded for a write
that was rolled back. Events are never updated or deleted here.
"""

import enum
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from fieldnotify.src.models.audit_event import AuditEvent
from fieldnotify.src.utils.clock import Clock, SystemClock


class AuditEventType(str, enum.Enum):
    """Kinds of audit facts recorded by the engine."""
    CREATED = "CREATED"
    RELEASED = "RELEASED"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    READ = "READ"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    STATUS_UPDATED = "STATUS_UPDATED"
    EXPIRED = "EXPIRED"
    ESCALATED = "ESCALATED"
    ESCALATION_FAILED = "ESCALATION_FAILED"
    SYNC_CONFLICT_RESOLVED = "SYNC_CONFLICT_RESOLVED"
    SYNC_CONFLICT_UNRESOLVABLE = "SYNC_CONFLICT_UNRESOLVABLE"
    SYNC_COMPLETED = "SYNC_COMPLETED"
    DEVICE_DEACTIVATED = "DEVICE_DEACTIVATED"


# notification_id used for facts not tied to a persisted notification
SYSTEM_NOTIFICATION_ID = 0


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


class AuditRecorder:
    """
    Append-only writer for AuditEvent rows.

    Usage:
        >>> audit = AuditRecorder(db, clock)
        >>> audit.record(42, 7, AuditEventType.DELIVERED, {"message_id": "m-1"})
        >>> db.commit()
    """

    def __init__(self, db: Session, clock: Optional[Clock] = None, source: str = "engine"):
        self.db = db
        self.clock = clock or SystemClock()
        self.source = source

    def record(
        self,
        notification_id: Optional[int],
        worker_id: Optional[int],
        event: AuditEventType,
        metadata: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> AuditEvent:
        """
        Append one audit fact to the current session (not committed).

        Args:
            notification_id: Notification the fact refers to (None/0 for system facts)
            worker_id: Worker the fact concerns
            event: Event kind
            metadata: JSON-serializable details; datetimes and enums are converted
            source: Recording component, defaults to the recorder's source
        """
        audit = AuditEvent(
            notification_id=notification_id or SYSTEM_NOTIFICATION_ID,
            worker_id=worker_id,
            event=getattr(event, "value", event),
            details=_jsonable(metadata or {}),
            source=source or self.source,
            created_at=self.clock.now(),
        )
        self.db.add(audit)
        return audit

    def list_since(
        self, event: AuditEventType, since: datetime, worker_id: Optional[int] = None
    ) -> List[AuditEvent]:
        """Facts of one kind recorded at or after ``since``, oldest first."""
        query = self.db.query(AuditEvent).filter(
            AuditEvent.event == getattr(event, "value", event),
            AuditEvent.created_at >= since,
        )
        if worker_id is not None:
            query = query.filter(AuditEvent.worker_id == worker_id)
        return query.order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc()).all()

    def count_with_reason(
        self,
        event: AuditEventType,
        reason: str,
        since: datetime,
        worker_id: Optional[int] = None,
    ) -> int:
        """Facts of one kind since ``since`` whose details carry ``reason``."""
        # details is plain JSON; match in Python to stay portable across backends
        return sum(
            1 for audit in self.list_since(event, since, worker_id)
            if (audit.details or {}).get("reason") == reason
        )
