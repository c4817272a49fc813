"""
AuditEvent model: append-only record of notification lifecycle facts.

Every component writes audit events as a side effect (creation, delivery,
failures, quota rejections, escalations, sync outcomes). Rows are never
updated or deleted by the engine; retention is an operational concern.
System-level facts that are not tied to one notification (for example a
quota rejection, where nothing was persisted) use notification_id 0.
"""

from sqlalchemy import Column, DateTime, Index, Integer, String

from fieldnotify.src.models import Base
from fieldnotify.src.models.types import JSONBType
from fieldnotify.src.utils.clock import utc_now


class AuditEvent(Base):
    """
    Audit fact.

    Attributes:
        id: Primary key
        notification_id: Referenced notification (0 for system events)
        worker_id: Worker the fact concerns
        event: Event kind (CREATED, DELIVERED, FAILED, ...)
        details: Event metadata (JSONB)
        source: Component that recorded the event
        created_at: When the fact was recorded
    """

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    notification_id = Column(Integer, nullable=False, default=0, index=True)
    worker_id = Column(Integer, nullable=True, index=True)
    event = Column(String(40), nullable=False, index=True)
    details = Column(JSONBType, nullable=False, default=dict)
    source = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_audit_events_notification_event", "notification_id", "event"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent(id={self.id}, notification_id={self.notification_id}, "
            f"event='{self.event}')>"
        )
