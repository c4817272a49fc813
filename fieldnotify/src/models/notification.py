"""
Notification model for worker-facing operational notifications.

One row per recipient: a request addressed to several workers fans out into
one Notification per worker so that delivery, read tracking, acknowledgment
and escalation are tracked independently.

Design Rationale:
- Status is a state machine (see services/status_transitions.py); every
  writer consults the same transition table
- ``version`` is the mapper's version_id_col, so two concurrent
  read-modify-write cycles on one row cannot silently overwrite each other
- ``escalated`` flips false -> true exactly once, through a conditional
  UPDATE in the repository
- Action data is JSONB with a per-type shape validated before persistence
"""

import enum
import hashlib

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, Index, Integer, String, Text,
)

from fieldnotify.src.models import Base
from fieldnotify.src.models.types import JSONBType, enum_values
from fieldnotify.src.utils.clock import utc_now


class NotificationType(str, enum.Enum):
    """
    Notification type enumeration.

    Each type carries its own action data shape:
    - TASK_UPDATE: task assignment, change or overtime instruction
    - SITE_CHANGE: relocation to another work site
    - ATTENDANCE_ALERT: geofence violation, missed login/logout, reminders
    - APPROVAL_STATUS: outcome of a leave/claim/request approval
    - ESCALATION_ALERT: supervisor alert for an unread critical notification
    """
    TASK_UPDATE = "TASK_UPDATE"
    SITE_CHANGE = "SITE_CHANGE"
    ATTENDANCE_ALERT = "ATTENDANCE_ALERT"
    APPROVAL_STATUS = "APPROVAL_STATUS"
    ESCALATION_ALERT = "ESCALATION_ALERT"


class NotificationPriority(str, enum.Enum):
    """
    Notification priority enumeration.

    CRITICAL bypasses the daily quota and recipient quiet hours.
    """
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


class NotificationStatus(str, enum.Enum):
    """
    Notification lifecycle states.

    - PENDING: Scheduled for a later time, not yet dispatched
    - SENT: Accepted and handed to delivery
    - DELIVERED: At least one device accepted the push
    - READ: Opened by the worker
    - ACKNOWLEDGED: Explicitly acknowledged by the worker
    - FAILED: Delivery gave up (retryable back to SENT)
    - EXPIRED: Past expires_at (terminal)
    """
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class EscalationStatus(str, enum.Enum):
    """Outcome of an escalation attempt."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Notification(Base):
    """
    Notification addressed to a single field worker.

    Attributes:
        id: Primary key
        type: Notification type (immutable)
        priority: CRITICAL/HIGH/NORMAL/LOW (immutable)
        title: Trimmed title (max 100 chars)
        message: Trimmed message body (max 500 chars)
        action_data: Type-specific payload (JSONB)
        sender_id: User who sent the notification
        recipient_id: Worker who receives the notification
        status: Lifecycle status
        language: Content language (en, zh, ms, ta)
        requires_acknowledgment: Whether an explicit acknowledgment is expected
        scheduled_at: Earliest dispatch time (NULL = immediate)
        expires_at: When the notification stops being relevant
        delivery_attempts: Failed delivery attempts (never decreases)
        last_attempt_at: Time of the last delivery attempt
        read_at: When the worker read the notification
        acknowledged_at: When the worker acknowledged it
        escalated: Whether the escalation sweep has handled this row
        escalated_at: When it was escalated
        escalation_status: SUCCESS or FAILED
        escalation_reason: ESCALATED_TO_SUPERVISOR, NO_SUPERVISOR or ESCALATION_FAILED
        content_hash: sha256 of type, priority, title and message
        created_at: Creation timestamp
        updated_at: Last modification timestamp (sync watermark)
        version: Optimistic concurrency counter

    Indexes:
        - (recipient_id, created_at) for daily quota counts
        - (recipient_id, updated_at) for sync pulls
        - (priority, status, escalated, created_at) for escalation sweeps
    """

    __tablename__ = "notifications"

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Classification
    type = Column(
        Enum(NotificationType, native_enum=False, values_callable=enum_values),
        nullable=False,
        index=True,
    )
    priority = Column(
        Enum(NotificationPriority, native_enum=False, values_callable=enum_values),
        nullable=False,
        default=NotificationPriority.NORMAL,
    )

    # Content
    title = Column(String(100), nullable=False)
    message = Column(String(500), nullable=False)
    action_data = Column(JSONBType, nullable=False, default=dict)
    language = Column(String(5), nullable=False, default="en")
    content_hash = Column(String(64), nullable=True)

    # Parties
    sender_id = Column(Integer, nullable=False)
    recipient_id = Column(Integer, nullable=False, index=True)

    # Lifecycle
    status = Column(
        Enum(NotificationStatus, native_enum=False, values_callable=enum_values),
        nullable=False,
        default=NotificationStatus.SENT,
        index=True,
    )
    requires_acknowledgment = Column(Boolean, nullable=False, default=False)
    scheduled_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    delivery_attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)

    # Escalation
    escalated = Column(Boolean, nullable=False, default=False)
    escalated_at = Column(DateTime, nullable=True)
    escalation_status = Column(
        Enum(EscalationStatus, native_enum=False, values_callable=enum_values),
        nullable=True,
    )
    escalation_reason = Column(Text, nullable=True)

    # Timestamps (set explicitly from the service clock)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    # Optimistic locking
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
        Index("ix_notifications_recipient_updated", "recipient_id", "updated_at"),
        Index(
            "ix_notifications_escalation_scan",
            "priority", "status", "escalated", "created_at",
        ),
    )

    @staticmethod
    def compute_content_hash(type_value: str, priority_value: str, title: str, message: str) -> str:
        """Integrity hash over the immutable content of a notification."""
        raw = f"{type_value}:{priority_value}:{title}:{message}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def is_unread(self) -> bool:
        return self.status in (NotificationStatus.SENT, NotificationStatus.DELIVERED)

    def to_summary(self) -> dict:
        """Compact representation returned by creation results."""
        return {
            "id": self.id,
            "type": self.type.value,
            "priority": self.priority.value,
            "recipient_id": self.recipient_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, type={self.type}, "
            f"priority={self.priority}, status={self.status}, recipient={self.recipient_id})>"
        )
