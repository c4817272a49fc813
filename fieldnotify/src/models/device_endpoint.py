"""
DeviceEndpoint model for push-capable worker devices.

Stores the push service endpoint and encryption keys needed to deliver a
push notification to one of a worker's devices, together with that device's
delivery preferences and rolling delivery statistics.

Lifecycle:
    Registered (or re-activated) when the mobile app reports its token.
    Deactivated when the push provider permanently rejects the token or after
    five consecutive delivery failures. Inactive or long-unseen endpoints are
    purged by the maintenance reaper.
"""

import enum
from datetime import datetime, time
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, String

from fieldnotify.src.models import Base
from fieldnotify.src.models.types import JSONBType, enum_values
from fieldnotify.src.utils.clock import to_local, utc_now


# Endpoints are deactivated after this many failures in a row
MAX_CONSECUTIVE_FAILURES = 5


class DevicePlatform(str, enum.Enum):
    """Device platform the endpoint belongs to."""
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


def parse_hhmm(value: Optional[str]) -> Optional[time]:
    """Parse an ``HH:MM`` string, returning None for empty input."""
    if not value:
        return None
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class DeviceEndpoint(Base):
    """
    Push destination owned by a worker.

    Attributes:
        id: Primary key
        worker_id: Owning worker
        token: Push endpoint URL / device token (unique)
        p256dh_key: ECDH public key for payload encryption (Base64url)
        auth_key: Auth secret for message authentication (Base64url)
        platform: ios, android or web
        device_label: Optional user-friendly label
        app_version: Reported mobile app version
        is_active: False once deactivated
        push_enabled: Worker-level push opt-out for this device
        quiet_hours_start: Start of the quiet window (HH:MM, local)
        quiet_hours_end: End of the quiet window (HH:MM, local)
        timezone: IANA zone the quiet window is expressed in
        critical_bypass_quiet_hours: Let CRITICAL through during quiet hours
        muted_priorities: Priorities this device opted out of
        total_sent / total_delivered / total_failed: Delivery counters
        consecutive_failures: Failures since the last success
        last_delivery_at / last_failure_at: Last outcome timestamps
        last_seen_at: Last time the app reported in
        created_at / updated_at: Timestamps
    """

    __tablename__ = "device_endpoints"

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Owning worker
    worker_id = Column(Integer, nullable=False, index=True)

    # Push subscription data
    token = Column(String(1024), nullable=False, unique=True)
    p256dh_key = Column(String(255), nullable=True)
    auth_key = Column(String(255), nullable=True)
    platform = Column(
        Enum(DevicePlatform, native_enum=False, values_callable=enum_values),
        nullable=False,
        default=DevicePlatform.WEB,
    )
    device_label = Column(String(100), nullable=True)
    app_version = Column(String(50), nullable=True)

    # State
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # Delivery preferences
    push_enabled = Column(Boolean, nullable=False, default=True)
    quiet_hours_start = Column(String(5), nullable=True, default="22:00")
    quiet_hours_end = Column(String(5), nullable=True, default="07:00")
    timezone = Column(String(64), nullable=False, default="UTC")
    critical_bypass_quiet_hours = Column(Boolean, nullable=False, default=True)
    muted_priorities = Column(JSONBType, nullable=False, default=list)

    # Delivery statistics
    total_sent = Column(Integer, nullable=False, default=0)
    total_delivered = Column(Integer, nullable=False, default=0)
    total_failed = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_delivery_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)

    # Tracking
    last_seen_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, nullable=False)

    def is_in_quiet_hours(self, now: datetime) -> bool:
        """
        Whether ``now`` falls inside this device's quiet window.

        Handles overnight windows (22:00 to 07:00) as well as same-day
        windows (12:00 to 14:00); both ends are inclusive. A disabled push
        flag counts as permanently quiet.

        Args:
            now: Naive UTC instant
        """
        if not self.push_enabled:
            return True

        start = parse_hhmm(self.quiet_hours_start)
        end = parse_hhmm(self.quiet_hours_end)
        if start is None or end is None or start == end:
            return False

        local = to_local(now, self.timezone or "UTC").time().replace(second=0, microsecond=0)
        if start > end:
            return local >= start or local <= end
        return start <= local <= end

    def can_receive_notification(self, priority, now: datetime) -> bool:
        """
        Whether a notification of ``priority`` may be pushed to this device now.

        Args:
            priority: NotificationPriority or its string value
            now: Naive UTC instant
        """
        if not self.is_active or not self.push_enabled:
            return False

        value = getattr(priority, "value", priority)
        if value in (self.muted_priorities or []) and value != "CRITICAL":
            return False

        if value == "CRITICAL" and self.critical_bypass_quiet_hours:
            return True

        return not self.is_in_quiet_hours(now)

    def record_delivery_success(self, now: datetime) -> None:
        self.total_sent += 1
        self.total_delivered += 1
        self.last_delivery_at = now
        self.consecutive_failures = 0
        self.updated_at = now

    def record_delivery_failure(self, now: datetime) -> bool:
        """
        Record a transient failure.

        Returns:
            True if this failure deactivated the endpoint
        """
        self.total_sent += 1
        self.total_failed += 1
        self.last_failure_at = now
        self.consecutive_failures += 1
        self.updated_at = now
        if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES and self.is_active:
            self.is_active = False
            return True
        return False

    def deactivate(self, now: datetime) -> None:
        self.is_active = False
        self.updated_at = now

    def __repr__(self) -> str:
        return (
            f"<DeviceEndpoint(id={self.id}, worker_id={self.worker_id}, "
            f"platform={self.platform}, active={self.is_active})>"
        )
