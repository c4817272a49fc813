"""
Pydantic schemas for offline sync input.

Mobile clients queue status changes while offline and replay them later.
These records are transient: the reconciler consumes them and never stores
them verbatim. Keys are accepted in camelCase (as sent by the app) or
snake_case, and timestamps are normalized to naive UTC.
"""

import enum
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from fieldnotify.src.models.notification import NotificationStatus
from fieldnotify.src.utils.clock import to_naive_utc


class UpdateType(str, enum.Enum):
    """
    Kind of client update.

    - READ: worker opened the notification
    - ACKNOWLEDGED: worker acknowledged it
    - STATUS: any other status report (for example a delivery receipt)
    """
    READ = "READ"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    STATUS = "STATUS"


class SyncUpdate(BaseModel):
    """
    One client-reported status update.

    For READ and ACKNOWLEDGED updates ``status`` defaults to the update type
    and must agree with it. STATUS updates must name a status.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    notification_id: int = Field(..., gt=0)
    update_type: UpdateType = UpdateType.STATUS
    status: Optional[NotificationStatus] = None
    timestamp: datetime
    client_timestamp: Optional[datetime] = None
    device_info: Optional[Dict[str, Any]] = None
    offline_queue_id: Optional[str] = None

    @field_validator("timestamp", "client_timestamp")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Store instants as naive UTC."""
        return to_naive_utc(v) if v is not None else None

    @model_validator(mode="after")
    def resolve_status(self) -> "SyncUpdate":
        """Derive or check the target status from the update type."""
        implied = {
            UpdateType.READ: NotificationStatus.READ,
            UpdateType.ACKNOWLEDGED: NotificationStatus.ACKNOWLEDGED,
        }.get(self.update_type)

        if implied is not None:
            if self.status is None:
                self.status = implied
            elif self.status != implied:
                raise ValueError(
                    f"{self.update_type.value} update cannot carry status {self.status.value}"
                )
        elif self.status is None:
            raise ValueError("STATUS updates must include a status")
        return self


class ReadReceipt(BaseModel):
    """Lightweight offline read receipt."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    notification_id: int = Field(..., gt=0)
    read_at: datetime
    device_info: Optional[Dict[str, Any]] = None
    offline_queue_id: Optional[str] = None

    @field_validator("read_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return to_naive_utc(v)
