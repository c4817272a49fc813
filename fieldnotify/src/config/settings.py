"""
Application settings configuration for the field notification engine.

Centralized settings loaded from environment variables (and an optional
``.env`` file).
"""

from datetime import timedelta
from functools import lru_cache
from typing import Dict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from fieldnotify.src.utils.clock import get_timezone


class NotifySettings(BaseSettings):
    """
    Notification engine settings loaded from environment variables.

    Environment Variables:
        FIELDNOTIFY_DB_URL: SQLAlchemy database URL
        NOTIFICATION_DAILY_LIMIT: Non-critical notifications per recipient per day (default: 10)
        NOTIFICATION_ESCALATION_TIMEOUT_HOURS: Hours before an unread CRITICAL escalates (default: 2)
        NOTIFICATION_ESCALATION_SWEEP_MINUTES: Escalation sweep period (default: 15)
        NOTIFICATION_SYNC_BATCH_SIZE: Offline sync batch size (default: 50)
        NOTIFICATION_MAX_DELIVERY_ATTEMPTS: Attempts before a notification is FAILED (default: 3)
        NOTIFICATION_{CRITICAL,HIGH,NORMAL,LOW}_PRIORITY_RETRIES: Provider retries per send
        NOTIFICATION_PUSH_TIMEOUT_SECONDS: Timeout for one push provider call (default: 10)
        NOTIFICATION_TIMEZONE: Zone whose midnight resets the daily quota (default: UTC)
        VAPID_PRIVATE_KEY: Web Push VAPID private key (Base64url-encoded)
        VAPID_SUBJECT: VAPID subject identifier (mailto: or https: URL)
        ORG_DIRECTORY_URL: Base URL of the org directory used to find supervisors
    """

    database_url: str = Field(
        default="sqlite:///fieldnotify.db",
        validation_alias="FIELDNOTIFY_DB_URL",
    )

    # Quota gate
    daily_limit: int = Field(default=10, validation_alias="NOTIFICATION_DAILY_LIMIT", ge=1)
    quota_timezone: str = Field(default="UTC", validation_alias="NOTIFICATION_TIMEZONE")

    # Escalation monitor
    escalation_timeout_hours: float = Field(
        default=2, validation_alias="NOTIFICATION_ESCALATION_TIMEOUT_HOURS", gt=0
    )
    escalation_sweep_interval_minutes: float = Field(
        default=15, validation_alias="NOTIFICATION_ESCALATION_SWEEP_MINUTES", gt=0
    )
    system_sender_id: int = Field(default=1, validation_alias="NOTIFICATION_SYSTEM_SENDER_ID", ge=1)
    org_directory_url: str = Field(default="", validation_alias="ORG_DIRECTORY_URL")
    org_directory_api_key: str = Field(default="", validation_alias="ORG_DIRECTORY_API_KEY")

    # Sync reconciler
    sync_batch_size: int = Field(default=50, validation_alias="NOTIFICATION_SYNC_BATCH_SIZE", ge=1)

    # Delivery
    max_delivery_attempts: int = Field(
        default=3, validation_alias="NOTIFICATION_MAX_DELIVERY_ATTEMPTS", ge=1
    )
    critical_priority_retries: int = Field(
        default=3, validation_alias="NOTIFICATION_CRITICAL_PRIORITY_RETRIES", ge=1
    )
    high_priority_retries: int = Field(
        default=3, validation_alias="NOTIFICATION_HIGH_PRIORITY_RETRIES", ge=1
    )
    normal_priority_retries: int = Field(
        default=1, validation_alias="NOTIFICATION_NORMAL_PRIORITY_RETRIES", ge=1
    )
    low_priority_retries: int = Field(
        default=1, validation_alias="NOTIFICATION_LOW_PRIORITY_RETRIES", ge=1
    )
    multicast_max_attempts: int = Field(
        default=2, validation_alias="NOTIFICATION_MULTICAST_MAX_ATTEMPTS", ge=1
    )
    push_timeout_seconds: float = Field(
        default=10, validation_alias="NOTIFICATION_PUSH_TIMEOUT_SECONDS", gt=0
    )
    push_ttl_seconds: int = Field(default=86400, validation_alias="NOTIFICATION_PUSH_TTL_SECONDS")
    delivery_workers: int = Field(default=4, validation_alias="NOTIFICATION_DELIVERY_WORKERS", ge=1)

    # Maintenance reapers
    maintenance_interval_minutes: float = Field(
        default=5, validation_alias="NOTIFICATION_MAINTENANCE_MINUTES", gt=0
    )
    retry_backoff_minutes: float = Field(
        default=5, validation_alias="NOTIFICATION_RETRY_BACKOFF_MINUTES", ge=0
    )
    notification_retention_days: int = Field(
        default=90, validation_alias="NOTIFICATION_RETENTION_DAYS", ge=1
    )
    inactive_device_days: int = Field(
        default=30, validation_alias="NOTIFICATION_INACTIVE_DEVICE_DAYS", ge=1
    )

    # VAPID settings for Web Push
    vapid_private_key: str = Field(
        default="",
        validation_alias="VAPID_PRIVATE_KEY",
        description="Base64url-encoded VAPID private key for signing push messages"
    )
    vapid_subject: str = Field(
        default="",
        validation_alias="VAPID_SUBJECT",
        description="VAPID subject (mailto: or https: URL identifying the push sender)"
    )

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    @field_validator("quota_timezone")
    @classmethod
    def validate_quota_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names at load time."""
        get_timezone(v)
        return v

    @property
    def vapid_configured(self) -> bool:
        """Check if VAPID credentials are configured for Web Push."""
        return bool(self.vapid_private_key and self.vapid_subject)

    @property
    def vapid_claims(self) -> Dict[str, str]:
        return {"sub": self.vapid_subject} if self.vapid_subject else {}

    @property
    def escalation_timeout(self) -> timedelta:
        return timedelta(hours=self.escalation_timeout_hours)

    def retry_attempts_for(self, priority: str) -> int:
        """
        Provider-level send attempts for a notification priority.

        Args:
            priority: CRITICAL, HIGH, NORMAL or LOW (enum or string)
        """
        key = getattr(priority, "value", priority).lower()
        return getattr(self, f"{key}_priority_retries", self.normal_priority_retries)


@lru_cache()
def get_settings() -> NotifySettings:
    """
    Get cached application settings instance.

    Returns:
        NotifySettings: Configured settings from environment
    """
    return NotifySettings()
