"""
SQLAlchemy models for the field notification engine.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# All models inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
from fieldnotify.src.models.notification import (
    Notification,
    NotificationType,
    NotificationPriority,
    NotificationStatus,
    EscalationStatus,
)
from fieldnotify.src.models.device_endpoint import DeviceEndpoint, DevicePlatform
from fieldnotify.src.models.audit_event import AuditEvent

__all__ = [
    "Base",
    "Notification",
    "NotificationType",
    "NotificationPriority",
    "NotificationStatus",
    "EscalationStatus",
    "DeviceEndpoint",
    "DevicePlatform",
    "AuditEvent",
]
