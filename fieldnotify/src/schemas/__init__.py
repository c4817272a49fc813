"""
Schemas for engine input: creation requests, action data variants and
offline sync records.
"""

from fieldnotify.src.schemas.action_data import (
    ActionData,
    Coordinates,
    TaskUpdateData,
    SiteChangeData,
    AttendanceAlertData,
    ApprovalStatusData,
    EscalationAlertData,
    ACTION_DATA_VARIANTS,
    parse_action_data,
)
from fieldnotify.src.schemas.notification import NotificationRequest, SUPPORTED_LANGUAGES
from fieldnotify.src.schemas.sync import SyncUpdate, ReadReceipt, UpdateType

__all__ = [
    "ActionData",
    "Coordinates",
    "TaskUpdateData",
    "SiteChangeData",
    "AttendanceAlertData",
    "ApprovalStatusData",
    "EscalationAlertData",
    "ACTION_DATA_VARIANTS",
    "parse_action_data",
    "NotificationRequest",
    "SUPPORTED_LANGUAGES",
    "SyncUpdate",
    "ReadReceipt",
    "UpdateType",
]
