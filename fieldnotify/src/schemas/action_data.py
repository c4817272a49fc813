"""
Type-specific action data payloads.

Each notification type carries its own payload shape. Every variant is a
pydantic model that accepts the mobile client's camelCase keys (or
snake_case), keeps unknown keys so they are persisted untouched, and
declares its own required fields through ``missing_fields()``.

Missing-field checks are separate from parsing so that every violation in a
request can be reported at once rather than stopping at the first one.
"""

from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from fieldnotify.src.models.notification import NotificationType


class ActionData(BaseModel):
    """Base class for action data variants."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def missing_fields(self) -> List[str]:
        """Human-readable messages for every required field that is absent."""
        return []

    def to_payload(self) -> Dict[str, Any]:
        """Serialize back to the camelCase shape clients send."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Coordinates(BaseModel):
    """GPS coordinates of a work site."""

    model_config = ConfigDict(extra="allow")

    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# ============================================================================
# Variants
# ============================================================================


class TaskUpdateData(ActionData):
    """
    Task assignment/change payload.

    Overtime instructions may come without a specific task, in which case
    ``overtime_details`` stands in for ``task_id``.
    """

    task_id: Optional[Union[int, str]] = None
    overtime_details: Optional[Any] = None
    project_id: Optional[Union[int, str]] = None
    supervisor_contact: Optional[Any] = None

    def missing_fields(self) -> List[str]:
        errors = []
        if not self.task_id and not self.overtime_details:
            errors.append("Task notifications must include taskId in actionData")
        if not self.project_id:
            errors.append("Task notifications must include projectId in actionData")
        if not self.supervisor_contact:
            errors.append("Task notifications must include supervisorContact in actionData")
        return errors


class SiteChangeData(ActionData):
    """Relocation payload: where to go, with GPS coordinates."""

    new_location: Optional[Any] = None
    coordinates: Optional[Coordinates] = None
    supervisor_contact: Optional[Any] = None

    def missing_fields(self) -> List[str]:
        errors = []
        if not self.new_location:
            errors.append("Site change notifications must include newLocation in actionData")
        if self.coordinates is None or not self.coordinates.is_complete:
            errors.append("Site change notifications must include GPS coordinates in actionData")
        if not self.supervisor_contact:
            errors.append("Site change notifications must include supervisorContact in actionData")
        return errors


class AttendanceAlertData(ActionData):
    """Attendance alert payload (geofence violation, missed login/logout, reminders)."""

    alert_type: Optional[str] = None
    timestamp: Optional[Any] = None
    current_location: Optional[Any] = None

    def missing_fields(self) -> List[str]:
        errors = []
        if not self.alert_type:
            errors.append("Attendance alerts must include alertType in actionData")
        if not self.timestamp:
            errors.append("Attendance alerts must include timestamp in actionData")
        if self.alert_type == "GEOFENCE_VIOLATION" and not self.current_location:
            errors.append("Geofence violation alerts must include currentLocation in actionData")
        return errors


class ApprovalStatusData(ActionData):
    """Approval outcome payload; an approval must tell the worker what happens next."""

    reference_number: Optional[str] = None
    approval_type: Optional[str] = None
    status: Optional[str] = None
    next_steps: Optional[str] = None

    @property
    def normalized_status(self) -> str:
        return (self.status or "").upper()

    def missing_fields(self) -> List[str]:
        errors = []
        if not self.reference_number:
            errors.append("Approval status notifications must include referenceNumber in actionData")
        if not self.approval_type:
            errors.append("Approval status notifications must include approvalType in actionData")
        if not self.status:
            errors.append("Approval status notifications must include status in actionData")
        if self.normalized_status == "APPROVED" and not self.next_steps:
            errors.append("Approved notifications must include nextSteps in actionData")
        return errors


class EscalationAlertData(ActionData):
    """Supervisor alert about a worker's unread critical notification."""

    original_notification_id: Optional[int] = None
    worker_id: Optional[int] = None
    worker_name: Optional[str] = None
    escalation_type: Optional[str] = None
    original_created_at: Optional[Any] = None
    hours_unread: Optional[int] = None

    def missing_fields(self) -> List[str]:
        errors = []
        if not self.original_notification_id:
            errors.append("Escalation alerts must include originalNotificationId in actionData")
        if not self.worker_id:
            errors.append("Escalation alerts must include workerId in actionData")
        return errors


ACTION_DATA_VARIANTS: Dict[NotificationType, Type[ActionData]] = {
    NotificationType.TASK_UPDATE: TaskUpdateData,
    NotificationType.SITE_CHANGE: SiteChangeData,
    NotificationType.ATTENDANCE_ALERT: AttendanceAlertData,
    NotificationType.APPROVAL_STATUS: ApprovalStatusData,
    NotificationType.ESCALATION_ALERT: EscalationAlertData,
}


def _format_pydantic_errors(exc: PydanticValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"Invalid actionData.{location}: {error.get('msg')}")
    return messages


def parse_action_data(
    notification_type: NotificationType,
    data: Optional[Dict[str, Any]],
) -> Tuple[Optional[ActionData], List[str]]:
    """
    Parse a raw payload into the variant for ``notification_type``.

    Args:
        notification_type: Notification type selecting the variant
        data: Raw action data (None is treated as empty)

    Returns:
        Tuple of (parsed variant or None, list of error messages)
    """
    variant = ACTION_DATA_VARIANTS.get(notification_type)
    if variant is None:
        return None, [f"Unknown notification type: {notification_type}"]
    if data is not None and not isinstance(data, dict):
        return None, ["actionData must be an object"]

    try:
        parsed = variant.model_validate(data or {})
    except PydanticValidationError as e:
        return None, _format_pydantic_errors(e)
    return parsed, parsed.missing_fields()
