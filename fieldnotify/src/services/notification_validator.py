"""
Request validation, priority classification and content formatting.

These are the first three stages of the creation pipeline and are pure:
they never touch the database. Validation accumulates every violation
before failing; the pipeline rejects the whole request if any exist.

Usage:
    >>> validator = NotificationValidator(clock)
    >>> result = validator.validate(request)
    >>> priority = classify_priority(request)
    >>> title, message = format_content(request.title, request.message)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from fieldnotify.src.models.notification import NotificationPriority, NotificationType
from fieldnotify.src.schemas.action_data import (
    ApprovalStatusData,
    AttendanceAlertData,
    parse_action_data,
)
from fieldnotify.src.schemas.notification import NotificationRequest, SUPPORTED_LANGUAGES
from fieldnotify.src.services.exceptions import ValidationError
from fieldnotify.src.utils.clock import Clock, SystemClock


TITLE_MAX_LENGTH = 100
MESSAGE_MAX_LENGTH = 500

# Attendance alert sub-types that raise priority to HIGH
HIGH_PRIORITY_ATTENDANCE_ALERTS = frozenset({
    "GEOFENCE_VIOLATION",
    "MISSED_LOGIN",
    "MISSED_LOGOUT",
})

# Message markers that raise a task update to HIGH
HIGH_PRIORITY_TASK_MARKERS = ("overtime", "urgent", "emergency")


@dataclass
class ValidationResult:
    """Outcome of request validation."""
    errors: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _parse_type(value) -> Optional[NotificationType]:
    try:
        return NotificationType(getattr(value, "value", value))
    except ValueError:
        return None


# ============================================================================
# Validation
# ============================================================================


class NotificationValidator:
    """
    Validates creation requests.

    Needs a clock only for the "expiry must be in the future" rule.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def validate(self, request: NotificationRequest) -> ValidationResult:
        """
        Check every field of ``request``.

        Args:
            request: Creation request

        Returns:
            ValidationResult listing every violation found
        """
        errors: List[str] = []

        notification_type = None
        if not request.type:
            errors.append("Notification type is required")
        else:
            notification_type = _parse_type(request.type)
            if notification_type is None:
                errors.append("Invalid notification type")

        errors.extend(self._validate_text("title", request.title, TITLE_MAX_LENGTH))
        errors.extend(self._validate_text("message", request.message, MESSAGE_MAX_LENGTH))

        if not _is_positive_int(request.sender_id):
            errors.append("Sender ID is required and must be a positive integer")

        if request.recipients is None:
            errors.append("Recipients are required")
        else:
            recipients = request.recipient_list
            if not recipients:
                errors.append("At least one recipient is required")
            elif not all(_is_positive_int(r) for r in recipients):
                errors.append("All recipient IDs must be positive integers")

        if notification_type is not None:
            _, payload_errors = parse_action_data(notification_type, request.action_data)
            errors.extend(payload_errors)

        if request.language and request.language not in SUPPORTED_LANGUAGES:
            errors.append(
                f"Invalid language code. Supported: {', '.join(SUPPORTED_LANGUAGES)}"
            )

        now = self.clock.now()
        if request.expires_at is not None:
            if not isinstance(request.expires_at, datetime):
                errors.append("Invalid expiration date format")
            elif request.expires_at <= now:
                errors.append("Expiration date must be in the future")

        if request.scheduled_at is not None:
            if not isinstance(request.scheduled_at, datetime):
                errors.append("Invalid scheduled date format")
            elif (
                isinstance(request.expires_at, datetime)
                and request.scheduled_at >= request.expires_at
            ):
                errors.append("Scheduled date must be before the expiration date")

        return ValidationResult(errors=errors)

    def validate_or_raise(self, request: NotificationRequest) -> None:
        """
        Raises:
            ValidationError: Carrying every violation, if any
        """
        result = self.validate(request)
        if not result.valid:
            raise ValidationError(
                f"Validation failed: {', '.join(result.errors)}",
                errors=result.errors,
            )

    @staticmethod
    def _validate_text(name: str, value, max_length: int) -> List[str]:
        label = name.capitalize()
        if not value or not isinstance(value, str):
            return [f"Notification {name} is required and must be a string"]
        if not value.strip():
            return [f"Notification {name} cannot be empty"]
        if len(value) > max_length:
            return [f"{label} cannot exceed {max_length} characters"]
        return []


# ============================================================================
# Priority classification
# ============================================================================


def classify_priority(request: NotificationRequest) -> NotificationPriority:
    """
    Pick the priority for a (valid) request.

    An explicit, recognized priority is used unchanged. Otherwise ordered
    rules keyed by type and payload apply:
    - SITE_CHANGE and ESCALATION_ALERT are always CRITICAL
    - ATTENDANCE_ALERT is HIGH for geofence violations and missed login/logout
    - TASK_UPDATE is HIGH when the message mentions overtime, urgent or emergency
    - APPROVAL_STATUS is HIGH when rejected
    - anything else is NORMAL
    """
    explicit = getattr(request.priority, "value", request.priority)
    if explicit:
        try:
            return NotificationPriority(str(explicit).upper())
        except ValueError:
            pass

    notification_type = _parse_type(request.type)

    if notification_type in (NotificationType.SITE_CHANGE, NotificationType.ESCALATION_ALERT):
        return NotificationPriority.CRITICAL

    if notification_type == NotificationType.ATTENDANCE_ALERT:
        payload, _ = parse_action_data(notification_type, request.action_data)
        if isinstance(payload, AttendanceAlertData) and payload.alert_type in HIGH_PRIORITY_ATTENDANCE_ALERTS:
            return NotificationPriority.HIGH
        return NotificationPriority.NORMAL

    if notification_type == NotificationType.TASK_UPDATE:
        message = (request.message or "").lower() if isinstance(request.message, str) else ""
        if any(marker in message for marker in HIGH_PRIORITY_TASK_MARKERS):
            return NotificationPriority.HIGH
        return NotificationPriority.NORMAL

    if notification_type == NotificationType.APPROVAL_STATUS:
        payload, _ = parse_action_data(notification_type, request.action_data)
        if isinstance(payload, ApprovalStatusData) and payload.normalized_status == "REJECTED":
            return NotificationPriority.HIGH
        return NotificationPriority.NORMAL

    return NotificationPriority.NORMAL


# ============================================================================
# Formatting
# ============================================================================


def truncate_text(value: str, limit: int) -> str:
    """Trim and hard-truncate; applying it to its own output changes nothing."""
    return value.strip()[:limit].rstrip()


def format_content(title: str, message: str, language: str = "en") -> Tuple[str, str]:
    """
    Format title and message for persistence.

    This is the single place content enters a stored notification; a
    translation hook keyed by ``language`` would attach here.

    Returns:
        Tuple of (title, message)
    """
    return truncate_text(title, TITLE_MAX_LENGTH), truncate_text(message, MESSAGE_MAX_LENGTH)
