"""
Notification creation request.

A request is deliberately loose (plain values, no coercion) so that the
validator can inspect every field and report every violation together;
pydantic would stop at type coercion and hide the rest.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fieldnotify.src.utils.clock import to_naive_utc


SUPPORTED_LANGUAGES = ("en", "zh", "ms", "ta")


def _parse_datetime(value: Any) -> Any:
    """Accept datetimes or ISO 8601 strings; leave anything else for the validator."""
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, str):
        try:
            return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return value
    return value


@dataclass
class NotificationRequest:
    """
    Request to notify one or more workers.

    Attributes:
        type: Notification type name (TASK_UPDATE, SITE_CHANGE, ...)
        title: Title text (max 100 chars)
        message: Message text (max 500 chars)
        sender_id: Sending user ID
        recipients: One worker ID or a list of worker IDs
        action_data: Type-specific payload
        priority: Explicit priority; classified from type/content when absent
        language: Content language (en, zh, ms, ta)
        expires_at: Optional expiry, must be in the future
        scheduled_at: Optional delayed dispatch time
        requires_acknowledgment: Whether the worker must acknowledge
    """

    type: Any
    title: Any
    message: Any
    sender_id: Any
    recipients: Union[int, List[Any], None]
    action_data: Optional[Dict[str, Any]] = field(default_factory=dict)
    priority: Optional[str] = None
    language: str = "en"
    expires_at: Any = None
    scheduled_at: Any = None
    requires_acknowledgment: bool = False

    @property
    def recipient_list(self) -> List[Any]:
        if self.recipients is None:
            return []
        if isinstance(self.recipients, (list, tuple, set)):
            return list(self.recipients)
        return [self.recipients]

    @property
    def type_name(self) -> str:
        return str(getattr(self.type, "value", self.type) or "")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "NotificationRequest":
        """
        Build a request from a client payload using camelCase keys.

        Snake_case keys are accepted as well.
        """
        def pick(camel: str, snake: str, default=None):
            if camel in payload:
                return payload[camel]
            return payload.get(snake, default)

        return cls(
            type=payload.get("type"),
            title=payload.get("title"),
            message=payload.get("message"),
            sender_id=pick("senderId", "sender_id"),
            recipients=payload.get("recipients"),
            action_data=pick("actionData", "action_data", {}),
            priority=payload.get("priority"),
            language=payload.get("language") or "en",
            expires_at=_parse_datetime(pick("expiresAt", "expires_at")),
            scheduled_at=_parse_datetime(pick("scheduledAt", "scheduled_at")),
            requires_acknowledgment=bool(pick("requiresAcknowledgment", "requires_acknowledgment", False)),
        )
