"""
Push provider: sends notifications to device endpoints via Web Push.

The provider only talks to the push service. It never touches the database;
the delivery dispatcher applies the returned per-device outcome to
notification and endpoint state.

Error mapping (push service HTTP status -> outcome):
    404, 410  INVALID_TOKEN       permanent, deactivate endpoint
    400       MALFORMED_TOKEN     permanent, deactivate endpoint
    403       SENDER_ID_MISMATCH  permanent, deactivate endpoint
    413       PAYLOAD_TOO_LARGE   permanent for this payload, endpoint kept
    429       QUOTA_EXCEEDED      transient
    5xx       SERVER_UNAVAILABLE  transient
    timeout   TIMEOUT             transient
    other     UNKNOWN_ERROR       transient
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import requests
from pywebpush import WebPushException, webpush

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.models.device_endpoint import DeviceEndpoint
from fieldnotify.src.models.notification import Notification
from fieldnotify.src.utils.clock import Clock, SystemClock, utc_now
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("delivery")


# ============================================================================
# Results
# ============================================================================


@dataclass
class DeviceSendResult:
    """Outcome of sending to one endpoint (after provider-level retries)."""
    success: bool
    platform: Optional[str] = None
    message_id: Optional[str] = None
    should_retry: bool = False
    should_deactivate_token: bool = False
    attempt_number: int = 1
    final_attempt: bool = True
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class MulticastResult:
    """Outcome of sending one notification to several endpoints."""
    success: bool
    success_count: int = 0
    failure_count: int = 0
    succeeded_tokens: List[str] = field(default_factory=list)
    failed_tokens: List[Dict[str, Any]] = field(default_factory=list)
    expired_tokens: List[str] = field(default_factory=list)
    invalid_tokens: List[str] = field(default_factory=list)
    blocked_count: int = 0
    invalid_count: int = 0


@dataclass
class PushErrorInfo:
    code: str
    should_retry: bool
    should_deactivate: bool
    message: str = ""


# ============================================================================
# Push Delivery Exceptions
# ============================================================================


class PushGoneError(Exception):
    """Raised when the push service reports the endpoint permanently invalid."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        super().__init__(f"Push subscription gone: {endpoint[:60]}")


class PushDeliveryError(Exception):
    """Raised when the provider cannot attempt delivery at all."""
    pass


def classify_push_error(exc: Exception) -> PushErrorInfo:
    """Map a push/network exception to an error code and retry/deactivate signals."""
    if isinstance(exc, PushGoneError):
        return PushErrorInfo("INVALID_TOKEN", False, True, str(exc))

    if isinstance(exc, WebPushException):
        response = getattr(exc, "response", None)
        status_code = getattr(response, "status_code", None)
        if status_code in (404, 410):
            return PushErrorInfo("INVALID_TOKEN", False, True, str(exc))
        if status_code == 400:
            return PushErrorInfo("MALFORMED_TOKEN", False, True, str(exc))
        if status_code == 403:
            return PushErrorInfo("SENDER_ID_MISMATCH", False, True, str(exc))
        if status_code == 413:
            return PushErrorInfo("PAYLOAD_TOO_LARGE", False, False, str(exc))
        if status_code == 429:
            return PushErrorInfo("QUOTA_EXCEEDED", True, False, str(exc))
        if status_code is not None and status_code >= 500:
            return PushErrorInfo("SERVER_UNAVAILABLE", True, False, str(exc))
        return PushErrorInfo("UNKNOWN_ERROR", True, False, str(exc))

    if isinstance(exc, requests.exceptions.Timeout):
        return PushErrorInfo("TIMEOUT", True, False, str(exc))
    if isinstance(exc, requests.exceptions.ConnectionError):
        return PushErrorInfo("SERVER_UNAVAILABLE", True, False, str(exc))

    return PushErrorInfo("UNKNOWN_ERROR", True, False, str(exc))


# ============================================================================
# Providers
# ============================================================================


class PushProvider:
    """Interface consumed by the delivery dispatcher."""

    def send_to_device(self, endpoint: DeviceEndpoint, notification: Notification) -> DeviceSendResult:
        raise NotImplementedError

    def send_to_multiple_devices(
        self, endpoints: Sequence[DeviceEndpoint], notification: Notification
    ) -> MulticastResult:
        raise NotImplementedError


URGENCY_BY_PRIORITY = {
    "CRITICAL": "high",
    "HIGH": "high",
    "NORMAL": "normal",
    "LOW": "low",
}

CHANNEL_BY_TYPE = {
    "TASK_UPDATE": "task_updates",
    "SITE_CHANGE": "site_changes",
    "ATTENDANCE_ALERT": "attendance_alerts",
    "APPROVAL_STATUS": "approval_status",
    "ESCALATION_ALERT": "escalations",
}


def build_push_payload(notification: Notification, sent_at: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Build the JSON payload delivered to the device.

    Args:
        notification: Notification being delivered
        sent_at: Timestamp to embed (defaults to now)

    Returns:
        Payload dict (title, body, data)
    """
    priority = getattr(notification.priority, "value", notification.priority)
    notification_type = getattr(notification.type, "value", notification.type)
    return {
        "title": notification.title,
        "body": notification.message,
        "data": {
            "notificationId": str(notification.id),
            "type": notification_type,
            "priority": priority,
            "channel": CHANNEL_BY_TYPE.get(notification_type, "general"),
            "requiresAcknowledgment": bool(notification.requires_acknowledgment),
            "timestamp": (sent_at or utc_now()).isoformat() + "Z",
        },
    }


def has_encryption_keys(endpoint: DeviceEndpoint) -> bool:
    """Web Push payloads need both the p256dh and auth keys."""
    return bool(endpoint.p256dh_key and endpoint.auth_key)


class WebPushProvider(PushProvider):
    """
    Web Push (VAPID) provider built on pywebpush.

    Single sends are retried up to the per-priority attempt count; multicast
    sends use ``multicast_max_attempts`` per endpoint. Only transient errors
    are retried. Every HTTP call carries ``push_timeout_seconds``.
    """

    def __init__(
        self,
        settings: NotifySettings,
        retry_backoff_seconds: float = 0.5,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings
        self.retry_backoff_seconds = retry_backoff_seconds
        self.clock = clock or SystemClock()

    def send_to_device(self, endpoint: DeviceEndpoint, notification: Notification) -> DeviceSendResult:
        """
        Send to one endpoint.

        An endpoint without encryption keys is reported as an invalid token
        (deactivate, do not retry) without a network call.

        Raises:
            PushDeliveryError: If VAPID credentials are not configured
        """
        if not has_encryption_keys(endpoint):
            logger.warning(
                "Push endpoint has no encryption keys",
                extra={"notification_id": notification.id, "endpoint_id": endpoint.id},
            )
            return DeviceSendResult(
                success=False,
                platform=getattr(endpoint.platform, "value", endpoint.platform),
                should_retry=False,
                should_deactivate_token=True,
                error_code="INVALID_TOKEN",
                error_message="Endpoint has no p256dh/auth keys",
            )
        max_attempts = self.settings.retry_attempts_for(notification.priority)
        return self._send_with_retry(endpoint, notification, max_attempts)

    def send_to_multiple_devices(
        self, endpoints: Sequence[DeviceEndpoint], notification: Notification
    ) -> MulticastResult:
        """
        Send to several endpoints, partitioning the outcome.

        Endpoints without encryption keys cannot receive Web Push payloads and
        are reported as invalid without a network call.

        Raises:
            PushDeliveryError: If VAPID credentials are not configured
        """
        result = MulticastResult(success=False)
        for endpoint in endpoints:
            if not has_encryption_keys(endpoint):
                result.invalid_tokens.append(endpoint.token)
                result.invalid_count += 1
                result.failure_count += 1
                continue

            outcome = self._send_with_retry(endpoint, notification, self.settings.multicast_max_attempts)
            if outcome.success:
                result.success_count += 1
                result.succeeded_tokens.append(endpoint.token)
            elif outcome.should_deactivate_token:
                result.failure_count += 1
                result.expired_tokens.append(endpoint.token)
            else:
                result.failure_count += 1
                result.failed_tokens.append({"token": endpoint.token, "error": outcome.error_code})

        result.success = result.success_count > 0
        logger.info(
            "Multicast push sent",
            extra={
                "notification_id": notification.id,
                "success_count": result.success_count,
                "failure_count": result.failure_count,
                "invalid_count": result.invalid_count,
            },
        )
        return result

    def _send_with_retry(
        self, endpoint: DeviceEndpoint, notification: Notification, max_attempts: int
    ) -> DeviceSendResult:
        platform = getattr(endpoint.platform, "value", endpoint.platform)
        payload_json = json.dumps(build_push_payload(notification, self.clock.now()))
        urgency = URGENCY_BY_PRIORITY.get(getattr(notification.priority, "value", notification.priority), "normal")

        attempt = 1
        while True:
            try:
                response = self._send_push(endpoint, payload_json, urgency)
                message_id = None
                headers = getattr(response, "headers", None)
                if headers is not None:
                    message_id = headers.get("Location")
                return DeviceSendResult(
                    success=True,
                    platform=platform,
                    message_id=message_id,
                    attempt_number=attempt,
                    final_attempt=True,
                )
            except (WebPushException, PushGoneError, requests.exceptions.RequestException) as e:
                info = classify_push_error(e)
                final = not info.should_retry or attempt >= max_attempts
                logger.warning(
                    f"Push attempt failed: {info.code}",
                    extra={
                        "notification_id": notification.id,
                        "endpoint_id": endpoint.id,
                        "attempt": attempt,
                        "final_attempt": final,
                    },
                )
                if final:
                    return DeviceSendResult(
                        success=False,
                        platform=platform,
                        should_retry=info.should_retry,
                        should_deactivate_token=info.should_deactivate,
                        attempt_number=attempt,
                        final_attempt=True,
                        error_code=info.code,
                        error_message=info.message,
                    )
                if self.retry_backoff_seconds:
                    time.sleep(self.retry_backoff_seconds * (2 ** (attempt - 1)))
                attempt += 1

    def _send_push(self, endpoint: DeviceEndpoint, payload_json: str, urgency: str):
        """
        Send one push message via pywebpush.

        Raises:
            PushDeliveryError: If VAPID is not configured
            PushGoneError: If the endpoint returned 404/410
            WebPushException: For other push service errors
        """
        if not self.settings.vapid_configured:
            raise PushDeliveryError("VAPID credentials are not configured")

        subscription_info = {
            "endpoint": endpoint.token,
            "keys": {
                "p256dh": endpoint.p256dh_key,
                "auth": endpoint.auth_key,
            },
        }
        try:
            return webpush(
                subscription_info=subscription_info,
                data=payload_json,
                vapid_private_key=self.settings.vapid_private_key,
                vapid_claims=dict(self.settings.vapid_claims),
                ttl=self.settings.push_ttl_seconds,
                timeout=self.settings.push_timeout_seconds,
                headers={"Urgency": urgency},
            )
        except WebPushException as e:
            status_code = getattr(getattr(e, "response", None), "status_code", None)
            if status_code in (410, 404):
                raise PushGoneError(endpoint.token) from e
            raise
