"""
Delivery dispatcher: pushes a notification to its recipient's devices and
applies the outcome to notification and endpoint state.

Flow for one notification:
1. Resolve the recipient's active endpoints. None: FAILED (NO_DEVICES).
2. Keep endpoints whose preferences accept the priority now. If none are
   left a non-critical notification is deferred: only ``last_attempt_at``
   is stamped, so the maintenance retry sweep tries again after the
   backoff. CRITICAL ignores preferences and uses every active endpoint.
3. One endpoint: single send. Several: multicast, partitioned into
   succeeded, failed and expired endpoints.
4. Success marks the notification DELIVERED. A send with no success
   increments ``delivery_attempts``; reaching ``max_delivery_attempts``
   makes the notification FAILED (terminal).

``deliver`` never raises: provider and network errors are recorded as a
failed attempt and the caller moves on to its next notification.
"""

import enum
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.models.device_endpoint import DeviceEndpoint
from fieldnotify.src.models.notification import (
    Notification,
    NotificationPriority,
    NotificationStatus,
)
from fieldnotify.src.services.audit_service import AuditEventType, AuditRecorder
from fieldnotify.src.services.device_endpoint_repository import DeviceEndpointRepository
from fieldnotify.src.services.exceptions import ServiceError
from fieldnotify.src.services.notification_repository import NotificationRepository
from fieldnotify.src.services.push_provider import (
    DeviceSendResult,
    MulticastResult,
    PushDeliveryError,
    PushProvider,
    classify_push_error,
)
from fieldnotify.src.services.status_transitions import is_valid_transition
from fieldnotify.src.utils.clock import Clock, SystemClock
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("delivery")


class DeliveryOutcome(str, enum.Enum):
    """What happened to one delivery attempt."""
    DELIVERED = "DELIVERED"
    FAILED_ATTEMPT = "FAILED_ATTEMPT"
    NO_DEVICES = "NO_DEVICES"
    DEFERRED = "DEFERRED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


# Statuses from which a delivery attempt makes sense
DELIVERABLE_STATUSES = (NotificationStatus.SENT,)


class DeliveryDispatcher:
    """
    Delivers notifications through a push provider.

    Usage:
        >>> dispatcher = DeliveryDispatcher(db, provider, settings, clock)
        >>> dispatcher.deliver(notification_id)
        <DeliveryOutcome.DELIVERED: 'DELIVERED'>
    """

    def __init__(
        self,
        db: Session,
        provider: PushProvider,
        settings: NotifySettings,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.provider = provider
        self.settings = settings
        self.clock = clock or SystemClock()
        self.notifications = NotificationRepository(db)
        self.endpoints = DeviceEndpointRepository(db)
        self.audit = AuditRecorder(db, self.clock, source="delivery_dispatcher")

    # ========================================================================
    # Public API
    # ========================================================================

    def deliver(self, notification_id: int) -> DeliveryOutcome:
        """
        Attempt delivery of one notification.

        Args:
            notification_id: Notification to deliver

        Returns:
            DeliveryOutcome describing what happened
        """
        try:
            return self._deliver(notification_id)
        except PushDeliveryError as e:
            return self._record_exception(notification_id, e, "PROVIDER_UNAVAILABLE")
        except ServiceError as e:
            self.db.rollback()
            logger.warning(
                f"Delivery skipped: {e}",
                extra={"notification_id": notification_id},
            )
            return DeliveryOutcome.ERROR
        except Exception as e:
            info = classify_push_error(e)
            return self._record_exception(notification_id, e, info.code)

    def deliver_many(self, notification_ids: List[int]) -> Dict[int, DeliveryOutcome]:
        """Deliver several notifications; one failure never stops the rest."""
        return {notification_id: self.deliver(notification_id) for notification_id in notification_ids}

    # ========================================================================
    # Delivery flow
    # ========================================================================

    def _deliver(self, notification_id: int) -> DeliveryOutcome:
        notification = self.notifications.get_or_raise(notification_id)
        if notification.status not in DELIVERABLE_STATUSES:
            logger.debug(
                "Notification not deliverable in its current status",
                extra={"notification_id": notification_id, "status": notification.status.value},
            )
            return DeliveryOutcome.SKIPPED

        priority = notification.priority
        recipient_id = notification.recipient_id
        now = self.clock.now()

        endpoints = self.endpoints.find_active_by_worker(recipient_id)
        if not endpoints:
            self.notifications.mutate(notification_id, self._mark_no_devices)
            logger.info(
                "No active devices for recipient",
                extra={"notification_id": notification_id, "recipient_id": recipient_id},
            )
            return DeliveryOutcome.NO_DEVICES

        eligible = [e for e in endpoints if e.can_receive_notification(priority, now)]
        if not eligible:
            if priority != NotificationPriority.CRITICAL:
                self.notifications.mutate(notification_id, self._mark_deferred)
                logger.info(
                    "Delivery deferred by device preferences",
                    extra={"notification_id": notification_id, "recipient_id": recipient_id},
                )
                return DeliveryOutcome.DEFERRED
            eligible = endpoints

        if len(eligible) == 1:
            result = self.provider.send_to_device(eligible[0], notification)
            return self._apply_single_result(notification_id, eligible[0].id, result)

        result = self.provider.send_to_multiple_devices(eligible, notification)
        return self._apply_multicast_result(notification_id, result)

    def _mark_deferred(self, notification: Notification) -> None:
        # Not an attempt: delivery_attempts and updated_at stay as they are
        notification.last_attempt_at = self.clock.now()

    def _mark_no_devices(self, notification: Notification) -> None:
        now = self.clock.now()
        notification.last_attempt_at = now
        if is_valid_transition(notification.status, NotificationStatus.FAILED):
            notification.status = NotificationStatus.FAILED
            notification.updated_at = now
        self.audit.record(
            notification.id,
            notification.recipient_id,
            AuditEventType.FAILED,
            {"reason": "NO_DEVICES"},
        )

    def _apply_single_result(
        self, notification_id: int, endpoint_id: int, result: DeviceSendResult
    ) -> DeliveryOutcome:
        def apply(notification: Notification) -> DeliveryOutcome:
            now = self.clock.now()
            endpoint = self.endpoints.get(endpoint_id)
            notification.last_attempt_at = now

            if result.success:
                self._mark_delivered(notification, now)
                if endpoint is not None:
                    endpoint.record_delivery_success(now)
                self.audit.record(
                    notification.id,
                    notification.recipient_id,
                    AuditEventType.DELIVERED,
                    {
                        "message_id": result.message_id,
                        "platform": result.platform,
                        "attempt_number": result.attempt_number,
                    },
                )
                return DeliveryOutcome.DELIVERED

            notification.delivery_attempts += 1
            notification.updated_at = now
            if endpoint is not None:
                if result.should_deactivate_token:
                    self._deactivate(endpoint, notification, result.error_code, now)
                elif endpoint.record_delivery_failure(now):
                    self._audit_deactivation(endpoint, notification, "CONSECUTIVE_FAILURES")
            self.audit.record(
                notification.id,
                notification.recipient_id,
                AuditEventType.FAILED,
                {
                    "error": result.error_code,
                    "platform": result.platform,
                    "attempt_number": result.attempt_number,
                    "should_retry": result.should_retry,
                    "final_attempt": result.final_attempt,
                    "should_deactivate_token": result.should_deactivate_token,
                    "delivery_attempts": notification.delivery_attempts,
                },
            )
            self._fail_if_exhausted(notification, now)
            return DeliveryOutcome.FAILED_ATTEMPT

        outcome = self.notifications.mutate(notification_id, apply)
        logger.info(
            "Single-device delivery processed",
            extra={"notification_id": notification_id, "outcome": outcome.value},
        )
        return outcome

    def _apply_multicast_result(self, notification_id: int, result: MulticastResult) -> DeliveryOutcome:
        def apply(notification: Notification) -> DeliveryOutcome:
            now = self.clock.now()
            by_token = {
                e.token: e for e in self.endpoints.find_by_worker(notification.recipient_id)
            }
            notification.last_attempt_at = now

            for token in result.succeeded_tokens:
                endpoint = by_token.get(token)
                if endpoint is not None:
                    endpoint.record_delivery_success(now)

            for token in list(result.expired_tokens) + list(result.invalid_tokens):
                endpoint = by_token.get(token)
                if endpoint is not None and endpoint.is_active:
                    reason = "EXPIRED_TOKEN" if token in result.expired_tokens else "INVALID_TOKEN"
                    self._deactivate(endpoint, notification, reason, now)

            for failure in result.failed_tokens:
                endpoint = by_token.get(failure.get("token"))
                if endpoint is not None and endpoint.record_delivery_failure(now):
                    self._audit_deactivation(endpoint, notification, "CONSECUTIVE_FAILURES")

            if result.failure_count > 0:
                self.audit.record(
                    notification.id,
                    notification.recipient_id,
                    AuditEventType.PARTIAL_FAILURE,
                    {
                        "success_count": result.success_count,
                        "failure_count": result.failure_count,
                        "expired_count": len(result.expired_tokens),
                        "blocked_count": result.blocked_count,
                        "invalid_count": result.invalid_count,
                    },
                )

            if result.success:
                self._mark_delivered(notification, now)
                self.audit.record(
                    notification.id,
                    notification.recipient_id,
                    AuditEventType.DELIVERED,
                    {"multicast": True, "success_count": result.success_count},
                )
                return DeliveryOutcome.DELIVERED

            notification.delivery_attempts += 1
            notification.updated_at = now
            self.audit.record(
                notification.id,
                notification.recipient_id,
                AuditEventType.FAILED,
                {
                    "error": "MULTICAST_NO_SUCCESS",
                    "failure_count": result.failure_count,
                    "invalid_count": result.invalid_count,
                    "delivery_attempts": notification.delivery_attempts,
                },
            )
            self._fail_if_exhausted(notification, now)
            return DeliveryOutcome.FAILED_ATTEMPT

        outcome = self.notifications.mutate(notification_id, apply)
        logger.info(
            "Multicast delivery processed",
            extra={
                "notification_id": notification_id,
                "outcome": outcome.value,
                "success_count": result.success_count,
                "failure_count": result.failure_count,
            },
        )
        return outcome

    def _record_exception(self, notification_id: int, error: Exception, error_code: str) -> DeliveryOutcome:
        """Count an attempt that blew up before producing a provider result."""
        self.db.rollback()
        logger.warning(
            f"Delivery attempt raised: {error}",
            extra={"notification_id": notification_id, "error_code": error_code},
        )

        def apply(notification: Notification) -> None:
            now = self.clock.now()
            notification.delivery_attempts += 1
            notification.last_attempt_at = now
            notification.updated_at = now
            self.audit.record(
                notification.id,
                notification.recipient_id,
                AuditEventType.FAILED,
                {
                    "error": error_code,
                    "message": str(error)[:500],
                    "delivery_attempts": notification.delivery_attempts,
                },
            )
            self._fail_if_exhausted(notification, now)

        try:
            self.notifications.mutate(notification_id, apply)
        except Exception:
            self.db.rollback()
            logger.exception(
                "Could not record failed delivery attempt",
                extra={"notification_id": notification_id},
            )
        return DeliveryOutcome.ERROR

    # ========================================================================
    # State helpers
    # ========================================================================

    @staticmethod
    def _mark_delivered(notification: Notification, now: datetime) -> None:
        # A client may already have reported READ; never move backwards
        if is_valid_transition(notification.status, NotificationStatus.DELIVERED):
            notification.status = NotificationStatus.DELIVERED
        notification.updated_at = now

    def _fail_if_exhausted(self, notification: Notification, now: datetime) -> None:
        if notification.delivery_attempts < self.settings.max_delivery_attempts:
            return
        if not is_valid_transition(notification.status, NotificationStatus.FAILED):
            return
        notification.status = NotificationStatus.FAILED
        notification.updated_at = now
        self.audit.record(
            notification.id,
            notification.recipient_id,
            AuditEventType.FAILED,
            {
                "reason": "MAX_ATTEMPTS_EXCEEDED",
                "delivery_attempts": notification.delivery_attempts,
                "max_delivery_attempts": self.settings.max_delivery_attempts,
            },
        )
        logger.warning(
            "Notification delivery failed permanently",
            extra={"notification_id": notification.id, "attempts": notification.delivery_attempts},
        )

    def _deactivate(
        self,
        endpoint: DeviceEndpoint,
        notification: Notification,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        endpoint.deactivate(now)
        self._audit_deactivation(endpoint, notification, reason)

    def _audit_deactivation(
        self, endpoint: DeviceEndpoint, notification: Notification, reason: Optional[str]
    ) -> None:
        self.audit.record(
            notification.id,
            endpoint.worker_id,
            AuditEventType.DEVICE_DEACTIVATED,
            {"endpoint_id": endpoint.id, "reason": reason},
        )
        logger.info(
            "Device endpoint deactivated",
            extra={"endpoint_id": endpoint.id, "worker_id": endpoint.worker_id, "reason": reason},
        )
