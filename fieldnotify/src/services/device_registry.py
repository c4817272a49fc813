"""
Device registry service for worker push endpoints.

Provides the device directory operations the dispatcher relies on:
register (upsert by token), update delivery preferences, deactivate,
list and purge.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.models.device_endpoint import DeviceEndpoint, DevicePlatform, parse_hhmm
from fieldnotify.src.models.notification import NotificationPriority
from fieldnotify.src.services.device_endpoint_repository import DeviceEndpointRepository
from fieldnotify.src.services.exceptions import NotFoundError, ValidationError
from fieldnotify.src.utils.clock import Clock, SystemClock, get_timezone
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("services")

PREFERENCE_FIELDS = (
    "push_enabled",
    "quiet_hours_start",
    "quiet_hours_end",
    "timezone",
    "critical_bypass_quiet_hours",
    "muted_priorities",
)


class DeviceRegistry:
    """
    Service for managing worker device endpoints.

    Handles endpoint lifecycle:
    - Register (upsert by token, re-activates a deactivated token)
    - Update delivery preferences
    - Deactivate
    - List (by worker)
    - Purge inactive and stale endpoints
    """

    def __init__(self, db: Session, settings: Optional[NotifySettings] = None, clock: Optional[Clock] = None):
        self.db = db
        self.settings = settings
        self.clock = clock or SystemClock()
        self.repository = DeviceEndpointRepository(db)

    def register(
        self,
        worker_id: int,
        token: str,
        platform: str = DevicePlatform.WEB.value,
        p256dh_key: Optional[str] = None,
        auth_key: Optional[str] = None,
        device_label: Optional[str] = None,
        app_version: Optional[str] = None,
        **preferences: Any,
    ) -> DeviceEndpoint:
        """
        Create or refresh an endpoint.

        If the token is already known it is moved to ``worker_id`` (a device
        changing hands), its keys and metadata are replaced, it is re-activated
        and its failure streak is cleared.

        Args:
            worker_id: Owning worker
            token: Push endpoint URL / device token
            platform: ios, android or web
            p256dh_key: ECDH public key (Base64url)
            auth_key: Auth secret (Base64url)
            device_label: Optional user-friendly label
            app_version: Reported app version
            **preferences: Optional delivery preferences (see ``update_preferences``)

        Returns:
            Created or updated DeviceEndpoint

        Raises:
            ValidationError: If the token, platform or a preference is invalid
        """
        if not token or not token.strip():
            raise ValidationError("Device token is required", field="token")
        try:
            platform_value = DevicePlatform(platform)
        except ValueError:
            raise ValidationError(f"Unsupported platform: {platform}", field="platform")
        self._validate_preferences(preferences)

        now = self.clock.now()
        endpoint = self.repository.get_by_token(token)

        if endpoint:
            endpoint.worker_id = worker_id
            endpoint.platform = platform_value
            endpoint.p256dh_key = p256dh_key
            endpoint.auth_key = auth_key
            endpoint.device_label = device_label
            endpoint.app_version = app_version
            endpoint.is_active = True
            endpoint.consecutive_failures = 0
            endpoint.last_seen_at = now
            endpoint.updated_at = now
            self._apply_preferences(endpoint, preferences)
            self.db.commit()
            logger.info(
                "Updated device endpoint",
                extra={"endpoint_id": endpoint.id, "worker_id": worker_id},
            )
            return endpoint

        endpoint = DeviceEndpoint(
            worker_id=worker_id,
            token=token,
            platform=platform_value,
            p256dh_key=p256dh_key,
            auth_key=auth_key,
            device_label=device_label,
            app_version=app_version,
            is_active=True,
            muted_priorities=[],
            last_seen_at=now,
            created_at=now,
            updated_at=now,
        )
        self._apply_preferences(endpoint, preferences)
        self.repository.add(endpoint)
        self.db.commit()
        logger.info(
            "Registered device endpoint",
            extra={"endpoint_id": endpoint.id, "worker_id": worker_id, "platform": platform_value.value},
        )
        return endpoint

    def update_preferences(self, endpoint_id: int, **preferences: Any) -> DeviceEndpoint:
        """
        Update delivery preferences on one endpoint.

        Accepted keys: push_enabled, quiet_hours_start, quiet_hours_end (HH:MM),
        timezone (IANA), critical_bypass_quiet_hours, muted_priorities.

        Raises:
            NotFoundError: If the endpoint does not exist
            ValidationError: If a preference value is invalid
        """
        endpoint = self._get_or_raise(endpoint_id)
        self._validate_preferences(preferences)
        self._apply_preferences(endpoint, preferences)
        endpoint.updated_at = self.clock.now()
        self.db.commit()
        return endpoint

    def touch(self, token: str) -> Optional[DeviceEndpoint]:
        """Record that the app behind ``token`` reported in."""
        endpoint = self.repository.get_by_token(token)
        if endpoint is None:
            return None
        endpoint.last_seen_at = self.clock.now()
        self.db.commit()
        return endpoint

    def deactivate(self, endpoint_id: int) -> DeviceEndpoint:
        """
        Raises:
            NotFoundError: If the endpoint does not exist
        """
        endpoint = self._get_or_raise(endpoint_id)
        endpoint.deactivate(self.clock.now())
        self.db.commit()
        logger.info(
            "Deactivated device endpoint",
            extra={"endpoint_id": endpoint.id, "worker_id": endpoint.worker_id},
        )
        return endpoint

    def deactivate_token(self, token: str) -> bool:
        """Deactivate by token; returns False if the token is unknown."""
        endpoint = self.repository.get_by_token(token)
        if endpoint is None:
            return False
        endpoint.deactivate(self.clock.now())
        self.db.commit()
        return True

    def list_active(self, worker_id: int) -> List[DeviceEndpoint]:
        return self.repository.find_active_by_worker(worker_id)

    def list_all(self, worker_id: int) -> List[DeviceEndpoint]:
        return self.repository.find_by_worker(worker_id)

    def purge(self, inactive_days: Optional[int] = None) -> int:
        """
        Delete inactive endpoints and endpoints unseen for ``inactive_days``.

        Returns:
            Number of endpoints deleted
        """
        days = inactive_days
        if days is None:
            days = self.settings.inactive_device_days if self.settings else 30
        cutoff = self.clock.now() - timedelta(days=days)
        deleted = self.repository.delete_stale(cutoff)
        logger.info("Purged device endpoints", extra={"deleted": deleted})
        return deleted

    # ========================================================================
    # Helpers
    # ========================================================================

    def _get_or_raise(self, endpoint_id: int) -> DeviceEndpoint:
        endpoint = self.repository.get(endpoint_id)
        if endpoint is None:
            raise NotFoundError("DeviceEndpoint", endpoint_id)
        return endpoint

    @staticmethod
    def _validate_preferences(preferences: Dict[str, Any]) -> None:
        errors = []
        unknown = set(preferences) - set(PREFERENCE_FIELDS)
        if unknown:
            errors.append(f"Unknown preference(s): {', '.join(sorted(unknown))}")

        for key in ("quiet_hours_start", "quiet_hours_end"):
            value = preferences.get(key)
            if value:
                try:
                    parsed = parse_hhmm(value)
                except ValueError:
                    parsed = None
                if parsed is None:
                    errors.append(f"{key} must be HH:MM")

        if preferences.get("timezone"):
            try:
                get_timezone(preferences["timezone"])
            except ValueError:
                errors.append(f"Unknown timezone: {preferences['timezone']}")

        muted = preferences.get("muted_priorities")
        if muted is not None:
            allowed = {p.value for p in NotificationPriority}
            invalid = [p for p in muted if getattr(p, "value", p) not in allowed]
            if invalid:
                errors.append(f"Invalid muted priorities: {invalid}")

        if errors:
            raise ValidationError("Invalid device preferences", errors=errors)

    @staticmethod
    def _apply_preferences(endpoint: DeviceEndpoint, preferences: Dict[str, Any]) -> None:
        for key, value in preferences.items():
            if key == "muted_priorities":
                value = [getattr(p, "value", p) for p in value]
            setattr(endpoint, key, value)
