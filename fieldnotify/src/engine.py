"""
Notification engine composition root.

Wires settings, the database, the push provider and the background
workers into one object:

- Creation pipeline (validate, classify, format, quota, persist, dispatch)
- Asynchronous delivery on a bounded thread pool
- Escalation monitor (periodic sweep plus on-demand triggers)
- Maintenance scheduler (expiry, scheduled release, retries, retention)
- Offline sync reconciliation

Every call opens its own session; results are plain dataclasses or dicts
so nothing handed back is bound to a closed session.

Usage:
    >>> engine = NotificationEngine()
    >>> engine.start()
    >>> engine.create_notification({...})
    >>> engine.stop()
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import sessionmaker

from fieldnotify.src.config.settings import NotifySettings, get_settings
from fieldnotify.src.db.database import (
    create_db_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from fieldnotify.src.models.notification import NotificationPriority
from fieldnotify.src.schemas.notification import NotificationRequest
from fieldnotify.src.schemas.sync import ReadReceipt, SyncUpdate
from fieldnotify.src.services.delivery_dispatcher import DeliveryDispatcher, DeliveryOutcome
from fieldnotify.src.services.delivery_executor import DeliveryExecutor
from fieldnotify.src.services.device_registry import DeviceRegistry
from fieldnotify.src.services.escalation_monitor import (
    EscalationMonitor,
    EscalationOutcome,
    SweepResult,
)
from fieldnotify.src.services.maintenance_service import MaintenanceScheduler, MaintenanceStats
from fieldnotify.src.services.notification_service import CreationResult, NotificationService
from fieldnotify.src.services.push_provider import PushProvider, WebPushProvider
from fieldnotify.src.services.supervisor_resolver import (
    HttpSupervisorResolver,
    MappingSupervisorResolver,
    SupervisorResolver,
)
from fieldnotify.src.services.sync_reconciler import (
    ReceiptSyncResult,
    SyncReconciler,
    SyncResult,
)
from fieldnotify.src.utils.clock import Clock, SystemClock
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("services")


def build_resolver(settings: NotifySettings) -> SupervisorResolver:
    """Org directory client when configured, otherwise an empty mapping."""
    if settings.org_directory_url:
        return HttpSupervisorResolver(
            settings.org_directory_url,
            api_key=settings.org_directory_api_key or None,
        )
    logger.warning("ORG_DIRECTORY_URL not set; escalations will find no supervisor")
    return MappingSupervisorResolver({})


class NotificationEngine:
    """
    Field notification engine.

    Args:
        settings: Engine settings (defaults to environment settings)
        session_factory: Session factory (defaults to one built from database_url)
        provider: Push provider (defaults to WebPushProvider)
        resolver: Supervisor resolver (defaults from ORG_DIRECTORY_URL)
        clock: Time source
        async_delivery: Deliver on the thread pool (True) or inline (False)
    """

    def __init__(
        self,
        settings: Optional[NotifySettings] = None,
        session_factory: Optional[sessionmaker] = None,
        provider: Optional[PushProvider] = None,
        resolver: Optional[SupervisorResolver] = None,
        clock: Optional[Clock] = None,
        async_delivery: bool = True,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

        if session_factory is None:
            self.db_engine = create_db_engine(self.settings.database_url)
            session_factory = create_session_factory(self.db_engine)
        else:
            self.db_engine = session_factory.kw.get("bind")
        self.session_factory = session_factory

        self.provider = provider or WebPushProvider(self.settings, clock=self.clock)
        self.resolver = resolver or build_resolver(self.settings)

        self.executor: Optional[DeliveryExecutor] = None
        if async_delivery:
            self.executor = DeliveryExecutor(
                self.session_factory, self.provider, self.settings, self.clock
            )
            self.dispatch = self.executor.submit
        else:
            self.dispatch = self.deliver_now

        self.escalation = EscalationMonitor(
            self.session_factory, self.resolver, self.settings, self.clock, self.dispatch
        )
        self.maintenance = MaintenanceScheduler(
            self.session_factory, self.settings, self.clock, self.dispatch
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def init_db(self) -> None:
        """Create tables on the configured database."""
        init_db(self.db_engine)

    def start(self) -> None:
        """Start the escalation and maintenance schedulers."""
        self.escalation.start()
        self.maintenance.start()
        logger.info("Notification engine started")

    def stop(self, wait: bool = True) -> None:
        """Stop schedulers, then drain the delivery pool."""
        self.escalation.stop()
        self.maintenance.stop()
        if self.executor is not None:
            self.executor.shutdown(wait=wait)
        close = getattr(self.resolver, "close", None)
        if close is not None:
            close()
        logger.info("Notification engine stopped")

    # ========================================================================
    # Creation and delivery
    # ========================================================================

    def create_notification(
        self, request: Union[NotificationRequest, Dict[str, Any]]
    ) -> CreationResult:
        """
        Raises:
            ValidationError: If the request is invalid
        """
        with session_scope(self.session_factory) as db:
            service = NotificationService(db, self.settings, self.clock, self.dispatch)
            return service.create_notification(request)

    def deliver_now(self, notification_ids: List[int]) -> Dict[int, DeliveryOutcome]:
        """Deliver in the caller's thread."""
        with session_scope(self.session_factory) as db:
            dispatcher = DeliveryDispatcher(db, self.provider, self.settings, self.clock)
            return dispatcher.deliver_many(list(notification_ids))

    def check_availability(
        self, worker_id: int, priority: Union[NotificationPriority, str] = NotificationPriority.NORMAL
    ) -> Dict[str, Any]:
        with session_scope(self.session_factory) as db:
            return NotificationService(db, self.settings, self.clock).check_availability(worker_id, priority)

    def get_notification_stats(self, worker_id: int, days: int = 7) -> Dict[str, Any]:
        with session_scope(self.session_factory) as db:
            return NotificationService(db, self.settings, self.clock).get_notification_stats(worker_id, days)

    def get_daily_limit_stats(self, worker_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        with session_scope(self.session_factory) as db:
            return NotificationService(db, self.settings, self.clock).get_daily_limit_stats(worker_ids)

    def check_daily_limit_enforcement(self, worker_id: int) -> Dict[str, Any]:
        with session_scope(self.session_factory) as db:
            return NotificationService(db, self.settings, self.clock).check_daily_limit_enforcement(worker_id)

    # ========================================================================
    # Devices
    # ========================================================================

    def register_device(self, worker_id: int, token: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Register or refresh a device endpoint.

        Returns:
            Dict with the endpoint's id, worker_id, platform and is_active
        """
        with session_scope(self.session_factory) as db:
            endpoint = DeviceRegistry(db, self.settings, self.clock).register(worker_id, token, **kwargs)
            return {
                "id": endpoint.id,
                "worker_id": endpoint.worker_id,
                "platform": endpoint.platform.value,
                "is_active": endpoint.is_active,
            }

    # ========================================================================
    # Offline sync
    # ========================================================================

    def reconcile(self, worker_id: int, updates: List[Union[SyncUpdate, Dict[str, Any]]]) -> SyncResult:
        with session_scope(self.session_factory) as db:
            return SyncReconciler(db, self.settings, self.clock).reconcile(worker_id, updates)

    def sync_read_receipts(
        self, worker_id: int, receipts: List[Union[ReadReceipt, Dict[str, Any]]]
    ) -> ReceiptSyncResult:
        with session_scope(self.session_factory) as db:
            return SyncReconciler(db, self.settings, self.clock).sync_read_receipts(worker_id, receipts)

    def pull_changes(
        self,
        worker_id: int,
        since: Optional[datetime] = None,
        since_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return SyncReconciler(db, self.settings, self.clock).pull_changes(worker_id, since, since_id, limit)

    # ========================================================================
    # Escalation and maintenance
    # ========================================================================

    def trigger_sweep(self) -> SweepResult:
        return self.escalation.trigger_sweep()

    def force_escalate(self, notification_id: int) -> EscalationOutcome:
        """
        Raises:
            NotFoundError: If the notification does not exist
            ConflictError: If it has already been escalated
        """
        return self.escalation.force_escalate(notification_id)

    def escalation_status(self) -> Dict[str, Any]:
        return self.escalation.get_status()

    def escalation_stats(self, days: int = 7) -> Dict[str, Any]:
        return self.escalation.get_escalation_stats(days)

    def run_maintenance(self) -> MaintenanceStats:
        return self.maintenance.run_once()
