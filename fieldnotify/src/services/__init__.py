"""
Service layer for the notification engine.

This module exports the service classes used by the engine and the CLI.
"""

from fieldnotify.src.services.exceptions import (
    ServiceError,
    NotFoundError,
    ConflictError,
    ValidationError,
    ConcurrentUpdateError,
)
from fieldnotify.src.services.notification_service import NotificationService, CreationResult
from fieldnotify.src.services.delivery_dispatcher import DeliveryDispatcher, DeliveryOutcome
from fieldnotify.src.services.delivery_executor import DeliveryExecutor
from fieldnotify.src.services.push_provider import PushProvider, WebPushProvider
from fieldnotify.src.services.escalation_monitor import EscalationMonitor, EscalationSweep
from fieldnotify.src.services.supervisor_resolver import (
    SupervisorResolver,
    MappingSupervisorResolver,
    HttpSupervisorResolver,
)
from fieldnotify.src.services.sync_reconciler import SyncReconciler, SyncResult
from fieldnotify.src.services.maintenance_service import MaintenanceService, MaintenanceScheduler
from fieldnotify.src.services.device_registry import DeviceRegistry

__all__ = [
    "ServiceError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "ConcurrentUpdateError",
    "NotificationService",
    "CreationResult",
    "DeliveryDispatcher",
    "DeliveryOutcome",
    "DeliveryExecutor",
    "PushProvider",
    "WebPushProvider",
    "EscalationMonitor",
    "EscalationSweep",
    "SupervisorResolver",
    "MappingSupervisorResolver",
    "HttpSupervisorResolver",
    "SyncReconciler",
    "SyncResult",
    "MaintenanceService",
    "MaintenanceScheduler",
    "DeviceRegistry",
]
