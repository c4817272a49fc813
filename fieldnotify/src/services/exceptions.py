"""
Custom exceptions for the service layer.

Provides specific exception types for business logic errors. Batch and
sweep loops catch ``ServiceError`` per item so one bad record never stops
the rest of the batch.
"""

from typing import Any, List, Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ConflictError(ServiceError):
    """Raised when an operation conflicts with existing state."""

    def __init__(self, message: str, notification_id: Optional[int] = None):
        self.message = message
        self.notification_id = notification_id
        super().__init__(message)


class ValidationError(ServiceError):
    """
    Raised when a request fails validation.

    Carries every accumulated violation so the caller can report them all
    at once; nothing is persisted when this is raised.
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None, field: Optional[str] = None):
        self.message = message
        self.errors = list(errors) if errors else [message]
        self.field = field
        super().__init__(message)


class ConcurrentUpdateError(ServiceError):
    """Raised when a row changed between read and write (version mismatch)."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} was modified concurrently")
