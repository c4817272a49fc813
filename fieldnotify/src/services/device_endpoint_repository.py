"""
Store interface for worker device endpoints (the device directory).
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from fieldnotify.src.models.device_endpoint import DeviceEndpoint


# Endpoints with this many failures in a row are purged even if still active
PURGE_CONSECUTIVE_FAILURES = 10


class DeviceEndpointRepository:
    """Device endpoint persistence operations."""

    def __init__(self, db: Session):
        self.db = db

    def find_active_by_worker(self, worker_id: int) -> List[DeviceEndpoint]:
        """Active endpoints for a worker, most recently seen first."""
        return (
            self.db.query(DeviceEndpoint)
            .filter(
                DeviceEndpoint.worker_id == worker_id,
                DeviceEndpoint.is_active.is_(True),
            )
            .order_by(DeviceEndpoint.last_seen_at.desc(), DeviceEndpoint.id.asc())
            .all()
        )

    def find_by_worker(self, worker_id: int) -> List[DeviceEndpoint]:
        return (
            self.db.query(DeviceEndpoint)
            .filter(DeviceEndpoint.worker_id == worker_id)
            .order_by(DeviceEndpoint.id.asc())
            .all()
        )

    def get(self, endpoint_id: int) -> Optional[DeviceEndpoint]:
        return self.db.get(DeviceEndpoint, endpoint_id)

    def get_by_token(self, token: str) -> Optional[DeviceEndpoint]:
        return self.db.query(DeviceEndpoint).filter(DeviceEndpoint.token == token).first()

    def add(self, endpoint: DeviceEndpoint) -> DeviceEndpoint:
        self.db.add(endpoint)
        self.db.flush()
        return endpoint

    def delete_stale(self, seen_before: datetime) -> int:
        """
        Delete inactive endpoints, endpoints not seen since ``seen_before`` and
        endpoints that keep failing.

        Returns:
            Number of endpoints deleted
        """
        deleted = (
            self.db.query(DeviceEndpoint)
            .filter(
                or_(
                    DeviceEndpoint.is_active.is_(False),
                    DeviceEndpoint.last_seen_at < seen_before,
                    DeviceEndpoint.consecutive_failures >= PURGE_CONSECUTIVE_FAILURES,
                )
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted
