"""
Pytest configuration and fixtures for engine tests.

Provides shared fixtures for:
- Test database sessions (in-memory SQLite)
- A frozen clock and test settings
- Sample data factories for notifications and device endpoints
- A scripted push provider and a mapping supervisor resolver
"""

import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Keep test runs away from any developer .env / database
os.environ["FIELDNOTIFY_DB_URL"] = "sqlite:///:memory:"
os.environ.setdefault("FIELDNOTIFY_ENV", "test")

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.models import Base, DeviceEndpoint, DevicePlatform, Notification
from fieldnotify.src.models.notification import (
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from fieldnotify.src.services.push_provider import (
    DeviceSendResult,
    MulticastResult,
    PushProvider,
)
from fieldnotify.src.services.supervisor_resolver import MappingSupervisorResolver
from fieldnotify.src.utils.clock import FrozenClock


# Monday 2025-03-03 12:00 UTC
TEST_NOW = datetime(2025, 3, 3, 12, 0, 0)

WORKER_ID = 7
SUPERVISOR_ID = 3
SENDER_ID = 42


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_session_factory(test_db_engine):
    """Session factory bound to the test engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture(scope='function')
def test_db_session(test_session_factory):
    """Create a test database session."""
    session = test_session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Utility Fixtures
# ============================================================================

@pytest.fixture
def frozen_clock():
    """Clock fixed at TEST_NOW; advance it explicitly in tests."""
    return FrozenClock(TEST_NOW)


@pytest.fixture
def test_settings():
    """Engine settings with test values and VAPID configured."""
    return NotifySettings(
        _env_file=None,
        FIELDNOTIFY_DB_URL="sqlite:///:memory:",
        NOTIFICATION_DAILY_LIMIT=10,
        NOTIFICATION_ESCALATION_TIMEOUT_HOURS=2,
        NOTIFICATION_SYNC_BATCH_SIZE=50,
        NOTIFICATION_MAX_DELIVERY_ATTEMPTS=3,
        NOTIFICATION_TIMEZONE="UTC",
        NOTIFICATION_SYSTEM_SENDER_ID=1,
        VAPID_PRIVATE_KEY="test-private-key",
        VAPID_SUBJECT="mailto:ops@example.com",
        ORG_DIRECTORY_URL="",
    )


class FakePushProvider(PushProvider):
    """
    Scripted push provider.

    ``single_results`` is consumed in order (the last entry repeats);
    ``multicast_result`` is returned for every multicast call. Set
    ``raise_error`` to make every call raise.
    """

    def __init__(self):
        self.single_results: List[DeviceSendResult] = [
            DeviceSendResult(success=True, platform="web", message_id="msg-1")
        ]
        self.multicast_result: Optional[MulticastResult] = None
        self.raise_error: Optional[Exception] = None
        self.single_calls: List[Dict[str, Any]] = []
        self.multicast_calls: List[Dict[str, Any]] = []

    def send_to_device(self, endpoint, notification):
        self.single_calls.append({"token": endpoint.token, "notification_id": notification.id})
        if self.raise_error is not None:
            raise self.raise_error
        if len(self.single_results) > 1:
            return self.single_results.pop(0)
        return self.single_results[0]

    def send_to_multiple_devices(self, endpoints, notification):
        tokens = [e.token for e in endpoints]
        self.multicast_calls.append({"tokens": tokens, "notification_id": notification.id})
        if self.raise_error is not None:
            raise self.raise_error
        if self.multicast_result is not None:
            return self.multicast_result
        return MulticastResult(
            success=True,
            success_count=len(tokens),
            succeeded_tokens=tokens,
        )

    @property
    def call_count(self) -> int:
        return len(self.single_calls) + len(self.multicast_calls)


@pytest.fixture
def fake_provider():
    return FakePushProvider()


@pytest.fixture
def supervisor_resolver():
    """Worker 7 reports to supervisor 3; nobody else has a supervisor."""
    return MappingSupervisorResolver({WORKER_ID: (SUPERVISOR_ID, "Ahmad Ali")})


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def sample_request_data():
    """Factory for creation request payloads (camelCase, as sent by clients)."""
    def _create(
        notification_type="TASK_UPDATE",
        title="Shift change",
        message="Report to block C at 14:00",
        recipients=None,
        action_data=None,
        **extra,
    ):
        if action_data is None:
            action_data = {
                "TASK_UPDATE": {"taskId": 101, "projectId": 5, "supervisorContact": "+65 6123 4567"},
                "SITE_CHANGE": {
                    "newLocation": "Tuas South Ave 2",
                    "coordinates": {"latitude": 1.3, "longitude": 103.6},
                    "supervisorContact": "+65 6123 4567",
                },
                "ATTENDANCE_ALERT": {"alertType": "LATE_ARRIVAL", "timestamp": "2025-03-03T08:15:00Z"},
                "APPROVAL_STATUS": {
                    "referenceNumber": "LV-2025-001",
                    "approvalType": "LEAVE",
                    "status": "REJECTED",
                },
                "ESCALATION_ALERT": {"originalNotificationId": 1, "workerId": WORKER_ID},
            }[notification_type]
        payload = {
            "type": notification_type,
            "title": title,
            "message": message,
            "senderId": SENDER_ID,
            "recipients": recipients if recipients is not None else [WORKER_ID],
            "actionData": action_data,
        }
        payload.update(extra)
        return payload
    return _create


@pytest.fixture
def sample_notification(test_db_session, frozen_clock):
    """Factory for creating Notification rows in the database."""
    def _create(
        recipient_id=WORKER_ID,
        notification_type=NotificationType.TASK_UPDATE,
        priority=NotificationPriority.NORMAL,
        status=NotificationStatus.SENT,
        title="Test Title",
        message="Test message",
        created_at=None,
        updated_at=None,
        **fields,
    ):
        created = created_at or frozen_clock.now()
        notification = Notification(
            type=notification_type,
            priority=priority,
            title=title,
            message=message,
            action_data={},
            language="en",
            sender_id=SENDER_ID,
            recipient_id=recipient_id,
            status=status,
            requires_acknowledgment=fields.pop("requires_acknowledgment", False),
            delivery_attempts=fields.pop("delivery_attempts", 0),
            escalated=fields.pop("escalated", False),
            created_at=created,
            updated_at=updated_at or created,
            **fields,
        )
        test_db_session.add(notification)
        test_db_session.commit()
        test_db_session.refresh(notification)
        return notification
    return _create


@pytest.fixture
def sample_endpoint(test_db_session, frozen_clock):
    """Factory for creating DeviceEndpoint rows in the database."""
    _counter = [0]

    def _create(worker_id=WORKER_ID, token=None, **fields):
        _counter[0] += 1
        now = frozen_clock.now()
        endpoint = DeviceEndpoint(
            worker_id=worker_id,
            token=token or f"https://push.example.com/sub/{_counter[0]}",
            p256dh_key=fields.pop("p256dh_key", "test-p256dh-key"),
            auth_key=fields.pop("auth_key", "test-auth-key"),
            platform=fields.pop("platform", DevicePlatform.WEB),
            is_active=fields.pop("is_active", True),
            push_enabled=fields.pop("push_enabled", True),
            muted_priorities=fields.pop("muted_priorities", []),
            last_seen_at=fields.pop("last_seen_at", now - timedelta(minutes=_counter[0])),
            created_at=now,
            updated_at=now,
            **fields,
        )
        test_db_session.add(endpoint)
        test_db_session.commit()
        test_db_session.refresh(endpoint)
        return endpoint
    return _create
