"""
Unit tests for the maintenance reapers.

Tests expiry, scheduled release, retry re-dispatch, exhaustion, retention
and step isolation.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from fieldnotify.src.models import AuditEvent, DeviceEndpoint, Notification
from fieldnotify.src.models.notification import NotificationPriority, NotificationStatus
from fieldnotify.src.services.delivery_dispatcher import DeliveryDispatcher, DeliveryOutcome
from fieldnotify.src.services.maintenance_service import (
    MaintenanceScheduler,
    MaintenanceService,
    MaintenanceStats,
)


@pytest.fixture
def dispatch():
    return MagicMock()


@pytest.fixture
def maintenance(test_db_session, test_settings, frozen_clock, dispatch):
    return MaintenanceService(test_db_session, test_settings, frozen_clock, dispatch=dispatch)


def _status(db, notification_id):
    db.expire_all()
    return db.get(Notification, notification_id).status


# ============================================================================
# Test: expiry
# ============================================================================


class TestExpireNotifications:
    """Tests for MaintenanceService.expire_notifications."""

    def test_expires_past_due(self, maintenance, sample_notification, frozen_clock, test_db_session):
        notification = sample_notification(
            status=NotificationStatus.DELIVERED, expires_at=frozen_clock.now() - timedelta(minutes=1)
        )

        assert maintenance.expire_notifications() == 1

        assert _status(test_db_session, notification.id) == NotificationStatus.EXPIRED
        event = test_db_session.query(AuditEvent).filter(AuditEvent.event == "EXPIRED").one()
        assert event.details["previous_status"] == "DELIVERED"

    def test_leaves_future_expiry_alone(self, maintenance, sample_notification, frozen_clock):
        sample_notification(expires_at=frozen_clock.now() + timedelta(hours=1))
        sample_notification()
        assert maintenance.expire_notifications() == 0

    def test_failed_notifications_do_not_expire(self, maintenance, sample_notification, frozen_clock, test_db_session):
        notification = sample_notification(
            status=NotificationStatus.FAILED, expires_at=frozen_clock.now() - timedelta(hours=1)
        )
        assert maintenance.expire_notifications() == 0
        assert _status(test_db_session, notification.id) == NotificationStatus.FAILED


# ============================================================================
# Test: scheduled release
# ============================================================================


class TestReleaseScheduled:
    """Tests for MaintenanceService.release_scheduled."""

    def test_releases_due_and_dispatches(self, maintenance, sample_notification, frozen_clock, dispatch, test_db_session):
        due = sample_notification(
            status=NotificationStatus.PENDING, scheduled_at=frozen_clock.now() - timedelta(minutes=1)
        )
        later = sample_notification(
            status=NotificationStatus.PENDING, scheduled_at=frozen_clock.now() + timedelta(hours=1)
        )

        assert maintenance.release_scheduled() == 1

        assert _status(test_db_session, due.id) == NotificationStatus.SENT
        assert _status(test_db_session, later.id) == NotificationStatus.PENDING
        dispatch.assert_called_once_with([due.id])
        assert test_db_session.query(AuditEvent).filter(AuditEvent.event == "RELEASED").count() == 1

    def test_nothing_due_dispatches_nothing(self, maintenance, dispatch):
        assert maintenance.release_scheduled() == 0
        dispatch.assert_not_called()

    def test_expired_pending_is_never_released(self, maintenance, sample_notification, frozen_clock, test_db_session, dispatch):
        """Expiry runs first within a pass."""
        notification = sample_notification(
            status=NotificationStatus.PENDING,
            scheduled_at=frozen_clock.now() - timedelta(hours=2),
            expires_at=frozen_clock.now() - timedelta(hours=1),
        )

        stats = maintenance.run()

        assert stats.expired == 1
        assert stats.released == 0
        assert _status(test_db_session, notification.id) == NotificationStatus.EXPIRED
        dispatch.assert_not_called()


# ============================================================================
# Test: retries and exhaustion
# ============================================================================


class TestRetries:
    """Tests for retry re-dispatch and exhaustion."""

    def test_redispatches_after_backoff(self, maintenance, sample_notification, frozen_clock, dispatch):
        ready = sample_notification(delivery_attempts=1, last_attempt_at=frozen_clock.now() - timedelta(minutes=10))
        sample_notification(delivery_attempts=1, last_attempt_at=frozen_clock.now() - timedelta(minutes=1))
        sample_notification(delivery_attempts=0)

        assert maintenance.retry_failed_attempts() == 1
        dispatch.assert_called_once_with([ready.id])

    def test_redispatches_never_attempted_after_backoff(self, maintenance, sample_notification, frozen_clock, dispatch):
        """A row whose hand-off to delivery failed still gets retried."""
        stranded = sample_notification(created_at=frozen_clock.now() - timedelta(minutes=10))

        assert maintenance.retry_failed_attempts() == 1
        dispatch.assert_called_once_with([stranded.id])

    def test_deferred_notification_is_retried_after_backoff(
        self, maintenance, sample_notification, sample_endpoint, frozen_clock, dispatch,
        test_db_session, fake_provider, test_settings,
    ):
        sample_endpoint(muted_priorities=["LOW"])
        notification = sample_notification(priority=NotificationPriority.LOW)
        dispatcher = DeliveryDispatcher(test_db_session, fake_provider, test_settings, frozen_clock)

        assert dispatcher.deliver(notification.id) == DeliveryOutcome.DEFERRED
        assert maintenance.retry_failed_attempts() == 0

        frozen_clock.advance(minutes=6)

        assert maintenance.retry_failed_attempts() == 1
        dispatch.assert_called_once_with([notification.id])

    def test_dispatch_error_is_contained(self, maintenance, sample_notification, frozen_clock, dispatch):
        sample_notification(delivery_attempts=1, last_attempt_at=frozen_clock.now() - timedelta(hours=1))
        dispatch.side_effect = RuntimeError("executor shut down")
        assert maintenance.retry_failed_attempts() == 1

    def test_fails_exhausted(self, maintenance, sample_notification, test_db_session):
        exhausted = sample_notification(delivery_attempts=3)
        retryable = sample_notification(delivery_attempts=2)

        assert maintenance.fail_exhausted() == 1

        assert _status(test_db_session, exhausted.id) == NotificationStatus.FAILED
        assert _status(test_db_session, retryable.id) == NotificationStatus.SENT
        event = test_db_session.query(AuditEvent).filter(AuditEvent.event == "FAILED").one()
        assert event.details["reason"] == "MAX_ATTEMPTS_EXCEEDED"


# ============================================================================
# Test: retention
# ============================================================================


class TestRetention:
    """Tests for notification and endpoint purging."""

    def test_purges_old_notifications(self, maintenance, sample_notification, frozen_clock, test_db_session):
        sample_notification(created_at=frozen_clock.now() - timedelta(days=91))
        kept = sample_notification(created_at=frozen_clock.now() - timedelta(days=89))

        assert maintenance.purge_old_notifications() == 1
        test_db_session.expire_all()
        assert [n.id for n in test_db_session.query(Notification).all()] == [kept.id]

    def test_purges_stale_endpoints(self, maintenance, sample_endpoint, frozen_clock, test_db_session):
        sample_endpoint(is_active=False)
        sample_endpoint(last_seen_at=frozen_clock.now() - timedelta(days=31))
        sample_endpoint(consecutive_failures=10)
        kept = sample_endpoint()

        assert maintenance.purge_stale_endpoints() == 3
        test_db_session.expire_all()
        assert [e.id for e in test_db_session.query(DeviceEndpoint).all()] == [kept.id]


# ============================================================================
# Test: full pass
# ============================================================================


class TestRun:
    """Tests for MaintenanceService.run and MaintenanceScheduler."""

    def test_failing_step_does_not_stop_the_rest(self, maintenance, sample_notification):
        sample_notification(delivery_attempts=3)

        with patch.object(maintenance, "release_scheduled", side_effect=RuntimeError("boom")):
            stats = maintenance.run()

        assert stats.failed == 1
        assert stats.errors == ["Error in maintenance step release: boom"]
        assert stats.to_dict()["errors"] == 1

    def test_empty_store(self, maintenance):
        stats = maintenance.run()
        assert stats.to_dict() == MaintenanceStats().to_dict()

    def test_scheduler_run_once(self, test_session_factory, test_settings, frozen_clock, sample_notification):
        sample_notification(delivery_attempts=3)
        scheduler = MaintenanceScheduler(test_session_factory, test_settings, frozen_clock)

        stats = scheduler.run_once()

        assert stats.failed == 1
        assert scheduler.last_stats is stats

    def test_scheduler_start_stop(self, test_session_factory, test_settings, frozen_clock):
        scheduler = MaintenanceScheduler(test_session_factory, test_settings, frozen_clock)
        assert scheduler.start() is True
        assert scheduler.is_running
        assert scheduler.stop() is True
        assert not scheduler.is_running
