"""
Unit tests for the escalation monitor.

Sweeps run through EscalationMonitor.trigger_sweep, which opens its own
session from the shared test session factory; the test session is expired
before asserting so it sees the sweep's commits.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from fieldnotify.src.models import AuditEvent, Notification
from fieldnotify.src.models.notification import (
    EscalationStatus,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from fieldnotify.src.services.escalation_monitor import (
    ESCALATION_TITLE,
    REASON_ESCALATED,
    REASON_FAILED,
    REASON_NO_SUPERVISOR,
    EscalationMonitor,
    EscalationOutcome,
)
from fieldnotify.src.services.exceptions import ConcurrentUpdateError, ConflictError, NotFoundError
from fieldnotify.src.services.notification_repository import NotificationRepository
from fieldnotify.src.services.supervisor_resolver import SupervisorLookupError


SUPERVISOR_ID = 3


@pytest.fixture
def dispatch():
    return MagicMock()


@pytest.fixture
def monitor(test_session_factory, supervisor_resolver, test_settings, frozen_clock, dispatch):
    return EscalationMonitor(test_session_factory, supervisor_resolver, test_settings, frozen_clock, dispatch)


@pytest.fixture
def critical_notification(sample_notification):
    def _create(**kwargs):
        kwargs.setdefault("priority", NotificationPriority.CRITICAL)
        kwargs.setdefault("notification_type", NotificationType.SITE_CHANGE)
        kwargs.setdefault("title", "Relocate to Tuas")
        return sample_notification(**kwargs)
    return _create


def _reload(db, notification_id):
    db.expire_all()
    return db.get(Notification, notification_id)


def _escalation_alerts(db):
    db.expire_all()
    return db.query(Notification).filter(Notification.type == NotificationType.ESCALATION_ALERT).all()


# ============================================================================
# Test: sweep
# ============================================================================


class TestSweep:
    """Tests for periodic escalation sweeps."""

    def test_escalates_unread_critical_after_timeout(
        self, monitor, critical_notification, frozen_clock, test_db_session, dispatch
    ):
        """Unread for three hours with a two hour timeout: escalated exactly once."""
        original = critical_notification()
        frozen_clock.advance(hours=3)

        result = monitor.trigger_sweep()

        assert result.candidates == 1
        assert result.escalated == 1
        assert result.failed == 0

        row = _reload(test_db_session, original.id)
        assert row.escalated is True
        assert row.escalated_at == frozen_clock.now()
        assert row.escalation_status == EscalationStatus.SUCCESS
        assert row.escalation_reason == REASON_ESCALATED
        # Escalation does not change the read state
        assert row.status == NotificationStatus.SENT

        alerts = _escalation_alerts(test_db_session)
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.recipient_id == SUPERVISOR_ID
        assert alert.priority == NotificationPriority.CRITICAL
        assert alert.requires_acknowledgment is True
        assert alert.title == ESCALATION_TITLE
        assert 'Worker Ahmad Ali has not read critical notification: "Relocate to Tuas" for 3 hours.' in alert.message
        assert alert.action_data["originalNotificationId"] == original.id
        assert alert.action_data["hoursUnread"] == 3
        dispatch.assert_called_once_with([alert.id])

        audit = (
            test_db_session.query(AuditEvent)
            .filter(AuditEvent.notification_id == original.id, AuditEvent.event == "ESCALATED")
            .one()
        )
        assert audit.details["escalated_to"] == SUPERVISOR_ID
        assert audit.details["escalation_notification_id"] == alert.id

    def test_second_sweep_does_not_escalate_again(self, monitor, critical_notification, frozen_clock, test_db_session):
        critical_notification()
        frozen_clock.advance(hours=3)

        monitor.trigger_sweep()
        frozen_clock.advance(hours=3)
        second = monitor.trigger_sweep()

        # The supervisor alert itself is unread CRITICAL and becomes a candidate
        assert second.candidates == 1
        assert len(_escalation_alerts(test_db_session)) == 1

    def test_not_yet_due(self, monitor, critical_notification, frozen_clock):
        critical_notification()
        frozen_clock.advance(hours=1, minutes=59)
        assert monitor.trigger_sweep().candidates == 0

    def test_delivered_is_still_unread(self, monitor, critical_notification, frozen_clock):
        critical_notification(status=NotificationStatus.DELIVERED)
        frozen_clock.advance(hours=3)
        assert monitor.trigger_sweep().escalated == 1

    @pytest.mark.parametrize("status", [
        NotificationStatus.READ,
        NotificationStatus.ACKNOWLEDGED,
        NotificationStatus.FAILED,
        NotificationStatus.EXPIRED,
        NotificationStatus.PENDING,
    ])
    def test_ignores_non_unread_statuses(self, monitor, critical_notification, frozen_clock, status):
        critical_notification(status=status)
        frozen_clock.advance(hours=3)
        assert monitor.trigger_sweep().candidates == 0

    def test_ignores_non_critical(self, monitor, sample_notification, frozen_clock):
        sample_notification(priority=NotificationPriority.HIGH)
        frozen_clock.advance(hours=3)
        assert monitor.trigger_sweep().candidates == 0

    def test_no_supervisor(self, monitor, critical_notification, frozen_clock, test_db_session):
        """Nobody to escalate to: FAILED, flagged, never retried."""
        original = critical_notification(recipient_id=99)
        frozen_clock.advance(hours=3)

        result = monitor.trigger_sweep()

        assert result.failed == 1
        row = _reload(test_db_session, original.id)
        assert row.escalated is True
        assert row.escalation_status == EscalationStatus.FAILED
        assert row.escalation_reason == REASON_NO_SUPERVISOR
        assert _escalation_alerts(test_db_session) == []
        assert monitor.trigger_sweep().candidates == 0

    def test_lookup_error_fails_escalation(
        self, test_session_factory, test_settings, frozen_clock, critical_notification, test_db_session
    ):
        resolver = MagicMock()
        resolver.resolve_supervisor.side_effect = SupervisorLookupError("directory down", status_code=503)
        monitor = EscalationMonitor(test_session_factory, resolver, test_settings, frozen_clock)
        original = critical_notification()
        frozen_clock.advance(hours=3)

        result = monitor.trigger_sweep()

        assert result.failed == 1
        row = _reload(test_db_session, original.id)
        assert row.escalation_status == EscalationStatus.FAILED
        assert row.escalation_reason == REASON_FAILED
        event = (
            test_db_session.query(AuditEvent)
            .filter(AuditEvent.event == "ESCALATION_FAILED")
            .one()
        )
        assert event.details["error"] == "directory down"

    def test_one_failure_does_not_stop_the_sweep(self, monitor, critical_notification, frozen_clock):
        critical_notification(recipient_id=99)
        critical_notification()
        frozen_clock.advance(hours=3)

        result = monitor.trigger_sweep()

        assert result.candidates == 2
        assert result.escalated == 1
        assert result.failed == 1


# ============================================================================
# Test: claim
# ============================================================================


class TestClaimEscalation:
    """Tests for the atomic escalation claim."""

    def test_only_one_claim_wins(self, critical_notification, test_db_session, frozen_clock):
        notification = critical_notification()
        repository = NotificationRepository(test_db_session)

        assert repository.claim_escalation(notification.id, frozen_clock.now()) is True
        assert repository.claim_escalation(notification.id, frozen_clock.now()) is False

    def test_claim_bumps_version(self, critical_notification, test_db_session, frozen_clock):
        notification = critical_notification()
        version = notification.version
        NotificationRepository(test_db_session).claim_escalation(notification.id, frozen_clock.now())
        assert _reload(test_db_session, notification.id).version == version + 1

    def test_claim_requires_unread(self, critical_notification, test_db_session, frozen_clock):
        notification = critical_notification(status=NotificationStatus.READ)
        repository = NotificationRepository(test_db_session)
        assert repository.claim_escalation(notification.id, frozen_clock.now()) is False
        assert repository.claim_escalation(notification.id, frozen_clock.now(), require_unread=False) is True


class TestEscalationOutcome:
    """The outcome of a claimed escalation is always recorded and audited."""

    def test_concurrent_read_during_alert_keeps_outcome(
        self, test_session_factory, supervisor_resolver, test_settings, frozen_clock,
        critical_notification, test_db_session,
    ):
        original = critical_notification()
        frozen_clock.advance(hours=3)

        def _read_concurrently(notification_ids):
            other = test_session_factory()
            row = other.get(Notification, original.id)
            row.status = NotificationStatus.READ
            row.read_at = frozen_clock.now()
            other.commit()
            other.close()

        monitor = EscalationMonitor(
            test_session_factory, supervisor_resolver, test_settings, frozen_clock, _read_concurrently
        )

        assert monitor.trigger_sweep().escalated == 1

        row = _reload(test_db_session, original.id)
        assert row.status == NotificationStatus.READ
        assert row.escalation_status == EscalationStatus.SUCCESS
        assert row.escalation_reason == REASON_ESCALATED
        audits = (
            test_db_session.query(AuditEvent)
            .filter(AuditEvent.notification_id == original.id, AuditEvent.event == "ESCALATED")
            .all()
        )
        assert len(audits) == 1

    def test_outcome_does_not_depend_on_versioned_saves(
        self, monitor, critical_notification, frozen_clock, test_db_session
    ):
        original = critical_notification()
        version = original.version
        frozen_clock.advance(hours=3)

        with patch.object(
            NotificationRepository, "save", side_effect=ConcurrentUpdateError("Notification", original.id)
        ):
            result = monitor.trigger_sweep()

        assert result.escalated == 1
        row = _reload(test_db_session, original.id)
        assert row.escalation_status == EscalationStatus.SUCCESS
        # Claim and outcome each bump the version
        assert row.version == version + 2

    def test_failure_outcome_does_not_depend_on_versioned_saves(
        self, monitor, critical_notification, frozen_clock, test_db_session
    ):
        original = critical_notification(recipient_id=99)
        frozen_clock.advance(hours=3)

        with patch.object(
            NotificationRepository, "save", side_effect=ConcurrentUpdateError("Notification", original.id)
        ):
            result = monitor.trigger_sweep()

        assert result.failed == 1
        row = _reload(test_db_session, original.id)
        assert row.escalation_status == EscalationStatus.FAILED
        assert row.escalation_reason == REASON_NO_SUPERVISOR
        event = test_db_session.query(AuditEvent).filter(AuditEvent.event == "ESCALATION_FAILED").one()
        assert event.details["reason"] == REASON_NO_SUPERVISOR


# ============================================================================
# Test: force escalation and lifecycle
# ============================================================================


class TestForceEscalate:
    """Tests for EscalationMonitor.force_escalate."""

    def test_force_ignores_age_and_priority(self, monitor, sample_notification, test_db_session):
        notification = sample_notification(priority=NotificationPriority.NORMAL)

        assert monitor.force_escalate(notification.id) == EscalationOutcome.ESCALATED
        assert _reload(test_db_session, notification.id).escalated is True
        assert len(_escalation_alerts(test_db_session)) == 1

    def test_force_twice_conflicts(self, monitor, critical_notification):
        notification = critical_notification()
        monitor.force_escalate(notification.id)
        with pytest.raises(ConflictError):
            monitor.force_escalate(notification.id)

    def test_force_unknown_notification(self, monitor):
        with pytest.raises(NotFoundError):
            monitor.force_escalate(424242)


class TestMonitorLifecycle:
    """Tests for start/stop and status reporting."""

    def test_start_and_stop(self, monitor):
        assert monitor.start() is True
        assert monitor.is_running
        assert monitor.start() is False
        assert monitor.stop() is True
        assert not monitor.is_running
        assert monitor.stop() is False

    def test_status_reports_counts(self, monitor, critical_notification, frozen_clock):
        critical_notification()
        critical_notification(recipient_id=99)
        frozen_clock.advance(hours=3)
        monitor.trigger_sweep()

        status = monitor.get_status()

        assert status["escalations"] == {"SUCCESS": 1, "FAILED": 1}
        assert status["sweeps_run"] == 1
        assert status["last_sweep"].escalated == 1
        assert status["escalation_timeout_hours"] == 2
        assert status["is_running"] is False

    def test_escalation_stats(self, monitor, critical_notification, frozen_clock, test_db_session):
        critical_notification()
        critical_notification(recipient_id=99)
        frozen_clock.advance(hours=3)
        monitor.trigger_sweep()
        critical_notification()
        frozen_clock.advance(days=1)
        monitor.trigger_sweep()
        # Outside the window
        test_db_session.add(AuditEvent(
            notification_id=1, worker_id=42, event="ESCALATED", details={}, source="escalation_monitor",
            created_at=frozen_clock.now() - timedelta(days=10),
        ))
        test_db_session.commit()

        stats = monitor.get_escalation_stats(days=7)

        assert stats["total_escalations"] == 2
        assert stats["unique_workers_escalated"] == 1
        assert stats["daily_breakdown"] == [
            {"date": "2025-03-03", "count": 1},
            {"date": "2025-03-04", "count": 1},
        ]
        assert stats["period_days"] == 7
        assert stats["escalation_timeout_hours"] == 2
