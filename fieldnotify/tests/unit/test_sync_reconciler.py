"""
Unit tests for offline sync reconciliation.

Covers conflict analysis, applying queued status updates, read receipts
and pulling server-side changes.
"""

from datetime import datetime

import pytest

from fieldnotify.src.models import AuditEvent, Notification
from fieldnotify.src.models.notification import NotificationStatus
from fieldnotify.src.schemas.sync import SyncUpdate, UpdateType
from fieldnotify.src.services.sync_reconciler import (
    ConflictType,
    Resolution,
    SyncReconciler,
    analyze_conflict,
)


WORKER_ID = 7

NINE = datetime(2025, 3, 3, 9, 0)
NINE_THIRTY = datetime(2025, 3, 3, 9, 30)
NINE_FIFTY = datetime(2025, 3, 3, 9, 50)
TEN = datetime(2025, 3, 3, 10, 0)
TEN_THIRTY = datetime(2025, 3, 3, 10, 30)


@pytest.fixture
def reconciler(test_db_session, test_settings, frozen_clock):
    return SyncReconciler(test_db_session, test_settings, frozen_clock)


@pytest.fixture
def read_at_ten(sample_notification):
    """Server state: READ at 10:00."""
    return sample_notification(
        status=NotificationStatus.READ, created_at=NINE, updated_at=TEN, read_at=TEN
    )


@pytest.fixture
def delivered(sample_notification):
    return sample_notification(status=NotificationStatus.DELIVERED, created_at=NINE, updated_at=NINE)


def _update(notification_id, timestamp, update_type="STATUS", status=None, **extra):
    payload = {
        "notificationId": notification_id,
        "updateType": update_type,
        "timestamp": timestamp.isoformat() + "Z",
    }
    if status is not None:
        payload["status"] = status
    payload.update(extra)
    return payload


def _reload(db, notification_id):
    db.expire_all()
    return db.get(Notification, notification_id)


# ============================================================================
# Test: analyze_conflict
# ============================================================================


class TestAnalyzeConflict:
    """Tests for the pure conflict decision."""

    def test_stale_client_status_keeps_server_state(self):
        notification = Notification(status=NotificationStatus.READ, updated_at=TEN, read_at=TEN)
        update = SyncUpdate(notification_id=1, status=NotificationStatus.SENT, timestamp=NINE_FIFTY)

        analysis = analyze_conflict(notification, update)

        assert analysis.has_conflict
        assert analysis.conflict_type == ConflictType.TIMESTAMP_CONFLICT
        assert analysis.resolution == Resolution.SERVER_STATE_KEPT
        assert analysis.can_resolve
        assert not analysis.should_apply

    def test_stale_but_valid_update_is_applied(self):
        notification = Notification(status=NotificationStatus.DELIVERED, updated_at=TEN)
        update = SyncUpdate(notification_id=1, status=NotificationStatus.READ, timestamp=NINE_THIRTY)

        analysis = analyze_conflict(notification, update)

        assert analysis.conflict_type == ConflictType.TIMESTAMP_CONFLICT
        assert analysis.resolution == Resolution.CLIENT_UPDATE_APPLIED
        assert analysis.should_apply

    def test_read_update_compares_against_read_at(self):
        """An unread notification has no competing read time."""
        notification = Notification(status=NotificationStatus.DELIVERED, updated_at=TEN, read_at=None)
        update = SyncUpdate(notification_id=1, update_type=UpdateType.READ, timestamp=NINE_THIRTY)

        analysis = analyze_conflict(notification, update)

        assert not analysis.has_conflict
        assert analysis.should_apply

    def test_invalid_transition_is_unresolvable(self):
        notification = Notification(status=NotificationStatus.EXPIRED, updated_at=NINE)
        update = SyncUpdate(notification_id=1, update_type=UpdateType.READ, timestamp=TEN)

        analysis = analyze_conflict(notification, update)

        assert analysis.conflict_type == ConflictType.INVALID_STATUS_TRANSITION
        assert analysis.resolution is None
        assert not analysis.can_resolve
        assert not analysis.should_apply

    def test_equal_timestamps_are_not_a_conflict(self):
        notification = Notification(status=NotificationStatus.DELIVERED, updated_at=TEN)
        update = SyncUpdate(notification_id=1, status=NotificationStatus.READ, timestamp=TEN)
        assert not analyze_conflict(notification, update).has_conflict


# ============================================================================
# Test: reconcile
# ============================================================================


class TestReconcile:
    """Tests for SyncReconciler.reconcile."""

    def test_stale_update_against_read(self, reconciler, read_at_ten, test_db_session):
        """Server READ at 10:00, client reports SENT at 09:50: server state kept."""
        result = reconciler.reconcile(WORKER_ID, [_update(read_at_ten.id, NINE_FIFTY, status="SENT")])

        assert result.processed == 1
        assert result.conflicts == 1
        assert result.resolved == 1
        assert result.failed == 0
        assert result.resolutions == [{
            "notification_id": read_at_ten.id,
            "conflict_type": "TIMESTAMP_CONFLICT",
            "resolution": "SERVER_STATE_KEPT",
            "final_status": "READ",
        }]

        row = _reload(test_db_session, read_at_ten.id)
        assert row.status == NotificationStatus.READ
        assert row.read_at == TEN
        event = test_db_session.query(AuditEvent).filter(AuditEvent.event == "SYNC_CONFLICT_RESOLVED").one()
        assert event.details["resolution"] == "SERVER_STATE_KEPT"

    def test_read_applies(self, reconciler, delivered, test_db_session, frozen_clock):
        result = reconciler.reconcile(WORKER_ID, [_update(delivered.id, NINE_THIRTY, update_type="READ")])

        assert result.processed == 1
        assert result.conflicts == 0
        assert result.outcomes[0].applied
        row = _reload(test_db_session, delivered.id)
        assert row.status == NotificationStatus.READ
        assert row.read_at == NINE_THIRTY
        assert row.updated_at == frozen_clock.now()
        event = test_db_session.query(AuditEvent).filter(AuditEvent.event == "READ").one()
        assert event.details["sync_update"] is True
        assert event.details["previous_status"] == "DELIVERED"

    def test_acknowledge_backfills_read_at(self, reconciler, delivered, test_db_session):
        reconciler.reconcile(WORKER_ID, [_update(delivered.id, TEN, update_type="ACKNOWLEDGED")])

        row = _reload(test_db_session, delivered.id)
        assert row.status == NotificationStatus.ACKNOWLEDGED
        assert row.acknowledged_at == TEN
        assert row.read_at == TEN

    def test_acknowledge_before_read_time_moves_read_at(self, reconciler, read_at_ten, test_db_session):
        reconciler.reconcile(WORKER_ID, [_update(read_at_ten.id, NINE_FIFTY, update_type="ACKNOWLEDGED")])

        row = _reload(test_db_session, read_at_ten.id)
        assert row.acknowledged_at == NINE_FIFTY
        assert row.read_at <= row.acknowledged_at

    def test_replay_leaves_state_unchanged(self, reconciler, delivered, test_db_session):
        update = _update(delivered.id, NINE_THIRTY, update_type="READ")
        reconciler.reconcile(WORKER_ID, [update])
        first = _reload(test_db_session, delivered.id)
        state = (first.status, first.read_at, first.updated_at)

        result = reconciler.reconcile(WORKER_ID, [update])

        second = _reload(test_db_session, delivered.id)
        assert (second.status, second.read_at, second.updated_at) == state
        assert not result.outcomes[0].applied

    def test_invalid_transition_is_reported_not_raised(self, reconciler, sample_notification, test_db_session):
        expired = sample_notification(status=NotificationStatus.EXPIRED, updated_at=NINE)

        result = reconciler.reconcile(WORKER_ID, [_update(expired.id, TEN, update_type="READ")])

        assert result.processed == 1
        assert result.conflicts == 1
        assert result.resolved == 0
        assert result.resolutions == []
        assert result.outcomes[0].conflict_type == "INVALID_STATUS_TRANSITION"
        assert result.outcomes[0].resolved is False
        assert _reload(test_db_session, expired.id).status == NotificationStatus.EXPIRED
        assert test_db_session.query(AuditEvent).filter(
            AuditEvent.event == "SYNC_CONFLICT_UNRESOLVABLE"
        ).count() == 1

    def test_missing_and_foreign_notifications_fail_per_item(self, reconciler, sample_notification, delivered):
        foreign = sample_notification(recipient_id=99)

        result = reconciler.reconcile(WORKER_ID, [
            _update(424242, TEN, update_type="READ"),
            _update(foreign.id, TEN, update_type="READ"),
            _update(delivered.id, TEN, update_type="READ"),
        ])

        assert result.processed == 1
        assert result.failed == 2
        assert result.errors == [
            {"notification_id": 424242, "error": "NOT_FOUND"},
            {"notification_id": foreign.id, "error": "NOT_FOUND"},
        ]

    def test_invalid_payloads_fail_per_item(self, reconciler, delivered):
        result = reconciler.reconcile(WORKER_ID, [
            {"notificationId": delivered.id, "updateType": "READ"},
            _update(delivered.id, TEN, update_type="READ", status="SENT"),
            _update(delivered.id, TEN),
            _update(delivered.id, TEN, update_type="READ"),
        ])

        assert result.failed == 3
        assert all(e["error"] == "INVALID_UPDATE" for e in result.errors)
        assert result.processed == 1

    def test_offline_queue_id_is_echoed(self, reconciler, delivered):
        result = reconciler.reconcile(
            WORKER_ID, [_update(delivered.id, TEN, update_type="READ", offlineQueueId="q-17")]
        )
        assert result.outcomes[0].offline_queue_id == "q-17"

    def test_processes_in_batches(self, test_db_session, test_settings, frozen_clock, sample_notification):
        settings = test_settings.model_copy(update={"sync_batch_size": 2})
        reconciler = SyncReconciler(test_db_session, settings, frozen_clock)
        rows = [sample_notification(status=NotificationStatus.DELIVERED) for _ in range(5)]

        result = reconciler.reconcile(WORKER_ID, [_update(n.id, TEN, update_type="READ") for n in rows])

        assert result.batches == 3
        assert result.processed == 5

    def test_sync_completed_is_audited(self, reconciler, delivered, test_db_session):
        reconciler.reconcile(WORKER_ID, [_update(delivered.id, TEN, update_type="READ"), {"bad": True}])

        event = test_db_session.query(AuditEvent).filter(AuditEvent.event == "SYNC_COMPLETED").one()
        assert event.notification_id == 0
        assert event.worker_id == WORKER_ID
        assert event.details["total_updates"] == 2
        assert event.details["processed"] == 1
        assert event.details["failed"] == 1
        assert event.details["sync_type"] == "STATUS_UPDATES"

    def test_empty_sync(self, reconciler):
        result = reconciler.reconcile(WORKER_ID, [])
        assert result.processed == 0
        assert result.batches == 0


# ============================================================================
# Test: read receipts
# ============================================================================


class TestReadReceipts:
    """Tests for SyncReconciler.sync_read_receipts."""

    def test_receipt_marks_read(self, reconciler, delivered, test_db_session):
        result = reconciler.sync_read_receipts(
            WORKER_ID, [{"notificationId": delivered.id, "readAt": "2025-03-03T09:30:00Z"}]
        )

        assert result.processed == 1
        row = _reload(test_db_session, delivered.id)
        assert row.status == NotificationStatus.READ
        assert row.read_at == NINE_THIRTY
        event = test_db_session.query(AuditEvent).filter(AuditEvent.event == "READ").one()
        assert event.details["synced_read_receipt"] is True

    def test_earlier_or_equal_receipt_is_duplicate(self, reconciler, read_at_ten, test_db_session):
        result = reconciler.sync_read_receipts(WORKER_ID, [
            {"notificationId": read_at_ten.id, "readAt": TEN.isoformat()},
            {"notificationId": read_at_ten.id, "readAt": NINE.isoformat()},
        ])

        assert result.duplicates == 2
        assert result.processed == 0
        assert _reload(test_db_session, read_at_ten.id).read_at == TEN
        assert test_db_session.query(AuditEvent).count() == 0

    def test_later_receipt_updates_read_at(self, reconciler, read_at_ten, test_db_session):
        result = reconciler.sync_read_receipts(
            WORKER_ID, [{"notificationId": read_at_ten.id, "readAt": TEN_THIRTY.isoformat()}]
        )
        assert result.processed == 1
        assert _reload(test_db_session, read_at_ten.id).read_at == TEN_THIRTY

    def test_receipt_never_passes_acknowledgment(self, reconciler, sample_notification, test_db_session):
        acknowledged = sample_notification(status=NotificationStatus.ACKNOWLEDGED, acknowledged_at=TEN)

        reconciler.sync_read_receipts(
            WORKER_ID, [{"notificationId": acknowledged.id, "readAt": TEN_THIRTY.isoformat()}]
        )

        row = _reload(test_db_session, acknowledged.id)
        assert row.status == NotificationStatus.ACKNOWLEDGED
        assert row.read_at == TEN

    def test_unknown_and_invalid_receipts_fail(self, reconciler, sample_notification):
        foreign = sample_notification(recipient_id=99)
        result = reconciler.sync_read_receipts(WORKER_ID, [
            {"notificationId": foreign.id, "readAt": TEN.isoformat()},
            {"notificationId": 0, "readAt": TEN.isoformat()},
        ])
        assert result.failed == 2
        assert [e["error"] for e in result.errors] == ["NOT_FOUND", "INVALID_RECEIPT"]


# ============================================================================
# Test: pull_changes
# ============================================================================


class TestPullChanges:
    """Tests for SyncReconciler.pull_changes."""

    def test_returns_changes_after_watermark_oldest_first(self, reconciler, sample_notification):
        old = sample_notification(created_at=NINE, updated_at=NINE)
        newer = sample_notification(created_at=NINE, updated_at=TEN_THIRTY)
        middle = sample_notification(created_at=NINE, updated_at=TEN)
        sample_notification(recipient_id=99, updated_at=TEN)

        changes = reconciler.pull_changes(WORKER_ID, since=NINE_THIRTY)

        assert [c["id"] for c in changes] == [middle.id, newer.id]
        assert old.id not in [c["id"] for c in changes]
        assert changes[0]["status"] == "SENT"
        assert changes[0]["version"] == 1
        assert changes[0]["escalated"] is False

    def test_without_watermark_returns_everything(self, reconciler, sample_notification):
        for _ in range(3):
            sample_notification()
        assert len(reconciler.pull_changes(WORKER_ID)) == 3

    def test_limit(self, reconciler, sample_notification):
        for _ in range(3):
            sample_notification()
        assert len(reconciler.pull_changes(WORKER_ID, limit=2)) == 2

    def test_returns_every_change_sharing_one_timestamp(self, reconciler, sample_notification):
        # More rows at one updated_at than sync_batch_size (50)
        ids = [sample_notification(created_at=NINE, updated_at=TEN).id for _ in range(55)]

        changes = reconciler.pull_changes(WORKER_ID, since=NINE_THIRTY)

        assert [c["id"] for c in changes] == ids

    def test_keyset_pages_continue_within_a_timestamp(self, reconciler, sample_notification):
        ids = [sample_notification(created_at=NINE, updated_at=TEN).id for _ in range(55)]

        first = reconciler.pull_changes(WORKER_ID, since=NINE_THIRTY, limit=50)
        last = first[-1]
        rest = reconciler.pull_changes(WORKER_ID, since=last["updated_at"], since_id=last["id"], limit=50)

        assert len(first) == 50
        assert [c["id"] for c in first + rest] == ids

    def test_watermark_without_id_excludes_equal_timestamps(self, reconciler, sample_notification):
        sample_notification(created_at=NINE, updated_at=TEN)
        later = sample_notification(created_at=NINE, updated_at=TEN_THIRTY)

        changes = reconciler.pull_changes(WORKER_ID, since=TEN)

        assert [c["id"] for c in changes] == [later.id]
