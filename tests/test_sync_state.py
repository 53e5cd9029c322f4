"""
Tests for sync state tracking and the single-flight lease.
"""
from datetime import timedelta

import pytest

from omnicrm.services.sync_state import SyncState, SyncStatus
from omnicrm.utils.datetime_utils import utc_now
from tests.fixtures.platform_fakes import at

pytestmark = pytest.mark.unit


class TestLease:
    """Tests for acquiring and releasing the sync flag."""

    def test_only_one_holder(self, sync_store):
        assert sync_store.try_acquire("u1", "chat", lease_seconds=60) is not None
        assert sync_store.try_acquire("u1", "chat", lease_seconds=60) is None

        state = sync_store.get_state("u1", "chat")
        assert state.currently_syncing
        assert state.state == SyncStatus.SYNCING

    def test_flags_are_per_platform_and_user(self, sync_store):
        assert sync_store.try_acquire("u1", "chat", 60)
        assert sync_store.try_acquire("u1", "email", 60)
        assert sync_store.try_acquire("u2", "chat", 60)

    def test_complete_releases_with_token(self, sync_store):
        token = sync_store.try_acquire("u1", "chat", 60)
        assert sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 0, 0, lease_token=token) is True
        assert sync_store.try_acquire("u1", "chat", 60) is not None

    def test_complete_without_token_keeps_flag(self, sync_store):
        sync_store.try_acquire("u1", "chat", 60)
        assert sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 0, 0) is False
        assert sync_store.get_state("u1", "chat").currently_syncing

    def test_expired_lease_is_reclaimed(self, sync_store):
        """A crashed holder's flag does not block forever."""
        crashed_at = utc_now() - timedelta(hours=1)
        assert sync_store.try_acquire("u1", "chat", lease_seconds=60, now=crashed_at)

        state = sync_store.get_state("u1", "chat")
        assert state.currently_syncing
        assert not state.lock_held()
        assert state.state == SyncStatus.IDLE

        assert sync_store.try_acquire("u1", "chat", lease_seconds=60) is not None

    def test_stale_holder_cannot_release_new_holder(self, sync_store):
        """A worker whose lease was reclaimed leaves the new owner's flag alone."""
        start = utc_now()
        stale = sync_store.try_acquire("u1", "chat", lease_seconds=1, now=start)
        current = sync_store.try_acquire("u1", "chat", lease_seconds=60, now=start + timedelta(seconds=5))
        assert current is not None and current != stale

        released = sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 1, 1, lease_token=stale)

        assert released is False
        assert sync_store.try_acquire("u1", "chat", 60, now=start + timedelta(seconds=6)) is None
        state = sync_store.get_state("u1", "chat")
        assert state.lease_owner == current
        # The outcome itself is still recorded
        assert state.last_status == SyncStatus.COMPLETED

    def test_renew_extends_only_own_lease(self, sync_store):
        start = utc_now()
        token = sync_store.try_acquire("u1", "chat", lease_seconds=10, now=start)

        assert sync_store.renew("u1", "chat", token, lease_seconds=600, now=start + timedelta(seconds=5))
        assert sync_store.try_acquire("u1", "chat", 60, now=start + timedelta(seconds=60)) is None
        assert not sync_store.renew("u1", "chat", "someone-else", lease_seconds=600)


class TestComplete:
    """Tests for recording attempt outcomes."""

    def test_complete_records_aggregates_and_releases(self, sync_store):
        token = sync_store.try_acquire("u1", "chat", 60)
        sync_store.complete("u1", "chat", SyncStatus.COMPLETED, contact_count=3, message_count=10,
                            last_message_at=at(10), messages_processed=10, lease_token=token)

        state = sync_store.get_state("u1", "chat")
        assert not state.currently_syncing
        assert state.lease_expires_at is None
        assert state.lease_owner is None
        assert state.contact_count == 3
        assert state.message_count == 10
        assert state.last_message_at == at(10)
        assert state.last_status == SyncStatus.COMPLETED
        assert state.initial_sync_complete
        assert state.last_sync_at is not None
        assert state.total_messages_processed == 10

    def test_watermark_never_moves_back(self, sync_store):
        sync_store.ensure_state("u1", "chat")
        sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 1, 1, last_message_at=at(10))
        sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 1, 1, last_message_at=at(5))
        sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 1, 1, last_message_at=None)

        assert sync_store.get_state("u1", "chat").last_message_at == at(10)

    def test_failure_still_updates_counts(self, sync_store):
        token = sync_store.try_acquire("u1", "chat", 60)
        sync_store.complete("u1", "chat", SyncStatus.FAILED, contact_count=2, message_count=4,
                            error="chat: token revoked", lease_token=token)

        state = sync_store.get_state("u1", "chat")
        assert state.contact_count == 2
        assert state.last_status == SyncStatus.FAILED
        assert state.last_error == "chat: token revoked"
        assert not state.initial_sync_complete
        assert not state.currently_syncing

    def test_processed_total_accumulates(self, sync_store):
        sync_store.ensure_state("u1", "chat")
        sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 0, 0, messages_processed=5)
        sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 0, 0, messages_processed=3)
        assert sync_store.get_state("u1", "chat").total_messages_processed == 8


class TestReset:
    def test_reset_forgets_watermarks(self, sync_store):
        sync_store.ensure_state("u1", "chat")
        sync_store.complete("u1", "chat", SyncStatus.COMPLETED, 3, 10, last_message_at=at(10))

        sync_store.reset("u1", "chat")

        state = sync_store.get_state("u1", "chat")
        assert state.last_sync_at is None
        assert state.last_message_at is None
        assert not state.initial_sync_complete
        assert state.contact_count == 3


class TestRunHistory:
    def test_runs_recorded(self, sync_store):
        run_id = sync_store.record_run_start("u1", "chat", "scheduled")
        sync_store.record_run_complete(run_id, SyncStatus.COMPLETED, contacts_processed=2, messages_stored=5)
        sync_store.record_skipped_run("u1", "chat", "webhook", "sync already in progress")

        runs = sync_store.get_recent_runs("u1", "chat")
        assert [r["status"] for r in runs] == ["skipped", "completed"]
        assert runs[1]["trigger_source"] == "scheduled"
        assert runs[1]["messages_stored"] == 5
        assert runs[1]["duration_seconds"] is not None
        assert runs[0]["error_message"] == "sync already in progress"


class TestSyncState:
    def test_staleness(self):
        now = utc_now()
        state = SyncState(user_id="u1", platform="chat")
        assert state.is_stale(timedelta(minutes=30), now)

        state.last_sync_at = now - timedelta(minutes=10)
        assert not state.is_stale(timedelta(minutes=30), now)
        assert state.is_stale(timedelta(minutes=5), now)

    def test_to_dict(self):
        data = SyncState(user_id="u1", platform="chat", last_message_at=at(1)).to_dict()
        assert data["state"] == "idle"
        assert data["last_message_at"] == at(1).isoformat()
        assert data["last_status"] is None
