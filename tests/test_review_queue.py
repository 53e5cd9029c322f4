"""
Tests for the contact review queue store.
"""
import pytest

from omnicrm.services.review_queue import (
    PendingMatch,
    ReviewItemNotFoundError,
    ReviewQueueStore,
    ReviewStatus,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def queue(temp_db):
    return ReviewQueueStore(temp_db)


def match(native_id="U1", candidate="c-old", score=0.6, user_id="u1", new_contact="c-new"):
    return PendingMatch(
        user_id=user_id,
        platform="chat",
        platform_native_id=native_id,
        new_contact_id=new_contact,
        candidate_contact_id=candidate,
        score=score,
        new_contact_name="Jane",
        candidate_name="Jane Doe",
        matched_fields=["name"],
    )


class TestAddPending:
    def test_round_trip(self, queue):
        item = queue.add_pending(match())

        loaded = queue.get_by_id("u1", item.id)
        assert loaded.status == ReviewStatus.PENDING
        assert loaded.matched_fields == ["name"]
        assert loaded.candidate_name == "Jane Doe"
        assert loaded.created_at.tzinfo is not None

    def test_same_pair_queued_once(self, queue):
        first = queue.add_pending(match())
        second = queue.add_pending(match(score=0.7))

        assert second.id == first.id
        assert queue.count_pending("u1") == 1

    def test_rejected_pair_stays_rejected(self, queue):
        item = queue.add_pending(match())
        queue.mark_reviewed("u1", item.id, ReviewStatus.SKIPPED)

        again = queue.add_pending(match())
        assert again.status == ReviewStatus.SKIPPED
        assert queue.count_pending("u1") == 0


class TestListing:
    def test_most_confident_first_and_paged(self, queue):
        queue.add_pending(match("U1", score=0.5))
        queue.add_pending(match("U2", score=0.8))
        queue.add_pending(match("U3", score=0.6))

        assert [p.platform_native_id for p in queue.get_pending("u1")] == ["U2", "U3", "U1"]
        assert [p.platform_native_id for p in queue.get_pending("u1", limit=1, offset=1)] == ["U3"]
        assert queue.count_pending("u1") == 3

    def test_users_are_isolated(self, queue):
        item = queue.add_pending(match(user_id="u1"))
        assert queue.get_pending("u2") == []
        with pytest.raises(ReviewItemNotFoundError):
            queue.get_by_id("u2", item.id)


class TestDecisions:
    def test_mark_reviewed(self, queue):
        item = queue.add_pending(match())
        decided = queue.mark_reviewed("u1", item.id, ReviewStatus.MERGED)

        assert decided.status == ReviewStatus.MERGED
        assert decided.reviewed_at is not None
        assert queue.get_pending("u1") == []

    def test_cannot_decide_twice(self, queue):
        item = queue.add_pending(match())
        queue.mark_reviewed("u1", item.id, ReviewStatus.MERGED)

        with pytest.raises(ValueError):
            queue.mark_reviewed("u1", item.id, ReviewStatus.SKIPPED)
        assert queue.get_by_id("u1", item.id).status == ReviewStatus.MERGED

    def test_pending_is_not_a_decision(self, queue):
        item = queue.add_pending(match())
        with pytest.raises(ValueError):
            queue.mark_reviewed("u1", item.id, ReviewStatus.PENDING)

    def test_unknown_item(self, queue):
        with pytest.raises(ReviewItemNotFoundError):
            queue.mark_reviewed("u1", "missing", ReviewStatus.MERGED)

    def test_skip_remaining_for_identity(self, queue):
        queue.add_pending(match("U1", candidate="c-a"))
        queue.add_pending(match("U1", candidate="c-b"))
        queue.add_pending(match("U2", candidate="c-a"))

        assert queue.skip_remaining("u1", "chat", "U1") == 2
        assert [p.platform_native_id for p in queue.get_pending("u1")] == ["U2"]

    def test_skip_for_removed_contact(self, queue):
        queue.add_pending(match("U1", candidate="c-a", new_contact="c-1"))
        queue.add_pending(match("U2", candidate="c-1", new_contact="c-2"))
        queue.add_pending(match("U3", candidate="c-b", new_contact="c-3"))

        assert queue.skip_for_contact("u1", "c-1") == 2
        assert [p.platform_native_id for p in queue.get_pending("u1")] == ["U3"]
