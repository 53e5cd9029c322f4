"""
Tests for thread key derivation and thread grouping.
"""
import random

import pytest

from omnicrm.services.message_store import StoredMessage
from omnicrm.services.platforms import (
    ChatMetadata,
    Direction,
    EmailMetadata,
    GenericMetadata,
    OwnerIdentity,
    PlatformMessage,
)
from omnicrm.services.thread_builder import (
    build_thread,
    build_threads,
    counterpart_of,
    derive_thread_key,
    resolve_direction,
    summary_window,
)
from tests.fixtures.platform_fakes import at

pytestmark = pytest.mark.unit


def stored(message_id, minutes, thread_key="k1", direction=Direction.INBOUND, **fields):
    return StoredMessage(
        user_id="u1",
        platform=fields.pop("platform", "chat"),
        platform_message_id=message_id,
        timestamp=at(minutes),
        thread_key=thread_key,
        direction=direction,
        **fields,
    )


class TestDeriveThreadKey:
    """Tests for the thread key priority order."""

    def test_native_thread_wins(self):
        key = derive_thread_key("email", EmailMetadata(thread_id="18c2"), contact_id="c1")
        assert key == "email:thread:18c2"

    def test_chat_reply_uses_thread_root(self):
        metadata = ChatMetadata(channel="C1", ts="1717243300.000200", thread_ts="1717243200.000100")
        assert derive_thread_key("chat", metadata, "c1") == "chat:thread:C1:1717243200.000100"

    def test_contact_and_channel(self):
        metadata = ChatMetadata(channel="D1", ts="1717243200.000100")
        assert derive_thread_key("chat", metadata, "c1") == "chat:contact:c1:channel:D1"

    def test_contact_only(self):
        assert derive_thread_key("sms", GenericMetadata(), "c1") == "sms:contact:c1"

    def test_unresolved_sender_uses_counterpart(self):
        metadata = ChatMetadata(channel="D1")
        assert derive_thread_key("chat", metadata, None, "U9") == "chat:native:U9:channel:D1"
        assert derive_thread_key("sms", GenericMetadata(), None, None) == "sms:native:unknown"


class TestDirection:
    """Tests for inbound/outbound resolution."""

    @pytest.fixture
    def owner(self):
        owner = OwnerIdentity(user_id="u1")
        owner.add("chat", native_id="U_ME")
        owner.add("email", email="me@home.org")
        return owner

    def test_owner_native_id_is_outbound(self, owner):
        message = PlatformMessage("m1", "chat", timestamp=at(0), sender_id="U_ME")
        assert resolve_direction(message, "chat", owner) == Direction.OUTBOUND

    def test_owner_email_is_outbound(self, owner):
        message = PlatformMessage("m1", "email", timestamp=at(0), sender_email="ME@home.org")
        assert resolve_direction(message, "email", owner) == Direction.OUTBOUND

    def test_other_sender_is_inbound(self, owner):
        message = PlatformMessage("m1", "chat", timestamp=at(0), sender_id="U_JANE")
        assert resolve_direction(message, "chat", owner) == Direction.INBOUND

    def test_adapter_direction_kept(self, owner):
        message = PlatformMessage("m1", "sms", timestamp=at(0), sender_id="+1415", direction="outbound")
        assert resolve_direction(message, "sms", owner) == Direction.OUTBOUND

    def test_counterpart(self):
        inbound = PlatformMessage("m1", "chat", sender_id="U_JANE")
        outbound = PlatformMessage("m2", "email", sender_email="me@home.org", recipients=["jane@acme.io"])
        explicit = PlatformMessage("m3", "chat", sender_id="U_ME", counterpart_id="U_JANE")

        assert counterpart_of(inbound, Direction.INBOUND) == "U_JANE"
        assert counterpart_of(outbound, Direction.OUTBOUND) == "jane@acme.io"
        assert counterpart_of(explicit, Direction.OUTBOUND) == "U_JANE"


class TestBuildThreads:
    """Tests for grouping and ordering."""

    def test_order_and_duplicates_do_not_matter(self):
        """Any arrival order, with repeats, yields the same threads."""
        messages = [
            stored("m1", 1, "k1"),
            stored("m2", 2, "k2"),
            stored("m3", 3, "k1", Direction.OUTBOUND),
            stored("m4", 4, "k2"),
            stored("m5", 5, "k1"),
        ]
        expected = [(t.thread_key, [m.platform_message_id for m in t.messages]) for t in build_threads(messages)]

        shuffled = messages + [stored("m3", 3, "k1", Direction.OUTBOUND), stored("m1", 1, "k1")]
        random.Random(3).shuffle(shuffled)
        actual = [(t.thread_key, [m.platform_message_id for m in t.messages]) for t in build_threads(shuffled)]

        assert actual == expected
        assert expected == [("k1", ["m1", "m3", "m5"]), ("k2", ["m2", "m4"])]

    def test_newest_activity_first(self):
        threads = build_threads([stored("a", 10, "old"), stored("b", 20, "new")])
        assert [t.thread_key for t in threads] == ["new", "old"]

    def test_same_timestamp_ordered_by_message_id(self):
        thread = build_thread("k", [stored("m2", 1), stored("m1", 1)])
        assert [m.platform_message_id for m in thread.messages] == ["m1", "m2"]

    def test_thread_properties(self):
        thread = build_thread("k", [
            stored("m1", 1, metadata=EmailMetadata(subject_line="Plan"), contact_id="c1"),
            stored("m2", 2, direction=Direction.OUTBOUND),
            stored("m3", 3),
            stored("m4", 4, is_read=True),
        ])

        assert thread.message_count == 4
        assert thread.last_activity == at(4)
        assert thread.unread_count == 2
        assert thread.subject == "Plan"
        assert thread.contact_id == "c1"
        data = thread.to_dict(include_messages=False)
        assert "messages" not in data
        assert data["unread_count"] == 2

    def test_summary_window(self):
        thread = build_thread("k", [stored(f"m{i}", i) for i in range(5)])
        assert [m.platform_message_id for m in summary_window(thread, 2)] == ["m3", "m4"]
        assert len(summary_window(thread, 50)) == 5
