"""
Tests for message ingestion, deduplication and thread views.
"""
import threading

import pytest

from omnicrm.services.contact_unifier import ContactUnifier
from omnicrm.services.message_ingest import MessageIngestor, WebhookOutcome
from omnicrm.services.message_store import StoredMessage, ThreadSummary
from omnicrm.services.platforms import ChatMetadata, Direction, PlatformContact, PlatformMessage
from tests.fixtures.platform_fakes import at, chat_message, email_message

pytestmark = pytest.mark.unit


@pytest.fixture
def ingestor(message_store, contact_store):
    return MessageIngestor(message_store, contact_store)


@pytest.fixture
def jane_id(contact_store):
    """Jane is a known chat contact."""
    unifier = ContactUnifier(contact_store)
    return unifier.unify_contact(PlatformContact("U_JANE", name="Jane Doe"), "chat", "u1")


class TestIngestMessages:
    """Tests for batch ingestion."""

    def test_redelivery_stores_once(self, ingestor, message_store):
        """Delivering the same batch three times stores each message once."""
        batch = [chat_message(f"m{i}", i) for i in range(4)]

        first = ingestor.ingest_messages("u1", batch)
        second = ingestor.ingest_messages("u1", list(reversed(batch)))
        third = ingestor.ingest_messages("u1", batch)

        assert first.stored == 4
        assert second.stored == 0 and second.duplicates == 4
        assert third.stored == 0
        assert message_store.count_messages("u1") == 4

    def test_duplicates_within_one_batch(self, ingestor):
        result = ingestor.ingest_messages("u1", [chat_message("m1", 1), chat_message("m1", 1), chat_message("m2", 2)])
        assert result.stored == 2
        assert result.duplicates == 1

    def test_same_id_on_other_platform_is_distinct(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [chat_message("m1", 1)])
        ingestor.ingest_messages("u1", [email_message("m1", 1)])
        assert message_store.count_messages("u1") == 2

    def test_same_id_for_other_user_is_distinct(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [chat_message("m1", 1)])
        ingestor.ingest_messages("u2", [chat_message("m1", 1)])
        assert message_store.count_messages("u1") == 1
        assert message_store.count_messages("u2") == 1

    def test_known_sender_resolved_to_contact(self, ingestor, message_store, jane_id):
        result = ingestor.ingest_messages("u1", [chat_message("m1", 1)])

        stored = message_store.get_message("u1", "chat", "m1")
        assert stored.contact_id == jane_id
        assert stored.direction == Direction.INBOUND
        assert result.threads_affected == [f"chat:contact:{jane_id}:channel:D_JANE"]

    def test_outbound_lands_in_same_thread(self, ingestor, contact_store, message_store, jane_id):
        """The owner's reply joins the contact's thread."""
        contact_store.add_owner_identity("u1", "chat", native_id="U_ME")
        ingestor.ingest_messages("u1", [
            chat_message("m1", 1),
            chat_message("m2", 2, sender_id="U_ME", counterpart_id="U_JANE"),
        ])

        reply = message_store.get_message("u1", "chat", "m2")
        assert reply.direction == Direction.OUTBOUND
        assert reply.contact_id == jane_id
        assert reply.thread_key == message_store.get_message("u1", "chat", "m1").thread_key

    def test_unknown_sender_kept_without_contact(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [chat_message("m1", 1, sender_id="U_X")])

        stored = message_store.get_message("u1", "chat", "m1")
        assert stored.contact_id is None
        assert stored.thread_key == "chat:native:U_X:channel:D_JANE"

    def test_email_threads_by_native_thread(self, ingestor):
        result = ingestor.ingest_messages("u1", [
            email_message("e1", 1, thread_id="t-1"),
            email_message("e2", 2, sender_email="sam@acme.io", thread_id="t-1"),
        ])
        assert result.threads_affected == ["email:thread:t-1"]

    def test_bad_message_does_not_stop_batch(self, ingestor, message_store):
        result = ingestor.ingest_messages("u1", [
            chat_message("m1", 1),
            PlatformMessage("bad", "chat", sender_id="U_JANE"),
            PlatformMessage("no-platform", timestamp=at(2)),
            chat_message("m2", 2),
        ])

        assert result.stored == 2
        assert [(e.item_id, e.stage) for e in result.errors] == [("bad", "ingest"), ("no-platform", "ingest")]
        assert message_store.count_messages("u1") == 2

    def test_default_platform_applies(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [PlatformMessage("s1", timestamp=at(1), sender_id="+14155550134")], "sms")
        assert message_store.get_message("u1", "sms", "s1") is not None

    def test_concurrent_ingest(self, message_store, contact_store):
        """Racing ingestors of the same messages still store each once."""
        batch = [chat_message(f"m{i}", i) for i in range(10)]
        barrier = threading.Barrier(4)
        errors = []

        def worker():
            ingestor = MessageIngestor(message_store, contact_store)
            barrier.wait()
            try:
                ingestor.ingest_messages("u1", batch)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert message_store.count_messages("u1") == 10


class TestWebhook:
    """Tests for single-event webhook ingestion."""

    def test_replay_suppressed(self, ingestor):
        message = chat_message("m1", 1)
        assert ingestor.ingest_webhook_event("u1", message) == WebhookOutcome.PROCESSED
        assert ingestor.ingest_webhook_event("u1", message) == WebhookOutcome.DUPLICATE_IGNORED

    def test_replay_after_restart_caught_by_storage(self, message_store, contact_store):
        """A fresh process has an empty cache; the unique constraint still holds."""
        message = chat_message("m1", 1)
        MessageIngestor(message_store, contact_store).ingest_webhook_event("u1", message)

        restarted = MessageIngestor(message_store, contact_store)
        assert restarted.ingest_webhook_event("u1", message) == WebhookOutcome.DUPLICATE_IGNORED
        assert message_store.count_messages("u1") == 1

    def test_webhook_then_poll(self, ingestor, message_store):
        """A message first pushed, then polled, is stored once."""
        ingestor.ingest_webhook_event("u1", chat_message("m1", 1))
        result = ingestor.ingest_messages("u1", [chat_message("m1", 1), chat_message("m2", 2)])
        assert result.stored == 1
        assert message_store.count_messages("u1") == 2

    @pytest.mark.parametrize("overrides", [
        {"channel_type": "channel"},
        {"bot_id": "B01"},
        {"subtype": "channel_join"},
    ])
    def test_non_conversation_events_ignored(self, ingestor, message_store, overrides):
        metadata = ChatMetadata(channel="D1", channel_type="im", ts="1717243200.000100", team_id="T1")
        for key, value in overrides.items():
            setattr(metadata, key, value)
        message = PlatformMessage("m1", "chat", timestamp=at(1), sender_id="U_JANE", metadata=metadata)

        assert ingestor.ingest_webhook_event("u1", message) == WebhookOutcome.IGNORED
        assert message_store.count_messages("u1") == 0

    def test_bot_sender_and_join_notice_ignored(self, ingestor):
        assert ingestor.ingest_webhook_event("u1", chat_message("m1", 1, sender_id="B0BOT")) == WebhookOutcome.IGNORED
        joined = chat_message("m2", 2, content="<@U_JANE> has joined the channel")
        joined.metadata.subtype = "channel_join"
        assert ingestor.ingest_webhook_event("u1", joined) == WebhookOutcome.IGNORED

    def test_dm_mentioning_a_join_is_kept(self, ingestor, message_store):
        """Only the join subtype marks a notice; ordinary text never does."""
        message = chat_message("m1", 1, content="Sam has joined the team, say hi!")
        assert ingestor.ingest_webhook_event("u1", message) == WebhookOutcome.PROCESSED
        assert message_store.count_messages("u1") == 1

    def test_malformed_event_can_be_redelivered(self, ingestor):
        """A rejected event does not poison the suppression cache."""
        metadata = ChatMetadata(channel="D1", channel_type="im", ts="1717243200.000100", team_id="T1")
        broken = PlatformMessage("m1", "chat", sender_id="U_JANE", metadata=metadata)
        with pytest.raises(ValueError):
            ingestor.ingest_webhook_event("u1", broken)

        fixed = PlatformMessage("m1", "chat", timestamp=at(1), sender_id="U_JANE", metadata=metadata)
        assert ingestor.ingest_webhook_event("u1", fixed) == WebhookOutcome.PROCESSED


class TestThreadViews:
    """Tests for cached thread views."""

    def test_threads_reflect_new_messages(self, ingestor):
        ingestor.ingest_messages("u1", [chat_message("m1", 1)])
        assert ingestor.get_threads("u1")[0].message_count == 1

        ingestor.ingest_messages("u1", [chat_message("m2", 2)])
        assert ingestor.get_threads("u1")[0].message_count == 2

    def test_thread_view_is_cached(self, ingestor, message_store):
        """Writes that bypass the ingestor are not seen until invalidation."""
        ingestor.ingest_messages("u1", [chat_message("m1", 1)])
        thread = ingestor.get_threads("u1")[0]

        message_store.insert_message(StoredMessage(
            user_id="u1",
            platform="chat",
            platform_message_id="side",
            timestamp=at(5),
            thread_key=thread.thread_key,
        ))
        assert ingestor.get_threads("u1")[0].message_count == 1

        ingestor.invalidate_threads("u1")
        assert ingestor.get_threads("u1")[0].message_count == 2

    def test_filters(self, ingestor, jane_id):
        ingestor.ingest_messages("u1", [
            chat_message("m1", 1),
            chat_message("m2", 2, sender_id="U_X", channel="D_X"),
            email_message("e1", 3),
        ])

        assert len(ingestor.get_threads("u1")) == 3
        assert len(ingestor.get_threads("u1", platform="chat")) == 2
        assert [t.contact_id for t in ingestor.get_threads("u1", contact_id=jane_id)] == [jane_id]

    def test_mark_read_updates_unread(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [chat_message("m1", 1), chat_message("m2", 2)])
        assert ingestor.get_threads("u1")[0].unread_count == 2

        stored_id = message_store.get_message("u1", "chat", "m1").id
        assert ingestor.mark_read("u1", [stored_id]) == 1
        assert ingestor.get_threads("u1")[0].unread_count == 1

    def test_get_thread(self, ingestor):
        result = ingestor.ingest_messages("u1", [chat_message("m2", 2), chat_message("m1", 1)])
        thread = ingestor.get_thread("u1", result.threads_affected[0])
        assert [m.platform_message_id for m in thread.messages] == ["m1", "m2"]
        assert ingestor.get_thread("u1", "missing") is None


def root_ts(minutes: int) -> str:
    return chat_message("x", minutes).metadata.ts


class TestLateThreadRoots:
    """A chat root and its replies end up in one thread whatever the arrival order."""

    def test_root_before_replies_is_moved_into_thread(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [chat_message("root", 1)])
        result = ingestor.ingest_messages("u1", [chat_message("r1", 2, thread_ts=root_ts(1))])

        thread_key = f"chat:thread:D_JANE:{root_ts(1)}"
        assert message_store.get_message("u1", "chat", "root").thread_key == thread_key
        assert thread_key in result.threads_affected
        assert "chat:native:U_JANE:channel:D_JANE" in result.threads_affected
        assert [t.thread_key for t in ingestor.get_threads("u1")] == [thread_key]

    def test_root_after_replies_joins_thread(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [chat_message("r1", 2, thread_ts=root_ts(1))])
        ingestor.ingest_messages("u1", [chat_message("root", 1)])

        thread = ingestor.get_threads("u1")
        assert len(thread) == 1
        assert [m.platform_message_id for m in thread[0].messages] == ["root", "r1"]

    def test_root_and_reply_in_one_batch(self, ingestor):
        ingestor.ingest_messages("u1", [chat_message("root", 1), chat_message("r1", 2, thread_ts=root_ts(1))])
        assert len(ingestor.get_threads("u1")) == 1

    def test_unrelated_dm_stays_in_channel_thread(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [chat_message("root", 1), chat_message("other", 3)])
        ingestor.ingest_messages("u1", [chat_message("r1", 2, thread_ts=root_ts(1))])

        assert message_store.get_message("u1", "chat", "other").thread_key == "chat:native:U_JANE:channel:D_JANE"
        assert len(ingestor.get_threads("u1")) == 2

    def test_stale_summary_of_emptied_thread_dropped(self, ingestor, message_store):
        ingestor.ingest_messages("u1", [chat_message("root", 1)])
        old_key = "chat:native:U_JANE:channel:D_JANE"
        message_store.upsert_thread_summary(ThreadSummary(user_id="u1", thread_key=old_key, platform="chat"))

        ingestor.ingest_messages("u1", [chat_message("r1", 2, thread_ts=root_ts(1))])
        assert message_store.get_thread_summary("u1", old_key) is None


def sms(message_id, minutes, sender="+14155550134"):
    return PlatformMessage(message_id, "sms", content="hey", timestamp=at(minutes), sender_id=sender)


class TestLinkIdentity:
    """Messages stored before their sender was unified are re-filed under the contact."""

    def test_messages_before_and_after_unification_share_thread(self, ingestor, contact_store, message_store):
        ingestor.ingest_messages("u1", [sms("s1", 1)])
        assert message_store.get_message("u1", "sms", "s1").thread_key == "sms:native:+14155550134"

        contact_id = ContactUnifier(contact_store).unify_contact(
            PlatformContact("+14155550134", name="Pat Lee", phone="+14155550134"), "sms", "u1"
        )
        changed = ingestor.link_identity("u1", "sms", "+14155550134", contact_id)
        ingestor.ingest_messages("u1", [sms("s2", 2)])

        key = f"sms:contact:{contact_id}"
        assert changed == sorted(["sms:native:+14155550134", key])
        for message_id in ("s1", "s2"):
            stored = message_store.get_message("u1", "sms", message_id)
            assert stored.thread_key == key
            assert stored.contact_id == contact_id
        assert [t.thread_key for t in ingestor.get_threads("u1")] == [key]

    def test_native_threads_keep_key(self, ingestor, message_store, contact_store):
        ingestor.ingest_messages("u1", [email_message("e1", 1)])
        contact_id = ContactUnifier(contact_store).unify_contact(
            PlatformContact("jane@acme.io", name="Jane Doe", email="jane@acme.io"), "email", "u1"
        )

        assert ingestor.link_identity("u1", "email", "jane@acme.io", contact_id) == ["email:thread:thread-1"]
        stored = message_store.get_message("u1", "email", "e1")
        assert stored.thread_key == "email:thread:thread-1"
        assert stored.contact_id == contact_id

    def test_nothing_to_relink(self, ingestor):
        assert ingestor.link_identity("u1", "sms", "+14155550134", "c-1") == []
