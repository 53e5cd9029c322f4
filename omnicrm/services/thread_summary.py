"""
Thread Summary Writer.

Re-summarizes threads whose message set changed since their last summary
and upserts exactly one ThreadSummary per (user, thread key).

A thread counts as changed when it has no summary yet, or when its message
count or latest message timestamp differs from what the stored summary
recorded. Long threads are summarized from their most recent window only;
the stored summary still records the true message count.

If the summarizer fails for a thread, the previous summary is kept and the
remaining threads are still processed.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from config.settings import settings
from omnicrm.services.contact_store import ContactStore
from omnicrm.services.message_store import MessageStore, ThreadSummary
from omnicrm.services.platforms import Direction
from omnicrm.services.resilience import ItemFailure, SummarizerError
from omnicrm.services.summarizer import Summarizer, count_unresponded
from omnicrm.services.thread_builder import ConversationThread, build_thread, summary_window

logger = logging.getLogger(__name__)


@dataclass
class SummaryRunResult:
    summarized: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: list[ItemFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "summarized": list(self.summarized),
            "unchanged": list(self.unchanged),
            "failed": [f.to_dict() for f in self.failed],
        }


def needs_summary(thread: ConversationThread, previous: Optional[ThreadSummary]) -> bool:
    """True if the thread changed since ``previous`` was written."""
    if previous is None:
        return True
    return (
        previous.total_message_count != thread.message_count
        or previous.last_message_at != thread.last_activity
    )


class ThreadSummaryWriter:
    """
    Drives the summarizer over changed threads and stores the results.

    Usage:
        writer = ThreadSummaryWriter(message_store, contact_store, summarizer)
        result = writer.summarize_threads(user_id, ingest_result.threads_affected)
    """

    def __init__(
        self,
        message_store: MessageStore,
        contact_store: ContactStore,
        summarizer: Summarizer,
        window: Optional[int] = None,
    ):
        self.message_store = message_store
        self.contact_store = contact_store
        self.summarizer = summarizer
        self.window = window if window is not None else settings.thread_summary_window

    def summarize_threads(
        self,
        user_id: str,
        thread_keys: Optional[list[str]] = None,
        force: bool = False,
    ) -> SummaryRunResult:
        """
        Summarize the given threads (default: all of the user's threads).

        Args:
            user_id: Owning user
            thread_keys: Threads to consider; unchanged ones are skipped
            force: Re-summarize even unchanged threads

        Returns:
            SummaryRunResult listing summarized, unchanged and failed threads
        """
        result = SummaryRunResult()
        if thread_keys is None:
            thread_keys = [m.thread_key for m in self.message_store.list_messages(user_id)]
        keys = sorted(set(thread_keys))
        if not keys:
            return result

        owner = self.contact_store.get_owner_identity(user_id)

        for key in keys:
            thread = build_thread(key, self.message_store.get_thread_messages(user_id, key))
            if not thread.messages:
                continue

            previous = self.message_store.get_thread_summary(user_id, key)
            if not force and not needs_summary(thread, previous):
                result.unchanged.append(key)
                continue

            window = summary_window(thread, self.window)
            contact_name = self._contact_name(thread)
            try:
                analysis = self.summarizer.analyze(window, owner, contact_name)
            except SummarizerError as e:
                logger.warning(f"Summarizer failed for thread {key}, keeping previous summary: {e}")
                result.failed.append(ItemFailure(item_id=key, stage="summarize", error=str(e)))
                continue
            except Exception as e:
                # Third-party summarizers are not bound to raise SummarizerError
                logger.warning(f"Summarizer raised {type(e).__name__} for thread {key}, keeping previous summary: {e}")
                result.failed.append(ItemFailure(item_id=key, stage="summarize", error=f"{type(e).__name__}: {e}"))
                continue

            self.message_store.upsert_thread_summary(ThreadSummary(
                user_id=user_id,
                thread_key=key,
                contact_id=thread.contact_id,
                platform=thread.platform,
                summary=analysis.summary,
                key_topics=analysis.key_topics,
                current_status=analysis.current_status,
                urgency=analysis.urgency,
                action_items=analysis.action_items,
                unresponded_count=count_unresponded(thread.messages),
                total_message_count=thread.message_count,
                summarized_message_count=len(window),
                last_message_at=thread.last_activity,
            ))
            result.summarized.append(key)
            if len(window) < thread.message_count:
                logger.debug(f"Summarized last {len(window)} of {thread.message_count} messages in {key}")

        logger.info(
            f"Thread summaries for {user_id}: {len(result.summarized)} written, "
            f"{len(result.unchanged)} unchanged, {len(result.failed)} failed"
        )
        return result

    def _contact_name(self, thread: ConversationThread) -> str:
        if thread.contact_id:
            contact = self.contact_store.get_contact(thread.contact_id)
            if contact and contact.full_name:
                return contact.full_name
        for message in thread.messages:
            if message.direction == Direction.INBOUND and (message.sender_name or message.sender_email):
                return message.sender_name or message.sender_email
        return "Unknown contact"
