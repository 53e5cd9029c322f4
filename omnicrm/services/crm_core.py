"""
CRM core composition root.

Wires the stores, review queue, matcher, unifier, ingestor, summary writer and sync
coordinator together over one database, and exposes the operations the
HTTP layer and background jobs call. Nothing here holds module-level
state; build one core per process (or per test) with ``build_crm_core``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from config.matching_config import MatchingConfig
from omnicrm.services.contact_matcher import ContactMatcher, MatchCandidate
from omnicrm.services.contact_store import ContactStore
from omnicrm.services.contact_unifier import BatchUnificationResult, ContactUnifier, UnificationResult
from omnicrm.services.message_ingest import IngestResult, MessageIngestor, WebhookOutcome
from omnicrm.services.message_store import MessageStore, StoredMessage, ThreadSummary
from omnicrm.services.platforms import PlatformAdapter, PlatformContact, PlatformMessage
from omnicrm.services.review_queue import PendingMatch, ReviewQueueStore
from omnicrm.services.summarizer import OllamaThreadSummarizer, Summarizer
from omnicrm.services.sync_coordinator import SyncCoordinator, SyncOutcome
from omnicrm.services.sync_state import SyncStateStore
from omnicrm.services.thread_builder import ConversationThread
from omnicrm.services.thread_summary import SummaryRunResult, ThreadSummaryWriter
from omnicrm.services.ttl_cache import TTLCache
from omnicrm.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


@dataclass
class CrmCore:
    contact_store: ContactStore
    message_store: MessageStore
    sync_store: SyncStateStore
    review_queue: ReviewQueueStore
    unifier: ContactUnifier
    ingestor: MessageIngestor
    summary_writer: ThreadSummaryWriter
    coordinator: SyncCoordinator

    # Contacts

    def unify_contact(self, platform_contact: PlatformContact, platform: str, user_id: str) -> str:
        return self.unifier.unify_contact(platform_contact, platform, user_id)

    def unify(self, platform_contact: PlatformContact, platform: str, user_id: str) -> UnificationResult:
        return self.unifier.unify(platform_contact, platform, user_id)

    def unify_batch(self, contacts: list[PlatformContact], platform: str, user_id: str) -> BatchUnificationResult:
        return self.unifier.unify_batch(contacts, platform, user_id)

    def find_contact_matches(
        self,
        platform_contact: PlatformContact,
        user_id: str,
        platform: Optional[str] = None,
    ) -> list[MatchCandidate]:
        return self.unifier.find_contact_matches(platform_contact, user_id, platform)

    def register_owner_identity(
        self,
        user_id: str,
        platform: str,
        native_id: Optional[str] = None,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ):
        self.contact_store.add_owner_identity(user_id, platform, native_id, email, display_name)

    def get_pending_matches(self, user_id: str, limit: int = 50, offset: int = 0) -> tuple[list[PendingMatch], int]:
        """Queued possible matches and the total still pending."""
        return (
            self.review_queue.get_pending(user_id, limit, offset),
            self.review_queue.count_pending(user_id),
        )

    def resolve_pending_match(self, user_id: str, item_id: str, approve: bool) -> PendingMatch:
        return self.unifier.resolve_pending(user_id, item_id, approve)

    # Messages

    def get_message(self, user_id: str, platform: str, platform_message_id: str) -> Optional[StoredMessage]:
        return self.message_store.get_message(user_id, platform, platform_message_id)

    def ingest_messages(
        self,
        user_id: str,
        raw_messages: list[PlatformMessage],
        platform: Optional[str] = None,
    ) -> IngestResult:
        return self.ingestor.ingest_messages(user_id, raw_messages, platform)

    def ingest_webhook_event(
        self,
        user_id: str,
        message: PlatformMessage,
        platform: Optional[str] = None,
    ) -> WebhookOutcome:
        return self.ingestor.ingest_webhook_event(user_id, message, platform)

    def get_threads(
        self,
        user_id: str,
        platform: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> list[ConversationThread]:
        return self.ingestor.get_threads(user_id, platform, contact_id)

    def mark_read(self, user_id: str, message_ids: list[str], is_read: bool = True) -> int:
        return self.ingestor.mark_read(user_id, message_ids, is_read)

    def summarize_threads(
        self,
        user_id: str,
        thread_keys: Optional[list[str]] = None,
        force: bool = False,
    ) -> SummaryRunResult:
        return self.summary_writer.summarize_threads(user_id, thread_keys, force)

    def get_thread_summaries(self, user_id: str) -> list[ThreadSummary]:
        return self.message_store.list_thread_summaries(user_id)

    # Sync

    def get_sync_status(self, user_id: str, platform: Optional[str] = None):
        return self.coordinator.get_sync_status(user_id, platform)

    def request_sync(
        self,
        user_id: str,
        platform: str,
        force: bool = False,
        trigger: str = "manual",
    ) -> SyncOutcome:
        return self.coordinator.request_sync(user_id, platform, force, trigger)

    def sync_all_platforms(self, user_id: str, force: bool = False, trigger: str = "manual") -> dict[str, SyncOutcome]:
        return self.coordinator.sync_all_platforms(user_id, force, trigger)

    def reset_sync_state(self, user_id: str, platform: str):
        self.coordinator.reset_sync_state(user_id, platform)

    def register_adapter(self, adapter: PlatformAdapter):
        self.coordinator.register_adapter(adapter)


def build_crm_core(
    db_path: Optional[str] = None,
    adapters: Optional[list[PlatformAdapter]] = None,
    summarizer: Optional[Summarizer] = None,
    matching_config: Optional[MatchingConfig] = None,
    suppression_cache: Optional[TTLCache] = None,
    thread_cache: Optional[TTLCache] = None,
    **coordinator_options,
) -> CrmCore:
    """
    Build a fully wired core.

    Args:
        db_path: SQLite database shared by all stores (default from settings)
        adapters: Platform adapters to register with the sync coordinator
        summarizer: Thread summarizer (default: local Ollama model)
        matching_config: Matcher threshold overrides
        suppression_cache: Webhook replay cache (default: in-process)
        thread_cache: Thread view cache (default: in-process)
        **coordinator_options: staleness_minutes, lease_seconds,
            message_limit, history_days overrides
    """
    db_path = db_path or get_crm_db_path()
    contact_store = ContactStore(db_path)
    message_store = MessageStore(db_path)
    sync_store = SyncStateStore(db_path)
    review_queue = ReviewQueueStore(db_path)

    ingestor = MessageIngestor(message_store, contact_store, suppression_cache, thread_cache)
    unifier = ContactUnifier(
        contact_store,
        ContactMatcher(matching_config),
        review_queue=review_queue,
        message_linker=ingestor,
    )
    summary_writer = ThreadSummaryWriter(
        message_store,
        contact_store,
        summarizer or OllamaThreadSummarizer(),
    )
    coordinator = SyncCoordinator(
        sync_store,
        contact_store,
        message_store,
        unifier,
        ingestor,
        summary_writer,
        adapters=adapters,
        **coordinator_options,
    )
    logger.debug(f"Built CRM core over {db_path}")
    return CrmCore(
        contact_store=contact_store,
        message_store=message_store,
        sync_store=sync_store,
        review_queue=review_queue,
        unifier=unifier,
        ingestor=ingestor,
        summary_writer=summary_writer,
        coordinator=coordinator,
    )
