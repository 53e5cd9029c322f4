"""
Message ingestion for OmniCRM.

Accepts messages from polling syncs and webhooks, which may arrive
duplicated, out of order and concurrently, and stores each distinct
message exactly once with its direction, resolved contact and thread key.

Two dedup layers:
- a short-lived suppression cache that drops webhook replays before any
  database work (best-effort, in-process)
- the UNIQUE(user_id, platform, platform_message_id) constraint, which is
  the actual guarantee
"""
import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from config.settings import settings
from omnicrm.services.contact_store import ContactStore
from omnicrm.services.message_store import MessageStore, StoredMessage
from omnicrm.services.platforms import ChatMetadata, OwnerIdentity, PlatformMessage
from omnicrm.services.resilience import ItemFailure
from omnicrm.services.thread_builder import (
    ConversationThread,
    build_thread,
    build_threads,
    counterpart_of,
    derive_thread_key,
    resolve_direction,
)
from omnicrm.services.ttl_cache import InMemoryTTLCache, TTLCache

logger = logging.getLogger(__name__)

# Chat event subtypes that are not conversation
IGNORED_CHAT_SUBTYPES = {
    "bot_message",
    "channel_join",
    "channel_leave",
    "message_changed",
    "message_deleted",
}


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE_IGNORED = "duplicate_ignored"
    IGNORED = "ignored"


@dataclass
class IngestResult:
    stored: int = 0
    duplicates: int = 0
    threads_affected: list[str] = field(default_factory=list)
    errors: list[ItemFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "stored": self.stored,
            "duplicates": self.duplicates,
            "threads_affected": list(self.threads_affected),
            "errors": [e.to_dict() for e in self.errors],
        }


class MessageIngestor:
    """
    Deduplicating message writer plus cached thread views.

    Usage:
        ingestor = MessageIngestor(message_store, contact_store)
        result = ingestor.ingest_messages(user_id, messages)
    """

    def __init__(
        self,
        message_store: MessageStore,
        contact_store: ContactStore,
        suppression_cache: Optional[TTLCache] = None,
        thread_cache: Optional[TTLCache] = None,
    ):
        self.message_store = message_store
        self.contact_store = contact_store
        self.suppression_cache = suppression_cache or InMemoryTTLCache(
            default_ttl_seconds=settings.dedup_ttl_seconds
        )
        self.thread_cache = thread_cache or InMemoryTTLCache(
            default_ttl_seconds=settings.thread_cache_ttl_seconds
        )

    def ingest_messages(
        self,
        user_id: str,
        messages: list[PlatformMessage],
        platform: Optional[str] = None,
    ) -> IngestResult:
        """
        Store every message not already stored for this user.

        Args:
            user_id: Owning user
            messages: Messages in any order, possibly repeated
            platform: Platform for messages that do not carry their own

        Returns:
            IngestResult; per-message problems are in ``errors`` and do not
            stop the batch
        """
        result = IngestResult()
        affected: set[str] = set()
        owner = self.contact_store.get_owner_identity(user_id)
        contact_ids: dict[tuple[str, str], Optional[str]] = {}

        for message in messages:
            message_platform = message.platform or platform
            try:
                stored = self._to_stored(user_id, message, message_platform, owner, contact_ids)
                if self.message_store.insert_message(stored):
                    result.stored += 1
                    affected.add(stored.thread_key)
                    affected.update(self._adopt_root(user_id, stored))
                else:
                    result.duplicates += 1
                    logger.debug(f"Duplicate {message_platform}:{message.platform_message_id} ignored")
            except sqlite3.OperationalError:
                raise
            except Exception as e:
                logger.warning(
                    f"Failed to ingest {message_platform}:{message.platform_message_id}: {e}"
                )
                result.errors.append(ItemFailure(
                    item_id=message.platform_message_id or "<missing id>",
                    stage="ingest",
                    error=str(e),
                ))

        result.threads_affected = sorted(affected)
        if result.stored:
            self.invalidate_threads(user_id)
            logger.info(
                f"Ingested {result.stored} messages for {user_id} "
                f"({result.duplicates} duplicates, {len(affected)} threads)"
            )
        return result

    def _to_stored(
        self,
        user_id: str,
        message: PlatformMessage,
        platform: Optional[str],
        owner: OwnerIdentity,
        contact_ids: dict[tuple[str, str], Optional[str]],
    ) -> StoredMessage:
        if not platform:
            raise ValueError("Message has no platform")
        if not message.platform_message_id:
            raise ValueError("Message has no platform message id")
        if message.timestamp is None:
            raise ValueError("Message has no timestamp")

        direction = resolve_direction(message, platform, owner)
        counterpart = counterpart_of(message, direction)

        contact_id = None
        if counterpart:
            key = (platform, counterpart)
            if key not in contact_ids:
                identity = self.contact_store.get_identity(user_id, platform, counterpart)
                contact_ids[key] = identity.contact_id if identity else None
            contact_id = contact_ids[key]

        thread_root = message.metadata.thread_root_id()
        thread_key = derive_thread_key(platform, message.metadata, contact_id, counterpart)
        if thread_root and not message.metadata.native_thread_id():
            # A root delivered after its replies joins their thread
            root_key = f"{platform}:thread:{thread_root}"
            if self.message_store.thread_exists(user_id, root_key):
                thread_key = root_key

        return StoredMessage(
            user_id=user_id,
            platform=platform,
            platform_message_id=message.platform_message_id,
            timestamp=message.timestamp,
            thread_key=thread_key,
            direction=direction,
            content=message.content or "",
            contact_id=contact_id,
            counterpart_id=counterpart,
            thread_root=thread_root,
            sender_id=message.sender_id,
            sender_email=message.sender_email,
            sender_name=message.sender_name,
            metadata=message.metadata,
        )

    def _adopt_root(self, user_id: str, stored: StoredMessage) -> list[str]:
        """Pull an already-stored root into the thread a new reply belongs to."""
        native = stored.metadata.native_thread_id()
        if not native:
            return []
        previous = self.message_store.adopt_thread_root(user_id, stored.platform, native, stored.thread_key)
        if previous:
            self.message_store.drop_orphaned_summaries(user_id, previous)
            logger.info(f"Moved root {native} into {stored.thread_key} from {previous}")
        return previous

    def link_identity(
        self,
        user_id: str,
        platform: str,
        platform_native_id: str,
        contact_id: Optional[str],
    ) -> list[str]:
        """
        Re-file stored messages with a counterpart under its unified contact.

        Messages stored before the counterpart was unified (or while it was
        linked to another contact) carry a stale contact and thread key.
        Native threads keep their key and only gain the contact.

        Returns:
            Thread keys that changed, old and new
        """
        messages = self.message_store.list_counterpart_messages(user_id, platform, platform_native_id)
        native_prefix = f"{platform}:thread:"
        links = []
        old_keys: set[str] = set()
        new_keys: set[str] = set()
        for message in messages:
            if message.thread_key.startswith(native_prefix):
                thread_key = message.thread_key
            else:
                thread_key = derive_thread_key(platform, message.metadata, contact_id, platform_native_id)
            if thread_key == message.thread_key and message.contact_id == contact_id:
                continue
            links.append((message.id, contact_id, thread_key))
            old_keys.add(message.thread_key)
            new_keys.add(thread_key)

        if not links:
            return []
        self.message_store.relink_messages(user_id, links)
        self.message_store.drop_orphaned_summaries(user_id, sorted(old_keys - new_keys))
        self.invalidate_threads(user_id)
        logger.info(
            f"Linked {len(links)} {platform} messages from {platform_native_id} "
            f"to contact {contact_id}"
        )
        return sorted(old_keys | new_keys)

    def ingest_webhook_event(
        self,
        user_id: str,
        message: PlatformMessage,
        platform: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        Ingest a single pushed message.

        Replays inside the suppression window are dropped before touching
        storage. Chat events outside direct messages, bot posts and
        join/leave notices are ignored.

        Raises:
            ValueError: the event is malformed (no id or timestamp)
        """
        platform = message.platform or platform
        if self._is_ignorable(message):
            logger.debug(f"Ignoring {platform} event {message.platform_message_id}")
            return WebhookOutcome.IGNORED

        replay_key = message.metadata.replay_key() or message.platform_message_id
        cache_key = f"{user_id}:{platform}:{replay_key}"
        if not self.suppression_cache.add(cache_key):
            logger.debug(f"Suppressed replay of {cache_key}")
            return WebhookOutcome.DUPLICATE_IGNORED

        result = self.ingest_messages(user_id, [message], platform)
        if result.errors:
            # Let a corrected redelivery through
            self.suppression_cache.delete(cache_key)
            raise ValueError(result.errors[0].error)
        if result.duplicates:
            return WebhookOutcome.DUPLICATE_IGNORED
        return WebhookOutcome.PROCESSED

    def _is_ignorable(self, message: PlatformMessage) -> bool:
        metadata = message.metadata
        if not isinstance(metadata, ChatMetadata):
            return False
        if metadata.channel_type and metadata.channel_type != "im":
            return True
        if metadata.bot_id or metadata.subtype in IGNORED_CHAT_SUBTYPES:
            return True
        # Bot users carry "B"-prefixed ids on the chat platform
        if message.sender_id and message.sender_id.startswith("B"):
            return True
        return False

    # -------------------------------------------------------------------------
    # Thread views
    # -------------------------------------------------------------------------

    def get_threads(
        self,
        user_id: str,
        platform: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> list[ConversationThread]:
        """
        A user's conversation threads, newest activity first.

        The full partition is cached per user until new messages arrive or
        the TTL runs out.
        """
        cache_key = f"threads:{user_id}"
        threads = self.thread_cache.get(cache_key)
        if threads is None:
            threads = build_threads(self.message_store.list_messages(user_id))
            self.thread_cache.set(cache_key, threads)

        if platform:
            threads = [t for t in threads if t.platform == platform]
        if contact_id:
            threads = [t for t in threads if t.contact_id == contact_id]
        return threads

    def get_thread(self, user_id: str, thread_key: str) -> Optional[ConversationThread]:
        messages = self.message_store.get_thread_messages(user_id, thread_key)
        if not messages:
            return None
        return build_thread(thread_key, messages)

    def invalidate_threads(self, user_id: str):
        self.thread_cache.delete(f"threads:{user_id}")

    def mark_read(self, user_id: str, message_ids: list[str], is_read: bool = True) -> int:
        updated = self.message_store.mark_read(user_id, message_ids, is_read)
        if updated:
            self.invalidate_threads(user_id)
        return updated
