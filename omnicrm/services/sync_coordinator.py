"""
Sync Coordinator for OmniCRM.

Consulted on every sync trigger (manual, scheduled, webhook-driven) for a
(user, platform) pair. Each attempt moves Idle -> Syncing -> one of
Completed / Failed / Skipped -> Idle:

- push-capable platform with cached state younger than the staleness
  threshold, not forced: serve the cache, no external calls
- otherwise take the single-flight flag; if another sync holds it the
  attempt is Skipped
- ``force`` bypasses the staleness check, never the flag

A run fetches contacts, filters bots, unifies, fetches messages since the
watermark, ingests them and re-summarizes the threads they touched. The
cached counts and last_sync_at are written when the attempt ends, whether
it succeeded or not.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from config.settings import settings
from omnicrm.services.contact_store import ContactStore
from omnicrm.services.contact_unifier import ContactUnifier, UnifyAction
from omnicrm.services.message_ingest import MessageIngestor
from omnicrm.services.message_store import MessageStore
from omnicrm.services.platforms import PlatformAdapter, PlatformMessage
from omnicrm.services.resilience import (
    AuthExpiredError,
    ItemFailure,
    PlatformError,
    RateLimitedError,
    user_friendly_error,
)
from omnicrm.services.sync_state import SyncState, SyncStateStore, SyncStatus
from omnicrm.services.thread_summary import ThreadSummaryWriter
from omnicrm.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


class UnknownPlatformError(LookupError):
    """No adapter is registered for the requested platform."""


@dataclass
class SyncOutcome:
    """What one sync attempt did."""
    user_id: str
    platform: str
    status: SyncStatus
    from_cache: bool = False
    reason: Optional[str] = None

    contacts_fetched: int = 0
    contacts_created: int = 0
    contacts_merged: int = 0
    bots_filtered: int = 0
    messages_fetched: int = 0
    messages_stored: int = 0
    duplicates: int = 0
    threads_summarized: int = 0

    # Cached aggregates after the attempt
    contact_count: int = 0
    message_count: int = 0
    last_message_at: Optional[datetime] = None

    errors: list[str] = field(default_factory=list)
    item_failures: list[ItemFailure] = field(default_factory=list)
    reconnect_required: bool = False
    retry_after: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "platform": self.platform,
            "status": self.status.value,
            "from_cache": self.from_cache,
            "reason": self.reason,
            "contacts_fetched": self.contacts_fetched,
            "contacts_created": self.contacts_created,
            "contacts_merged": self.contacts_merged,
            "bots_filtered": self.bots_filtered,
            "messages_fetched": self.messages_fetched,
            "messages_stored": self.messages_stored,
            "duplicates": self.duplicates,
            "threads_summarized": self.threads_summarized,
            "contact_count": self.contact_count,
            "message_count": self.message_count,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "errors": list(self.errors),
            "item_failures": [f.to_dict() for f in self.item_failures],
            "reconnect_required": self.reconnect_required,
            "retry_after": self.retry_after,
        }


class SyncCoordinator:
    """
    Orchestrates platform syncs with caching and single-flight execution.

    Usage:
        coordinator = SyncCoordinator(sync_store, contact_store, message_store,
                                      unifier, ingestor, summary_writer,
                                      adapters=[gmail_adapter, chat_adapter])
        outcome = coordinator.request_sync(user_id, "email")
    """

    def __init__(
        self,
        sync_store: SyncStateStore,
        contact_store: ContactStore,
        message_store: MessageStore,
        unifier: ContactUnifier,
        ingestor: MessageIngestor,
        summary_writer: Optional[ThreadSummaryWriter] = None,
        adapters: Optional[list[PlatformAdapter]] = None,
        staleness_minutes: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        message_limit: Optional[int] = None,
        history_days: Optional[int] = None,
    ):
        self.sync_store = sync_store
        self.contact_store = contact_store
        self.message_store = message_store
        self.unifier = unifier
        self.ingestor = ingestor
        self.summary_writer = summary_writer
        self.adapters: dict[str, PlatformAdapter] = {}
        for adapter in adapters or []:
            self.register_adapter(adapter)

        self.staleness = timedelta(minutes=staleness_minutes if staleness_minutes is not None
                                   else settings.sync_staleness_minutes)
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.sync_lease_seconds
        self.message_limit = message_limit if message_limit is not None else settings.sync_message_limit
        self.history_days = history_days if history_days is not None else settings.sync_history_days

    def register_adapter(self, adapter: PlatformAdapter):
        self.adapters[adapter.platform] = adapter

    def _get_adapter(self, platform: str) -> PlatformAdapter:
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise UnknownPlatformError(f"No adapter registered for platform: {platform}")
        return adapter

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_sync_status(self, user_id: str, platform: Optional[str] = None):
        """
        Sync state for one platform, or for every platform the user has
        synced when ``platform`` is None.

        A platform never synced yields a blank, unsaved SyncState.
        """
        if platform is None:
            return self.sync_store.list_states(user_id)
        return self.sync_store.get_state(user_id, platform) or SyncState(user_id=user_id, platform=platform)

    def reset_sync_state(self, user_id: str, platform: str):
        """Forget watermarks so the next sync refetches full history."""
        self.sync_store.reset(user_id, platform)
        self.ingestor.invalidate_threads(user_id)

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def request_sync(
        self,
        user_id: str,
        platform: str,
        force: bool = False,
        trigger: str = "manual",
    ) -> SyncOutcome:
        """
        Decide whether to sync and, if so, run the sync.

        Args:
            user_id: Owning user
            platform: Registered adapter platform
            force: Ignore the freshness of cached state
            trigger: Audit label ("manual", "scheduled", "webhook")

        Returns:
            SyncOutcome with status completed, skipped or failed

        Raises:
            UnknownPlatformError: no adapter is registered for ``platform``
        """
        adapter = self._get_adapter(platform)
        self.sync_store.ensure_state(user_id, platform)
        state = self.sync_store.get_state(user_id, platform)

        if not force and adapter.supports_push and not state.is_stale(self.staleness):
            logger.info(f"Serving cached {platform} state for {user_id} (last sync {state.last_sync_at})")
            return SyncOutcome(
                user_id=user_id,
                platform=platform,
                status=SyncStatus.COMPLETED,
                from_cache=True,
                reason="cached state is fresh",
                contact_count=state.contact_count,
                message_count=state.message_count,
                last_message_at=state.last_message_at,
            )

        lease_token = self.sync_store.try_acquire(user_id, platform, self.lease_seconds)
        if lease_token is None:
            logger.info(f"Sync for {user_id}/{platform} already running, skipping ({trigger})")
            self.sync_store.record_skipped_run(user_id, platform, trigger, "sync already in progress")
            return SyncOutcome(
                user_id=user_id,
                platform=platform,
                status=SyncStatus.SKIPPED,
                reason="sync already in progress",
                contact_count=state.contact_count,
                message_count=state.message_count,
                last_message_at=state.last_message_at,
            )

        return self._run_locked(adapter, user_id, state, trigger, lease_token)

    def sync_all_platforms(
        self,
        user_id: str,
        force: bool = False,
        trigger: str = "manual",
    ) -> dict[str, SyncOutcome]:
        """Request a sync of every registered platform, one after another."""
        outcomes = {}
        for platform in sorted(self.adapters):
            outcomes[platform] = self.request_sync(user_id, platform, force=force, trigger=trigger)
        return outcomes

    def _run_locked(
        self,
        adapter: PlatformAdapter,
        user_id: str,
        state: SyncState,
        trigger: str,
        lease_token: str,
    ) -> SyncOutcome:
        platform = adapter.platform
        outcome = SyncOutcome(user_id=user_id, platform=platform, status=SyncStatus.SYNCING)
        run_id = self.sync_store.record_run_start(user_id, platform, trigger)
        error_message = None
        logger.info(f"Starting {platform} sync for {user_id} ({trigger})")

        try:
            self._run(adapter, user_id, state, outcome, lease_token)
            outcome.status = SyncStatus.COMPLETED
        except AuthExpiredError as e:
            outcome.status = SyncStatus.FAILED
            outcome.reconnect_required = True
            error_message = str(e)
            outcome.errors.append(user_friendly_error(e))
            logger.error(f"{platform} credentials expired for {user_id}: {e}")
        except RateLimitedError as e:
            outcome.status = SyncStatus.FAILED
            outcome.retry_after = e.retry_after
            error_message = str(e)
            outcome.errors.append(user_friendly_error(e))
            logger.error(f"{platform} rate limited sync for {user_id} (retry after {e.retry_after}s)")
        except PlatformError as e:
            outcome.status = SyncStatus.FAILED
            error_message = str(e)
            outcome.errors.append(user_friendly_error(e))
            logger.error(f"{platform} sync failed for {user_id}: {e}")
        except Exception as e:
            outcome.status = SyncStatus.FAILED
            error_message = str(e)
            outcome.errors.append(user_friendly_error(e))
            logger.exception(f"Unexpected error during {platform} sync for {user_id}")
            raise
        finally:
            outcome.contact_count = self.contact_store.count_contacts(user_id, platform)
            outcome.message_count = self.message_store.count_messages(user_id, platform)
            self.sync_store.complete(
                user_id,
                platform,
                outcome.status,
                contact_count=outcome.contact_count,
                message_count=outcome.message_count,
                last_message_at=outcome.last_message_at,
                messages_processed=outcome.messages_stored,
                error=error_message,
                lease_token=lease_token,
            )
            self.sync_store.record_run_complete(
                run_id,
                outcome.status,
                contacts_processed=outcome.contacts_fetched,
                messages_stored=outcome.messages_stored,
                errors=len(outcome.item_failures) + (1 if error_message else 0),
                error_message=error_message,
            )

        logger.info(
            f"{platform} sync for {user_id} {outcome.status.value}: "
            f"{outcome.contacts_created} contacts created, {outcome.contacts_merged} merged, "
            f"{outcome.messages_stored} messages stored, {outcome.threads_summarized} threads summarized"
        )
        return outcome

    def _run(
        self,
        adapter: PlatformAdapter,
        user_id: str,
        state: SyncState,
        outcome: SyncOutcome,
        lease_token: str,
    ):
        # Rate-limited fetches still commit what they returned before failing
        try:
            contacts = adapter.fetch_contacts(user_id)
        except RateLimitedError as e:
            self._unify(list(e.partial_result or []), adapter.platform, user_id, outcome)
            raise
        self._unify(contacts, adapter.platform, user_id, outcome)

        if not self.sync_store.renew(user_id, adapter.platform, lease_token, self.lease_seconds):
            logger.warning(f"Lost the {adapter.platform} sync lease for {user_id} during the contacts phase")

        since = state.last_message_at or (utc_now() - timedelta(days=self.history_days))
        try:
            messages = adapter.fetch_messages(user_id, since=since, limit=self.message_limit)
        except RateLimitedError as e:
            self._ingest(list(e.partial_result or []), adapter.platform, user_id, outcome)
            raise
        self._ingest(messages, adapter.platform, user_id, outcome)

    def _unify(self, contacts: list, platform: str, user_id: str, outcome: SyncOutcome):
        outcome.contacts_fetched += len(contacts)
        batch = self.unifier.unify_batch(contacts, platform, user_id)
        outcome.contacts_created += batch.count(UnifyAction.CREATED)
        outcome.contacts_merged += batch.count(UnifyAction.MERGED)
        outcome.bots_filtered += len(batch.filtered_bots)
        outcome.item_failures.extend(batch.failures)

    def _ingest(self, messages: list[PlatformMessage], platform: str, user_id: str, outcome: SyncOutcome):
        outcome.messages_fetched += len(messages)
        result = self.ingestor.ingest_messages(user_id, messages, platform)
        outcome.messages_stored += result.stored
        outcome.duplicates += result.duplicates
        outcome.item_failures.extend(result.errors)

        timestamps = [m.timestamp for m in messages if m.timestamp is not None]
        if timestamps:
            latest = max(timestamps)
            if outcome.last_message_at is None or latest > outcome.last_message_at:
                outcome.last_message_at = latest

        if self.summary_writer and result.threads_affected:
            summaries = self.summary_writer.summarize_threads(user_id, result.threads_affected)
            outcome.threads_summarized += len(summaries.summarized)
            outcome.item_failures.extend(summaries.failed)
