"""
Contact Unifier for OmniCRM.

Turns a platform contact into a unified contact id:
1. Already-known identity -> the contact it is linked to, no writes
2. Top candidate in the auto-merge band -> attach the identity and
   backfill empty canonical fields
3. Otherwise -> create a new contact with this identity as its first;
   candidates in the needs-review band go to the review queue

Concurrent unification of the same identity converges: storage rejects the
second insert and the loser re-reads and returns the winner's contact.

Whenever an identity gains or changes contact, messages already stored for
it are re-filed under that contact.
"""
import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from omnicrm.services.bot_filter import FilteredContact, filter_real_contacts
from omnicrm.services.contact_matcher import (
    ContactMatcher,
    MatchCandidate,
    MatchDecision,
    classify_score,
    normalize_email,
)
from omnicrm.services.contact_store import ContactStore, PlatformIdentity, UnifiedContact
from omnicrm.services.message_ingest import MessageIngestor
from omnicrm.services.phone_utils import is_valid_phone, normalize_phone
from omnicrm.services.platforms import PlatformContact
from omnicrm.services.resilience import DataConflictError, ItemFailure
from omnicrm.services.review_queue import PendingMatch, ReviewQueueStore, ReviewStatus

logger = logging.getLogger(__name__)


class UnifyAction(str, Enum):
    EXISTING = "existing"  # identity was already linked
    MERGED = "merged"      # attached to an existing contact
    CREATED = "created"    # new unified contact


@dataclass
class UnificationResult:
    contact_id: str
    action: UnifyAction
    platform_native_id: str = ""
    score: Optional[float] = None

    # Candidates in the needs-review band, for the caller to surface
    review_candidates: list[MatchCandidate] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "contact_id": self.contact_id,
            "action": self.action.value,
            "platform_native_id": self.platform_native_id,
            "score": self.score,
            "review_candidates": [c.to_dict() for c in self.review_candidates],
        }


@dataclass
class BatchUnificationResult:
    results: list[UnificationResult] = field(default_factory=list)
    filtered_bots: list[FilteredContact] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)

    def count(self, action: UnifyAction) -> int:
        return sum(1 for r in self.results if r.action == action)

    @property
    def needs_review(self) -> list[UnificationResult]:
        return [r for r in self.results if r.review_candidates]


def _display_name(contact: PlatformContact) -> str:
    if contact.name and contact.name.strip():
        return contact.name.strip()
    if contact.handle:
        return contact.handle
    if contact.email:
        return contact.email.split('@')[0]
    return contact.phone or ""


def _canonical_phone(raw: Optional[str]) -> Optional[str]:
    """E.164 form when the number normalizes to a valid one, else as observed."""
    normalized = normalize_phone(raw) if raw else None
    if normalized and is_valid_phone(normalized):
        return normalized
    return raw or None


class ContactUnifier:
    """
    Match-or-create for platform contacts against one user's contacts.

    ``review_queue`` persists needs-review candidates so the user can
    approve or reject them later; ``message_linker`` re-files stored
    messages when an identity's contact changes. Both are optional.

    Usage:
        unifier = ContactUnifier(store)
        result = unifier.unify(contact, "email", user_id)
    """

    def __init__(
        self,
        store: ContactStore,
        matcher: Optional[ContactMatcher] = None,
        review_queue: Optional[ReviewQueueStore] = None,
        message_linker: Optional[MessageIngestor] = None,
    ):
        self.store = store
        self.matcher = matcher or ContactMatcher()
        self.review_queue = review_queue
        self.message_linker = message_linker

    def find_contact_matches(
        self,
        contact: PlatformContact,
        user_id: str,
        platform: Optional[str] = None,
    ) -> list[MatchCandidate]:
        """Rank candidates without writing anything."""
        return self.matcher.find_matches(
            contact,
            platform or "",
            self.store.list_contacts(user_id),
            self.store.list_identities(user_id),
        )

    def unify(self, contact: PlatformContact, platform: str, user_id: str) -> UnificationResult:
        """
        Resolve a platform contact to a unified contact, creating one if needed.

        Raises:
            ValueError: the contact has no platform native id
        """
        if not contact.platform_native_id:
            raise ValueError("Platform contact has no native id")

        existing = self.store.get_identity(user_id, platform, contact.platform_native_id)
        if existing:
            return UnificationResult(
                contact_id=existing.contact_id,
                action=UnifyAction.EXISTING,
                platform_native_id=contact.platform_native_id,
                score=1.0,
            )

        candidates = self.find_contact_matches(contact, user_id, platform)
        identity = self._build_identity(contact, platform, user_id)
        email = normalize_email(contact.email)
        phone = _canonical_phone(contact.phone)

        try:
            top = candidates[0] if candidates else None
            if top and classify_score(top.score, self.matcher.config) == MatchDecision.AUTO_MERGE:
                self.store.attach_identity(
                    top.contact_id,
                    identity,
                    email=email,
                    phone=phone,
                    photo_url=contact.photo_url,
                    full_name=_display_name(contact) or None,
                )
                logger.info(
                    f"Merged {platform}:{contact.platform_native_id} into {top.contact_id} "
                    f"(score={top.score}, fields={top.matched_fields})"
                )
                self._link_messages(user_id, platform, contact.platform_native_id, top.contact_id)
                return UnificationResult(
                    contact_id=top.contact_id,
                    action=UnifyAction.MERGED,
                    platform_native_id=contact.platform_native_id,
                    score=top.score,
                )

            unified = UnifiedContact(
                user_id=user_id,
                full_name=_display_name(contact),
                email=email,
                phone=phone,
                photo_url=contact.photo_url,
            )
            self.store.create_contact_with_identity(unified, identity)
            self._link_messages(user_id, platform, contact.platform_native_id, unified.id)
            review = [
                c for c in candidates
                if classify_score(c.score, self.matcher.config) == MatchDecision.NEEDS_REVIEW
            ]
            self._queue_for_review(unified, platform, contact.platform_native_id, review)
            return UnificationResult(
                contact_id=unified.id,
                action=UnifyAction.CREATED,
                platform_native_id=contact.platform_native_id,
                review_candidates=review,
            )
        except DataConflictError as e:
            return self._attach_to_existing(contact, platform, user_id, e)

    def unify_contact(self, contact: PlatformContact, platform: str, user_id: str) -> str:
        """Like unify() but returns only the unified contact id."""
        return self.unify(contact, platform, user_id).contact_id

    def _link_messages(self, user_id: str, platform: str, platform_native_id: str, contact_id: str):
        if self.message_linker is not None:
            self.message_linker.link_identity(user_id, platform, platform_native_id, contact_id)

    def _queue_for_review(
        self,
        created: UnifiedContact,
        platform: str,
        platform_native_id: str,
        review: list[MatchCandidate],
    ):
        if self.review_queue is None:
            return
        for candidate in review:
            existing = self.store.get_contact(candidate.contact_id)
            self.review_queue.add_pending(PendingMatch(
                user_id=created.user_id,
                platform=platform,
                platform_native_id=platform_native_id,
                new_contact_id=created.id,
                new_contact_name=created.full_name,
                candidate_contact_id=candidate.contact_id,
                candidate_name=existing.full_name if existing else "",
                score=candidate.score,
                matched_fields=list(candidate.matched_fields),
            ))

    def resolve_pending(self, user_id: str, item_id: str, approve: bool) -> PendingMatch:
        """
        Apply the user's decision on a queued match.

        Approving moves the identity onto the candidate contact (backfilling
        its empty fields), re-files the identity's messages, and skips any
        other pending candidates for the same identity. Rejecting keeps the
        two contacts apart.

        Raises:
            ReviewItemNotFoundError: no such item for this user
            ValueError: the item was already decided, or the identity has
                moved since it was queued
        """
        if self.review_queue is None:
            raise ValueError("Review queue is not configured")

        item = self.review_queue.get_by_id(user_id, item_id)
        if item.status != ReviewStatus.PENDING:
            raise ValueError(f"Review item {item_id} was already {item.status.value}")

        if not approve:
            return self.review_queue.mark_reviewed(user_id, item_id, ReviewStatus.SKIPPED)

        _, removed = self.store.reassign_identity(
            user_id,
            item.platform,
            item.platform_native_id,
            item.new_contact_id,
            item.candidate_contact_id,
        )
        self._link_messages(user_id, item.platform, item.platform_native_id, item.candidate_contact_id)
        resolved = self.review_queue.mark_reviewed(user_id, item_id, ReviewStatus.MERGED)
        self.review_queue.skip_remaining(user_id, item.platform, item.platform_native_id)
        if removed:
            self.review_queue.skip_for_contact(user_id, item.new_contact_id)
        logger.info(
            f"Approved match of {item.platform}:{item.platform_native_id} "
            f"into {item.candidate_contact_id}"
        )
        return resolved

    def _attach_to_existing(
        self,
        contact: PlatformContact,
        platform: str,
        user_id: str,
        conflict: DataConflictError,
    ) -> UnificationResult:
        contact_id = conflict.existing_id
        if not contact_id:
            identity = self.store.get_identity(user_id, platform, contact.platform_native_id)
            if identity is None:
                raise conflict
            contact_id = identity.contact_id

        logger.info(
            f"Lost unification race for {platform}:{contact.platform_native_id}; "
            f"using existing contact {contact_id}"
        )
        return UnificationResult(
            contact_id=contact_id,
            action=UnifyAction.EXISTING,
            platform_native_id=contact.platform_native_id,
            score=1.0,
        )

    def _build_identity(self, contact: PlatformContact, platform: str, user_id: str) -> PlatformIdentity:
        return PlatformIdentity(
            user_id=user_id,
            platform=platform,
            platform_native_id=contact.platform_native_id,
            observed_name=contact.name,
            observed_email=contact.email,
            observed_phone=contact.phone,
            handle=contact.handle,
            metadata=dict(contact.platform_specific),
        )

    def unify_batch(
        self,
        contacts: list[PlatformContact],
        platform: str,
        user_id: str,
        apply_bot_filter: bool = True,
    ) -> BatchUnificationResult:
        """
        Filter bots, then unify every remaining contact.

        One bad contact does not stop the batch; it is recorded in
        ``failures``. Storage being unavailable does stop it.
        """
        batch = BatchUnificationResult()

        if apply_bot_filter:
            partition = filter_real_contacts(contacts)
            batch.filtered_bots = partition.filtered_bots
            contacts = partition.real_contacts

        for contact in contacts:
            try:
                batch.results.append(self.unify(contact, platform, user_id))
            except sqlite3.OperationalError:
                raise
            except Exception as e:
                logger.warning(f"Failed to unify {platform}:{contact.platform_native_id}: {e}")
                batch.failures.append(ItemFailure(
                    item_id=contact.platform_native_id or "<missing id>",
                    stage="unify",
                    error=str(e),
                ))

        logger.info(
            f"Unified {len(batch.results)} {platform} contacts for {user_id}: "
            f"{batch.count(UnifyAction.CREATED)} created, {batch.count(UnifyAction.MERGED)} merged, "
            f"{len(batch.filtered_bots)} bots, {len(batch.failures)} failed"
        )
        return batch
