"""
Bot and automated-account filter.

Runs once per imported contact batch, before matching, so that
integrations, notification senders and deleted accounts never become
unified contacts. Pure: nothing is written.

Rules are OR'ed; any one is enough to filter a contact. Each rule that
fires contributes a human-readable reason.
"""
import logging
from dataclasses import dataclass, field

from config.bot_patterns import (
    BOT_HANDLE_PATTERNS,
    BOT_NAME_PATTERNS,
    ID_LIKE_NAME_PATTERN,
    PLACEHOLDER_NAMES,
    get_domain_from_email,
    is_bot_domain,
    matching_email_prefix,
)
from omnicrm.services.platforms import PlatformContact

logger = logging.getLogger(__name__)


@dataclass
class BotDetectionResult:
    is_bot: bool
    reasons: list[str] = field(default_factory=list)


@dataclass
class FilteredContact:
    contact: PlatformContact
    reasons: list[str]

    def to_dict(self) -> dict:
        return {"contact": self.contact.to_dict(), "reasons": list(self.reasons)}


@dataclass
class ContactPartition:
    real_contacts: list[PlatformContact] = field(default_factory=list)
    filtered_bots: list[FilteredContact] = field(default_factory=list)


def _usable_name(name: str | None) -> str | None:
    if not name:
        return None
    cleaned = name.strip()
    if not cleaned or cleaned.lower() in PLACEHOLDER_NAMES:
        return None
    return cleaned


def detect_bot(contact: PlatformContact) -> BotDetectionResult:
    """
    Decide whether a platform contact is an automated account.

    Args:
        contact: Contact as reported by the adapter

    Returns:
        BotDetectionResult; ``reasons`` is empty when the contact is real
    """
    reasons = []

    if contact.is_bot:
        reasons.append("Platform marks account as a bot")
    if contact.is_deleted:
        reasons.append("Platform marks account as deleted or deactivated")

    if contact.email:
        prefix = matching_email_prefix(contact.email)
        if prefix:
            reasons.append(f"Automated email address ({prefix}@)")
        if is_bot_domain(contact.email):
            reasons.append(f"Transactional email domain ({get_domain_from_email(contact.email)})")

    name = _usable_name(contact.name)
    if name:
        for pattern in BOT_NAME_PATTERNS:
            if pattern.search(name):
                reasons.append(f"Automated display name ({name})")
                break
        if ID_LIKE_NAME_PATTERN.match(name):
            reasons.append(f"Display name looks like an identifier ({name})")

    if contact.handle:
        for pattern in BOT_HANDLE_PATTERNS:
            if pattern.search(contact.handle):
                reasons.append(f"Bot-like handle ({contact.handle})")
                break

    has_identifier = bool(contact.email or contact.phone or contact.handle)
    if not name and not has_identifier:
        reasons.append("No usable name and no reachable identifier")

    return BotDetectionResult(is_bot=bool(reasons), reasons=reasons)


def filter_real_contacts(contacts: list[PlatformContact]) -> ContactPartition:
    """
    Partition a batch into real contacts and filtered bots.

    Every input lands in exactly one side; input order is preserved.
    """
    partition = ContactPartition()
    for contact in contacts:
        result = detect_bot(contact)
        if result.is_bot:
            partition.filtered_bots.append(FilteredContact(contact=contact, reasons=result.reasons))
            logger.debug(f"Filtered {contact.platform_native_id}: {'; '.join(result.reasons)}")
        else:
            partition.real_contacts.append(contact)

    if partition.filtered_bots:
        logger.info(
            f"Bot filter: {len(partition.real_contacts)} real, "
            f"{len(partition.filtered_bots)} filtered"
        )
    return partition
