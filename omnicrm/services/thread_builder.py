"""
Thread building for OmniCRM.

Derives a deterministic thread key for every message and groups stored
messages into conversation threads. Grouping depends only on the set of
distinct messages, never on arrival order, so replays and out-of-order
webhook deliveries converge to the same threads.

Thread key priority:
1. Platform-native thread id (email thread, chat thread root)
2. (contact, platform, channel/conversation)
3. (contact, platform)
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from omnicrm.services.message_store import StoredMessage
from omnicrm.services.platforms import Direction, MessageMetadata, OwnerIdentity, PlatformMessage

logger = logging.getLogger(__name__)


def derive_thread_key(
    platform: str,
    metadata: MessageMetadata,
    contact_id: Optional[str] = None,
    counterpart_id: Optional[str] = None,
) -> str:
    """
    Compute the thread key for one message.

    ``counterpart_id`` (the other party's native id) stands in for the
    contact when the sender could not be resolved to a unified contact.

    Examples:
        email message in Gmail thread "18c2"       -> "email:thread:18c2"
        chat DM in channel D1 with contact c-1     -> "chat:contact:c-1:channel:D1"
        SMS from contact c-1, no channel metadata  -> "chat:contact:c-1"
    """
    native = metadata.native_thread_id()
    if native:
        return f"{platform}:thread:{native}"

    party = f"contact:{contact_id}" if contact_id else f"native:{counterpart_id or 'unknown'}"
    channel = metadata.channel_id()
    if channel:
        return f"{platform}:{party}:channel:{channel}"
    return f"{platform}:{party}"


def resolve_direction(message: PlatformMessage, platform: str, owner: OwnerIdentity) -> Direction:
    """
    Outbound iff the sender is one of the owner's own identities.

    A direction the adapter already determined is kept.
    """
    if message.direction is not None:
        return message.direction
    if owner.is_owner(platform, native_id=message.sender_id, email=message.sender_email):
        return Direction.OUTBOUND
    return Direction.INBOUND


def counterpart_of(message: PlatformMessage, direction: Direction) -> Optional[str]:
    """Native id of the party the owner is talking to."""
    if message.counterpart_id:
        return message.counterpart_id
    if direction == Direction.INBOUND:
        return message.sender_id or message.sender_email
    return message.recipients[0] if message.recipients else None


def message_sort_key(message: StoredMessage) -> tuple[datetime, str]:
    return message.timestamp, message.platform_message_id


@dataclass
class ConversationThread:
    """A derived, read-only grouping of messages. Never stored."""

    thread_key: str
    platform: str
    contact_id: Optional[str] = None
    messages: list[StoredMessage] = field(default_factory=list)  # oldest first

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_activity(self) -> Optional[datetime]:
        return self.messages[-1].timestamp if self.messages else None

    @property
    def unread_count(self) -> int:
        return sum(1 for m in self.messages if m.direction == Direction.INBOUND and not m.is_read)

    @property
    def subject(self) -> Optional[str]:
        for message in self.messages:
            subject = message.metadata.subject()
            if subject:
                return subject
        return None

    def to_dict(self, include_messages: bool = True) -> dict:
        data = {
            "thread_key": self.thread_key,
            "platform": self.platform,
            "contact_id": self.contact_id,
            "subject": self.subject,
            "message_count": self.message_count,
            "unread_count": self.unread_count,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }
        if include_messages:
            data["messages"] = [m.to_dict() for m in self.messages]
        return data


def build_thread(thread_key: str, messages: Iterable[StoredMessage]) -> ConversationThread:
    """Build one thread, dropping repeated (platform, message id) pairs."""
    unique: dict[tuple[str, str], StoredMessage] = {}
    for message in messages:
        unique.setdefault((message.platform, message.platform_message_id), message)
    ordered = sorted(unique.values(), key=message_sort_key)

    contact_id = next((m.contact_id for m in ordered if m.contact_id), None)
    platform = ordered[0].platform if ordered else ""
    return ConversationThread(thread_key=thread_key, platform=platform, contact_id=contact_id, messages=ordered)


def build_threads(messages: Iterable[StoredMessage]) -> list[ConversationThread]:
    """
    Partition messages into threads.

    Returns:
        Threads ordered by last activity (newest first), ties by thread key
    """
    grouped: dict[str, list[StoredMessage]] = {}
    for message in messages:
        grouped.setdefault(message.thread_key, []).append(message)

    threads = [build_thread(key, group) for key, group in grouped.items()]
    threads.sort(key=lambda t: t.thread_key)
    threads.sort(key=lambda t: t.last_activity, reverse=True)
    return threads


def summary_window(thread: ConversationThread, cap: int) -> list[StoredMessage]:
    """The most recent ``cap`` messages of a thread, still oldest first."""
    if cap <= 0 or thread.message_count <= cap:
        return list(thread.messages)
    return thread.messages[-cap:]
