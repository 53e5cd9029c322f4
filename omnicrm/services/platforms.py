"""
Platform-facing types for OmniCRM.

Adapters for each communication platform (email, team chat, ...) translate
their API payloads into these shapes. Nothing downstream of the adapter
looks at platform payloads directly; platform specifics travel in a
metadata variant that answers the few questions the core asks of it
(native thread id, channel, subject, replay key).
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from omnicrm.utils.datetime_utils import parse_timestamp

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# =============================================================================
# Contacts
# =============================================================================

@dataclass
class PlatformContact:
    """A contact as observed on one platform."""

    platform_native_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    handle: Optional[str] = None
    photo_url: Optional[str] = None

    # Flags some platforms expose directly
    is_bot: bool = False
    is_deleted: bool = False

    platform_specific: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PlatformContact":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


# =============================================================================
# Message metadata variants
# =============================================================================

class MessageMetadata:
    """
    Base for platform metadata variants.

    Each variant knows how to answer the threading questions for its
    platform family; the base answers "nothing known".
    """

    kind = "generic"

    def native_thread_id(self) -> Optional[str]:
        return None

    def thread_root_id(self) -> Optional[str]:
        """The native thread id this message would root if replies arrive."""
        return None

    def channel_id(self) -> Optional[str]:
        return None

    def subject(self) -> Optional[str]:
        return None

    def replay_key(self) -> Optional[str]:
        """Key identifying a delivery for webhook replay suppression."""
        return None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind
        return data


@dataclass
class EmailMetadata(MessageMetadata):
    kind = "email"

    thread_id: Optional[str] = None
    subject_line: Optional[str] = None
    from_address: Optional[str] = None
    to_addresses: list[str] = field(default_factory=list)
    cc_addresses: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    def native_thread_id(self) -> Optional[str]:
        return self.thread_id

    def subject(self) -> Optional[str]:
        return self.subject_line


@dataclass
class ChatMetadata(MessageMetadata):
    """Team-chat messages: a channel, a native ``ts`` and an optional thread root."""

    kind = "chat"

    channel: Optional[str] = None
    channel_type: Optional[str] = None  # "im", "mpim", "channel", ...
    ts: Optional[str] = None
    thread_ts: Optional[str] = None
    team_id: Optional[str] = None
    bot_id: Optional[str] = None
    subtype: Optional[str] = None

    def native_thread_id(self) -> Optional[str]:
        # A reply carries its root's ts; a root with replies carries its own
        if self.thread_ts:
            return f"{self.channel or ''}:{self.thread_ts}"
        return None

    def thread_root_id(self) -> Optional[str]:
        if not self.ts:
            return None
        return f"{self.channel or ''}:{self.ts}"

    def channel_id(self) -> Optional[str]:
        return self.channel

    def replay_key(self) -> Optional[str]:
        if not self.ts:
            return None
        return f"{self.team_id or ''}:{self.channel or ''}:{self.ts}"


@dataclass
class GenericMetadata(MessageMetadata):
    kind = "generic"

    thread_id: Optional[str] = None
    conversation_id: Optional[str] = None
    subject_line: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def native_thread_id(self) -> Optional[str]:
        return self.thread_id

    def channel_id(self) -> Optional[str]:
        return self.conversation_id

    def subject(self) -> Optional[str]:
        return self.subject_line


METADATA_KINDS = {
    EmailMetadata.kind: EmailMetadata,
    ChatMetadata.kind: ChatMetadata,
    GenericMetadata.kind: GenericMetadata,
}


def metadata_from_dict(data: Optional[dict]) -> MessageMetadata:
    """Rebuild a metadata variant from its stored dict form."""
    if not data:
        return GenericMetadata()
    data = dict(data)
    kind = data.pop("kind", "generic")
    variant = METADATA_KINDS.get(kind)
    if variant is None:
        logger.warning(f"Unknown metadata kind: {kind}")
        return GenericMetadata(extra=data)
    known = {k: v for k, v in data.items() if k in variant.__dataclass_fields__}
    return variant(**known)


# =============================================================================
# Messages
# =============================================================================

@dataclass
class PlatformMessage:
    """
    A message as delivered by an adapter or webhook.

    ``counterpart_id`` is the native id of the other party when the adapter
    knows it (needed for outbound messages, where the sender is the owner).
    """

    platform_message_id: str
    platform: str = ""
    content: str = ""
    timestamp: Optional[datetime] = None
    sender_id: Optional[str] = None
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    recipients: list[str] = field(default_factory=list)
    counterpart_id: Optional[str] = None
    direction: Optional[Direction] = None
    metadata: MessageMetadata = field(default_factory=GenericMetadata)

    def __post_init__(self):
        if self.timestamp is not None:
            self.timestamp = parse_timestamp(self.timestamp)
        if isinstance(self.direction, str) and not isinstance(self.direction, Direction):
            self.direction = Direction(self.direction)
        if isinstance(self.metadata, dict):
            self.metadata = metadata_from_dict(self.metadata)

    def to_dict(self) -> dict:
        return {
            "platform_message_id": self.platform_message_id,
            "platform": self.platform,
            "content": self.content,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "sender_id": self.sender_id,
            "sender_email": self.sender_email,
            "sender_name": self.sender_name,
            "recipients": list(self.recipients),
            "counterpart_id": self.counterpart_id,
            "direction": self.direction.value if self.direction else None,
            "metadata": self.metadata.to_dict(),
        }


# =============================================================================
# Owner identity
# =============================================================================

@dataclass
class OwnerIdentity:
    """The user's own identities, used to tell outbound from inbound."""

    user_id: str
    display_name: Optional[str] = None
    native_ids: dict[str, set[str]] = field(default_factory=dict)  # platform -> ids
    emails: set[str] = field(default_factory=set)

    def add(self, platform: str, native_id: Optional[str] = None, email: Optional[str] = None):
        if native_id:
            self.native_ids.setdefault(platform, set()).add(native_id)
        if email:
            self.emails.add(email.strip().lower())

    def is_owner(self, platform: str, native_id: Optional[str] = None, email: Optional[str] = None) -> bool:
        if native_id and native_id in self.native_ids.get(platform, set()):
            return True
        if email and email.strip().lower() in self.emails:
            return True
        return False

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "native_ids": {p: sorted(ids) for p, ids in self.native_ids.items()},
            "emails": sorted(self.emails),
        }


# =============================================================================
# Adapter interface
# =============================================================================

@runtime_checkable
class PlatformAdapter(Protocol):
    """
    What the core needs from a platform client.

    Adapters own authentication, pagination and their own retry policy.
    They raise AuthExpiredError, RateLimitedError or TransientNetworkError
    from omnicrm.services.resilience.
    """

    platform: str
    supports_push: bool

    def fetch_contacts(self, user_id: str) -> list[PlatformContact]:
        ...

    def fetch_messages(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[PlatformMessage]:
        ...
