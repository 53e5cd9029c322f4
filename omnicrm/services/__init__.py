"""
OmniCRM Services Package.

This package contains the CRM core's business logic and data access.
Use this module to import commonly-used services.

Example:
    from omnicrm.services import build_crm_core, PlatformContact

    core = build_crm_core(adapters=[gmail_adapter])
    contact_id = core.unify_contact(PlatformContact("abc", name="Jane Doe"), "email", user_id)

Key service modules:
- bot_filter: Drops automated accounts before matching
- contact_matcher: Tiered scoring of platform contacts against unified contacts
- contact_unifier: Match-or-create with race-safe identity linking
- message_ingest: Deduplicating message ingestion and thread views
- thread_summary: Re-summarizes changed threads
- sync_coordinator: Cache-or-fetch decisions and single-flight syncs
"""

from omnicrm.services.platforms import (
    ChatMetadata,
    Direction,
    EmailMetadata,
    GenericMetadata,
    OwnerIdentity,
    PlatformAdapter,
    PlatformContact,
    PlatformMessage,
)

from omnicrm.services.crm_core import CrmCore, build_crm_core

from omnicrm.services.resilience import (
    AuthExpiredError,
    DataConflictError,
    PlatformError,
    RateLimitedError,
    SummarizerError,
    TransientNetworkError,
)


__all__ = [
    # Platform types
    "ChatMetadata",
    "Direction",
    "EmailMetadata",
    "GenericMetadata",
    "OwnerIdentity",
    "PlatformAdapter",
    "PlatformContact",
    "PlatformMessage",
    # Core
    "CrmCore",
    "build_crm_core",
    # Errors
    "AuthExpiredError",
    "DataConflictError",
    "PlatformError",
    "RateLimitedError",
    "SummarizerError",
    "TransientNetworkError",
]
