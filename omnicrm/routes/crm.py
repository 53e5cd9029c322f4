"""
CRM API endpoints for OmniCRM.

Thin HTTP layer over the CRM core: contact unification and review,
message ingestion, thread views and sync control. All handlers are plain
``def`` so the blocking SQLite and platform calls run in FastAPI's
threadpool.
"""
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from omnicrm.services.crm_core import CrmCore
from omnicrm.services.platforms import PlatformContact, PlatformMessage
from omnicrm.services.resilience import ItemFailure
from omnicrm.services.review_queue import ReviewItemNotFoundError
from omnicrm.services.sync_coordinator import UnknownPlatformError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/crm", tags=["crm"])


# Request/Response Models


class ContactPayload(BaseModel):
    """A contact as observed on one platform."""
    platform_native_id: str = Field(..., min_length=1, description="Platform's own id for the contact")
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    handle: Optional[str] = None
    photo_url: Optional[str] = None
    is_bot: bool = False
    is_deleted: bool = False
    platform_specific: dict = Field(default_factory=dict)

    def to_contact(self) -> PlatformContact:
        return PlatformContact(**self.model_dump())


class UnifyRequest(BaseModel):
    platform: str = Field(..., min_length=1)
    contact: ContactPayload


class FindMatchesRequest(BaseModel):
    platform: Optional[str] = None
    contact: ContactPayload


class MatchCandidateResponse(BaseModel):
    contact_id: str
    score: float
    matched_fields: list[str]


class UnifyResponse(BaseModel):
    contact_id: str
    action: str
    score: Optional[float] = None
    review_candidates: list[MatchCandidateResponse] = []


class FindMatchesResponse(BaseModel):
    candidates: list[MatchCandidateResponse]


class MessagePayload(BaseModel):
    """A message as delivered by a platform."""
    platform_message_id: str = Field(..., min_length=1)
    platform: Optional[str] = None
    content: str = ""
    timestamp: Union[str, float, None] = Field(
        None,
        description="ISO-8601 string or epoch seconds"
    )
    sender_id: Optional[str] = None
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    recipients: list[str] = Field(default_factory=list)
    counterpart_id: Optional[str] = None
    direction: Optional[str] = Field(None, pattern="^(inbound|outbound)$")
    metadata: dict = Field(default_factory=dict, description="Metadata variant with a 'kind' key")

    def to_message(self) -> PlatformMessage:
        return PlatformMessage(**self.model_dump())


class IngestRequest(BaseModel):
    platform: Optional[str] = None
    messages: list[MessagePayload]


class ItemFailureResponse(BaseModel):
    item_id: str
    stage: str
    error: str


class IngestResponse(BaseModel):
    stored: int
    duplicates: int
    threads_affected: list[str]
    errors: list[ItemFailureResponse]


class WebhookRequest(BaseModel):
    platform: Optional[str] = None
    message: MessagePayload


class ResolvePendingRequest(BaseModel):
    pending_id: str = Field(..., min_length=1)
    decision: str = Field(..., pattern="^(approve|reject)$")


class MarkReadRequest(BaseModel):
    message_ids: list[str] = Field(..., min_length=1)
    is_read: bool = True


class OwnerIdentityRequest(BaseModel):
    platform: str = Field(..., min_length=1)
    native_id: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None


# Helper Functions


def get_core(request: Request) -> CrmCore:
    """The core built at startup (see omnicrm.main.create_app)."""
    return request.app.state.crm_core


def _bad_request(e: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


# Endpoints


@router.post("/users/{user_id}/contacts/unify", response_model=UnifyResponse)
def unify_contact(user_id: str, body: UnifyRequest, core: CrmCore = Depends(get_core)):
    """
    Resolve a platform contact to a unified contact, creating one if no
    existing contact matches well enough.
    """
    try:
        result = core.unify(body.contact.to_contact(), body.platform, user_id)
    except ValueError as e:
        raise _bad_request(e)
    return result.to_dict()


@router.post("/users/{user_id}/contacts/find-matches", response_model=FindMatchesResponse)
def find_contact_matches(user_id: str, body: FindMatchesRequest, core: CrmCore = Depends(get_core)):
    """Rank existing contacts against a platform contact. Read-only."""
    candidates = core.find_contact_matches(body.contact.to_contact(), user_id, body.platform)
    return {"candidates": [c.to_dict() for c in candidates]}


@router.get("/users/{user_id}/contacts/pending")
def list_pending_matches(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    core: CrmCore = Depends(get_core),
):
    """Possible duplicate contacts waiting for the user's decision."""
    pending, count = core.get_pending_matches(user_id, limit, offset)
    return {"pending": [p.to_dict() for p in pending], "count": count}


@router.post("/users/{user_id}/contacts/pending")
def resolve_pending_match(user_id: str, body: ResolvePendingRequest, core: CrmCore = Depends(get_core)):
    """Approve (merge the identity into the candidate) or reject a queued match."""
    try:
        item = core.resolve_pending_match(user_id, body.pending_id, approve=body.decision == "approve")
    except ReviewItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise _bad_request(e)
    return item.to_dict()


@router.post("/users/{user_id}/owner-identities")
def add_owner_identity(user_id: str, body: OwnerIdentityRequest, core: CrmCore = Depends(get_core)):
    """Register one of the user's own platform identities."""
    try:
        core.register_owner_identity(user_id, body.platform, body.native_id, body.email, body.display_name)
    except ValueError as e:
        raise _bad_request(e)
    return core.contact_store.get_owner_identity(user_id).to_dict()


@router.post("/users/{user_id}/messages/ingest", response_model=IngestResponse)
def ingest_messages(user_id: str, body: IngestRequest, core: CrmCore = Depends(get_core)):
    """
    Store a batch of messages; duplicates are counted, not stored.

    A message that cannot be read is reported in ``errors`` and the rest of
    the batch is still stored.
    """
    messages = []
    rejected = []
    for payload in body.messages:
        try:
            messages.append(payload.to_message())
        except (ValueError, OverflowError, OSError) as e:
            logger.warning(f"Rejected message {payload.platform_message_id}: {e}")
            rejected.append(ItemFailure(item_id=payload.platform_message_id, stage="ingest", error=str(e)))

    result = core.ingest_messages(user_id, messages, body.platform)
    result.errors = rejected + result.errors
    return result.to_dict()


@router.post("/users/{user_id}/messages/webhook")
def ingest_webhook_event(user_id: str, body: WebhookRequest, core: CrmCore = Depends(get_core)):
    """Ingest one pushed message, dropping replays."""
    try:
        outcome = core.ingest_webhook_event(user_id, body.message.to_message(), body.platform)
    except ValueError as e:
        raise _bad_request(e)
    return {"status": outcome.value}


@router.get("/users/{user_id}/messages/{platform}/{platform_message_id}")
def get_message(user_id: str, platform: str, platform_message_id: str, core: CrmCore = Depends(get_core)):
    message = core.get_message(user_id, platform, platform_message_id)
    if message is None:
        raise HTTPException(status_code=404, detail=f"Message {platform}:{platform_message_id} not found")
    return message.to_dict()


@router.post("/users/{user_id}/messages/read")
def mark_messages_read(user_id: str, body: MarkReadRequest, core: CrmCore = Depends(get_core)):
    updated = core.mark_read(user_id, body.message_ids, body.is_read)
    return {"updated": updated}


@router.get("/users/{user_id}/threads")
def list_threads(
    user_id: str,
    platform: Optional[str] = Query(None),
    contact_id: Optional[str] = Query(None),
    include_messages: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    core: CrmCore = Depends(get_core),
):
    """Conversation threads, most recent activity first."""
    threads = core.get_threads(user_id, platform, contact_id)
    return {
        "threads": [t.to_dict(include_messages=include_messages) for t in threads[:limit]],
        "total": len(threads),
    }


@router.get("/users/{user_id}/thread-summaries")
def list_thread_summaries(user_id: str, core: CrmCore = Depends(get_core)):
    summaries = core.get_thread_summaries(user_id)
    return {"summaries": [s.to_dict() for s in summaries], "total": len(summaries)}


@router.get("/users/{user_id}/sync-status")
def get_sync_status(
    user_id: str,
    platform: Optional[str] = Query(None),
    core: CrmCore = Depends(get_core),
):
    """Sync state for one platform, or all synced platforms."""
    status = core.get_sync_status(user_id, platform)
    if platform:
        return status.to_dict()
    return {"platforms": [s.to_dict() for s in status]}


@router.post("/users/{user_id}/sync")
def sync_all_platforms(
    user_id: str,
    force: bool = Query(False),
    core: CrmCore = Depends(get_core),
):
    """Request a sync of every connected platform."""
    outcomes = core.sync_all_platforms(user_id, force=force)
    return {platform: outcome.to_dict() for platform, outcome in outcomes.items()}


@router.post("/users/{user_id}/sync/{platform}")
def request_sync(
    user_id: str,
    platform: str,
    force: bool = Query(False, description="Ignore cached state freshness"),
    core: CrmCore = Depends(get_core),
):
    """
    Request a sync of one platform.

    Returns the outcome; ``status`` is completed, skipped or failed.
    """
    try:
        outcome = core.request_sync(user_id, platform, force=force)
    except UnknownPlatformError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return outcome.to_dict()


@router.post("/users/{user_id}/sync/{platform}/reset")
def reset_sync_state(user_id: str, platform: str, core: CrmCore = Depends(get_core)):
    """Forget sync watermarks so the next sync refetches history."""
    core.reset_sync_state(user_id, platform)
    return core.get_sync_status(user_id, platform).to_dict()
