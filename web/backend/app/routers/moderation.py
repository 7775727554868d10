"""Moderation router -- queue listing, flagging, and single / bulk decisions."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from anontrust.auth.permissions import APPROVE_CONTENT
from anontrust.identity.models import Identity
from anontrust.moderation.models import ModerationAction, ModerationItem
from anontrust.moderation.queue import ModerationQueueEngine, priority_rank
from web.backend.app.middleware.auth import get_current_identity, get_services
from web.backend.app.models.api import (
    BulkActionRequest,
    BulkFailureResponse,
    BulkResultResponse,
    FlagContentRequest,
    HistoryEntryResponse,
    ModerationActionRequest,
    ModerationItemResponse,
    QueueStatsResponse,
)

router = APIRouter(prefix="/api/moderation", tags=["moderation"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _item_response(item: ModerationItem) -> ModerationItemResponse:
    """Convert a domain ModerationItem to a ModerationItemResponse."""
    entry = ModerationQueueEngine.annotate(item)
    return ModerationItemResponse(
        id=item.id,
        content_type=item.content_type.value,
        content_id=item.content_id,
        author_id=item.author_id,
        author_trust_score=item.author_trust_score,
        trust_label=entry.trust_label,
        trust_text=entry.trust_text,
        priority=item.priority.value,
        priority_rank=priority_rank(item),
        status=item.status.value,
        flag_reason=item.flag_reason,
        community_flag_count=item.community_flag_count,
        content_preview=item.content_preview,
        review_notes=item.review_notes,
        reviewed_by=item.reviewed_by,
        reviewed_at=item.reviewed_at,
        created_at=item.created_at,
        history=[
            HistoryEntryResponse(action=h.action, actor_id=h.actor_id, notes=h.notes, timestamp=h.timestamp)
            for h in item.history
        ],
    )


def _parse_action(action: str) -> ModerationAction:
    try:
        return ModerationAction(action)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown moderation action '{action}'",
        ) from None


# ---------------------------------------------------------------------------
# Queue endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/queue",
    response_model=list[ModerationItemResponse],
    summary="List the moderation queue, most urgent first",
)
async def list_queue(
    status_filter: Optional[str] = Query(None, alias="status"),
    priority: Optional[str] = None,
    actor: Identity = Depends(get_current_identity),
):
    """Moderators only; the queue exposes reports about other users."""
    services = get_services()
    services.roles.require(actor, APPROVE_CONTENT)
    items = services.moderation.ordered(status=status_filter, priority=priority)
    return [_item_response(i) for i in items]


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    summary="Queue counts by status and priority",
)
async def queue_stats(actor: Identity = Depends(get_current_identity)):
    services = get_services()
    services.roles.require(actor, APPROVE_CONTENT)
    s = services.moderation.stats()
    return QueueStatsResponse(
        total=s.total, by_status=s.by_status, by_priority=s.by_priority, open_urgent=s.open_urgent
    )


@router.get(
    "/items/{item_id}",
    response_model=ModerationItemResponse,
    summary="Get one moderation item",
)
async def get_item(item_id: str, actor: Identity = Depends(get_current_identity)):
    services = get_services()
    services.roles.require(actor, APPROVE_CONTENT)
    return _item_response(services.moderation.get(item_id))


@router.post(
    "/flag",
    response_model=ModerationItemResponse,
    summary="Report content for moderation",
    status_code=status.HTTP_201_CREATED,
)
async def flag_content(body: FlagContentRequest, reporter: Identity = Depends(get_current_identity)):
    item = get_services().moderation.flag_content(
        body.content_type,
        body.content_id,
        body.author_id,
        body.reason,
        reporter=reporter,
        preview=body.preview,
    )
    return _item_response(item)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@router.post(
    "/items/{item_id}/{action}",
    response_model=ModerationItemResponse,
    summary="Approve, reject, or escalate an item",
)
async def act_on_item(
    item_id: str,
    action: str,
    body: Optional[ModerationActionRequest] = None,
    actor: Identity = Depends(get_current_identity),
):
    parsed = _parse_action(action)
    notes = body.notes if body else ""
    item = get_services().moderation.apply(actor, item_id, parsed, notes)
    return _item_response(item)


@router.post(
    "/bulk",
    response_model=BulkResultResponse,
    summary="Apply one action to several items",
)
async def bulk_action(body: BulkActionRequest, actor: Identity = Depends(get_current_identity)):
    """Each item succeeds or fails on its own; the response lists both."""
    parsed = _parse_action(body.action)
    result = get_services().moderation.bulk_apply(actor, body.item_ids, parsed, body.notes)
    return BulkResultResponse(
        action=result.action.value,
        succeeded=result.succeeded,
        failed=[
            BulkFailureResponse(item_id=f.item_id, error_code=f.error_code, message=f.message)
            for f in result.failed
        ],
    )
