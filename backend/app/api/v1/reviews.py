"""Review queue endpoints: browse, act on, and get stats for review items."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db, get_review_queue
from app.hitl_workflow.service import ReviewQueueService
from app.schemas.review import (
    ReviewActionRequest,
    ReviewItemListResponse,
    ReviewItemResponse,
    ReviewQueueStats,
)

router = APIRouter()


@router.get("/queue", response_model=ReviewItemListResponse)
async def get_queue(
    status: str | None = None,
    item_type: str | None = None,
    page: int = 1,
    per_page: int = 20,
    db: AsyncSession = Depends(get_db),
    review_queue: ReviewQueueService = Depends(get_review_queue),
) -> ReviewItemListResponse:
    """Get the review queue with optional filtering."""
    try:
        items, total = await review_queue.get_queue(
            db, status=status, item_type=item_type, page=page, per_page=per_page,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ReviewItemListResponse(
        items=[ReviewItemResponse.model_validate(i) for i in items],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/stats", response_model=ReviewQueueStats)
async def get_stats(
    db: AsyncSession = Depends(get_db),
    review_queue: ReviewQueueService = Depends(get_review_queue),
) -> ReviewQueueStats:
    """Get review queue statistics."""
    stats = await review_queue.get_stats(db)
    return ReviewQueueStats(**stats)


@router.post("/{item_id}/action", response_model=ReviewItemResponse)
async def review_action(
    item_id: uuid.UUID,
    request: ReviewActionRequest,
    db: AsyncSession = Depends(get_db),
    review_queue: ReviewQueueService = Depends(get_review_queue),
) -> ReviewItemResponse:
    """Act on a review item (approve/reject/escalate)."""
    try:
        item = await review_queue.review_item(
            db, item_id, action=request.action, reviewed_by=request.reviewed_by, notes=request.notes,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ReviewItemResponse.model_validate(item)
