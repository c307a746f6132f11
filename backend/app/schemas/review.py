"""Pydantic schemas for the review queue."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.models.review import ReviewItemType, ReviewStatus


class ReviewItemResponse(BaseModel):
    id: uuid.UUID
    status: ReviewStatus
    item_type: ReviewItemType
    entity_id: uuid.UUID
    entity_type: str
    title: str
    description: str | None = None
    severity: str | None = None
    confidence: int | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    review_metadata: dict | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class ReviewItemListResponse(BaseModel):
    items: list[ReviewItemResponse]
    total: int
    page: int
    per_page: int


class ReviewActionRequest(BaseModel):
    action: str = Field(..., description="approve, reject, or escalate")
    notes: str | None = None
    reviewed_by: str = "user"


class ReviewQueueStats(BaseModel):
    total: int = 0
    pending_review: int = 0
    approved: int = 0
    rejected: int = 0
    escalated: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
