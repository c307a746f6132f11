"""Pydantic schemas for bulk maintenance runs."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class CheckpointModel(BaseModel):
    received_at: datetime
    message_id: uuid.UUID


class MaintenanceRequest(BaseModel):
    page_size: int | None = Field(None, ge=1, le=5000)
    limit: int | None = Field(None, ge=1, description="Stop after this many messages")
    after: CheckpointModel | None = Field(None, description="Resume after this checkpoint")


class MaintenanceResponse(BaseModel):
    processed: int
    by_status: dict[str, int]
    checkpoint: CheckpointModel | None = None
    finished: bool


class DuplicateGroupResponse(BaseModel):
    booking_key: str
    canonical_id: uuid.UUID
    duplicate_ids: list[uuid.UUID]
    review_item_ids: list[uuid.UUID]


class DuplicateScanResponse(BaseModel):
    groups: list[DuplicateGroupResponse]
