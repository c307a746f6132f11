"""Pydantic schemas for shipments, workflow history and action items."""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, Field

from app.schemas.resolution import Direction, DocumentType, LinkMethod


class ShipmentResponse(BaseModel):
    id: uuid.UUID
    booking_number: str | None = None
    bl_number: str | None = None
    mbl_number: str | None = None
    hbl_number: str | None = None
    container_number: str | None = None
    carrier_id: str | None = None
    vessel_name: str | None = None
    voyage_number: str | None = None
    port_of_loading: str | None = None
    port_of_discharge: str | None = None
    place_of_receipt: str | None = None
    place_of_delivery: str | None = None
    shipper: str | None = None
    consignee: str | None = None
    etd: date | None = None
    eta: date | None = None
    si_cutoff: date | None = None
    vgm_cutoff: date | None = None
    cargo_cutoff: date | None = None
    gate_cutoff: date | None = None
    workflow_state: str | None = None
    workflow_state_order: int = 0
    states_reached: list[str] = Field(default_factory=list)
    created_from_message_id: uuid.UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class ShipmentListResponse(BaseModel):
    shipments: list[ShipmentResponse]
    total: int
    page: int
    per_page: int


class ShipmentLinkResponse(BaseModel):
    message_id: uuid.UUID
    document_type: DocumentType
    link_method: LinkMethod
    confidence_score: int
    is_source_of_truth: bool
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class WorkflowEventResponse(BaseModel):
    workflow_state: str
    state_order: int
    triggering_message_id: uuid.UUID
    direction: Direction
    occurred_at: datetime

    model_config = {"from_attributes": True}


class ActionItemResponse(BaseModel):
    id: uuid.UUID
    description: str
    owner: str | None = None
    priority: str
    deadline: date | None = None
    source_message_id: uuid.UUID | None = None
    raised_at: datetime
    completed_at: datetime | None = None
    completed_by_message_id: uuid.UUID | None = None

    model_config = {"from_attributes": True}


class ShipmentDetailResponse(ShipmentResponse):
    links: list[ShipmentLinkResponse] = Field(default_factory=list)
    workflow_events: list[WorkflowEventResponse] = Field(default_factory=list)
    action_items: list[ActionItemResponse] = Field(default_factory=list)


class ActionItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    owner: str | None = Field(None, max_length=100)
    priority: str = Field("medium", pattern="^(low|medium|high|critical)$")
    deadline: date | None = None


class MergeRequest(BaseModel):
    canonical_id: uuid.UUID
    duplicate_id: uuid.UUID
    reviewed_by: str = "user"
    rationale: str = Field(..., min_length=1, description="Why the canonical record was chosen")
