"""Shipment browsing, manual action items and duplicate merges."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db, get_resolution_pipeline
from app.errors import ShipmentMergeError
from app.models.shipment import MessageShipmentLink, Shipment
from app.models.workflow import ActionItem, WorkflowEvent
from app.pipeline import DocumentResolutionPipeline
from app.schemas.shipment import (
    ActionItemCreate,
    ActionItemResponse,
    MergeRequest,
    ShipmentDetailResponse,
    ShipmentLinkResponse,
    ShipmentListResponse,
    ShipmentResponse,
    WorkflowEventResponse,
)

router = APIRouter()


@router.get("", response_model=ShipmentListResponse)
async def list_shipments(
    page: int = 1,
    per_page: int = 20,
    workflow_state: str | None = None,
    booking_number: str | None = None,
    db: AsyncSession = Depends(get_db),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
) -> ShipmentListResponse:
    if booking_number:
        shipment = await pipeline.shipments.find_by_booking(db, booking_number)
        found = [shipment] if shipment else []
        return ShipmentListResponse(
            shipments=[ShipmentResponse.model_validate(s) for s in found],
            total=len(found),
            page=1,
            per_page=per_page,
        )

    query = select(Shipment)
    count_query = select(func.count(Shipment.id))
    if workflow_state:
        query = query.where(Shipment.workflow_state == workflow_state)
        count_query = count_query.where(Shipment.workflow_state == workflow_state)

    total = (await db.execute(count_query)).scalar_one()
    offset = (page - 1) * per_page
    shipments = (await db.execute(
        query.order_by(Shipment.created_at.desc(), Shipment.id).offset(offset).limit(per_page)
    )).scalars().all()

    return ShipmentListResponse(
        shipments=[ShipmentResponse.model_validate(s) for s in shipments],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("/merge", response_model=ShipmentResponse)
async def merge_shipments(
    request: MergeRequest,
    db: AsyncSession = Depends(get_db),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
) -> ShipmentResponse:
    """Fold a confirmed duplicate into its canonical shipment."""
    try:
        shipment = await pipeline.shipments.merge_shipments(
            db,
            request.canonical_id,
            request.duplicate_id,
            reviewed_by=request.reviewed_by,
            rationale=request.rationale,
        )
    except ShipmentMergeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ShipmentResponse.model_validate(shipment)


@router.get("/{shipment_id}", response_model=ShipmentDetailResponse)
async def get_shipment(
    shipment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> ShipmentDetailResponse:
    shipment = await db.get(Shipment, shipment_id)
    if shipment is None:
        raise HTTPException(status_code=404, detail="Shipment not found")

    links = (await db.execute(
        select(MessageShipmentLink)
        .where(MessageShipmentLink.shipment_id == shipment_id)
        .order_by(MessageShipmentLink.created_at)
    )).scalars().all()
    events = (await db.execute(
        select(WorkflowEvent)
        .where(WorkflowEvent.shipment_id == shipment_id)
        .order_by(WorkflowEvent.occurred_at, WorkflowEvent.state_order)
    )).scalars().all()
    actions = (await db.execute(
        select(ActionItem)
        .where(ActionItem.shipment_id == shipment_id)
        .order_by(ActionItem.raised_at)
    )).scalars().all()

    detail = ShipmentDetailResponse.model_validate(shipment)
    detail.links = [ShipmentLinkResponse.model_validate(link) for link in links]
    detail.workflow_events = [WorkflowEventResponse.model_validate(e) for e in events]
    detail.action_items = [ActionItemResponse.model_validate(a) for a in actions]
    return detail


@router.post("/{shipment_id}/action-items", response_model=ActionItemResponse, status_code=201)
async def create_action_item(
    shipment_id: uuid.UUID,
    request: ActionItemCreate,
    db: AsyncSession = Depends(get_db),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
) -> ActionItemResponse:
    try:
        item = await pipeline.workflow.create_action_item(
            db,
            shipment_id,
            description=request.description,
            owner=request.owner,
            priority=request.priority,
            deadline=request.deadline,
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ActionItemResponse.model_validate(item)
