"""Message ingestion, reprocessing and inspection."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db, get_resolution_pipeline
from app.models.classification import Classification, ExtractedIdentifier
from app.models.message import Message, MessageOutcome
from app.models.shipment import MessageShipmentLink
from app.pipeline import DocumentResolutionPipeline
from app.schemas.message import (
    ClassificationResponse,
    IdentifierResponse,
    IngestResponse,
    LinkResponse,
    MessageDetailResponse,
    MessageIn,
    OutcomeResponse,
)
from app.schemas.resolution import ResolutionOutcome

router = APIRouter()


@router.post("", response_model=IngestResponse)
async def ingest_message(
    payload: MessageIn,
    db: AsyncSession = Depends(get_db),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
) -> IngestResponse:
    """Store a message (idempotent on external_id) and resolve it."""
    message, created = await pipeline.ingest_message(db, payload)
    outcome = await pipeline.process_message(db, message)
    return IngestResponse(message_id=message.id, created=created, outcome=outcome)


@router.post("/{message_id}/reprocess", response_model=ResolutionOutcome)
async def reprocess_message(
    message_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
) -> ResolutionOutcome:
    outcome = await pipeline.process_by_id(db, message_id)
    if outcome is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return outcome


@router.get("/{message_id}", response_model=MessageDetailResponse)
async def get_message(
    message_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> MessageDetailResponse:
    """Message with its classification history, identifiers, link and latest outcome."""
    message = await db.get(Message, message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")

    classifications = (await db.execute(
        select(Classification)
        .where(Classification.message_id == message_id)
        .order_by(Classification.sequence)
    )).scalars().all()
    identifiers = (await db.execute(
        select(ExtractedIdentifier)
        .where(ExtractedIdentifier.message_id == message_id)
        .order_by(ExtractedIdentifier.kind, ExtractedIdentifier.value)
    )).scalars().all()
    link = (await db.execute(
        select(MessageShipmentLink).where(MessageShipmentLink.message_id == message_id)
    )).scalar_one_or_none()
    outcome = await db.get(MessageOutcome, message_id)

    return MessageDetailResponse(
        id=message.id,
        external_id=message.external_id,
        sender_address=message.sender_address,
        sender_name=message.sender_name,
        apparent_sender=message.apparent_sender,
        subject=message.subject,
        received_at=message.received_at,
        thread_id=message.thread_id,
        thread_position=message.thread_position,
        created_at=message.created_at,
        classifications=[ClassificationResponse.model_validate(c) for c in classifications],
        identifiers=[IdentifierResponse.model_validate(i) for i in identifiers],
        link=LinkResponse.model_validate(link) if link else None,
        outcome=OutcomeResponse.model_validate(outcome) if outcome else None,
    )
