"""Pydantic schemas for message ingestion and message detail."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.schemas.resolution import (
    ClassificationMethod,
    ConfidenceBand,
    DocumentType,
    ExtractionMethod,
    IdentifierKind,
    LinkMethod,
    OutcomeStatus,
    ResolutionOutcome,
)


class MessageIn(BaseModel):
    """One message as supplied by the ingestion collaborator."""

    external_id: str | None = Field(None, max_length=512, description="Mailbox message id; ingestion is idempotent on it")
    sender_address: str = Field(..., min_length=1, max_length=512)
    sender_name: str | None = Field(None, max_length=512)
    apparent_sender: str | None = Field(None, max_length=512)
    subject: str = ""
    body_text: str = ""
    attachment_text: str = ""
    received_at: datetime
    thread_id: str | None = Field(None, max_length=512)
    thread_position: int | None = None


class MessageResponse(BaseModel):
    id: uuid.UUID
    external_id: str | None = None
    sender_address: str
    sender_name: str | None = None
    apparent_sender: str | None = None
    subject: str
    received_at: datetime
    thread_id: str | None = None
    thread_position: int | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class ClassificationResponse(BaseModel):
    sequence: int
    document_type: DocumentType
    confidence: int
    confidence_band: ConfidenceBand
    method: ClassificationMethod
    evidence: str | None = None
    needs_review: bool
    config_version: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class IdentifierResponse(BaseModel):
    kind: IdentifierKind
    value: str
    confidence: int
    extraction_method: ExtractionMethod

    model_config = {"from_attributes": True}


class LinkResponse(BaseModel):
    shipment_id: uuid.UUID
    document_type: DocumentType
    link_method: LinkMethod
    confidence_score: int
    is_source_of_truth: bool

    model_config = {"from_attributes": True}


class OutcomeResponse(BaseModel):
    status: OutcomeStatus
    attempts: int
    error: str | None = None
    config_version: str | None = None
    last_processed_at: datetime | None = None

    model_config = {"from_attributes": True}


class MessageDetailResponse(MessageResponse):
    classifications: list[ClassificationResponse] = Field(default_factory=list)
    identifiers: list[IdentifierResponse] = Field(default_factory=list)
    link: LinkResponse | None = None
    outcome: OutcomeResponse | None = None


class IngestResponse(BaseModel):
    message_id: uuid.UUID
    created: bool
    outcome: ResolutionOutcome
