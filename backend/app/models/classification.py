"""ORM models for append-only classification history and extracted identifiers."""

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Enum as SAEnum, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.schemas.resolution import (
    ClassificationMethod,
    ConfidenceBand,
    DocumentType,
    ExtractionMethod,
    IdentifierKind,
)


class Classification(Base):
    __tablename__ = "classifications"
    __table_args__ = (
        sa.UniqueConstraint("message_id", "sequence", name="uq_classifications_message_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    document_type: Mapped[DocumentType] = mapped_column(
        SAEnum(DocumentType, name="document_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence_band: Mapped[ConfidenceBand] = mapped_column(
        SAEnum(ConfidenceBand, name="confidence_band", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    method: Mapped[ClassificationMethod] = mapped_column(
        SAEnum(ClassificationMethod, name="classification_method", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    evidence: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    config_version: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ExtractedIdentifier(Base):
    __tablename__ = "extracted_identifiers"
    __table_args__ = (
        sa.UniqueConstraint("message_id", "kind", "value", name="uq_extracted_identifiers_message_kind_value"),
        sa.Index("ix_extracted_identifiers_kind_value", "kind", "value"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[IdentifierKind] = mapped_column(
        SAEnum(IdentifierKind, name="identifier_kind", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    value: Mapped[str] = mapped_column(String(500), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    extraction_method: Mapped[ExtractionMethod] = mapped_column(
        SAEnum(ExtractionMethod, name="extraction_method", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
