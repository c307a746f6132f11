"""ORM models for ingested messages and their per-run resolution outcome."""

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import DateTime, Enum as SAEnum, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.schemas.resolution import OutcomeStatus


class Message(Base):
    """One ingested email. Immutable once ingested."""

    __tablename__ = "messages"
    __table_args__ = (
        sa.Index("ix_messages_received_at_id", "received_at", "id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str | None] = mapped_column(String(512), unique=True, nullable=True)
    sender_address: Mapped[str] = mapped_column(String(512), nullable=False)
    sender_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    apparent_sender: Mapped[str | None] = mapped_column(String(512), nullable=True)
    subject: Mapped[str] = mapped_column(Text, default="", nullable=False)
    body_text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    attachment_text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    thread_id: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    thread_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class MessageOutcome(Base):
    """Latest pipeline outcome for a message; drives the orphan sweep."""

    __tablename__ = "message_outcomes"

    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[OutcomeStatus] = mapped_column(
        SAEnum(OutcomeStatus, name="outcome_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )
    detail: Mapped[dict | None] = mapped_column(sa.JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    config_version: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
