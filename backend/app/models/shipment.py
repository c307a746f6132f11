"""ORM models for shipments, learned identifier mappings and message links."""

import uuid
from datetime import date, datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, Enum as SAEnum, ForeignKey, Integer, JSON, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin
from app.schemas.resolution import DocumentType, IdentifierKind, LinkMethod


class Shipment(Base, TimestampMixin):
    """Canonical shipment aggregate. Fields are first-writer-wins."""

    __tablename__ = "shipments"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    booking_key: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True)
    bl_number: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    mbl_number: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    hbl_number: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    container_number: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    carrier_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    vessel_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    voyage_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    port_of_loading: Mapped[str | None] = mapped_column(String(200), nullable=True)
    port_of_discharge: Mapped[str | None] = mapped_column(String(200), nullable=True)
    place_of_receipt: Mapped[str | None] = mapped_column(String(200), nullable=True)
    place_of_delivery: Mapped[str | None] = mapped_column(String(200), nullable=True)
    shipper: Mapped[str | None] = mapped_column(String(300), nullable=True)
    consignee: Mapped[str | None] = mapped_column(String(300), nullable=True)

    etd: Mapped[date | None] = mapped_column(Date, nullable=True)
    eta: Mapped[date | None] = mapped_column(Date, nullable=True)
    si_cutoff: Mapped[date | None] = mapped_column(Date, nullable=True)
    vgm_cutoff: Mapped[date | None] = mapped_column(Date, nullable=True)
    cargo_cutoff: Mapped[date | None] = mapped_column(Date, nullable=True)
    gate_cutoff: Mapped[date | None] = mapped_column(Date, nullable=True)

    workflow_state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    workflow_state_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    states_reached: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    created_from_message_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("messages.id"), nullable=True
    )


class IdentifierMapping(Base):
    """Secondary identifier (container/BL/MBL/HBL) observed alongside a booking number."""

    __tablename__ = "identifier_mappings"
    __table_args__ = (
        sa.UniqueConstraint("identifier_kind", "identifier_value", name="uq_identifier_mappings_kind_value"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identifier_kind: Mapped[IdentifierKind] = mapped_column(
        SAEnum(IdentifierKind, name="identifier_kind", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    identifier_value: Mapped[str] = mapped_column(String(50), nullable=False)
    booking_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    source_message_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )
    confidence: Mapped[int] = mapped_column(Integer, default=80, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class MessageShipmentLink(Base):
    __tablename__ = "message_shipment_links"
    __table_args__ = (
        sa.UniqueConstraint("message_id", name="uq_message_shipment_links_message"),
        sa.UniqueConstraint("message_id", "shipment_id", name="uq_message_shipment_links_message_shipment"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("shipments.id"), nullable=False, index=True
    )
    document_type: Mapped[DocumentType] = mapped_column(
        SAEnum(DocumentType, name="document_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    link_method: Mapped[LinkMethod] = mapped_column(
        SAEnum(LinkMethod, name="link_method", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False)
    is_source_of_truth: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
