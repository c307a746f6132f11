"""Document resolution schema

Revision ID: 001_resolution_schema
Revises:
Create Date: 2025-12-01

Messages and their outcomes, append-only classification history, extracted
identifiers, shipments with learned identifier mappings and message links,
the workflow journal, action items, the review queue and the audit log.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgENUM
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001_resolution_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


DOCUMENT_TYPES = (
    "booking_confirmation", "booking_amendment", "booking_cancellation", "rate_quote",
    "shipping_instruction", "si_confirmation", "vgm_confirmation", "vgm_reminder",
    "sob_confirmation", "checklist", "shipping_bill", "commercial_invoice", "packing_list",
    "draft_bl", "bill_of_lading", "house_bl", "sea_waybill", "telex_release",
    "arrival_notice", "pickup_notification", "delivery_order", "container_release",
    "freight_release", "customs_entry", "entry_summary", "duty_invoice", "isf_filing",
    "invoice", "debit_note", "cutoff_advisory", "vessel_schedule", "exception_report",
    "proof_of_delivery", "general_correspondence", "unknown",
)

IDENTIFIER_KINDS = (
    "booking_number", "bl_number", "mbl_number", "hbl_number", "container_number",
    "si_cutoff", "vgm_cutoff", "cargo_cutoff", "gate_cutoff", "etd", "eta",
    "vessel_name", "voyage_number", "port_of_loading", "port_of_discharge",
    "place_of_receipt", "place_of_delivery", "shipper", "consignee",
)

ENUMS = {
    "document_type": PgENUM(*DOCUMENT_TYPES, name="document_type", create_type=False),
    "identifier_kind": PgENUM(*IDENTIFIER_KINDS, name="identifier_kind", create_type=False),
    "direction": PgENUM("inbound", "outbound", name="direction", create_type=False),
    "classification_method": PgENUM("pattern", "ai", "none", name="classification_method", create_type=False),
    "confidence_band": PgENUM("low", "medium", "high", name="confidence_band", create_type=False),
    "extraction_method": PgENUM("pattern", "ai", name="extraction_method", create_type=False),
    "link_method": PgENUM(
        "booking_number", "identifier_mapping", "shipment_field", "created",
        name="link_method", create_type=False,
    ),
    "outcome_status": PgENUM(
        "linked", "orphan_no_identifiers", "awaiting_direct_carrier", "failed",
        name="outcome_status", create_type=False,
    ),
    "review_status": PgENUM(
        "pending_review", "approved", "rejected", "escalated",
        name="review_status", create_type=False,
    ),
    "review_item_type": PgENUM(
        "classification_review", "link_conflict", "duplicate_shipment",
        name="review_item_type", create_type=False,
    ),
}


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS.values():
        enum.create(bind, checkfirst=True)

    # ── Messages ──
    op.create_table(
        "messages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("external_id", sa.String(512), nullable=True, unique=True),
        sa.Column("sender_address", sa.String(512), nullable=False),
        sa.Column("sender_name", sa.String(512), nullable=True),
        sa.Column("apparent_sender", sa.String(512), nullable=True),
        sa.Column("subject", sa.Text, nullable=False, server_default=""),
        sa.Column("body_text", sa.Text, nullable=False, server_default=""),
        sa.Column("attachment_text", sa.Text, nullable=False, server_default=""),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("thread_id", sa.String(512), nullable=True),
        sa.Column("thread_position", sa.Integer, nullable=True),
        _created_at(),
    )
    op.create_index("ix_messages_received_at_id", "messages", ["received_at", "id"])
    op.create_index("ix_messages_thread_id", "messages", ["thread_id"])

    op.create_table(
        "message_outcomes",
        sa.Column(
            "message_id", UUID(as_uuid=True),
            sa.ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("status", ENUMS["outcome_status"], nullable=False),
        sa.Column("detail", sa.JSON, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("config_version", sa.String(255), nullable=True),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_message_outcomes_status", "message_outcomes", ["status"])

    # ── Classification history and identifiers ──
    op.create_table(
        "classifications",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "message_id", UUID(as_uuid=True),
            sa.ForeignKey("messages.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("document_type", ENUMS["document_type"], nullable=False),
        sa.Column("confidence", sa.Integer, nullable=False),
        sa.Column("confidence_band", ENUMS["confidence_band"], nullable=False),
        sa.Column("method", ENUMS["classification_method"], nullable=False),
        sa.Column("evidence", sa.Text, nullable=True),
        sa.Column("needs_review", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("config_version", sa.String(255), nullable=True),
        _created_at(),
        sa.UniqueConstraint("message_id", "sequence", name="uq_classifications_message_sequence"),
    )
    op.create_index("ix_classifications_message_id", "classifications", ["message_id"])

    op.create_table(
        "extracted_identifiers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "message_id", UUID(as_uuid=True),
            sa.ForeignKey("messages.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("kind", ENUMS["identifier_kind"], nullable=False),
        sa.Column("value", sa.String(500), nullable=False),
        sa.Column("confidence", sa.Integer, nullable=False),
        sa.Column("extraction_method", ENUMS["extraction_method"], nullable=False),
        _created_at(),
        sa.UniqueConstraint("message_id", "kind", "value", name="uq_extracted_identifiers_message_kind_value"),
    )
    op.create_index("ix_extracted_identifiers_message_id", "extracted_identifiers", ["message_id"])
    op.create_index("ix_extracted_identifiers_kind_value", "extracted_identifiers", ["kind", "value"])

    # ── Shipments ──
    op.create_table(
        "shipments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_number", sa.String(50), nullable=True),
        sa.Column("booking_key", sa.String(50), nullable=True, unique=True),
        sa.Column("bl_number", sa.String(50), nullable=True),
        sa.Column("mbl_number", sa.String(50), nullable=True),
        sa.Column("hbl_number", sa.String(50), nullable=True),
        sa.Column("container_number", sa.String(20), nullable=True),
        sa.Column("carrier_id", sa.String(50), nullable=True),
        sa.Column("vessel_name", sa.String(200), nullable=True),
        sa.Column("voyage_number", sa.String(50), nullable=True),
        sa.Column("port_of_loading", sa.String(200), nullable=True),
        sa.Column("port_of_discharge", sa.String(200), nullable=True),
        sa.Column("place_of_receipt", sa.String(200), nullable=True),
        sa.Column("place_of_delivery", sa.String(200), nullable=True),
        sa.Column("shipper", sa.String(300), nullable=True),
        sa.Column("consignee", sa.String(300), nullable=True),
        sa.Column("etd", sa.Date, nullable=True),
        sa.Column("eta", sa.Date, nullable=True),
        sa.Column("si_cutoff", sa.Date, nullable=True),
        sa.Column("vgm_cutoff", sa.Date, nullable=True),
        sa.Column("cargo_cutoff", sa.Date, nullable=True),
        sa.Column("gate_cutoff", sa.Date, nullable=True),
        sa.Column("workflow_state", sa.String(100), nullable=True),
        sa.Column("workflow_state_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("states_reached", sa.JSON, nullable=False),
        sa.Column("created_from_message_id", UUID(as_uuid=True), sa.ForeignKey("messages.id"), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    for column in ("booking_number", "bl_number", "mbl_number", "hbl_number", "container_number"):
        op.create_index(f"ix_shipments_{column}", "shipments", [column])

    op.create_table(
        "identifier_mappings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("identifier_kind", ENUMS["identifier_kind"], nullable=False),
        sa.Column("identifier_value", sa.String(50), nullable=False),
        sa.Column("booking_number", sa.String(50), nullable=False),
        sa.Column(
            "source_message_id", UUID(as_uuid=True),
            sa.ForeignKey("messages.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("confidence", sa.Integer, nullable=False, server_default="80"),
        _created_at(),
        sa.UniqueConstraint("identifier_kind", "identifier_value", name="uq_identifier_mappings_kind_value"),
    )
    op.create_index("ix_identifier_mappings_booking_number", "identifier_mappings", ["booking_number"])

    op.create_table(
        "message_shipment_links",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "message_id", UUID(as_uuid=True),
            sa.ForeignKey("messages.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("shipment_id", UUID(as_uuid=True), sa.ForeignKey("shipments.id"), nullable=False),
        sa.Column("document_type", ENUMS["document_type"], nullable=False),
        sa.Column("link_method", ENUMS["link_method"], nullable=False),
        sa.Column("confidence_score", sa.Integer, nullable=False),
        sa.Column("is_source_of_truth", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at(),
        sa.UniqueConstraint("message_id", name="uq_message_shipment_links_message"),
        sa.UniqueConstraint("message_id", "shipment_id", name="uq_message_shipment_links_message_shipment"),
    )
    op.create_index("ix_message_shipment_links_shipment_id", "message_shipment_links", ["shipment_id"])

    # ── Workflow ──
    op.create_table(
        "workflow_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("shipment_id", UUID(as_uuid=True), sa.ForeignKey("shipments.id"), nullable=False),
        sa.Column("workflow_state", sa.String(100), nullable=False),
        sa.Column("state_order", sa.Integer, nullable=False),
        sa.Column("triggering_message_id", UUID(as_uuid=True), sa.ForeignKey("messages.id"), nullable=False),
        sa.Column("direction", ENUMS["direction"], nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.UniqueConstraint(
            "shipment_id", "workflow_state", "triggering_message_id",
            name="uq_workflow_events_shipment_state_message",
        ),
    )
    op.create_index("ix_workflow_events_shipment_id", "workflow_events", ["shipment_id"])
    op.create_index("ix_workflow_events_triggering_message_id", "workflow_events", ["triggering_message_id"])

    op.create_table(
        "action_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("shipment_id", UUID(as_uuid=True), sa.ForeignKey("shipments.id"), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("owner", sa.String(100), nullable=True),
        sa.Column("priority", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("deadline", sa.Date, nullable=True),
        sa.Column("source_message_id", UUID(as_uuid=True), sa.ForeignKey("messages.id"), nullable=True),
        sa.Column("raised_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by_message_id", UUID(as_uuid=True), sa.ForeignKey("messages.id"), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "shipment_id", "description", "source_message_id",
            name="uq_action_items_shipment_description_source",
        ),
    )
    op.create_index("ix_action_items_shipment_id", "action_items", ["shipment_id"])

    # ── Review queue and audit log ──
    op.create_table(
        "review_queue",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("status", ENUMS["review_status"], nullable=False, server_default="pending_review"),
        sa.Column("item_type", ENUMS["review_item_type"], nullable=False),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("severity", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("confidence", sa.Integer, nullable=True),
        sa.Column("reviewed_by", sa.String(200), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )
    op.create_index("ix_review_queue_status", "review_queue", ["status"])
    op.create_index("ix_review_queue_entity_id", "review_queue", ["entity_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=True),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=True),
        sa.Column("message_id", UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(100), nullable=True),
        sa.Column("actor", sa.String(200), nullable=False, server_default="system"),
        sa.Column("actor_type", sa.String(50), nullable=False, server_default="system"),
        sa.Column("previous_state", sa.JSON, nullable=True),
        sa.Column("new_state", sa.JSON, nullable=True),
        sa.Column("rationale", sa.Text, nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("review_queue")
    op.drop_table("action_items")
    op.drop_table("workflow_events")
    op.drop_table("message_shipment_links")
    op.drop_table("identifier_mappings")
    op.drop_table("shipments")
    op.drop_table("extracted_identifiers")
    op.drop_table("classifications")
    op.drop_table("message_outcomes")
    op.drop_table("messages")

    bind = op.get_bind()
    for enum in reversed(list(ENUMS.values())):
        enum.drop(bind, checkfirst=True)
