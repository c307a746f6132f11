import enum
import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class Direction(str, enum.Enum):
    """Flow of a message relative to the forwarding organisation."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DirectionMethod(str, enum.Enum):
    """Which resolution step decided the direction."""

    DIRECT_DOMAIN = "direct_domain"
    FORWARD_MARKER = "forward_marker"
    SUBJECT_PATTERN = "subject_pattern"
    OWN_ORG = "own_org"
    FALLBACK = "fallback"


class SenderCategory(str, enum.Enum):
    CARRIER = "carrier"
    OWN_ORG = "own_org"
    EXTERNAL = "external"


class DocumentType(str, enum.Enum):
    """Closed catalogue of shipping-document kinds."""

    BOOKING_CONFIRMATION = "booking_confirmation"
    BOOKING_AMENDMENT = "booking_amendment"
    BOOKING_CANCELLATION = "booking_cancellation"
    RATE_QUOTE = "rate_quote"
    SHIPPING_INSTRUCTION = "shipping_instruction"
    SI_CONFIRMATION = "si_confirmation"
    VGM_CONFIRMATION = "vgm_confirmation"
    VGM_REMINDER = "vgm_reminder"
    SOB_CONFIRMATION = "sob_confirmation"
    CHECKLIST = "checklist"
    SHIPPING_BILL = "shipping_bill"
    COMMERCIAL_INVOICE = "commercial_invoice"
    PACKING_LIST = "packing_list"
    DRAFT_BL = "draft_bl"
    BILL_OF_LADING = "bill_of_lading"
    HOUSE_BL = "house_bl"
    SEA_WAYBILL = "sea_waybill"
    TELEX_RELEASE = "telex_release"
    ARRIVAL_NOTICE = "arrival_notice"
    PICKUP_NOTIFICATION = "pickup_notification"
    DELIVERY_ORDER = "delivery_order"
    CONTAINER_RELEASE = "container_release"
    FREIGHT_RELEASE = "freight_release"
    CUSTOMS_ENTRY = "customs_entry"
    ENTRY_SUMMARY = "entry_summary"
    DUTY_INVOICE = "duty_invoice"
    ISF_FILING = "isf_filing"
    INVOICE = "invoice"
    DEBIT_NOTE = "debit_note"
    CUTOFF_ADVISORY = "cutoff_advisory"
    VESSEL_SCHEDULE = "vessel_schedule"
    EXCEPTION_REPORT = "exception_report"
    PROOF_OF_DELIVERY = "proof_of_delivery"
    GENERAL_CORRESPONDENCE = "general_correspondence"
    UNKNOWN = "unknown"


SHIPMENT_CREATING_TYPES = frozenset({DocumentType.BOOKING_CONFIRMATION, DocumentType.BOOKING_AMENDMENT})


class ClassificationMethod(str, enum.Enum):
    PATTERN = "pattern"
    AI = "ai"
    NONE = "none"


class ConfidenceBand(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def confidence_band(confidence: int) -> ConfidenceBand:
    """<50 low, 50-84 medium, >=85 high."""
    if confidence >= 85:
        return ConfidenceBand.HIGH
    if confidence >= 50:
        return ConfidenceBand.MEDIUM
    return ConfidenceBand.LOW


class IdentifierKind(str, enum.Enum):
    BOOKING_NUMBER = "booking_number"
    BL_NUMBER = "bl_number"
    MBL_NUMBER = "mbl_number"
    HBL_NUMBER = "hbl_number"
    CONTAINER_NUMBER = "container_number"
    SI_CUTOFF = "si_cutoff"
    VGM_CUTOFF = "vgm_cutoff"
    CARGO_CUTOFF = "cargo_cutoff"
    GATE_CUTOFF = "gate_cutoff"
    ETD = "etd"
    ETA = "eta"
    VESSEL_NAME = "vessel_name"
    VOYAGE_NUMBER = "voyage_number"
    PORT_OF_LOADING = "port_of_loading"
    PORT_OF_DISCHARGE = "port_of_discharge"
    PLACE_OF_RECEIPT = "place_of_receipt"
    PLACE_OF_DELIVERY = "place_of_delivery"
    SHIPPER = "shipper"
    CONSIGNEE = "consignee"


DATE_KINDS = frozenset({
    IdentifierKind.SI_CUTOFF,
    IdentifierKind.VGM_CUTOFF,
    IdentifierKind.CARGO_CUTOFF,
    IdentifierKind.GATE_CUTOFF,
    IdentifierKind.ETD,
    IdentifierKind.ETA,
})

SECONDARY_KINDS = (
    IdentifierKind.BL_NUMBER,
    IdentifierKind.MBL_NUMBER,
    IdentifierKind.HBL_NUMBER,
    IdentifierKind.CONTAINER_NUMBER,
)


class ExtractionMethod(str, enum.Enum):
    PATTERN = "pattern"
    AI = "ai"


class LinkMethod(str, enum.Enum):
    BOOKING_NUMBER = "booking_number"
    IDENTIFIER_MAPPING = "identifier_mapping"
    SHIPMENT_FIELD = "shipment_field"
    CREATED = "created"


class OutcomeStatus(str, enum.Enum):
    LINKED = "linked"
    ORPHAN_NO_IDENTIFIERS = "orphan_no_identifiers"
    AWAITING_DIRECT_CARRIER = "awaiting_direct_carrier"
    FAILED = "failed"


# --- Stage outputs ---


class ResolvedDirection(BaseModel):
    """Direction of a message and the party that really sent it. Never stored."""

    model_config = {"frozen": True}

    direction: Direction
    true_party: str = Field(..., description="Display name or address of the originating party")
    true_domain: str = Field("", description="Domain of the originating party, empty when unknown")
    method: DirectionMethod
    carrier_id: str | None = Field(None, description="Carrier profile id when the true party is a carrier")

    @property
    def is_direct_carrier(self) -> bool:
        return self.method == DirectionMethod.DIRECT_DOMAIN

    @property
    def sender_category(self) -> SenderCategory:
        if self.carrier_id is not None:
            return SenderCategory.CARRIER
        if self.method == DirectionMethod.OWN_ORG:
            return SenderCategory.OWN_ORG
        return SenderCategory.EXTERNAL


class ClassificationResult(BaseModel):
    document_type: DocumentType
    confidence: int = Field(..., ge=0, le=100)
    method: ClassificationMethod
    evidence: str = Field("", description="Matched rule id or raw model reasoning")

    @property
    def band(self) -> ConfidenceBand:
        return confidence_band(self.confidence)


class ExtractedValue(BaseModel):
    model_config = {"frozen": True}

    kind: IdentifierKind
    value: str
    confidence: int = Field(..., ge=0, le=100)
    method: ExtractionMethod


class ResolutionOutcome(BaseModel):
    """Everything one pipeline run decided about one message."""

    message_id: uuid.UUID
    status: OutcomeStatus
    direction: ResolvedDirection | None = None
    classification: ClassificationResult | None = None
    identifiers: list[ExtractedValue] = Field(default_factory=list)
    shipment_id: uuid.UUID | None = None
    link_method: LinkMethod | None = None
    shipment_created: bool = False
    workflow_state: str | None = None
    workflow_advanced: bool = False
    actions_resolved: list[uuid.UUID] = Field(default_factory=list)
    actions_created: list[uuid.UUID] = Field(default_factory=list)
    error: str | None = None
    config_version: str = ""
    processed_at: datetime | None = None
