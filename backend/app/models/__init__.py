from app.models.base import Base, TimestampMixin
from app.models.message import Message, MessageOutcome
from app.models.classification import Classification, ExtractedIdentifier
from app.models.shipment import IdentifierMapping, MessageShipmentLink, Shipment
from app.models.workflow import ActionItem, WorkflowEvent
from app.models.review import ReviewItem, ReviewItemType, ReviewStatus
from app.models.audit import AuditEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "Message",
    "MessageOutcome",
    "Classification",
    "ExtractedIdentifier",
    "Shipment",
    "IdentifierMapping",
    "MessageShipmentLink",
    "WorkflowEvent",
    "ActionItem",
    "ReviewItem",
    "ReviewItemType",
    "ReviewStatus",
    "AuditEvent",
]
