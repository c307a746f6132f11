from app.schemas.health import HealthResponse
from app.schemas.message import IngestResponse, MessageDetailResponse, MessageIn
from app.schemas.resolution import ResolutionOutcome
from app.schemas.shipment import ShipmentDetailResponse, ShipmentListResponse

__all__ = [
    "HealthResponse",
    "IngestResponse",
    "MessageDetailResponse",
    "MessageIn",
    "ResolutionOutcome",
    "ShipmentDetailResponse",
    "ShipmentListResponse",
]
