from app.shipment_resolver.locks import ShipmentLockRegistry
from app.shipment_resolver.matchers import normalize_booking_number
from app.shipment_resolver.service import DuplicateGroup, ShipmentResolution, ShipmentResolver

__all__ = [
    "DuplicateGroup",
    "ShipmentLockRegistry",
    "ShipmentResolution",
    "ShipmentResolver",
    "normalize_booking_number",
]
