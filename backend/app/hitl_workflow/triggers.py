"""ReviewTriggers — pure functions to determine if items need human review.

No DB or service dependencies, easy to unit test.
"""

from app.schemas.resolution import ClassificationResult, DocumentType


def should_review_classification(
    result: ClassificationResult,
    *,
    confidence_threshold: int = 50,
) -> tuple[bool, str]:
    """Unknown or low-confidence classifications go to review.

    Returns (needs_review, reason).
    """
    if result.document_type == DocumentType.UNKNOWN:
        return True, f"Unclassified message ({result.method.value} tier): {result.evidence or 'no evidence'}"

    if result.confidence < confidence_threshold:
        return True, (
            f"Low confidence {result.document_type.value} "
            f"({result.confidence} < {confidence_threshold}, {result.method.value} tier)"
        )

    return False, "Confidence acceptable"


def should_review_link_conflict(
    booking_shipment_id,
    secondary_shipment_id,
) -> tuple[bool, str]:
    """A booking number and a secondary identifier resolving to different shipments."""
    if booking_shipment_id is None or secondary_shipment_id is None:
        return False, "Only one identifier resolved"
    if booking_shipment_id == secondary_shipment_id:
        return False, "Identifiers agree"
    return True, (
        f"Booking number resolves to {booking_shipment_id} but a secondary identifier "
        f"resolves to {secondary_shipment_id}; booking number preferred"
    )


def should_review_duplicate(member_count: int, booking_numbers: list[str]) -> tuple[bool, str]:
    """Two or more shipments sharing a normalised booking key."""
    if member_count < 2:
        return False, "No duplicate"
    return True, f"{member_count} shipments share booking key: {', '.join(sorted(booking_numbers))}"
