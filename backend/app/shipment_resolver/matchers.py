"""Booking-number normalisation and link scoring for shipment resolution.

Pure functions — no DB or Claude dependency.
"""

import re
from collections import defaultdict

from app.resolution_config.loader import CarrierTable
from app.schemas.resolution import (
    DirectionMethod,
    ExtractedValue,
    IdentifierKind,
    LinkMethod,
    ResolvedDirection,
)

MIN_KEY_LENGTH = 5

# Base confidence per link method, before sender authority
LINK_METHOD_CONFIDENCE = {
    LinkMethod.CREATED: 100,
    LinkMethod.BOOKING_NUMBER: 95,
    LinkMethod.IDENTIFIER_MAPPING: 85,
    LinkMethod.SHIPMENT_FIELD: 80,
}

SENDER_AUTHORITY_ADJUSTMENT = {
    DirectionMethod.DIRECT_DOMAIN: 0,
    DirectionMethod.OWN_ORG: -5,
    DirectionMethod.FORWARD_MARKER: -5,
    DirectionMethod.SUBJECT_PATTERN: -10,
    DirectionMethod.FALLBACK: -15,
}

# Lookup order for secondary identifiers, most reliable first
SECONDARY_PRIORITY = (
    IdentifierKind.BL_NUMBER,
    IdentifierKind.MBL_NUMBER,
    IdentifierKind.HBL_NUMBER,
    IdentifierKind.CONTAINER_NUMBER,
)


def normalize_booking_number(raw: str | None, carriers: CarrierTable) -> str | None:
    """Reduce a booking number to its carrier-native key.

    Uppercases, drops whitespace, strips a trailing reference suffix
    ("-01", "/A", " AMD2") and a known carrier prefix ("MAEU", "HL-", "COSU")
    when digits follow it. Returns None when nothing usable remains.
    """
    if not raw:
        return None
    value = re.sub(r"\s+", " ", raw.strip().upper())

    suffix_re = carriers.suffix_re
    if suffix_re is not None:
        stripped = suffix_re.sub("", value)
        if len(stripped.replace(" ", "")) >= MIN_KEY_LENGTH:
            value = stripped

    value = value.replace(" ", "")
    for prefix in carriers.all_booking_prefixes:
        if value.startswith(prefix):
            rest = value[len(prefix):].lstrip("-_/")
            if rest.isdigit() and len(rest) >= MIN_KEY_LENGTH:
                value = rest
                break

    return value if len(value) >= MIN_KEY_LENGTH else None


def booking_candidates(values: list[ExtractedValue]) -> list[ExtractedValue]:
    """Booking numbers, highest confidence first."""
    bookings = [v for v in values if v.kind == IdentifierKind.BOOKING_NUMBER]
    return sorted(bookings, key=lambda v: (-v.confidence, v.value))


def secondary_identifiers(values: list[ExtractedValue]) -> list[ExtractedValue]:
    """Container/BL/MBL/HBL values in lookup priority order."""
    ordered: list[ExtractedValue] = []
    for kind in SECONDARY_PRIORITY:
        ordered.extend(sorted(
            (v for v in values if v.kind == kind),
            key=lambda v: (-v.confidence, v.value),
        ))
    return ordered


def link_confidence(link_method: LinkMethod, direction: ResolvedDirection) -> int:
    """Confidence for a message-shipment link from how it was found and who sent it."""
    base = LINK_METHOD_CONFIDENCE[link_method]
    adjustment = SENDER_AUTHORITY_ADJUSTMENT.get(direction.method, -15)
    return max(0, min(100, base + adjustment))


def is_canonical_form(booking_number: str | None, carriers: CarrierTable) -> bool:
    """True when the stored booking number is already its own normalised key."""
    if not booking_number:
        return False
    return normalize_booking_number(booking_number, carriers) == booking_number


def group_duplicates(rows: list[tuple], carriers: CarrierTable) -> dict[str, list[tuple]]:
    """Group (id, booking_number, created_at) rows by normalised key; only groups of 2+."""
    groups: dict[str, list[tuple]] = defaultdict(list)
    for row in rows:
        key = normalize_booking_number(row[1], carriers)
        if key:
            groups[key].append(row)
    return {key: members for key, members in groups.items() if len(members) > 1}


def choose_canonical(members: list[tuple], carriers: CarrierTable) -> tuple:
    """Carrier-native format first, then the oldest record."""
    return sorted(
        members,
        key=lambda row: (not is_canonical_form(row[1], carriers), row[2] is None, row[2] or 0, str(row[0])),
    )[0]
