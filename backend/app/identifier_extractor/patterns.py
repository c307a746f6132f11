"""Pattern tier of identifier extraction.

Regex families per identifier kind plus the normalisers every value must pass,
whichever tier produced it. No DB or Claude dependency.
"""

import re
from datetime import date, datetime
from typing import NamedTuple

from app.schemas.resolution import DATE_KINDS, ExtractedValue, ExtractionMethod, IdentifierKind

MIN_BOOKING_LENGTH = 5
SUBJECT_BONUS = 3


class PatternSpec(NamedTuple):
    regex: re.Pattern
    confidence: int


# Carrier-specific formats before generic fallbacks; first match wins
BOOKING_PATTERNS = [
    PatternSpec(re.compile(r"\b(26\d{7})\b"), 96),                       # Maersk
    PatternSpec(re.compile(r"\b(COSU\d{10})\b"), 96),                    # COSCO
    PatternSpec(re.compile(r"\b(HL-?\d{8})\b"), 95),                     # Hapag-Lloyd
    PatternSpec(re.compile(r"\b((?:CEI|AMC|CAD)\d{7})\b"), 94),          # CMA CGM
    PatternSpec(re.compile(r"\b(MSC[A-Z]{2}\d{6,8})\b"), 88),            # MSC
    PatternSpec(re.compile(r"\b(2\d{8})\b"), 78),
    PatternSpec(
        re.compile(
            r"(?i:\b(?:booking|bkg)(?:\s*(?:no|number|ref(?:erence)?))?\.?)\s*[:#]?\s*"
            r"((?=[A-Z-]*\d)[A-Z0-9][A-Z0-9-]{4,19})\b"
        ),
        75,
    ),
]

CONTAINER_PATTERN = PatternSpec(re.compile(r"\b([A-Z]{4}\d{7})\b"), 94)

BL_PATTERNS: list[tuple[IdentifierKind, PatternSpec]] = [
    (IdentifierKind.HBL_NUMBER, PatternSpec(re.compile(r"\b(SE\d{10,})\b"), 90)),
    (
        IdentifierKind.MBL_NUMBER,
        PatternSpec(re.compile(r"\b((?:MAEU|HLCU|COAU|CMAU|MEDU|ONEY|EGLV)\d{9,})\b"), 92),
    ),
    (
        IdentifierKind.MBL_NUMBER,
        PatternSpec(re.compile(r"(?i:\bMBL\b)\s*(?i:no\.?|number|#)?\s*[:#]?\s*((?=[A-Z]*\d)[A-Z0-9]{8,20})\b"), 88),
    ),
    (
        IdentifierKind.HBL_NUMBER,
        PatternSpec(re.compile(r"(?i:\bHBL\b)\s*(?i:no\.?|number|#)?\s*[:#]?\s*((?=[A-Z]*\d)[A-Z0-9]{8,20})\b"), 88),
    ),
    (
        IdentifierKind.BL_NUMBER,
        PatternSpec(
            re.compile(r"(?i:\bB/?L\b|\bbill of lading\b)\s*(?i:no\.?|number|#)?\s*[:#]?\s*((?=[A-Z]*\d)[A-Z0-9]{8,20})\b"),
            85,
        ),
    ),
]

_LABEL_GAP = r"[^\S\n]*(?:\([^)\n]{0,30}\))?[^\S\n]*[:\-]?[^\S\n]*"

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?"

DATE_TOKEN = (
    r"(?:\d{4}-\d{2}-\d{2}"
    rf"|\d{{1,2}}[-\s/.]?{_MONTH}[-\s/.,]*\d{{2,4}}"
    rf"|{_MONTH}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}"
    r"|\d{1,2}[/.-]\d{1,2}[/.-]\d{4})"
)
DATE_TOKEN_RE = re.compile(DATE_TOKEN, re.IGNORECASE)

DATE_LABELS: dict[IdentifierKind, str] = {
    IdentifierKind.SI_CUTOFF: (
        r"\bSI[\s-]?(?:cut[\s-]?off|closing|deadline)"
        r"|\bdoc(?:umentation)?s?[\s-]?cut[\s-]?off"
        r"|\bshipping instructions?\s+cut[\s-]?off"
    ),
    IdentifierKind.VGM_CUTOFF: r"\bVGM[\s-]?(?:cut[\s-]?off|closing|deadline)",
    IdentifierKind.CARGO_CUTOFF: r"\b(?:cargo|CY|FCL)[\s-]?(?:cut[\s-]?off|closing)",
    IdentifierKind.GATE_CUTOFF: r"\bgate[\s-]?(?:in[\s-]?)?(?:cut[\s-]?off|closing)",
    IdentifierKind.ETD: r"\bETD\b|\bestimated time of departure\b|\bdeparture date\b",
    IdentifierKind.ETA: r"\bETA\b|\bestimated time of arrival\b|\barrival date\b",
}
DATE_PATTERNS = {
    kind: re.compile(rf"(?:{label}){_LABEL_GAP}({DATE_TOKEN})", re.IGNORECASE)
    for kind, label in DATE_LABELS.items()
}

TEXT_LABELS: dict[IdentifierKind, str] = {
    IdentifierKind.VESSEL_NAME: r"\bvessel(?:\s+name)?|\bmother vessel|\bM/V\b|\bMV\b",
    IdentifierKind.PORT_OF_LOADING: r"\bport of loading\b|\bPOL\b|\bloading port\b",
    IdentifierKind.PORT_OF_DISCHARGE: r"\bport of discharge\b|\bPOD\b|\bdischarge port\b",
    IdentifierKind.PLACE_OF_RECEIPT: r"\bplace of receipt\b|\bPOR\b",
    IdentifierKind.PLACE_OF_DELIVERY: r"\bplace of delivery\b|\bfinal destination\b",
    IdentifierKind.SHIPPER: r"\bshipper(?:\s+name)?\b",
    IdentifierKind.CONSIGNEE: r"\bconsignee(?:\s+name)?\b",
}
TEXT_PATTERNS = {
    kind: re.compile(rf"(?:{label})[^\S\n]*[:\-][^\S\n]*([^\n\r]{{2,120}})", re.IGNORECASE)
    for kind, label in TEXT_LABELS.items()
}
VOYAGE_PATTERN = re.compile(
    r"(?i:\bvoyage(?:\s+(?:no|number))?\.?|\bvoy\.?)\s*[:#\-]?\s*([A-Z0-9]*\d[A-Z0-9]{2,14})\b"
)

TEXT_CONFIDENCE = 80
DATE_CONFIDENCE = 90

# Where a free-text value stops (next field on the same line)
_TEXT_STOP_RE = re.compile(r"\s+/\s+|\s{3,}|\t|\s+(?:voy(?:age)?\.?|ETD|ETA|POL|POD)\b[:\s]", re.IGNORECASE)


# --- Normalisers ---


def parse_date(token: str | None) -> str | None:
    """Normalise a human date to ISO format, or None if it cannot be read unambiguously."""
    if not token:
        return None
    match = DATE_TOKEN_RE.search(token)
    if not match:
        return None
    text = match.group(0).strip()

    parsed: date | None = None
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        try:
            parsed = datetime.strptime(text, "%Y-%m-%d").date()
        except ValueError:
            return None
    elif re.search(r"[A-Za-z]", text):
        parsed = _parse_named_month(text)
    else:
        parsed = _parse_numeric(text)

    if parsed is None or not (1990 <= parsed.year <= 2100):
        return None
    return parsed.isoformat()


def _parse_named_month(text: str) -> date | None:
    day_first = re.match(r"(\d{1,2})[-\s/.]?([A-Za-z]+)\.?[-\s/.,]*(\d{2,4})$", text)
    month_first = re.match(r"([A-Za-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})$", text)
    if day_first:
        day, month_name, year = day_first.groups()
    elif month_first:
        month_name, day, year = month_first.groups()
    else:
        return None
    month = MONTHS.get(month_name[:3].lower())
    if month is None:
        return None
    year_num = int(year)
    if len(year) == 2:
        year_num += 2000
    elif len(year) != 4:
        return None
    try:
        return date(year_num, month, int(day))
    except ValueError:
        return None


def _parse_numeric(text: str) -> date | None:
    parts = re.split(r"[/.-]", text)
    if len(parts) != 3:
        return None
    first, second, year = (int(p) for p in parts)
    if first > 12 and second <= 12:
        day, month = first, second
    elif second > 12 and first <= 12:
        day, month = second, first
    elif first == second:
        day = month = first
    else:
        # Both readings possible (or neither): do not guess
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def clean_text(value: str | None, *, max_length: int = 120) -> str | None:
    if not value:
        return None
    text = _TEXT_STOP_RE.split(value, maxsplit=1)[0]
    text = re.sub(r"\s+", " ", text).strip(" .,;:-_*|\"'")
    if not text or len(text) > max_length or not re.search(r"[A-Za-z]", text):
        return None
    return text


def normalize_value(kind: IdentifierKind, raw: str | None) -> str | None:
    """Validate and normalise one candidate value. None means reject."""
    if raw is None:
        return None
    raw = str(raw).strip()
    if not raw:
        return None

    if kind in DATE_KINDS:
        return parse_date(raw)

    if kind == IdentifierKind.CONTAINER_NUMBER:
        compact = re.sub(r"[\s-]", "", raw).upper()
        return compact if re.fullmatch(r"[A-Z]{4}\d{7}", compact) else None

    if kind == IdentifierKind.BOOKING_NUMBER:
        compact = re.sub(r"\s+", "", raw).upper()
        if len(compact) < MIN_BOOKING_LENGTH or len(compact) > 25:
            return None
        if not re.fullmatch(r"[A-Z0-9][A-Z0-9/_-]*", compact) or not re.search(r"\d", compact):
            return None
        return compact

    if kind in (IdentifierKind.BL_NUMBER, IdentifierKind.MBL_NUMBER, IdentifierKind.HBL_NUMBER):
        compact = re.sub(r"[\s-]", "", raw).upper()
        if not re.fullmatch(r"[A-Z0-9]{6,25}", compact) or not re.search(r"\d", compact):
            return None
        return compact

    if kind == IdentifierKind.VOYAGE_NUMBER:
        compact = re.sub(r"\s+", "", raw).upper()
        return compact if re.fullmatch(r"[A-Z0-9]*\d[A-Z0-9]{0,14}", compact) else None

    text = clean_text(raw)
    if text is None:
        return None
    if kind == IdentifierKind.VESSEL_NAME:
        text = text.upper()
        if len(text) > 60:
            return None
    return text


# --- Extraction ---


def find_booking_number(subject: str, body: str, attachment_text: str) -> ExtractedValue | None:
    """First booking-number match by pattern priority; subject hits score slightly higher."""
    sources = (("subject", subject), ("body", body), ("attachment", attachment_text))
    for spec in BOOKING_PATTERNS:
        for source, text in sources:
            if not text:
                continue
            for match in spec.regex.finditer(text):
                value = normalize_value(IdentifierKind.BOOKING_NUMBER, match.group(1))
                if value is None:
                    continue
                confidence = spec.confidence + (SUBJECT_BONUS if source == "subject" else 0)
                return ExtractedValue(
                    kind=IdentifierKind.BOOKING_NUMBER,
                    value=value,
                    confidence=min(confidence, 100),
                    method=ExtractionMethod.PATTERN,
                )
    return None


def extract_with_patterns(subject: str, body: str, attachment_text: str) -> list[ExtractedValue]:
    """Run every pattern family. Deterministic order; one entry per (kind, value)."""
    subject = subject or ""
    body = body or ""
    attachment_text = attachment_text or ""
    text = "\n".join(part for part in (subject, body, attachment_text) if part)

    found: dict[tuple[IdentifierKind, str], ExtractedValue] = {}

    def add(kind: IdentifierKind, raw: str, confidence: int) -> None:
        value = normalize_value(kind, raw)
        if value is None:
            return
        key = (kind, value)
        existing = found.get(key)
        if existing is None or existing.confidence < confidence:
            found[key] = ExtractedValue(
                kind=kind, value=value, confidence=confidence, method=ExtractionMethod.PATTERN
            )

    booking = find_booking_number(subject, body, attachment_text)
    if booking is not None:
        found[(booking.kind, booking.value)] = booking

    for match in CONTAINER_PATTERN.regex.finditer(text):
        add(IdentifierKind.CONTAINER_NUMBER, match.group(1), CONTAINER_PATTERN.confidence)

    for kind, spec in BL_PATTERNS:
        for match in spec.regex.finditer(text):
            add(kind, match.group(1), spec.confidence)

    for kind, pattern in DATE_PATTERNS.items():
        for match in pattern.finditer(text):
            if normalize_value(kind, match.group(1)) is not None:
                add(kind, match.group(1), DATE_CONFIDENCE)
                break

    voyage = VOYAGE_PATTERN.search(text)
    if voyage:
        add(IdentifierKind.VOYAGE_NUMBER, voyage.group(1), TEXT_CONFIDENCE)

    for kind, pattern in TEXT_PATTERNS.items():
        for match in pattern.finditer(text):
            if normalize_value(kind, match.group(1)) is not None:
                add(kind, match.group(1), TEXT_CONFIDENCE)
                break

    return sorted(found.values(), key=lambda v: (list(IdentifierKind).index(v.kind), v.value))
