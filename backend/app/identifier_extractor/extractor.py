"""
Two-tier identifier extractor.

Pattern families always run. Claude is consulted only when attachment text is
present and identifier kinds that matter for the document type are still
missing. Every AI value must pass the same normalisers as pattern values.
Stored identifiers are append-only and unique per (message, kind, value).
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AIServiceError
from app.identifier_extractor.patterns import extract_with_patterns, normalize_value
from app.models.classification import ExtractedIdentifier
from app.models.message import Message
from app.resolution_config.loader import ResolutionConfig
from app.schemas.ai import AIExtraction
from app.schemas.resolution import (
    Direction,
    DocumentType,
    ExtractedValue,
    ExtractionMethod,
    IdentifierKind,
)
from app.services.claude_service import ClaudeService

logger = logging.getLogger("resolution.extractor")

AI_CONFIDENCE = 70


def sanitize_ai_extraction(response: AIExtraction) -> list[ExtractedValue]:
    """Keep only AI values that survive normalisation."""
    values: list[ExtractedValue] = []
    rejected: list[str] = []

    def accept(kind: IdentifierKind, raw: str | None) -> None:
        if raw is None or not str(raw).strip():
            return
        value = normalize_value(kind, raw)
        if value is None:
            rejected.append(f"{kind.value}={raw!r}")
            return
        values.append(ExtractedValue(kind=kind, value=value, confidence=AI_CONFIDENCE, method=ExtractionMethod.AI))

    for kind in IdentifierKind:
        if kind == IdentifierKind.CONTAINER_NUMBER:
            for raw in response.container_numbers:
                accept(kind, raw)
        else:
            accept(kind, getattr(response, kind.value))

    if rejected:
        logger.warning("Discarded %d AI extraction value(s): %s", len(rejected), ", ".join(rejected))
    return values


def merge_values(primary: list[ExtractedValue], extra: list[ExtractedValue]) -> list[ExtractedValue]:
    """Union by (kind, value); primary wins. A single booking number is kept."""
    merged = {(v.kind, v.value): v for v in primary}
    has_booking = any(v.kind == IdentifierKind.BOOKING_NUMBER for v in primary)
    for value in extra:
        if value.kind == IdentifierKind.BOOKING_NUMBER and has_booking:
            continue
        if value.kind == IdentifierKind.BOOKING_NUMBER:
            has_booking = True
        merged.setdefault((value.kind, value.value), value)
    return sorted(merged.values(), key=lambda v: (list(IdentifierKind).index(v.kind), v.value))


class IdentifierExtractor:
    """Extracts shipment identifiers from a message."""

    def __init__(self, config: ResolutionConfig, ai: ClaudeService | None = None):
        self.config = config
        self.ai = ai

    def missing_priority_kinds(
        self, values: list[ExtractedValue], document_type: DocumentType | None
    ) -> list[IdentifierKind]:
        present = {v.kind for v in values}
        return [k for k in self.config.extraction.kinds_for(document_type) if k not in present]

    async def extract(
        self,
        *,
        subject: str,
        body: str,
        attachment_text: str,
        document_type: DocumentType | None,
        direction: Direction,
        allow_ai: bool = True,
    ) -> list[ExtractedValue]:
        """Pattern tier, then the AI tier for attachments when priority kinds are missing."""
        values = extract_with_patterns(subject, body, attachment_text)

        if not allow_ai or self.ai is None or not (attachment_text or "").strip():
            return values
        missing = self.missing_priority_kinds(values, document_type)
        if not missing:
            return values

        logger.debug("Pattern tier missed %s; trying AI extraction", [k.value for k in missing])
        try:
            response = await self.ai.extract(
                subject=subject, body=body, attachment_text=attachment_text, direction=direction,
            )
        except AIServiceError as e:
            logger.warning("AI extraction failed, keeping pattern results: %s", e)
            return values

        return merge_values(values, sanitize_ai_extraction(response))

    async def extract_for_message(
        self,
        db: AsyncSession,
        message: Message,
        *,
        document_type: DocumentType | None,
        direction: Direction,
    ) -> list[ExtractedValue]:
        """Extract and persist identifiers; returns the full stored set for the message.

        AI values already stored for the message are reused rather than asked for again,
        so re-running on the same content yields the same set.
        """
        stored = await self.stored_values(db, message.id)
        stored_ai = [v for v in stored if v.method == ExtractionMethod.AI]

        values = await self.extract(
            subject=message.subject,
            body=message.body_text,
            attachment_text=message.attachment_text,
            document_type=document_type,
            direction=direction,
            allow_ai=not stored_ai,
        )
        if stored_ai:
            values = merge_values(values, stored_ai)

        await self.record(db, message.id, values)
        return merge_values(stored, values)

    async def stored_values(self, db: AsyncSession, message_id: uuid.UUID) -> list[ExtractedValue]:
        rows = (await db.execute(
            select(ExtractedIdentifier).where(ExtractedIdentifier.message_id == message_id)
        )).scalars().all()
        values = [
            ExtractedValue(kind=r.kind, value=r.value, confidence=r.confidence, method=r.extraction_method)
            for r in rows
        ]
        return sorted(values, key=lambda v: (list(IdentifierKind).index(v.kind), v.value))

    async def record(
        self, db: AsyncSession, message_id: uuid.UUID, values: list[ExtractedValue]
    ) -> list[ExtractedIdentifier]:
        """Insert (kind, value) pairs not yet stored for the message."""
        existing = {
            (row.kind, row.value)
            for row in (await db.execute(
                select(ExtractedIdentifier).where(ExtractedIdentifier.message_id == message_id)
            )).scalars().all()
        }
        created: list[ExtractedIdentifier] = []
        for value in values:
            if (value.kind, value.value) in existing:
                continue
            row = ExtractedIdentifier(
                id=uuid.uuid4(),
                message_id=message_id,
                kind=value.kind,
                value=value.value,
                confidence=value.confidence,
                extraction_method=value.method,
            )
            db.add(row)
            created.append(row)
            existing.add((value.kind, value.value))
        if created:
            await db.flush()
        return created
