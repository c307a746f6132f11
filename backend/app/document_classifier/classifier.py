"""
Two-tier document classifier.

Pattern rules first; Claude only when no rule matches or the matched rule's
confidence is below the fallback threshold. Model output is normalised onto
the closed DocumentType catalogue through the alias table, never passed
through raw. Classification history is append-only.
"""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.document_classifier.rules import match_rules
from app.errors import AIServiceError
from app.models.classification import Classification
from app.resolution_config.loader import ResolutionConfig
from app.schemas.resolution import (
    ClassificationMethod,
    ClassificationResult,
    ConfidenceBand,
    DocumentType,
    ResolvedDirection,
    confidence_band,
)
from app.services.claude_service import ClaudeService

logger = logging.getLogger("resolution.classifier")


def normalize_confidence(raw: float | int | None) -> int:
    """Model confidence may arrive as 0-1 or 0-100; clamp to an int 0-100."""
    if raw is None:
        return 0
    value = float(raw)
    if 0 < value <= 1:
        value *= 100
    return int(round(min(max(value, 0), 100)))


class DocumentClassifier:
    """Classifies a message using pattern rules with an AI fallback."""

    def __init__(
        self,
        config: ResolutionConfig,
        ai: ClaudeService | None = None,
        *,
        fallback_threshold: int = 70,
        review_threshold: int = 50,
    ):
        self.config = config
        self.ai = ai
        self.fallback_threshold = fallback_threshold
        self.review_threshold = review_threshold

    async def classify(
        self,
        *,
        subject: str,
        body: str,
        attachment_text: str,
        direction: ResolvedDirection,
    ) -> ClassificationResult:
        """Classify one message. Never raises for collaborator failures."""
        pattern_result = match_rules(
            subject=subject,
            body=body,
            attachment_text=attachment_text,
            direction=direction.direction,
            sender_category=direction.sender_category,
            table=self.config.classification,
            reply_re=self.config.direction.reply_re,
        )
        if pattern_result is not None and pattern_result.confidence >= self.fallback_threshold:
            return pattern_result

        ai_result = await self._classify_with_ai(subject=subject, body=body, direction=direction)

        if ai_result is not None and ai_result.document_type != DocumentType.UNKNOWN:
            if pattern_result is None or ai_result.confidence >= pattern_result.confidence:
                return ai_result
        if pattern_result is not None:
            return pattern_result
        if ai_result is not None:
            return ai_result

        return ClassificationResult(
            document_type=DocumentType.UNKNOWN,
            confidence=0,
            method=ClassificationMethod.NONE,
            evidence="no pattern matched and AI fallback unavailable",
        )

    async def _classify_with_ai(
        self, *, subject: str, body: str, direction: ResolvedDirection
    ) -> ClassificationResult | None:
        if self.ai is None:
            return None
        try:
            response = await self.ai.classify(subject=subject, body=body, direction=direction.direction)
        except AIServiceError as e:
            logger.warning("AI classification failed: %s", e)
            return None

        document_type = self.config.classification.normalize_document_type(response.document_type)
        if document_type is None:
            logger.warning("AI returned unrecognised document type %r", response.document_type)
            return ClassificationResult(
                document_type=DocumentType.UNKNOWN,
                confidence=0,
                method=ClassificationMethod.AI,
                evidence=f"unrecognised type {response.document_type!r}: {response.reasoning}"[:2000],
            )

        return ClassificationResult(
            document_type=document_type,
            confidence=normalize_confidence(response.confidence),
            method=ClassificationMethod.AI,
            evidence=(response.reasoning or response.document_type)[:2000],
        )

    def needs_review(self, result: ClassificationResult) -> bool:
        return result.document_type == DocumentType.UNKNOWN or result.confidence < self.review_threshold

    async def record(
        self,
        db: AsyncSession,
        message_id: uuid.UUID,
        result: ClassificationResult,
    ) -> tuple[Classification, bool]:
        """Append a classification unless it repeats the latest one.

        Returns (classification, created).
        """
        latest = await self.latest(db, message_id)
        if latest is not None and (
            latest.document_type == result.document_type
            and latest.confidence == result.confidence
            and latest.method == result.method
            and (latest.evidence or "") == result.evidence
        ):
            return latest, False

        next_sequence = (await db.execute(
            select(func.coalesce(func.max(Classification.sequence), 0))
            .where(Classification.message_id == message_id)
        )).scalar_one() + 1

        classification = Classification(
            id=uuid.uuid4(),
            message_id=message_id,
            sequence=next_sequence,
            document_type=result.document_type,
            confidence=result.confidence,
            confidence_band=confidence_band(result.confidence),
            method=result.method,
            evidence=result.evidence,
            needs_review=self.needs_review(result),
            config_version=self.config.version,
        )
        db.add(classification)
        await db.flush()

        if classification.confidence_band == ConfidenceBand.LOW:
            logger.info(
                "Low-confidence classification for message %s: %s (%d)",
                message_id, result.document_type.value, result.confidence,
            )
        return classification, True

    async def latest(self, db: AsyncSession, message_id: uuid.UUID) -> Classification | None:
        return (await db.execute(
            select(Classification)
            .where(Classification.message_id == message_id)
            .order_by(Classification.sequence.desc())
            .limit(1)
        )).scalar_one_or_none()
