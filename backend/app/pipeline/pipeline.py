"""
Document resolution pipeline.

Flow per message:
  1. Resolve direction and true sender (pure)
  2. Classify document type (patterns, then Claude) and append to history
  3. Extract identifiers (patterns, then Claude for attachments)
  4. Resolve, link or create the shipment; backfill fields
  5. Advance workflow state and action items
  6. Upsert the message outcome

Stages 2-5 run inside a savepoint. A fault in one message rolls back that
message's writes only; the outcome is recorded as failed and the batch moves on.
Stages 4-5 run under the shipment's lock, entered once per message and held
until that message commits.
"""

import asyncio
import logging
import uuid
from contextlib import AsyncExitStack
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.direction_resolver import resolve_direction
from app.document_classifier import DocumentClassifier
from app.hitl_workflow.service import ReviewQueueService
from app.hitl_workflow.triggers import should_review_classification
from app.identifier_extractor import IdentifierExtractor
from app.models.message import Message, MessageOutcome
from app.models.review import ReviewItemType
from app.resolution_config.loader import ResolutionConfig, get_resolution_config
from app.schemas.message import MessageIn
from app.schemas.resolution import OutcomeStatus, ResolutionOutcome, ResolvedDirection
from app.services.claude_service import ClaudeService
from app.shipment_resolver import ShipmentLockRegistry, ShipmentResolver
from app.workflow_engine import WorkflowStateEngine

logger = logging.getLogger("resolution.pipeline")


class DocumentResolutionPipeline:
    """Orchestrates the resolution stages. Built once per process."""

    def __init__(
        self,
        settings: Settings,
        *,
        config: ResolutionConfig | None = None,
        ai: ClaudeService | None = None,
        locks: ShipmentLockRegistry | None = None,
    ):
        self.settings = settings
        self.config = config or get_resolution_config(settings.resolution_config_dir)
        if ai is None and settings.anthropic_api_key:
            ai = ClaudeService(settings)
        self.ai = ai
        self.locks = locks or ShipmentLockRegistry()
        self.review_queue = ReviewQueueService(settings)
        self.classifier = DocumentClassifier(
            self.config,
            ai,
            fallback_threshold=settings.ai_fallback_confidence_threshold,
            review_threshold=settings.review_confidence_threshold,
        )
        self.extractor = IdentifierExtractor(self.config, ai)
        self.shipments = ShipmentResolver(self.config, self.locks, self.review_queue)
        self.workflow = WorkflowStateEngine(self.config)

    def resolve_direction(self, message: Message) -> ResolvedDirection:
        return resolve_direction(
            sender_address=message.sender_address,
            sender_name=message.sender_name,
            apparent_sender=message.apparent_sender,
            subject=message.subject,
            carriers=self.config.carriers,
            rules=self.config.direction,
        )

    async def ingest_message(self, db: AsyncSession, payload: MessageIn) -> tuple[Message, bool]:
        """Store a message unless its external id is already known.

        Returns (message, created).
        """
        if payload.external_id:
            existing = (await db.execute(
                select(Message).where(Message.external_id == payload.external_id)
            )).scalar_one_or_none()
            if existing is not None:
                return existing, False

        message = Message(id=uuid.uuid4(), **payload.model_dump())
        db.add(message)
        await db.flush()
        logger.info("Ingested message %s (external_id=%s)", message.id, payload.external_id)
        return message, True

    async def process_message(
        self,
        db: AsyncSession,
        message: Message,
        *,
        held: AsyncExitStack | None = None,
    ) -> ResolutionOutcome:
        """Run every stage for one message and record the outcome. Never raises for stage faults.

        Shipment locks are entered on `held`; a caller that commits after this
        returns passes a stack it closes after the commit.
        """
        async with AsyncExitStack() as local:
            return await self._process(db, message, held if held is not None else local)

    async def _process(self, db: AsyncSession, message: Message, held: AsyncExitStack) -> ResolutionOutcome:
        message_id = message.id
        outcome = ResolutionOutcome(
            message_id=message_id,
            status=OutcomeStatus.FAILED,
            config_version=self.config.version,
        )

        try:
            async with db.begin_nested():
                await self._run_stages(db, message, outcome, held)
        except Exception as e:
            logger.exception("Resolution failed for message %s", message_id)
            outcome = ResolutionOutcome(
                message_id=message_id,
                status=OutcomeStatus.FAILED,
                direction=outcome.direction,
                classification=outcome.classification,
                error=f"{type(e).__name__}: {e}"[:2000],
                config_version=self.config.version,
            )

        outcome.processed_at = datetime.now(timezone.utc)
        await self._record_outcome(db, outcome)
        logger.info(
            "Message %s -> %s (type=%s, shipment=%s, state=%s)",
            message_id,
            outcome.status.value,
            outcome.classification.document_type.value if outcome.classification else None,
            outcome.shipment_id,
            outcome.workflow_state,
        )
        return outcome

    async def _run_stages(
        self, db: AsyncSession, message: Message, outcome: ResolutionOutcome, held: AsyncExitStack
    ) -> None:
        direction = self.resolve_direction(message)
        outcome.direction = direction

        classification = await self.classifier.classify(
            subject=message.subject,
            body=message.body_text,
            attachment_text=message.attachment_text,
            direction=direction,
        )
        outcome.classification = classification
        await self.classifier.record(db, message.id, classification)

        needs_review, reason = should_review_classification(
            classification, confidence_threshold=self.settings.review_confidence_threshold,
        )
        if needs_review:
            await self.review_queue.create_review_item(
                db,
                item_type=ReviewItemType.CLASSIFICATION_REVIEW,
                entity_id=message.id,
                entity_type="message",
                title=f"Review classification: {message.subject[:200] or '(no subject)'}",
                description=reason,
                severity="medium" if classification.confidence else "high",
                confidence=classification.confidence,
                metadata={
                    "document_type": classification.document_type.value,
                    "method": classification.method.value,
                    "evidence": classification.evidence[:500],
                },
            )

        identifiers = await self.extractor.extract_for_message(
            db,
            message,
            document_type=classification.document_type,
            direction=direction.direction,
        )
        outcome.identifiers = identifiers

        resolution = await self.shipments.resolve(
            db,
            message=message,
            identifiers=identifiers,
            direction=direction,
            document_type=classification.document_type,
            held=held,
        )
        outcome.status = resolution.status
        outcome.shipment_id = resolution.shipment_id
        outcome.link_method = resolution.link_method
        outcome.shipment_created = resolution.created
        if resolution.shipment_id is None:
            return

        advance = await self.workflow.advance(
            db,
            shipment_id=resolution.shipment_id,
            message=message,
            document_type=classification.document_type,
            direction=direction.direction,
        )
        outcome.workflow_state = advance.state
        outcome.workflow_advanced = advance.advanced
        outcome.actions_resolved = advance.actions_resolved
        outcome.actions_created = advance.actions_created

    async def _record_outcome(self, db: AsyncSession, outcome: ResolutionOutcome) -> MessageOutcome:
        record = await db.get(MessageOutcome, outcome.message_id)
        if record is None:
            record = MessageOutcome(message_id=outcome.message_id, attempts=0)
            db.add(record)
        record.status = outcome.status
        record.detail = outcome.model_dump(
            mode="json", include={"link_method", "shipment_id", "workflow_state", "shipment_created"},
        )
        record.error = outcome.error
        record.attempts = (record.attempts or 0) + 1
        record.config_version = outcome.config_version
        record.last_processed_at = outcome.processed_at
        await db.flush()
        return record

    async def process_by_id(
        self, db: AsyncSession, message_id: uuid.UUID, *, held: AsyncExitStack | None = None
    ) -> ResolutionOutcome | None:
        message = await db.get(Message, message_id)
        if message is None:
            return None
        return await self.process_message(db, message, held=held)

    async def process_batch(
        self,
        session_factory: async_sessionmaker,
        message_ids: list[uuid.UUID],
    ) -> list[ResolutionOutcome]:
        """Process messages concurrently; one session and one commit per message.

        A message's shipment lock is released only after its commit, so no
        other task touches the shipment row while this one still holds it.
        """
        semaphore = asyncio.Semaphore(max(1, self.settings.batch_concurrency))

        async def run_one(message_id: uuid.UUID) -> ResolutionOutcome | None:
            async with semaphore, AsyncExitStack() as held:
                async with session_factory() as db:
                    try:
                        outcome = await self.process_by_id(db, message_id, held=held)
                        await db.commit()
                    except Exception as e:
                        await db.rollback()
                        logger.exception("Could not commit resolution for message %s", message_id)
                        return ResolutionOutcome(
                            message_id=message_id,
                            status=OutcomeStatus.FAILED,
                            error=f"{type(e).__name__}: {e}"[:2000],
                            config_version=self.config.version,
                            processed_at=datetime.now(timezone.utc),
                        )
                    return outcome

        results = await asyncio.gather(*(run_one(mid) for mid in message_ids))
        return [r for r in results if r is not None]
