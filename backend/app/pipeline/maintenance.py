"""
Bulk maintenance runners.

All runners page through messages with keyset pagination on
(received_at, id) and hand each page to the pipeline's batch processor, so a
run can stop anywhere and resume from the returned checkpoint. Writes are
idempotent; re-running from the start is always safe.
"""

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.classification import Classification
from app.models.message import Message, MessageOutcome
from app.models.workflow import WorkflowEvent
from app.pipeline.pipeline import DocumentResolutionPipeline
from app.schemas.resolution import DocumentType, OutcomeStatus

logger = logging.getLogger("resolution.pipeline")

SWEEP_STATUSES = (
    OutcomeStatus.ORPHAN_NO_IDENTIFIERS,
    OutcomeStatus.AWAITING_DIRECT_CARRIER,
    OutcomeStatus.FAILED,
)


@dataclass
class Checkpoint:
    received_at: datetime
    message_id: uuid.UUID

    def to_dict(self) -> dict:
        return {"received_at": self.received_at.isoformat(), "message_id": str(self.message_id)}


@dataclass
class MaintenanceReport:
    processed: int = 0
    by_status: Counter = field(default_factory=Counter)
    checkpoint: Checkpoint | None = None
    finished: bool = False

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "by_status": dict(self.by_status),
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "finished": self.finished,
        }


@dataclass
class DirectionMismatch:
    workflow_event_id: uuid.UUID
    message_id: uuid.UUID
    shipment_id: uuid.UUID
    stored: str
    recomputed: str
    method: str


def _after(query, checkpoint: Checkpoint | None):
    if checkpoint is None:
        return query
    return query.where(or_(
        Message.received_at > checkpoint.received_at,
        and_(Message.received_at == checkpoint.received_at, Message.id > checkpoint.message_id),
    ))


async def _run_pages(
    pipeline: DocumentResolutionPipeline,
    session_factory: async_sessionmaker,
    base_query,
    *,
    page_size: int | None,
    after: Checkpoint | None,
    limit: int | None,
    label: str,
) -> MaintenanceReport:
    page_size = page_size or pipeline.settings.backfill_page_size
    report = MaintenanceReport(checkpoint=after)

    while True:
        size = page_size if limit is None else min(page_size, limit - report.processed)
        if size <= 0:
            return report

        async with session_factory() as db:
            rows = (await db.execute(
                _after(base_query, report.checkpoint)
                .order_by(Message.received_at, Message.id)
                .limit(size)
            )).all()
        if not rows:
            report.finished = True
            logger.info("%s finished: %d message(s) %s", label, report.processed, dict(report.by_status))
            return report

        outcomes = await pipeline.process_batch(session_factory, [row.id for row in rows])
        report.processed += len(rows)
        report.by_status.update(o.status.value for o in outcomes)
        last = rows[-1]
        report.checkpoint = Checkpoint(received_at=last.received_at, message_id=last.id)
        logger.info("%s: %d processed, checkpoint %s", label, report.processed, report.checkpoint.to_dict())

        if pipeline.ai is not None and pipeline.settings.ai_batch_pause_seconds > 0:
            await asyncio.sleep(pipeline.settings.ai_batch_pause_seconds)


async def reprocess_all(
    pipeline: DocumentResolutionPipeline,
    session_factory: async_sessionmaker,
    *,
    page_size: int | None = None,
    after: Checkpoint | None = None,
    limit: int | None = None,
) -> MaintenanceReport:
    """Re-run the pipeline over every stored message."""
    query = select(Message.id, Message.received_at)
    return await _run_pages(
        pipeline, session_factory, query, page_size=page_size, after=after, limit=limit, label="reprocess_all",
    )


async def sweep_orphans(
    pipeline: DocumentResolutionPipeline,
    session_factory: async_sessionmaker,
    *,
    page_size: int | None = None,
    after: Checkpoint | None = None,
    limit: int | None = None,
) -> MaintenanceReport:
    """Retry messages left unlinked or failed, now that new shipments or mappings may exist."""
    query = (
        select(Message.id, Message.received_at)
        .join(MessageOutcome, MessageOutcome.message_id == Message.id)
        .where(MessageOutcome.status.in_(SWEEP_STATUSES))
    )
    return await _run_pages(
        pipeline, session_factory, query, page_size=page_size, after=after, limit=limit, label="sweep_orphans",
    )


async def retry_unknown_classifications(
    pipeline: DocumentResolutionPipeline,
    session_factory: async_sessionmaker,
    *,
    page_size: int | None = None,
    after: Checkpoint | None = None,
    limit: int | None = None,
) -> MaintenanceReport:
    """Re-run messages whose latest classification is unknown."""
    latest = (
        select(Classification.message_id, func.max(Classification.sequence).label("sequence"))
        .group_by(Classification.message_id)
        .subquery()
    )
    query = (
        select(Message.id, Message.received_at)
        .join(latest, latest.c.message_id == Message.id)
        .join(
            Classification,
            and_(Classification.message_id == latest.c.message_id, Classification.sequence == latest.c.sequence),
        )
        .where(Classification.document_type == DocumentType.UNKNOWN)
    )
    return await _run_pages(
        pipeline, session_factory, query, page_size=page_size, after=after, limit=limit,
        label="retry_unknown_classifications",
    )


async def audit_directions(
    pipeline: DocumentResolutionPipeline,
    session_factory: async_sessionmaker,
    *,
    page_size: int | None = None,
) -> list[DirectionMismatch]:
    """Recompute direction for every stored workflow event and report disagreements.

    Read-only. Relies on direction resolution being a pure function of the message.
    """
    page_size = page_size or pipeline.settings.backfill_page_size
    mismatches: list[DirectionMismatch] = []
    checked = 0
    cursor: tuple[datetime, uuid.UUID] | None = None

    while True:
        async with session_factory() as db:
            query = (
                select(WorkflowEvent, Message)
                .join(Message, Message.id == WorkflowEvent.triggering_message_id)
                .order_by(WorkflowEvent.occurred_at, WorkflowEvent.id)
                .limit(page_size)
            )
            if cursor is not None:
                query = query.where(or_(
                    WorkflowEvent.occurred_at > cursor[0],
                    and_(WorkflowEvent.occurred_at == cursor[0], WorkflowEvent.id > cursor[1]),
                ))
            rows = (await db.execute(query)).all()

            for event, message in rows:
                resolved = pipeline.resolve_direction(message)
                if resolved.direction != event.direction:
                    mismatches.append(DirectionMismatch(
                        workflow_event_id=event.id,
                        message_id=message.id,
                        shipment_id=event.shipment_id,
                        stored=event.direction.value,
                        recomputed=resolved.direction.value,
                        method=resolved.method.value,
                    ))
        if not rows:
            break
        checked += len(rows)
        cursor = (rows[-1][0].occurred_at, rows[-1][0].id)

    if mismatches:
        logger.warning("Direction audit: %d of %d workflow event(s) disagree", len(mismatches), checked)
    else:
        logger.info("Direction audit: %d workflow event(s) consistent", checked)
    return mismatches
