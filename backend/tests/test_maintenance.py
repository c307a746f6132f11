"""Tests for the bulk maintenance runners (sweep, reprocess, retry, direction audit)."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.models.classification import Classification
from app.models.message import Message, MessageOutcome
from app.models.shipment import Shipment
from app.models.workflow import WorkflowEvent
from app.pipeline import DocumentResolutionPipeline
from app.pipeline.maintenance import (
    audit_directions,
    reprocess_all,
    retry_unknown_classifications,
    sweep_orphans,
)
from app.schemas.ai import AIClassification
from app.schemas.resolution import Direction, DocumentType, OutcomeStatus

BASE_TIME = datetime(2025, 12, 1, 9, 0, tzinfo=timezone.utc)


def _message(minutes=0, **overrides) -> Message:
    values = {
        "id": uuid.uuid4(),
        "sender_address": "noreply@maersk.com",
        "subject": "",
        "body_text": "",
        "attachment_text": "",
        "received_at": BASE_TIME + timedelta(minutes=minutes),
    }
    values.update(overrides)
    return Message(**values)


async def _seed(session_factory, *rows):
    async with session_factory() as db:
        db.add_all(rows)
        await db.commit()
    return rows


class TestSweepOrphans:
    @pytest.mark.asyncio
    async def test_forward_links_once_original_arrives(self, session_factory, pipeline):
        forward, = await _seed(session_factory, _message(
            sender_address="ops@ownorg.com",
            sender_name="Maersk via Operations",
            subject="Booking Confirmation: 263368698",
        ))
        [waiting] = await pipeline.process_batch(session_factory, [forward.id])
        assert waiting.status == OutcomeStatus.AWAITING_DIRECT_CARRIER

        original, = await _seed(session_factory, _message(minutes=30, subject="Booking Confirmation: 263368698"))
        [created] = await pipeline.process_batch(session_factory, [original.id])
        assert created.shipment_created is True

        report = await sweep_orphans(pipeline, session_factory)
        assert report.processed == 1
        assert report.by_status == {"linked": 1}
        assert report.finished is True
        assert report.checkpoint.message_id == forward.id

        async with session_factory() as db:
            outcome = await db.get(MessageOutcome, forward.id)
            assert outcome.status == OutcomeStatus.LINKED
            assert outcome.attempts == 2
            assert outcome.detail["shipment_id"] == str(created.shipment_id)

        again = await sweep_orphans(pipeline, session_factory)
        assert again.processed == 0
        assert again.finished is True


class TestReprocessAll:
    @pytest.mark.asyncio
    async def test_limit_and_resume(self, session_factory, pipeline):
        messages = await _seed(session_factory, *(
            _message(minutes=i, sender_address="friend@example.org", subject=f"Lunch {i}") for i in range(3)
        ))

        first = await reprocess_all(pipeline, session_factory, limit=2)
        assert first.processed == 2
        assert first.finished is False
        assert first.checkpoint.message_id == messages[1].id

        rest = await reprocess_all(pipeline, session_factory, after=first.checkpoint)
        assert rest.processed == 1
        assert rest.finished is True
        assert rest.checkpoint.message_id == messages[2].id
        assert rest.to_dict()["checkpoint"]["message_id"] == str(messages[2].id)

        async with session_factory() as db:
            attempts = (await db.execute(select(MessageOutcome.attempts))).scalars().all()
        assert sorted(attempts) == [1, 1, 1]

    @pytest.mark.asyncio
    async def test_rerun_from_start_is_safe(self, session_factory, pipeline):
        await _seed(session_factory, _message(subject="Booking Confirmation: 263368698"))

        await reprocess_all(pipeline, session_factory)
        report = await reprocess_all(pipeline, session_factory)

        assert report.by_status == {"linked": 1}
        async with session_factory() as db:
            assert (await db.execute(select(func.count(Shipment.id)))).scalar_one() == 1
            assert (await db.execute(select(func.count(WorkflowEvent.id)))).scalar_one() == 1


class TestRetryUnknown:
    @pytest.mark.asyncio
    async def test_only_unknown_messages_rerun(
        self, session_factory, pipeline, test_settings, resolution_config, make_ai,
    ):
        lunch, booking = await _seed(
            session_factory,
            _message(sender_address="agent@portagent.example", subject="Your documents"),
            _message(minutes=5, subject="Booking Confirmation: 263368698"),
        )
        await pipeline.process_batch(session_factory, [lunch.id, booking.id])

        ai = make_ai(classification=AIClassification(document_type="arrival_notice", confidence=90))
        with_ai = DocumentResolutionPipeline(test_settings, config=resolution_config, ai=ai)
        report = await retry_unknown_classifications(with_ai, session_factory)

        assert report.processed == 1
        assert ai.classify_calls == 1
        async with session_factory() as db:
            history = (await db.execute(
                select(Classification)
                .where(Classification.message_id == lunch.id)
                .order_by(Classification.sequence)
            )).scalars().all()
        assert [c.document_type for c in history] == [DocumentType.UNKNOWN, DocumentType.ARRIVAL_NOTICE]

        again = await retry_unknown_classifications(with_ai, session_factory)
        assert again.processed == 0


class TestAuditDirections:
    @pytest.mark.asyncio
    async def test_reports_disagreements(self, session_factory, pipeline):
        shipment_id = uuid.uuid4()
        carrier = _message(subject="Booking Confirmation: 263368698")
        own = _message(minutes=10, sender_address="ops@ownorg.com", subject="Booking Confirmation: 263368698")
        shipment = Shipment(
            id=shipment_id, booking_number="263368698", booking_key="263368698",
            workflow_state_order=0, states_reached=[],
        )

        def event(message, state, order, direction):
            return WorkflowEvent(
                id=uuid.uuid4(), shipment_id=shipment_id, workflow_state=state, state_order=order,
                triggering_message_id=message.id, direction=direction, occurred_at=message.received_at,
            )

        wrong = event(carrier, "booking_confirmation_shared", 15, Direction.OUTBOUND)
        await _seed(
            session_factory, carrier, own, shipment,
            wrong,
            event(own, "booking_confirmation_shared", 15, Direction.OUTBOUND),
        )

        mismatches = await audit_directions(pipeline, session_factory, page_size=1)

        assert len(mismatches) == 1
        assert mismatches[0].workflow_event_id == wrong.id
        assert mismatches[0].message_id == carrier.id
        assert mismatches[0].stored == "outbound"
        assert mismatches[0].recomputed == "inbound"
        assert mismatches[0].method == "direct_domain"
