"""Tests for the end-to-end document resolution pipeline."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.classification import Classification
from app.models.message import Message, MessageOutcome
from app.models.review import ReviewItem, ReviewItemType
from app.models.shipment import MessageShipmentLink, Shipment
from app.models.workflow import ActionItem, WorkflowEvent
from app.pipeline import DocumentResolutionPipeline
from app.schemas.message import MessageIn
from app.schemas.resolution import (
    Direction,
    DirectionMethod,
    DocumentType,
    LinkMethod,
    OutcomeStatus,
)

BASE_TIME = datetime(2025, 12, 1, 9, 0, tzinfo=timezone.utc)

BOOKING_SUBJECT = "Booking Confirmation: 263368698"
BOOKING_BODY = (
    "Dear customer,\n"
    "Booking No: 263368698\n"
    "ETD: 25-Dec-2025\n"
    "Container: MSKU1234567\n"
)
SI_ACTION = "Submit shipping instructions before SI cut-off"


async def _count(db, model, *where):
    return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


def _stored(minutes=0, **overrides) -> Message:
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


async def _seed(session_factory, *messages):
    async with session_factory() as db:
        db.add_all(messages)
        await db.commit()
    return messages


async def _booking_confirmation(make_message, minutes=0):
    return await make_message(minutes=minutes, subject=BOOKING_SUBJECT, body_text=BOOKING_BODY)


class TestScenarios:
    """Booking confirmation, forward, outbound share, container lookup, VGM confirmation."""

    @pytest.mark.asyncio
    async def test_direct_booking_confirmation_creates_shipment(self, db_session, make_message, pipeline):
        message = await _booking_confirmation(make_message)
        outcome = await pipeline.process_message(db_session, message)

        assert outcome.status == OutcomeStatus.LINKED
        assert outcome.direction.direction == Direction.INBOUND
        assert outcome.direction.method == DirectionMethod.DIRECT_DOMAIN
        assert outcome.classification.document_type == DocumentType.BOOKING_CONFIRMATION
        assert outcome.classification.confidence >= 85
        assert outcome.shipment_created is True
        assert outcome.link_method == LinkMethod.CREATED
        assert outcome.workflow_state == "booking_confirmation_received"

        values = {(v.kind.value, v.value) for v in outcome.identifiers}
        assert ("booking_number", "263368698") in values
        assert ("etd", "2025-12-25") in values

        shipment = await db_session.get(Shipment, outcome.shipment_id)
        assert shipment.booking_number == "263368698"
        assert shipment.etd.isoformat() == "2025-12-25"
        assert shipment.workflow_state == "booking_confirmation_received"

    @pytest.mark.asyncio
    async def test_forwarded_copy_links_to_same_shipment(self, db_session, make_message, pipeline):
        original = await _booking_confirmation(make_message)
        forward = await make_message(
            minutes=30,
            sender_address="ops@ownorg.com",
            sender_name="Maersk via Operations",
            subject=BOOKING_SUBJECT,
            body_text="Booking No: 263368698",
        )
        first = await pipeline.process_message(db_session, original)
        second = await pipeline.process_message(db_session, forward)

        assert second.direction.method == DirectionMethod.FORWARD_MARKER
        assert second.direction.true_domain == "maersk.com"
        assert second.shipment_id == first.shipment_id
        assert second.shipment_created is False
        assert second.link_method == LinkMethod.BOOKING_NUMBER
        assert second.workflow_advanced is False
        assert await _count(db_session, Shipment) == 1
        assert await _count(db_session, WorkflowEvent, WorkflowEvent.shipment_id == first.shipment_id) == 2

        shipment = await db_session.get(Shipment, first.shipment_id)
        assert shipment.workflow_state_order == 10

    @pytest.mark.asyncio
    async def test_outbound_share_advances_pointer(self, db_session, make_message, pipeline):
        booking = await _booking_confirmation(make_message)
        shared = await make_message(
            minutes=45, sender_address="ops@ownorg.com", subject=BOOKING_SUBJECT,
        )
        first = await pipeline.process_message(db_session, booking)
        outcome = await pipeline.process_message(db_session, shared)

        assert outcome.direction.direction == Direction.OUTBOUND
        assert outcome.shipment_id == first.shipment_id
        assert outcome.workflow_state == "booking_confirmation_shared"
        assert outcome.workflow_advanced is True
        assert len(outcome.actions_resolved) == 1

        shipment = await db_session.get(Shipment, first.shipment_id)
        assert shipment.workflow_state_order == 15

    @pytest.mark.asyncio
    async def test_arrival_notice_links_through_container(self, db_session, make_message, pipeline):
        booking = await _booking_confirmation(make_message)
        arrival = await make_message(
            minutes=60 * 24 * 20,
            sender_address="notices@portagent.example",
            subject="Arrival Notice - ETA Newark",
            body_text="Container: MSKU1234567 has arrived at Newark.",
        )
        first = await pipeline.process_message(db_session, booking)
        outcome = await pipeline.process_message(db_session, arrival)

        assert outcome.classification.document_type == DocumentType.ARRIVAL_NOTICE
        assert outcome.status == OutcomeStatus.LINKED
        assert outcome.shipment_id == first.shipment_id
        assert outcome.link_method == LinkMethod.IDENTIFIER_MAPPING
        assert outcome.workflow_state == "arrival_notice_received"

    @pytest.mark.asyncio
    async def test_vgm_confirmation_resolves_action(self, db_session, make_message, pipeline):
        booking = await _booking_confirmation(make_message)
        vgm = await make_message(minutes=120, subject="VGM accepted for 263368698")
        first = await pipeline.process_message(db_session, booking)
        outcome = await pipeline.process_message(db_session, vgm)

        assert outcome.classification.document_type == DocumentType.VGM_CONFIRMATION
        item = (await db_session.execute(
            select(ActionItem).where(
                ActionItem.shipment_id == first.shipment_id,
                ActionItem.description == "Submit VGM declaration",
            )
        )).scalar_one()
        assert outcome.actions_resolved == [item.id]
        assert item.completed_by_message_id == vgm.id
        assert item.completed_at is not None

    @pytest.mark.asyncio
    async def test_earlier_vgm_confirmation_does_not_resolve(self, db_session, make_message, pipeline):
        early_vgm = await make_message(minutes=0, subject="VGM accepted for 263368698")
        booking = await _booking_confirmation(make_message, minutes=60)
        await pipeline.process_message(db_session, booking)
        outcome = await pipeline.process_message(db_session, early_vgm)

        assert outcome.status == OutcomeStatus.LINKED
        assert outcome.actions_resolved == []

    @pytest.mark.asyncio
    async def test_forwarded_copy_after_si_confirmation_raises_nothing(self, db_session, make_message, pipeline):
        booking = await _booking_confirmation(make_message)
        si = await make_message(
            minutes=60, subject="SI confirmed for 263368698", body_text="Booking No: 263368698",
        )
        forward = await make_message(
            minutes=180,
            sender_address="ops@ownorg.com",
            sender_name="Maersk via Operations",
            subject=BOOKING_SUBJECT,
            body_text="Booking No: 263368698",
        )
        first = await pipeline.process_message(db_session, booking)
        confirmed = await pipeline.process_message(db_session, si)
        outcome = await pipeline.process_message(db_session, forward)

        assert confirmed.classification.document_type == DocumentType.SI_CONFIRMATION
        assert outcome.shipment_id == first.shipment_id
        assert outcome.actions_created == []

        items = (await db_session.execute(
            select(ActionItem).where(ActionItem.description == SI_ACTION)
        )).scalars().all()
        assert len(items) == 1
        assert items[0].completed_by_message_id == si.id
        assert await _count(db_session, ActionItem, ActionItem.completed_at.is_(None)) == 2

    @pytest.mark.asyncio
    async def test_approval_processed_before_draft_completes_review(self, db_session, make_message, pipeline):
        booking = await _booking_confirmation(make_message)
        draft = await make_message(
            minutes=60, subject="Draft BL for approval - 263368698", body_text="Booking No: 263368698",
        )
        approval = await make_message(
            minutes=90,
            sender_address="ops@ownorg.com",
            subject="Draft BL approved - 263368698",
            body_text="Booking No: 263368698",
        )
        first = await pipeline.process_message(db_session, booking)
        approved = await pipeline.process_message(db_session, approval)
        outcome = await pipeline.process_message(db_session, draft)

        assert approved.direction.direction == Direction.OUTBOUND
        assert approved.shipment_id == first.shipment_id
        assert outcome.classification.document_type == DocumentType.DRAFT_BL
        item = (await db_session.execute(
            select(ActionItem).where(ActionItem.description == "Review and approve draft BL")
        )).scalar_one()
        assert outcome.actions_created == [item.id]
        assert outcome.actions_resolved == [item.id]
        assert item.completed_by_message_id == approval.id


class TestPipelineBehaviour:
    @pytest.mark.asyncio
    async def test_reprocessing_is_idempotent(self, db_session, make_message, pipeline):
        message = await _booking_confirmation(make_message)
        first = await pipeline.process_message(db_session, message)
        second = await pipeline.process_message(db_session, message)

        assert second.shipment_id == first.shipment_id
        assert second.shipment_created is False
        assert second.actions_created == []
        assert await _count(db_session, Shipment) == 1
        assert await _count(db_session, WorkflowEvent) == 1
        assert await _count(db_session, ActionItem) == 3
        assert await _count(db_session, Classification, Classification.message_id == message.id) == 1

        record = await db_session.get(MessageOutcome, message.id)
        assert record.attempts == 2
        assert record.status == OutcomeStatus.LINKED
        assert record.detail["shipment_id"] == str(first.shipment_id)

    @pytest.mark.asyncio
    async def test_unclassified_message_is_orphan_and_reviewed(self, db_session, make_message, pipeline):
        message = await make_message(sender_address="friend@example.org", subject="Lunch on Friday?")
        outcome = await pipeline.process_message(db_session, message)

        assert outcome.status == OutcomeStatus.ORPHAN_NO_IDENTIFIERS
        assert outcome.classification.document_type == DocumentType.UNKNOWN
        review = (await db_session.execute(
            select(ReviewItem).where(ReviewItem.entity_id == message.id)
        )).scalar_one()
        assert review.item_type == ReviewItemType.CLASSIFICATION_REVIEW

    @pytest.mark.asyncio
    async def test_forward_before_original_waits(self, db_session, make_message, pipeline):
        forward = await make_message(
            sender_address="ops@ownorg.com", sender_name="Maersk via Operations", subject=BOOKING_SUBJECT,
        )
        outcome = await pipeline.process_message(db_session, forward)

        assert outcome.status == OutcomeStatus.AWAITING_DIRECT_CARRIER
        assert await _count(db_session, Shipment) == 0

    @pytest.mark.asyncio
    async def test_stage_fault_rolls_back_message(self, db_session, make_message, pipeline):
        message = await _booking_confirmation(make_message)
        with patch.object(pipeline.workflow, "advance", AsyncMock(side_effect=RuntimeError("boom"))):
            outcome = await pipeline.process_message(db_session, message)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.error == "RuntimeError: boom"
        assert outcome.classification.document_type == DocumentType.BOOKING_CONFIRMATION
        assert await _count(db_session, Shipment) == 0
        assert await _count(db_session, Classification) == 0

        record = await db_session.get(MessageOutcome, message.id)
        assert record.status == OutcomeStatus.FAILED
        assert record.error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_ingest_is_idempotent_on_external_id(self, db_session, pipeline):
        payload = MessageIn(
            external_id="<abc@maersk.com>",
            sender_address="noreply@maersk.com",
            subject=BOOKING_SUBJECT,
            received_at=BASE_TIME,
        )
        first, created = await pipeline.ingest_message(db_session, payload)
        second, created_again = await pipeline.ingest_message(db_session, payload)

        assert created is True
        assert created_again is False
        assert second.id == first.id


class TestProcessBatch:
    """One session and one commit per message."""

    @pytest.mark.asyncio
    async def test_batch(self, session_factory, pipeline):
        ids = [uuid.uuid4() for _ in range(3)]
        async with session_factory() as db:
            db.add_all([
                Message(
                    id=ids[0], sender_address="noreply@maersk.com", subject=BOOKING_SUBJECT,
                    body_text=BOOKING_BODY, attachment_text="", received_at=BASE_TIME,
                ),
                Message(
                    id=ids[1], sender_address="noreply@maersk.com", subject="VGM accepted for 263368698",
                    body_text="", attachment_text="", received_at=BASE_TIME + timedelta(hours=2),
                ),
                Message(
                    id=ids[2], sender_address="friend@example.org", subject="Lunch on Friday?",
                    body_text="", attachment_text="", received_at=BASE_TIME + timedelta(hours=3),
                ),
            ])
            await db.commit()

        outcomes = await pipeline.process_batch(session_factory, [*ids, uuid.uuid4()])

        assert [o.message_id for o in outcomes] == ids
        assert [o.status for o in outcomes] == [
            OutcomeStatus.LINKED, OutcomeStatus.LINKED, OutcomeStatus.ORPHAN_NO_IDENTIFIERS,
        ]

        async with session_factory() as db:
            assert await _count(db, Shipment) == 1
            assert await _count(db, MessageOutcome) == 3

    @pytest.mark.asyncio
    async def test_shipment_lock_held_until_commit(self, test_engine, session_factory, pipeline):
        held_at_commit = []

        class RecordingSession(AsyncSession):
            async def commit(self):
                held_at_commit.append(("booking:263368698" in pipeline.locks, len(pipeline.locks)))
                await super().commit()

        booking, vgm = await _seed(
            session_factory,
            _stored(subject=BOOKING_SUBJECT, body_text=BOOKING_BODY),
            _stored(minutes=120, subject="VGM accepted for 263368698"),
        )
        recording = async_sessionmaker(test_engine, class_=RecordingSession, expire_on_commit=False)
        outcomes = await pipeline.process_batch(recording, [booking.id, vgm.id])

        assert [o.status for o in outcomes] == [OutcomeStatus.LINKED, OutcomeStatus.LINKED]
        # Booking and shipment locks for the creating message, the shipment lock alone for the VGM
        assert held_at_commit == [(True, 2), (False, 1)]
        assert len(pipeline.locks) == 0

    @pytest.mark.asyncio
    async def test_shipment_lock_entered_once_per_message(self, session_factory, pipeline):
        booking, vgm = await _seed(
            session_factory,
            _stored(subject=BOOKING_SUBJECT, body_text=BOOKING_BODY),
            _stored(minutes=120, subject="VGM accepted for 263368698"),
        )

        with patch.object(pipeline.locks, "hold", wraps=pipeline.locks.hold) as hold:
            [created] = await pipeline.process_batch(session_factory, [booking.id])
            assert [c.args[0] for c in hold.call_args_list] == [
                "booking:263368698", f"shipment:{created.shipment_id}",
            ]

            hold.reset_mock()
            [linked] = await pipeline.process_batch(session_factory, [vgm.id])
            assert linked.workflow_state == "vgm_submitted"
            assert [c.args[0] for c in hold.call_args_list] == [f"shipment:{created.shipment_id}"]


class TestConcurrentBatch:
    """Messages for one shipment processed side by side."""

    @pytest.fixture
    def concurrent_pipeline(self, test_settings, resolution_config):
        settings = test_settings.model_copy(update={"batch_concurrency": 2})
        return DocumentResolutionPipeline(settings, config=resolution_config)

    @pytest.mark.asyncio
    async def test_same_shipment_messages_complete(self, file_session_factory, concurrent_pipeline):
        booking, = await _seed(file_session_factory, _stored(subject=BOOKING_SUBJECT, body_text=BOOKING_BODY))
        [created] = await asyncio.wait_for(
            concurrent_pipeline.process_batch(file_session_factory, [booking.id]), timeout=10,
        )

        forward, vgm = await _seed(
            file_session_factory,
            _stored(
                minutes=30,
                sender_address="ops@ownorg.com",
                sender_name="Maersk via Operations",
                subject=BOOKING_SUBJECT,
                body_text="Booking No: 263368698",
            ),
            _stored(minutes=120, subject="VGM accepted for 263368698"),
        )
        outcomes = await asyncio.wait_for(
            concurrent_pipeline.process_batch(file_session_factory, [forward.id, vgm.id]), timeout=10,
        )

        assert [o.status for o in outcomes] == [OutcomeStatus.LINKED, OutcomeStatus.LINKED]
        assert {o.shipment_id for o in outcomes} == {created.shipment_id}
        assert len(concurrent_pipeline.locks) == 0

        async with file_session_factory() as db:
            assert await _count(db, Shipment) == 1
            assert await _count(db, MessageShipmentLink) == 3
            shipment = await db.get(Shipment, created.shipment_id)
            assert shipment.workflow_state == "vgm_submitted"
            assert shipment.workflow_state_order == 65
            assert await _count(db, ActionItem, ActionItem.description == "Submit VGM declaration") == 1
            assert await _count(db, ActionItem, ActionItem.completed_at.is_(None)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_confirmations_create_one_shipment(self, file_session_factory, concurrent_pipeline):
        confirmation, amendment = await _seed(
            file_session_factory,
            _stored(subject=BOOKING_SUBJECT, body_text=BOOKING_BODY),
            _stored(minutes=10, subject="Booking Amendment: 263368698", body_text="Booking No: 263368698"),
        )
        outcomes = await asyncio.wait_for(
            concurrent_pipeline.process_batch(file_session_factory, [confirmation.id, amendment.id]), timeout=10,
        )

        assert [o.status for o in outcomes] == [OutcomeStatus.LINKED, OutcomeStatus.LINKED]
        assert sorted(o.shipment_created for o in outcomes) == [False, True]
        assert outcomes[0].shipment_id == outcomes[1].shipment_id

        async with file_session_factory() as db:
            assert await _count(db, Shipment) == 1
            assert await _count(db, MessageShipmentLink) == 2
