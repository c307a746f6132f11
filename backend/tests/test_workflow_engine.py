"""Tests for workflow transitions, the state pointer and action items."""

import uuid
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from app.models.audit import AuditEvent
from app.models.shipment import MessageShipmentLink, Shipment
from app.models.workflow import ActionItem, WorkflowEvent
from app.schemas.resolution import Direction, DocumentType, IdentifierKind, LinkMethod
from app.workflow_engine.transitions import (
    add_state_reached,
    as_utc,
    deadline_for,
    keyword_match,
    resolves_action,
    should_advance,
)

RAISED = datetime(2025, 12, 1, 9, 0, tzinfo=timezone.utc)

SI_ACTION = "Submit shipping instructions before SI cut-off"
VGM_ACTION = "Submit VGM declaration"
SHARE_ACTION = "Share booking confirmation with customer"
DRAFT_ACTION = "Review and approve draft BL"


# ── Pure function tests ──


class TestTransitions:
    def test_as_utc(self):
        naive = datetime(2025, 12, 1, 9, 0)
        assert as_utc(naive) == RAISED
        ist = timezone(timedelta(hours=5, minutes=30))
        assert as_utc(datetime(2025, 12, 1, 14, 30, tzinfo=ist)) == RAISED

    def test_should_advance(self):
        assert should_advance(None, 10)
        assert should_advance(10, 60)
        assert not should_advance(60, 60)
        assert not should_advance(119, 60)

    def test_add_state_reached(self):
        assert add_state_reached(None, "si_confirmed") == ["si_confirmed"]
        reached = ["booking_confirmation_received"]
        assert add_state_reached(reached, "booking_confirmation_received") == reached
        assert add_state_reached(reached, "si_confirmed") == ["booking_confirmation_received", "si_confirmed"]
        assert reached == ["booking_confirmation_received"]

    def test_keyword_match_whole_words(self):
        assert keyword_match(SI_ACTION, ["shipping instructions", "si"]) == "shipping instructions"
        assert keyword_match("Visit the terminal", ["si"]) is None
        assert keyword_match(VGM_ACTION, ["vgm"]) == "vgm"


class TestResolvesAction:
    def _check(self, **overrides):
        message_id = uuid.uuid4()
        values = {
            "description": VGM_ACTION,
            "raised_at": RAISED,
            "source_message_id": uuid.uuid4(),
            "completed_at": None,
            "keywords": ["vgm", "verified gross mass"],
            "message_id": message_id,
            "received_at": RAISED + timedelta(hours=2),
        }
        values.update(overrides)
        return resolves_action(**values)

    def test_resolves(self):
        ok, reason = self._check()
        assert ok is True
        assert "vgm" in reason

    def test_already_completed(self):
        assert self._check(completed_at=RAISED) == (False, "Already completed")

    def test_own_message_never_resolves(self):
        message_id = uuid.uuid4()
        ok, reason = self._check(source_message_id=message_id, message_id=message_id)
        assert not ok
        assert reason == "Message raised this action"

    def test_no_keyword(self):
        assert self._check(description=SHARE_ACTION)[0] is False

    def test_predating_confirmation(self):
        ok, reason = self._check(received_at=RAISED - timedelta(minutes=1))
        assert not ok
        assert "predates" in reason

    def test_naive_timestamps_compare_as_utc(self):
        assert self._check(raised_at=datetime(2025, 12, 1, 9, 0))[0] is True

    def test_deadline_for(self, resolution_config):
        rules = resolution_config.actions.creation_rules_for(DocumentType.BOOKING_CONFIRMATION, Direction.INBOUND)
        shipment = SimpleNamespace(si_cutoff=date(2025, 12, 5), vgm_cutoff=None)
        by_description = {rule.description: rule for rule in rules}
        assert by_description[SI_ACTION].deadline_field == IdentifierKind.SI_CUTOFF
        assert deadline_for(by_description[SI_ACTION], shipment) == date(2025, 12, 5)
        assert deadline_for(by_description[VGM_ACTION], shipment) is None
        assert deadline_for(by_description[SHARE_ACTION], shipment) is None


# ── Engine tests ──


@pytest.fixture
def engine(pipeline):
    return pipeline.workflow


@pytest.fixture
async def shipment(db_session):
    record = Shipment(
        id=uuid.uuid4(),
        booking_number="263456789",
        booking_key="263456789",
        si_cutoff=date(2025, 12, 5),
        vgm_cutoff=date(2025, 12, 6),
        workflow_state_order=0,
        states_reached=[],
    )
    db_session.add(record)
    await db_session.flush()
    return record


async def _advance(engine, db, shipment, message, document_type, direction=Direction.INBOUND):
    return await engine.advance(
        db, shipment_id=shipment.id, message=message, document_type=document_type, direction=direction,
    )


async def _actions(db, shipment_id):
    rows = (await db.execute(
        select(ActionItem).where(ActionItem.shipment_id == shipment_id).order_by(ActionItem.description)
    )).scalars().all()
    return {row.description: row for row in rows}


class TestWorkflowStateEngine:
    """Pointer only moves forward; the event journal is append-only."""

    @pytest.mark.asyncio
    async def test_booking_confirmation_advances_and_raises(self, db_session, make_message, engine, shipment):
        message = await make_message(subject="Booking Confirmation: 263456789")
        result = await _advance(engine, db_session, shipment, message, DocumentType.BOOKING_CONFIRMATION)

        assert result.state == "booking_confirmation_received"
        assert result.advanced is True
        assert result.event_created is True
        assert len(result.actions_created) == 3
        assert shipment.workflow_state == "booking_confirmation_received"
        assert shipment.workflow_state_order == 10

        actions = await _actions(db_session, shipment.id)
        assert set(actions) == {SI_ACTION, VGM_ACTION, SHARE_ACTION}
        assert actions[SI_ACTION].deadline == date(2025, 12, 5)
        assert actions[VGM_ACTION].deadline == date(2025, 12, 6)
        assert actions[SHARE_ACTION].deadline is None
        assert actions[SI_ACTION].source_message_id == message.id

        advanced = (await db_session.execute(
            select(func.count(AuditEvent.id)).where(AuditEvent.event_type == "WORKFLOW_ADVANCED")
        )).scalar_one()
        assert advanced == 1

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, db_session, make_message, engine, shipment):
        message = await make_message()
        await _advance(engine, db_session, shipment, message, DocumentType.BOOKING_CONFIRMATION)
        again = await _advance(engine, db_session, shipment, message, DocumentType.BOOKING_CONFIRMATION)

        assert again.advanced is False
        assert again.event_created is False
        assert again.actions_created == []
        events = (await db_session.execute(select(func.count(WorkflowEvent.id)))).scalar_one()
        assert events == 1
        assert len(await _actions(db_session, shipment.id)) == 3

    @pytest.mark.asyncio
    async def test_pointer_never_moves_backwards(self, db_session, make_message, engine, shipment):
        bl = await make_message(minutes=10)
        late_si = await make_message(minutes=20)
        await _advance(engine, db_session, shipment, bl, DocumentType.DRAFT_BL)
        result = await _advance(engine, db_session, shipment, late_si, DocumentType.SI_CONFIRMATION)

        assert result.state == "si_confirmed"
        assert result.advanced is False
        assert result.event_created is True
        assert shipment.workflow_state == "bl_received"
        assert shipment.workflow_state_order == 119
        assert shipment.states_reached == ["bl_received", "si_confirmed"]

    @pytest.mark.asyncio
    async def test_unmapped_type_records_nothing(self, db_session, make_message, engine, shipment):
        message = await make_message()
        result = await _advance(engine, db_session, shipment, message, DocumentType.RATE_QUOTE)
        assert result.state is None
        assert result.event_created is False
        assert shipment.workflow_state is None

    @pytest.mark.asyncio
    async def test_confirmations_resolve_actions(self, db_session, make_message, engine, shipment):
        booking = await make_message()
        si = await make_message(minutes=60)
        vgm = await make_message(minutes=90)
        await _advance(engine, db_session, shipment, booking, DocumentType.BOOKING_CONFIRMATION)

        si_result = await _advance(engine, db_session, shipment, si, DocumentType.SI_CONFIRMATION)
        vgm_result = await _advance(engine, db_session, shipment, vgm, DocumentType.VGM_CONFIRMATION)

        actions = await _actions(db_session, shipment.id)
        assert si_result.actions_resolved == [actions[SI_ACTION].id]
        assert vgm_result.actions_resolved == [actions[VGM_ACTION].id]
        assert actions[SI_ACTION].completed_by_message_id == si.id
        assert actions[SHARE_ACTION].completed_at is None
        assert shipment.workflow_state == "vgm_submitted"

    @pytest.mark.asyncio
    async def test_outbound_share_resolves_inbound_request(self, db_session, make_message, engine, shipment):
        booking = await make_message()
        shared = await make_message(minutes=15, sender_address="ops@ownorg.com")
        await _advance(engine, db_session, shipment, booking, DocumentType.BOOKING_CONFIRMATION)
        result = await _advance(
            engine, db_session, shipment, shared, DocumentType.BOOKING_CONFIRMATION, Direction.OUTBOUND,
        )

        actions = await _actions(db_session, shipment.id)
        assert result.state == "booking_confirmation_shared"
        assert result.actions_resolved == [actions[SHARE_ACTION].id]
        assert result.actions_created == []

    @pytest.mark.asyncio
    async def test_predating_confirmation_leaves_action_open(self, db_session, make_message, engine, shipment):
        early_vgm = await make_message(minutes=0)
        booking = await make_message(minutes=60)
        await _advance(engine, db_session, shipment, booking, DocumentType.BOOKING_CONFIRMATION)
        result = await _advance(engine, db_session, shipment, early_vgm, DocumentType.VGM_CONFIRMATION)

        assert result.actions_resolved == []
        assert (await _actions(db_session, shipment.id))[VGM_ACTION].completed_at is None

    @pytest.mark.asyncio
    async def test_open_action_not_raised_twice(self, db_session, make_message, engine, shipment):
        booking = await make_message()
        reminder = await make_message(minutes=30)
        await _advance(engine, db_session, shipment, booking, DocumentType.BOOKING_CONFIRMATION)
        result = await _advance(engine, db_session, shipment, reminder, DocumentType.VGM_REMINDER)

        assert result.actions_created == []
        vgm_items = (await db_session.execute(
            select(func.count(ActionItem.id)).where(ActionItem.description == VGM_ACTION)
        )).scalar_one()
        assert vgm_items == 1

    @pytest.mark.asyncio
    async def test_completed_action_not_raised_again(self, db_session, make_message, engine, shipment):
        booking = await make_message()
        si = await make_message(minutes=60)
        forward = await make_message(
            minutes=120, sender_address="ops@ownorg.com", sender_name="Maersk via Operations",
        )
        await _advance(engine, db_session, shipment, booking, DocumentType.BOOKING_CONFIRMATION)
        await _advance(engine, db_session, shipment, si, DocumentType.SI_CONFIRMATION)
        result = await _advance(engine, db_session, shipment, forward, DocumentType.BOOKING_CONFIRMATION)

        assert result.actions_created == []
        si_items = (await db_session.execute(
            select(ActionItem).where(ActionItem.description == SI_ACTION)
        )).scalars().all()
        assert len(si_items) == 1
        assert si_items[0].completed_by_message_id == si.id


class TestOutOfOrderConfirmations:
    """A confirmation processed before the request it answers still completes it."""

    async def _link(self, db, shipment, message, document_type):
        db.add(MessageShipmentLink(
            id=uuid.uuid4(),
            message_id=message.id,
            shipment_id=shipment.id,
            document_type=document_type,
            link_method=LinkMethod.BOOKING_NUMBER,
            confidence_score=90,
        ))
        await db.flush()

    @pytest.mark.asyncio
    async def test_new_action_completed_by_later_confirmation(self, db_session, make_message, engine, shipment):
        draft = await make_message(minutes=60)
        approval = await make_message(minutes=90, sender_address="ops@ownorg.com")
        await self._link(db_session, shipment, approval, DocumentType.DRAFT_BL)
        await _advance(engine, db_session, shipment, approval, DocumentType.DRAFT_BL, Direction.OUTBOUND)

        result = await _advance(engine, db_session, shipment, draft, DocumentType.DRAFT_BL)

        item = (await _actions(db_session, shipment.id))[DRAFT_ACTION]
        assert result.actions_created == [item.id]
        assert result.actions_resolved == [item.id]
        assert item.completed_by_message_id == approval.id
        assert as_utc(item.completed_at) == as_utc(approval.received_at)

        completed = (await db_session.execute(
            select(AuditEvent).where(
                AuditEvent.event_type == "ACTION_ITEM_COMPLETED",
                AuditEvent.entity_id == item.id,
            )
        )).scalar_one()
        assert completed.message_id == approval.id

    @pytest.mark.asyncio
    async def test_earlier_confirmation_leaves_new_action_open(self, db_session, make_message, engine, shipment):
        approval = await make_message(minutes=30, sender_address="ops@ownorg.com")
        draft = await make_message(minutes=60)
        await self._link(db_session, shipment, approval, DocumentType.DRAFT_BL)

        result = await _advance(engine, db_session, shipment, draft, DocumentType.DRAFT_BL)

        item = (await _actions(db_session, shipment.id))[DRAFT_ACTION]
        assert result.actions_created == [item.id]
        assert result.actions_resolved == []
        assert item.completed_at is None

    @pytest.mark.asyncio
    async def test_unrelated_confirmation_does_not_complete(self, db_session, make_message, engine, shipment):
        draft = await make_message(minutes=60)
        vgm = await make_message(minutes=90)
        await self._link(db_session, shipment, vgm, DocumentType.VGM_CONFIRMATION)

        result = await _advance(engine, db_session, shipment, draft, DocumentType.DRAFT_BL)

        assert result.actions_resolved == []
        assert (await _actions(db_session, shipment.id))[DRAFT_ACTION].completed_at is None


class TestManualActionItems:
    @pytest.mark.asyncio
    async def test_create_and_resolve(self, db_session, make_message, engine, shipment):
        item = await engine.create_action_item(
            db_session, shipment.id,
            description="Send shipping instructions to carrier", owner="documentation", priority="high",
            raised_at=RAISED,
        )
        assert item.source_message_id is None
        assert item.completed_at is None

        confirmation = await make_message(minutes=30)
        result = await _advance(engine, db_session, shipment, confirmation, DocumentType.SI_CONFIRMATION)
        assert result.actions_resolved == [item.id]

    @pytest.mark.asyncio
    async def test_unknown_shipment(self, db_session, engine):
        with pytest.raises(ValueError, match="not found"):
            await engine.create_action_item(db_session, uuid.uuid4(), description="Anything")
