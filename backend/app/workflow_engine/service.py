"""
Workflow state engine.

Appends a workflow event for every qualifying message, moves the shipment's
state pointer forward only, resolves open action items the message confirms
and raises the obligations it implies.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit.service import AuditService
from app.direction_resolver import resolve_direction
from app.models.message import Message
from app.models.shipment import MessageShipmentLink, Shipment
from app.models.workflow import ActionItem, WorkflowEvent
from app.resolution_config.loader import ResolutionConfig
from app.schemas.resolution import Direction, DocumentType
from app.workflow_engine.transitions import (
    add_state_reached,
    deadline_for,
    resolves_action,
    should_advance,
)

logger = logging.getLogger("resolution.workflow")


@dataclass
class WorkflowAdvance:
    state: str | None = None
    state_order: int | None = None
    advanced: bool = False
    event_created: bool = False
    actions_resolved: list[uuid.UUID] = field(default_factory=list)
    actions_created: list[uuid.UUID] = field(default_factory=list)


class WorkflowStateEngine:
    """Per-shipment state machine driven by the workflow state table."""

    def __init__(self, config: ResolutionConfig):
        self.config = config

    async def advance(
        self,
        db: AsyncSession,
        *,
        shipment_id: uuid.UUID,
        message: Message,
        document_type: DocumentType,
        direction: Direction,
    ) -> WorkflowAdvance:
        """Apply one message to a shipment's workflow. Safe to re-run.

        Callers hold the shipment lock until commit; the row is locked here too.
        """
        result = WorkflowAdvance()
        shipment = (await db.execute(
            select(Shipment)
            .where(Shipment.id == shipment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one()

        state = self.config.workflow.state_for(document_type, direction)
        if state is not None:
            result.state = state.state
            result.state_order = state.order
            result.event_created = await self._append_event(
                db, shipment=shipment, state=state.state, state_order=state.order,
                message=message, direction=direction,
            )
            shipment.states_reached = add_state_reached(shipment.states_reached, state.state)

            if should_advance(shipment.workflow_state_order, state.order):
                previous = {"state": shipment.workflow_state, "order": shipment.workflow_state_order}
                shipment.workflow_state = state.state
                shipment.workflow_state_order = state.order
                result.advanced = True
                await AuditService.log_event(
                    db,
                    event_type="WORKFLOW_ADVANCED",
                    entity_type="shipment",
                    entity_id=shipment.id,
                    message_id=message.id,
                    action="advance",
                    previous_state=previous,
                    new_state={"state": state.state, "order": state.order},
                )
                logger.info(
                    "Shipment %s advanced %s -> %s (order %d)",
                    shipment.id, previous["state"], state.state, state.order,
                )
            await db.flush()

        result.actions_resolved = await self.resolve_actions(
            db, shipment=shipment, message=message, document_type=document_type, direction=direction,
        )
        result.actions_created, completed = await self.create_actions(
            db, shipment=shipment, message=message, document_type=document_type, direction=direction,
        )
        result.actions_resolved.extend(completed)
        return result

    async def _append_event(
        self,
        db: AsyncSession,
        *,
        shipment: Shipment,
        state: str,
        state_order: int,
        message: Message,
        direction: Direction,
    ) -> bool:
        existing = (await db.execute(
            select(WorkflowEvent.id).where(
                WorkflowEvent.shipment_id == shipment.id,
                WorkflowEvent.workflow_state == state,
                WorkflowEvent.triggering_message_id == message.id,
            )
        )).scalar_one_or_none()
        if existing is not None:
            return False

        db.add(WorkflowEvent(
            id=uuid.uuid4(),
            shipment_id=shipment.id,
            workflow_state=state,
            state_order=state_order,
            triggering_message_id=message.id,
            direction=direction,
            occurred_at=message.received_at,
        ))
        await db.flush()
        return True

    async def resolve_actions(
        self,
        db: AsyncSession,
        *,
        shipment: Shipment,
        message: Message,
        document_type: DocumentType,
        direction: Direction,
    ) -> list[uuid.UUID]:
        """Complete open action items this message confirms."""
        keywords = self.config.actions.keywords_for(document_type, direction)
        if not keywords:
            return []

        open_items = (await db.execute(
            select(ActionItem).where(
                ActionItem.shipment_id == shipment.id,
                ActionItem.completed_at.is_(None),
                or_(ActionItem.source_message_id.is_(None), ActionItem.source_message_id != message.id),
            ).order_by(ActionItem.raised_at, ActionItem.id)
        )).scalars().all()

        resolved: list[uuid.UUID] = []
        for item in open_items:
            ok, reason = resolves_action(
                description=item.description,
                raised_at=item.raised_at,
                source_message_id=item.source_message_id,
                completed_at=item.completed_at,
                keywords=keywords,
                message_id=message.id,
                received_at=message.received_at,
            )
            if not ok:
                logger.debug("Action %s not resolved by message %s: %s", item.id, message.id, reason)
                continue
            await self._complete(db, item, message=message, document_type=document_type, reason=reason)
            resolved.append(item.id)

        if resolved:
            await db.flush()
            logger.info("Message %s completed %d action item(s) on shipment %s", message.id, len(resolved), shipment.id)
        return resolved

    async def create_actions(
        self,
        db: AsyncSession,
        *,
        shipment: Shipment,
        message: Message,
        document_type: DocumentType,
        direction: Direction,
    ) -> tuple[list[uuid.UUID], list[uuid.UUID]]:
        """Raise the obligations configured for this document type and direction.

        An obligation is raised once per shipment: any item with the same
        description, open or completed, suppresses it. A new item is completed
        at once by a confirmation already linked to the shipment that was
        received after it.

        Returns (created, completed).
        """
        created: list[ActionItem] = []
        for rule in self.config.actions.creation_rules_for(document_type, direction):
            existing = (await db.execute(
                select(ActionItem.id).where(
                    ActionItem.shipment_id == shipment.id,
                    ActionItem.description == rule.description,
                ).limit(1)
            )).scalar_one_or_none()
            if existing is not None:
                logger.debug("Action '%s' already raised on shipment %s", rule.description, shipment.id)
                continue

            item = ActionItem(
                id=uuid.uuid4(),
                shipment_id=shipment.id,
                description=rule.description,
                owner=rule.owner,
                priority=rule.priority,
                deadline=deadline_for(rule, shipment),
                source_message_id=message.id,
                raised_at=message.received_at,
            )
            db.add(item)
            created.append(item)

        if not created:
            return [], []
        await db.flush()
        completed = await self._complete_from_history(db, shipment=shipment, message=message, items=created)
        return [item.id for item in created], completed

    async def _complete_from_history(
        self,
        db: AsyncSession,
        *,
        shipment: Shipment,
        message: Message,
        items: list[ActionItem],
    ) -> list[uuid.UUID]:
        """Match new items against confirmations processed before the request was."""
        rows = (await db.execute(
            select(MessageShipmentLink.document_type, Message)
            .join(Message, Message.id == MessageShipmentLink.message_id)
            .where(
                MessageShipmentLink.shipment_id == shipment.id,
                MessageShipmentLink.message_id != message.id,
                Message.received_at >= message.received_at,
            )
            .order_by(Message.received_at, Message.id)
        )).all()

        confirmations = []
        for document_type, confirmation in rows:
            # Direction is not stored on the link; it is a pure function of the message
            direction = resolve_direction(
                sender_address=confirmation.sender_address,
                sender_name=confirmation.sender_name,
                apparent_sender=confirmation.apparent_sender,
                subject=confirmation.subject,
                carriers=self.config.carriers,
                rules=self.config.direction,
            ).direction
            keywords = self.config.actions.keywords_for(document_type, direction)
            if keywords:
                confirmations.append((confirmation, document_type, keywords))

        completed: list[uuid.UUID] = []
        for item in items:
            for confirmation, document_type, keywords in confirmations:
                ok, reason = resolves_action(
                    description=item.description,
                    raised_at=item.raised_at,
                    source_message_id=item.source_message_id,
                    completed_at=item.completed_at,
                    keywords=keywords,
                    message_id=confirmation.id,
                    received_at=confirmation.received_at,
                )
                if ok:
                    await self._complete(db, item, message=confirmation, document_type=document_type, reason=reason)
                    completed.append(item.id)
                    break

        if completed:
            await db.flush()
            logger.info(
                "Message %s raised %d action item(s) already confirmed on shipment %s",
                message.id, len(completed), shipment.id,
            )
        return completed

    async def _complete(
        self,
        db: AsyncSession,
        item: ActionItem,
        *,
        message: Message,
        document_type: DocumentType,
        reason: str,
    ) -> None:
        item.completed_at = message.received_at
        item.completed_by_message_id = message.id
        await AuditService.log_event(
            db,
            event_type="ACTION_ITEM_COMPLETED",
            entity_type="action_item",
            entity_id=item.id,
            message_id=message.id,
            action="complete",
            previous_state={"completed_at": None},
            new_state={"completed_at": message.received_at.isoformat(), "document_type": document_type.value},
            rationale=reason,
        )

    async def create_action_item(
        self,
        db: AsyncSession,
        shipment_id: uuid.UUID,
        *,
        description: str,
        owner: str | None = None,
        priority: str = "medium",
        deadline: date | None = None,
        raised_at: datetime | None = None,
    ) -> ActionItem:
        """Manually raise an obligation on a shipment."""
        shipment = await db.get(Shipment, shipment_id)
        if shipment is None:
            raise ValueError(f"Shipment {shipment_id} not found")

        item = ActionItem(
            id=uuid.uuid4(),
            shipment_id=shipment_id,
            description=description,
            owner=owner,
            priority=priority,
            deadline=deadline,
            source_message_id=None,
            raised_at=raised_at or datetime.now(timezone.utc),
        )
        db.add(item)
        await db.flush()
        return item
