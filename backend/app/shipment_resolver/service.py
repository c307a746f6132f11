"""
Shipment resolution service.

Finds the shipment a message belongs to (booking number, then learned
identifier mappings, then the shipment's own identifier columns), creates one
only for direct-carrier booking confirmations, writes the message link,
learns identifier mappings and backfills shipment fields first-writer-wins.
"""

import logging
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit.service import AuditService
from app.errors import ShipmentMergeError
from app.hitl_workflow.service import ReviewQueueService
from app.hitl_workflow.triggers import should_review_duplicate, should_review_link_conflict
from app.models.audit import AuditEvent
from app.models.message import Message
from app.models.review import ReviewItem, ReviewItemType, ReviewStatus
from app.models.shipment import IdentifierMapping, MessageShipmentLink, Shipment
from app.models.workflow import ActionItem, WorkflowEvent
from app.resolution_config.loader import ResolutionConfig
from app.schemas.resolution import (
    DATE_KINDS,
    Direction,
    DocumentType,
    ExtractedValue,
    IdentifierKind,
    LinkMethod,
    OutcomeStatus,
    ResolvedDirection,
    SHIPMENT_CREATING_TYPES,
)
from app.shipment_resolver.locks import ShipmentLockRegistry
from app.shipment_resolver.matchers import (
    booking_candidates,
    choose_canonical,
    group_duplicates,
    link_confidence,
    normalize_booking_number,
    secondary_identifiers,
)

logger = logging.getLogger("resolution.shipments")

# Every identifier kind except the booking number maps to a same-named column
BACKFILL_KINDS = tuple(k for k in IdentifierKind if k != IdentifierKind.BOOKING_NUMBER)


@dataclass
class ShipmentResolution:
    """What the resolver decided for one message."""

    status: OutcomeStatus
    shipment_id: uuid.UUID | None = None
    link_method: LinkMethod | None = None
    created: bool = False
    link_created: bool = False
    fields_set: list[str] = field(default_factory=list)
    fields_rejected: list[str] = field(default_factory=list)
    mappings_learned: int = 0
    conflict_review_id: uuid.UUID | None = None


@dataclass
class DuplicateGroup:
    booking_key: str
    canonical_id: uuid.UUID
    duplicate_ids: list[uuid.UUID]
    review_item_ids: list[uuid.UUID] = field(default_factory=list)


def _column_value(kind: IdentifierKind, value: str):
    if kind in DATE_KINDS:
        return date.fromisoformat(value)
    return value


class ShipmentResolver:
    """Resolves messages to shipments. One instance per process."""

    def __init__(
        self,
        config: ResolutionConfig,
        locks: ShipmentLockRegistry,
        review_queue: ReviewQueueService,
    ):
        self.config = config
        self.carriers = config.carriers
        self.locks = locks
        self.review_queue = review_queue

    async def resolve(
        self,
        db: AsyncSession,
        *,
        message: Message,
        identifiers: list[ExtractedValue],
        direction: ResolvedDirection,
        document_type: DocumentType,
        held: AsyncExitStack | None = None,
    ) -> ShipmentResolution:
        """Find or create the shipment for a message, link it and backfill fields.

        The booking and shipment locks are entered on `held` before the first
        write that touches the shipment and must stay held until the caller
        commits. Without `held` they are released on return.
        """
        async with AsyncExitStack() as local:
            return await self._resolve(
                db,
                message=message,
                identifiers=identifiers,
                direction=direction,
                document_type=document_type,
                held=held if held is not None else local,
            )

    async def _resolve(
        self,
        db: AsyncSession,
        *,
        message: Message,
        identifiers: list[ExtractedValue],
        direction: ResolvedDirection,
        document_type: DocumentType,
        held: AsyncExitStack,
    ) -> ShipmentResolution:
        bookings = booking_candidates(identifiers)
        secondaries = secondary_identifiers(identifiers)

        existing_link = await self.get_link(db, message.id)
        if existing_link is not None:
            await held.enter_async_context(self.locks.shipment(existing_link.shipment_id))
            shipment = await db.get(Shipment, existing_link.shipment_id)
            resolution = ShipmentResolution(
                status=OutcomeStatus.LINKED,
                shipment_id=shipment.id,
                link_method=existing_link.link_method,
            )
        else:
            resolution = await self._find_or_create(
                db,
                message=message,
                bookings=bookings,
                secondaries=secondaries,
                direction=direction,
                document_type=document_type,
                held=held,
            )
            if resolution.shipment_id is None:
                return resolution
            await held.enter_async_context(self.locks.shipment(resolution.shipment_id))
            shipment = await db.get(Shipment, resolution.shipment_id)
            _, resolution.link_created = await self.link(
                db,
                message_id=message.id,
                shipment=shipment,
                document_type=document_type,
                link_method=resolution.link_method,
                direction=direction,
            )

        if bookings:
            resolution.mappings_learned = await self.learn_mappings(
                db, shipment=shipment, secondaries=secondaries, message_id=message.id,
            )

        resolution.fields_set, resolution.fields_rejected = await self.backfill(
            db,
            shipment_id=shipment.id,
            identifiers=identifiers,
            direction=direction,
            message_id=message.id,
        )
        return resolution

    # --- Lookup ---

    async def find_by_booking(self, db: AsyncSession, raw: str) -> Shipment | None:
        """Exact or normalised booking-number lookup."""
        key = normalize_booking_number(raw, self.carriers)
        clauses = [Shipment.booking_number == raw.strip().upper()]
        if key:
            clauses += [Shipment.booking_key == key, Shipment.booking_number == key]
        return (await db.execute(
            select(Shipment)
            .where(or_(*clauses))
            .order_by(Shipment.created_at, Shipment.id)
            .limit(1)
        )).scalars().first()

    async def find_by_secondary(
        self, db: AsyncSession, secondaries: list[ExtractedValue]
    ) -> tuple[Shipment | None, LinkMethod | None]:
        """Learned mapping first, then the shipment's own identifier columns."""
        for value in secondaries:
            mapping = (await db.execute(
                select(IdentifierMapping).where(
                    IdentifierMapping.identifier_kind == value.kind,
                    IdentifierMapping.identifier_value == value.value,
                )
            )).scalar_one_or_none()
            if mapping is None:
                continue
            shipment = await self.find_by_booking(db, mapping.booking_number)
            if shipment is not None:
                return shipment, LinkMethod.IDENTIFIER_MAPPING

        for value in secondaries:
            column = getattr(Shipment, value.kind.value)
            shipment = (await db.execute(
                select(Shipment)
                .where(column == value.value)
                .order_by(Shipment.created_at, Shipment.id)
                .limit(1)
            )).scalars().first()
            if shipment is not None:
                return shipment, LinkMethod.SHIPMENT_FIELD

        return None, None

    async def get_link(self, db: AsyncSession, message_id: uuid.UUID) -> MessageShipmentLink | None:
        return (await db.execute(
            select(MessageShipmentLink).where(MessageShipmentLink.message_id == message_id)
        )).scalar_one_or_none()

    async def _find_or_create(
        self,
        db: AsyncSession,
        *,
        message: Message,
        bookings: list[ExtractedValue],
        secondaries: list[ExtractedValue],
        direction: ResolvedDirection,
        document_type: DocumentType,
        held: AsyncExitStack,
    ) -> ShipmentResolution:
        if not bookings and not secondaries:
            return ShipmentResolution(status=OutcomeStatus.ORPHAN_NO_IDENTIFIERS)

        for booking in bookings:
            shipment = await self.find_by_booking(db, booking.value)
            if shipment is not None:
                resolution = ShipmentResolution(
                    status=OutcomeStatus.LINKED,
                    shipment_id=shipment.id,
                    link_method=LinkMethod.BOOKING_NUMBER,
                )
                resolution.conflict_review_id = await self._check_link_conflict(
                    db, message=message, shipment=shipment, secondaries=secondaries,
                )
                return resolution

        shipment, method = await self.find_by_secondary(db, secondaries)
        if shipment is not None:
            return ShipmentResolution(status=OutcomeStatus.LINKED, shipment_id=shipment.id, link_method=method)

        if not self.may_create(direction, document_type) or not bookings:
            logger.info(
                "Message %s left unlinked: %s %s via %s cannot create a shipment",
                message.id, direction.direction.value, document_type.value, direction.method.value,
            )
            return ShipmentResolution(status=OutcomeStatus.AWAITING_DIRECT_CARRIER)

        for booking in bookings:
            key = normalize_booking_number(booking.value, self.carriers)
            if key is None:
                continue
            shipment, created = await self._create(db, key=key, message=message, direction=direction, held=held)
            return ShipmentResolution(
                status=OutcomeStatus.LINKED,
                shipment_id=shipment.id,
                link_method=LinkMethod.CREATED if created else LinkMethod.BOOKING_NUMBER,
                created=created,
            )

        return ShipmentResolution(status=OutcomeStatus.AWAITING_DIRECT_CARRIER)

    @staticmethod
    def may_create(direction: ResolvedDirection, document_type: DocumentType) -> bool:
        """Only a booking confirmation/amendment sent directly by a carrier creates a shipment."""
        return (
            direction.direction == Direction.INBOUND
            and direction.is_direct_carrier
            and document_type in SHIPMENT_CREATING_TYPES
        )

    async def _create(
        self,
        db: AsyncSession,
        *,
        key: str,
        message: Message,
        direction: ResolvedDirection,
        held: AsyncExitStack,
    ) -> tuple[Shipment, bool]:
        # Held until commit; a waiter re-reads and finds the committed shipment
        await held.enter_async_context(self.locks.booking(key))
        shipment = await self.find_by_booking(db, key)
        if shipment is not None:
            return shipment, False

        shipment = Shipment(
            id=uuid.uuid4(),
            booking_number=key,
            booking_key=key,
            carrier_id=direction.carrier_id,
            workflow_state_order=0,
            states_reached=[],
            created_from_message_id=message.id,
        )
        try:
            async with db.begin_nested():
                db.add(shipment)
                await db.flush()
        except IntegrityError:
            # Another process committed the same booking key first
            logger.info("Booking %s created concurrently; linking to existing shipment", key)
            shipment = await self.find_by_booking(db, key)
            if shipment is None:
                raise
            return shipment, False

        await AuditService.log_event(
            db,
            event_type="SHIPMENT_CREATED",
            entity_type="shipment",
            entity_id=shipment.id,
            message_id=message.id,
            action="create",
            new_state={
                "booking_number": key,
                "carrier_id": direction.carrier_id,
                "true_party": direction.true_party,
            },
        )
        logger.info("Created shipment %s for booking %s from message %s", shipment.id, key, message.id)
        return shipment, True

    async def _check_link_conflict(
        self,
        db: AsyncSession,
        *,
        message: Message,
        shipment: Shipment,
        secondaries: list[ExtractedValue],
    ) -> uuid.UUID | None:
        if not secondaries:
            return None
        other, method = await self.find_by_secondary(db, secondaries)
        conflict, reason = should_review_link_conflict(shipment.id, other.id if other else None)
        if not conflict:
            return None

        logger.warning("Link conflict for message %s: %s", message.id, reason)
        item, _ = await self.review_queue.create_review_item(
            db,
            item_type=ReviewItemType.LINK_CONFLICT,
            entity_id=message.id,
            entity_type="message",
            title=f"Identifier conflict on booking {shipment.booking_number}",
            description=reason,
            severity="high",
            metadata={
                "booking_shipment_id": str(shipment.id),
                "secondary_shipment_id": str(other.id),
                "secondary_method": method.value,
            },
        )
        return item.id

    # --- Link ---

    async def link(
        self,
        db: AsyncSession,
        *,
        message_id: uuid.UUID,
        shipment: Shipment,
        document_type: DocumentType,
        link_method: LinkMethod,
        direction: ResolvedDirection,
    ) -> tuple[MessageShipmentLink, bool]:
        """Write the message link; a no-op when the message is already linked."""
        existing = await self.get_link(db, message_id)
        if existing is not None:
            return existing, False

        link = MessageShipmentLink(
            id=uuid.uuid4(),
            message_id=message_id,
            shipment_id=shipment.id,
            document_type=document_type,
            link_method=link_method,
            confidence_score=link_confidence(link_method, direction),
            is_source_of_truth=direction.is_direct_carrier,
        )
        db.add(link)
        await db.flush()
        return link, True

    # --- Identifier mappings ---

    async def learn_mappings(
        self,
        db: AsyncSession,
        *,
        shipment: Shipment,
        secondaries: list[ExtractedValue],
        message_id: uuid.UUID,
    ) -> int:
        """Record secondary identifiers seen with the shipment's booking number.

        The first association per identifier wins; a conflicting one is logged.
        """
        booking_key = shipment.booking_key or normalize_booking_number(shipment.booking_number, self.carriers)
        if not booking_key:
            return 0

        learned = 0
        for value in secondaries:
            mapping = (await db.execute(
                select(IdentifierMapping).where(
                    IdentifierMapping.identifier_kind == value.kind,
                    IdentifierMapping.identifier_value == value.value,
                )
            )).scalar_one_or_none()
            if mapping is not None:
                if mapping.booking_number != booking_key:
                    logger.warning(
                        "%s %s already mapped to booking %s; ignoring %s from message %s",
                        value.kind.value, value.value, mapping.booking_number, booking_key, message_id,
                    )
                continue

            try:
                async with db.begin_nested():
                    db.add(IdentifierMapping(
                        id=uuid.uuid4(),
                        identifier_kind=value.kind,
                        identifier_value=value.value,
                        booking_number=booking_key,
                        source_message_id=message_id,
                        confidence=value.confidence,
                    ))
                    await db.flush()
            except IntegrityError:
                logger.info("Mapping for %s %s written concurrently", value.kind.value, value.value)
                continue
            learned += 1
        return learned

    # --- Backfill ---

    async def backfill(
        self,
        db: AsyncSession,
        *,
        shipment_id: uuid.UUID,
        identifiers: list[ExtractedValue],
        direction: ResolvedDirection,
        message_id: uuid.UUID,
    ) -> tuple[list[str], list[str]]:
        """Fill null shipment fields; never overwrite a populated one.

        Callers hold the shipment lock. Returns (fields_set, fields_rejected).
        """
        shipment = (await db.execute(
            select(Shipment)
            .where(Shipment.id == shipment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one()

        proposed: dict[str, object] = {}
        for kind in BACKFILL_KINDS:
            values = sorted(
                (v for v in identifiers if v.kind == kind),
                key=lambda v: (-v.confidence, v.value),
            )
            if values:
                proposed[kind.value] = _column_value(kind, values[0].value)

        bookings = booking_candidates(identifiers)
        if bookings and shipment.booking_number is None:
            key = normalize_booking_number(bookings[0].value, self.carriers)
            if key and await self.find_by_booking(db, key) is None:
                proposed["booking_number"] = key
                proposed["booking_key"] = key
        if direction.carrier_id and shipment.carrier_id is None:
            proposed["carrier_id"] = direction.carrier_id

        fields_set: list[str] = []
        rejected: dict[str, tuple] = {}
        for name, value in proposed.items():
            current = getattr(shipment, name)
            if current is None:
                setattr(shipment, name, value)
                fields_set.append(name)
            elif current != value:
                rejected[name] = (current, value)

        if fields_set:
            await db.flush()
            logger.debug("Shipment %s backfilled %s from message %s", shipment.id, fields_set, message_id)
        if rejected:
            await self._record_rejections(db, shipment=shipment, rejected=rejected, message_id=message_id)
        return fields_set, sorted(rejected)

    async def _record_rejections(
        self,
        db: AsyncSession,
        *,
        shipment: Shipment,
        rejected: dict[str, tuple],
        message_id: uuid.UUID,
    ) -> None:
        logger.warning(
            "Rejected overwrite of populated field(s) %s on shipment %s from message %s",
            sorted(rejected), shipment.id, message_id,
        )
        already_logged = (await db.execute(
            select(func.count(AuditEvent.id)).where(
                AuditEvent.event_type == "FIELD_WRITE_REJECTED",
                AuditEvent.entity_id == shipment.id,
                AuditEvent.message_id == message_id,
            )
        )).scalar_one()
        if already_logged:
            return
        await AuditService.log_event(
            db,
            event_type="FIELD_WRITE_REJECTED",
            entity_type="shipment",
            entity_id=shipment.id,
            message_id=message_id,
            action="backfill",
            previous_state={name: str(current) for name, (current, _) in rejected.items()},
            new_state={name: str(value) for name, (_, value) in rejected.items()},
            rationale="First writer wins: populated fields are not overwritten",
        )

    # --- Duplicates ---

    async def find_duplicate_shipments(self, db: AsyncSession) -> list[DuplicateGroup]:
        """Group shipments by normalised booking key and file a review item per duplicate."""
        rows = (await db.execute(
            select(Shipment.id, Shipment.booking_number, Shipment.created_at)
            .where(Shipment.booking_number.is_not(None))
        )).all()

        groups: list[DuplicateGroup] = []
        for key, members in sorted(group_duplicates([tuple(r) for r in rows], self.carriers).items()):
            needed, reason = should_review_duplicate(len(members), [m[1] for m in members])
            if not needed:
                continue
            canonical = choose_canonical(members, self.carriers)
            group = DuplicateGroup(
                booking_key=key,
                canonical_id=canonical[0],
                duplicate_ids=[m[0] for m in members if m[0] != canonical[0]],
            )
            for duplicate_id in group.duplicate_ids:
                item, _ = await self.review_queue.create_review_item(
                    db,
                    item_type=ReviewItemType.DUPLICATE_SHIPMENT,
                    entity_id=duplicate_id,
                    entity_type="shipment",
                    title=f"Possible duplicate of shipment {canonical[1]}",
                    description=reason,
                    severity="high",
                    metadata={"canonical_id": str(canonical[0]), "booking_key": key},
                )
                group.review_item_ids.append(item.id)
            logger.warning("Duplicate shipments for booking key %s: %s", key, reason)
            groups.append(group)
        return groups

    async def merge_shipments(
        self,
        db: AsyncSession,
        canonical_id: uuid.UUID,
        duplicate_id: uuid.UUID,
        reviewed_by: str,
        rationale: str,
    ) -> Shipment:
        """Fold a duplicate shipment into the canonical one and delete it.

        Links, workflow events, action items and mappings move to the canonical
        record; its null fields are filled from the duplicate. Raises
        ShipmentMergeError when the request is invalid.
        """
        if canonical_id == duplicate_id:
            raise ShipmentMergeError("A shipment cannot be merged into itself")
        if not rationale or not rationale.strip():
            raise ShipmentMergeError("A merge requires a rationale")

        first, second = sorted([canonical_id, duplicate_id], key=str)
        async with self.locks.shipment(first), self.locks.shipment(second):
            loaded = {}
            for shipment_id in (canonical_id, duplicate_id):
                loaded[shipment_id] = (await db.execute(
                    select(Shipment)
                    .where(Shipment.id == shipment_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )).scalar_one_or_none()
                if loaded[shipment_id] is None:
                    raise ShipmentMergeError(f"Shipment {shipment_id} not found")
            canonical, duplicate = loaded[canonical_id], loaded[duplicate_id]

            canonical_key = normalize_booking_number(canonical.booking_number, self.carriers)
            duplicate_key = normalize_booking_number(duplicate.booking_number, self.carriers)
            if canonical_key and duplicate_key and canonical_key != duplicate_key:
                raise ShipmentMergeError(
                    f"Booking numbers {canonical.booking_number} and {duplicate.booking_number} are not equivalent"
                )

            moved = await self._repoint(db, canonical=canonical, duplicate=duplicate)

            filled = []
            for name in ("booking_number", "carrier_id", *(k.value for k in BACKFILL_KINDS)):
                if getattr(canonical, name) is None and getattr(duplicate, name) is not None:
                    setattr(canonical, name, getattr(duplicate, name))
                    filled.append(name)
            if canonical.created_from_message_id is None:
                canonical.created_from_message_id = duplicate.created_from_message_id

            previous_pointer = canonical.workflow_state
            reached = list(dict.fromkeys([*(canonical.states_reached or []), *(duplicate.states_reached or [])]))
            canonical.states_reached = reached
            self._recompute_pointer(canonical)

            live_links = (await db.execute(
                select(func.count(MessageShipmentLink.id)).where(MessageShipmentLink.shipment_id == duplicate.id)
            )).scalar_one()
            if live_links:
                raise ShipmentMergeError(f"Shipment {duplicate.id} still has {live_links} live link(s)")

            duplicate_snapshot = {
                "id": str(duplicate.id),
                "booking_number": duplicate.booking_number,
                "workflow_state": duplicate.workflow_state,
            }
            await db.delete(duplicate)
            await db.flush()

            canonical.booking_key = normalize_booking_number(canonical.booking_number, self.carriers)
            await db.flush()

            await self._close_duplicate_reviews(db, duplicate_id, reviewed_by, rationale)

            await AuditService.log_event(
                db,
                event_type="SHIPMENTS_MERGED",
                entity_type="shipment",
                entity_id=canonical.id,
                action="merge",
                actor=reviewed_by,
                actor_type="user",
                previous_state={"duplicate": duplicate_snapshot, "workflow_state": previous_pointer},
                new_state={
                    "canonical_id": str(canonical.id),
                    "booking_number": canonical.booking_number,
                    "workflow_state": canonical.workflow_state,
                    "fields_filled": filled,
                    **moved,
                },
                rationale=rationale,
            )
            logger.info("Merged shipment %s into %s (%s)", duplicate.id, canonical.id, moved)
            return canonical

    async def _repoint(self, db: AsyncSession, *, canonical: Shipment, duplicate: Shipment) -> dict:
        links = (await db.execute(
            update(MessageShipmentLink)
            .where(MessageShipmentLink.shipment_id == duplicate.id)
            .values(shipment_id=canonical.id)
        )).rowcount

        events = 0
        kept_events = {
            (e.workflow_state, e.triggering_message_id)
            for e in (await db.execute(
                select(WorkflowEvent).where(WorkflowEvent.shipment_id == canonical.id)
            )).scalars().all()
        }
        for event in (await db.execute(
            select(WorkflowEvent).where(WorkflowEvent.shipment_id == duplicate.id)
        )).scalars().all():
            if (event.workflow_state, event.triggering_message_id) in kept_events:
                await db.delete(event)
            else:
                event.shipment_id = canonical.id
                events += 1

        actions = 0
        kept_actions = {
            (a.description, a.source_message_id)
            for a in (await db.execute(
                select(ActionItem).where(ActionItem.shipment_id == canonical.id)
            )).scalars().all()
        }
        for action in (await db.execute(
            select(ActionItem).where(ActionItem.shipment_id == duplicate.id)
        )).scalars().all():
            if (action.description, action.source_message_id) in kept_actions:
                await db.delete(action)
            else:
                action.shipment_id = canonical.id
                actions += 1

        mappings = 0
        canonical_key = normalize_booking_number(canonical.booking_number, self.carriers)
        duplicate_keys = {
            k for k in (duplicate.booking_key, duplicate.booking_number) if k
        } - {canonical_key}
        if canonical_key and duplicate_keys:
            mappings = (await db.execute(
                update(IdentifierMapping)
                .where(IdentifierMapping.booking_number.in_(duplicate_keys))
                .values(booking_number=canonical_key)
            )).rowcount

        await db.flush()
        return {"links_moved": links, "events_moved": events, "actions_moved": actions, "mappings_moved": mappings}

    def _recompute_pointer(self, shipment: Shipment) -> None:
        """Pointer becomes the highest-order state reached."""
        best = None
        for name in shipment.states_reached or []:
            state = self.config.workflow.by_name(name)
            if state is not None and (best is None or state.order > best.order):
                best = state
        if best is not None and best.order >= (shipment.workflow_state_order or 0):
            shipment.workflow_state = best.state
            shipment.workflow_state_order = best.order

    async def _close_duplicate_reviews(
        self, db: AsyncSession, duplicate_id: uuid.UUID, reviewed_by: str, rationale: str
    ) -> None:
        open_items = (await db.execute(
            select(ReviewItem).where(
                ReviewItem.item_type == ReviewItemType.DUPLICATE_SHIPMENT,
                ReviewItem.entity_id == duplicate_id,
                ReviewItem.status.in_([ReviewStatus.PENDING_REVIEW, ReviewStatus.ESCALATED]),
            )
        )).scalars().all()
        for item in open_items:
            await self.review_queue.review_item(db, item.id, "approve", reviewed_by=reviewed_by, notes=rationale)
