"""ReviewQueueService — human review queue state machine.

Manages review item lifecycle: create → review (approve/reject/escalate).
Creation is idempotent: one pending item per (item_type, entity_id).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit.service import AuditService
from app.config import Settings
from app.models.review import ReviewItem, ReviewItemType, ReviewStatus

REVIEW_ACTIONS = {
    "approve": ReviewStatus.APPROVED,
    "reject": ReviewStatus.REJECTED,
    "escalate": ReviewStatus.ESCALATED,
}


class ReviewQueueService:
    """Review queue state machine."""

    def __init__(self, settings: Settings):
        self.confidence_threshold = settings.review_confidence_threshold

    async def create_review_item(
        self,
        db: AsyncSession,
        *,
        item_type: ReviewItemType,
        entity_id: uuid.UUID,
        entity_type: str,
        title: str,
        description: str | None = None,
        severity: str = "medium",
        confidence: int | None = None,
        metadata: dict | None = None,
    ) -> tuple[ReviewItem, bool]:
        """Create a pending review item unless one is already open for the entity.

        Returns (item, created).
        """
        existing = (await db.execute(
            select(ReviewItem).where(
                ReviewItem.item_type == item_type,
                ReviewItem.entity_id == entity_id,
                ReviewItem.status.in_([ReviewStatus.PENDING_REVIEW, ReviewStatus.ESCALATED]),
            )
        )).scalars().first()
        if existing is not None:
            return existing, False

        item = ReviewItem(
            id=uuid.uuid4(),
            status=ReviewStatus.PENDING_REVIEW,
            item_type=item_type,
            entity_id=entity_id,
            entity_type=entity_type,
            title=title,
            description=description,
            severity=severity,
            confidence=confidence,
            review_metadata=metadata,
        )
        db.add(item)
        await db.flush()

        await AuditService.log_event(
            db,
            event_type="REVIEW_ITEM_CREATED",
            entity_type="review_item",
            entity_id=item.id,
            action="create",
            new_state={
                "status": item.status.value,
                "item_type": item_type.value,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
            },
        )
        return item, True

    async def review_item(
        self,
        db: AsyncSession,
        item_id: uuid.UUID,
        action: str,
        reviewed_by: str = "user",
        notes: str | None = None,
    ) -> ReviewItem:
        """Process a review action (approve/reject/escalate)."""
        item = (await db.execute(
            select(ReviewItem).where(ReviewItem.id == item_id)
        )).scalar_one_or_none()
        if item is None:
            raise ValueError(f"Review item {item_id} not found")

        new_status = REVIEW_ACTIONS.get(action)
        if new_status is None:
            raise ValueError(f"Invalid action: {action}. Must be approve, reject, or escalate.")

        previous_status = item.status.value
        item.status = new_status
        item.reviewed_by = reviewed_by
        item.reviewed_at = datetime.now(timezone.utc)
        item.review_notes = notes
        await db.flush()

        await AuditService.log_event(
            db,
            event_type="REVIEW_ITEM_ACTIONED",
            entity_type="review_item",
            entity_id=item.id,
            action=action,
            actor=reviewed_by,
            actor_type="user",
            previous_state={"status": previous_status},
            new_state={"status": new_status.value, "notes": notes},
        )
        return item

    async def get_queue(
        self,
        db: AsyncSession,
        *,
        status: str | None = None,
        item_type: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[ReviewItem], int]:
        """Get paginated, filterable review queue."""
        query = select(ReviewItem)
        count_query = select(func.count(ReviewItem.id))

        if status:
            query = query.where(ReviewItem.status == ReviewStatus(status))
            count_query = count_query.where(ReviewItem.status == ReviewStatus(status))
        if item_type:
            query = query.where(ReviewItem.item_type == ReviewItemType(item_type))
            count_query = count_query.where(ReviewItem.item_type == ReviewItemType(item_type))

        total = (await db.execute(count_query)).scalar_one()

        offset = (page - 1) * per_page
        query = query.order_by(ReviewItem.created_at.desc()).offset(offset).limit(per_page)
        items = list((await db.execute(query)).scalars().all())

        return items, total

    async def get_stats(self, db: AsyncSession) -> dict:
        """Get review queue statistics."""
        total = (await db.execute(select(func.count(ReviewItem.id)))).scalar_one()

        counts = {}
        for status in ReviewStatus:
            counts[status.value] = (await db.execute(
                select(func.count(ReviewItem.id)).where(ReviewItem.status == status)
            )).scalar_one()

        by_type = {}
        for item_type in ReviewItemType:
            by_type[item_type.value] = (await db.execute(
                select(func.count(ReviewItem.id)).where(ReviewItem.item_type == item_type)
            )).scalar_one()

        return {"total": total, **counts, "by_type": by_type}
