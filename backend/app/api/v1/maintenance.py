"""Bulk maintenance endpoints: orphan sweep, full reprocess, duplicate scan."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.dependencies import get_db, get_resolution_pipeline, get_session_factory
from app.pipeline import DocumentResolutionPipeline
from app.pipeline.maintenance import Checkpoint, reprocess_all, sweep_orphans
from app.schemas.maintenance import (
    DuplicateGroupResponse,
    DuplicateScanResponse,
    MaintenanceRequest,
    MaintenanceResponse,
)

router = APIRouter()


def _checkpoint(request: MaintenanceRequest) -> Checkpoint | None:
    if request.after is None:
        return None
    return Checkpoint(received_at=request.after.received_at, message_id=request.after.message_id)


@router.post("/sweep-orphans", response_model=MaintenanceResponse)
async def run_sweep_orphans(
    request: MaintenanceRequest = MaintenanceRequest(),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> MaintenanceResponse:
    """Retry unlinked and failed messages."""
    report = await sweep_orphans(
        pipeline, session_factory, page_size=request.page_size, after=_checkpoint(request), limit=request.limit,
    )
    return MaintenanceResponse(**report.to_dict())


@router.post("/reprocess", response_model=MaintenanceResponse)
async def run_reprocess(
    request: MaintenanceRequest = MaintenanceRequest(),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> MaintenanceResponse:
    """Re-run the pipeline over stored messages, resumable from a checkpoint."""
    report = await reprocess_all(
        pipeline, session_factory, page_size=request.page_size, after=_checkpoint(request), limit=request.limit,
    )
    return MaintenanceResponse(**report.to_dict())


@router.post("/duplicates", response_model=DuplicateScanResponse)
async def scan_duplicates(
    db: AsyncSession = Depends(get_db),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
) -> DuplicateScanResponse:
    """Group shipments by normalised booking number and queue each duplicate for review."""
    groups = await pipeline.shipments.find_duplicate_shipments(db)
    return DuplicateScanResponse(groups=[
        DuplicateGroupResponse(
            booking_key=g.booking_key,
            canonical_id=g.canonical_id,
            duplicate_ids=g.duplicate_ids,
            review_item_ids=g.review_item_ids,
        )
        for g in groups
    ])
