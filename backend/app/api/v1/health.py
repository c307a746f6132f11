from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.dependencies import get_db, get_resolution_pipeline
from app.pipeline import DocumentResolutionPipeline
from app.schemas.health import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
) -> HealthResponse:
    # Check database
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        db_status = "unhealthy"

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        database=db_status,
        rules_version=pipeline.config.version,
        timestamp=datetime.now(timezone.utc),
        environment=settings.environment,
        version="0.1.0",
    )
