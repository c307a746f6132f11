from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import settings
from app.database import async_session_maker, get_db
from app.hitl_workflow.service import ReviewQueueService
from app.pipeline import DocumentResolutionPipeline

# Re-export get_db for use in Depends()
get_db = get_db


@lru_cache
def get_resolution_pipeline() -> DocumentResolutionPipeline:
    # One per process: holds the shipment lock registry and the AI rate limiter
    return DocumentResolutionPipeline(settings)


def get_review_queue(
    pipeline: DocumentResolutionPipeline = Depends(get_resolution_pipeline),
) -> ReviewQueueService:
    return pipeline.review_queue


def get_session_factory() -> async_sessionmaker:
    return async_session_maker
