from fastapi import APIRouter

from app.api.v1 import health, maintenance, messages, reviews, shipments

api_router = APIRouter()

api_router.include_router(health.router, prefix="/v1", tags=["health"])
api_router.include_router(messages.router, prefix="/v1/messages", tags=["messages"])
api_router.include_router(shipments.router, prefix="/v1/shipments", tags=["shipments"])
api_router.include_router(reviews.router, prefix="/v1/reviews", tags=["reviews"])
api_router.include_router(maintenance.router, prefix="/v1/maintenance", tags=["maintenance"])
