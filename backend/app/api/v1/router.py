"""
API v1 router - aggregates all endpoint routers.
"""

from fastapi import APIRouter

from app.api.v1.endpoints import health, inventory_sync, metrics

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(
    inventory_sync.router,
    prefix="/inventory-sync",
    tags=["Inventory Sync"],
)

api_router.include_router(
    health.router,
    prefix="/health",
    tags=["Health"],
)

api_router.include_router(
    metrics.router,
    prefix="/metrics",
    tags=["Metrics"],
)
