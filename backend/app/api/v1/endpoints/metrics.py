"""
Prometheus metrics endpoint for the DealerSync backend.

Endpoints:
- /metrics - Prometheus text format metrics for scraping
- /metrics/summary - JSON summary of sync run counters
"""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.metrics import get_sync_summary

router = APIRouter()


@router.get("")
async def get_metrics():
    """
    Prometheus metrics endpoint.

    Returns:
        Response: Prometheus text format metrics
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


@router.get("/summary")
async def get_metrics_summary_endpoint():
    """Human-readable summary of runs and record outcomes since process start."""
    return get_sync_summary()
