"""
Health check endpoints for the DealerSync backend.

Endpoints:
- /health - Basic status
- /health/live - Liveness probe (is the app running?)
- /health/ready - Readiness probe (is the database reachable?)
- /health/detailed - Database, photo storage and last sync run
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.postgres.models import SyncRun, utcnow
from app.db.postgres.session import check_database_connection, get_db
from app.services.object_storage import InMemoryObjectStorage, get_object_storage

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Response Models
# =============================================================================


class ServiceHealth(BaseModel):
    """Health status for a single dependency."""

    name: str
    status: str  # "healthy", "degraded", "unhealthy"
    latency_ms: float = 0.0
    details: dict[str, Any] = {}
    error: str | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]
    checked_at: str


class DetailedHealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    uptime_seconds: float
    services: dict[str, ServiceHealth]
    checked_at: str


_startup_time = time.time()


def _now_iso() -> str:
    return utcnow().isoformat()


# =============================================================================
# Health Check Functions
# =============================================================================


async def check_database_health(db: AsyncSession) -> ServiceHealth:
    """Check database connectivity and report the latest run."""
    start_time = time.time()
    try:
        await db.execute(text("SELECT 1"))
        result = await db.execute(
            select(SyncRun.status, SyncRun.started_at).order_by(SyncRun.started_at.desc()).limit(1)
        )
        last_run = result.first()
        latency = (time.time() - start_time) * 1000
        return ServiceHealth(
            name="Database",
            status="healthy",
            latency_ms=round(latency, 2),
            details={
                "last_run_status": last_run.status if last_run else None,
                "last_run_started_at": last_run.started_at.isoformat() if last_run else None,
            },
        )
    except SQLAlchemyError as e:
        latency = (time.time() - start_time) * 1000
        logger.error(f"Database health check failed: {type(e).__name__}")
        return ServiceHealth(
            name="Database",
            status="unhealthy",
            latency_ms=round(latency, 2),
            error=type(e).__name__,
        )


def check_storage_health() -> ServiceHealth:
    """Report which photo storage backend is active."""
    storage = get_object_storage()
    in_memory = isinstance(storage, InMemoryObjectStorage)
    return ServiceHealth(
        name="PhotoStorage",
        status="degraded" if in_memory else "healthy",
        details={
            "backend": type(storage).__name__,
            "bucket": settings.STORAGE_BUCKET,
        },
    )


# =============================================================================
# API Endpoints
# =============================================================================


@router.get("", response_model=HealthResponse)
async def health_check():
    """Basic health check."""
    return HealthResponse(
        status="healthy",
        version=settings.VERSION,
        environment=settings.ENVIRONMENT,
    )


@router.get("/live")
async def liveness_check():
    """Liveness probe; always 200 while the process is up."""
    return {"status": "alive", "checked_at": _now_iso()}


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check():
    """
    Readiness probe.

    Returns 503 when the database is unreachable so traffic is routed
    away from this instance.
    """
    database_ok = await check_database_connection()
    if not database_ok:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return ReadinessResponse(
        status="ready",
        checks={"database": database_ok},
        checked_at=_now_iso(),
    )


@router.get("/detailed", response_model=DetailedHealthResponse)
async def detailed_health_check(db: AsyncSession = Depends(get_db)):
    """Comprehensive health status for every dependency."""
    services = {
        "database": await check_database_health(db),
        "storage": check_storage_health(),
    }

    statuses = {service.status for service in services.values()}
    if "unhealthy" in statuses:
        overall = "unhealthy"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "healthy"

    return DetailedHealthResponse(
        status=overall,
        version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        uptime_seconds=round(time.time() - _startup_time, 2),
        services=services,
        checked_at=_now_iso(),
    )
