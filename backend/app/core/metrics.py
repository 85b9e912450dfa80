"""
Prometheus metrics for the inventory sync service.

Provides metrics for:
- HTTP request count and latency by endpoint
- Partner feed and storage API calls
- Sync runs by status and trigger source
- Vehicle record outcomes and photo mirroring

Usage:
    from app.core.metrics import track_external_api_call

    with track_external_api_call("partner_feed", "/inventory") as ctx:
        response = await client.get(url)
        ctx["status_code"] = response.status_code
"""

import time
import uuid
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any

from fastapi import Request, Response
from prometheus_client import Counter, Gauge, Histogram, Info
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings

# =============================================================================
# Application Info
# =============================================================================

APP_INFO = Info(
    "dealersync_app",
    "DealerSync application information",
)
APP_INFO.info(
    {
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "service": settings.PROJECT_NAME,
    }
)

# =============================================================================
# HTTP Request Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "dealersync_http_requests_total",
    "Total HTTP request count",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "dealersync_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0],
)

REQUEST_IN_PROGRESS = Gauge(
    "dealersync_http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
)

# =============================================================================
# External API Metrics
# =============================================================================

EXTERNAL_API_CALLS = Counter(
    "dealersync_external_api_calls_total",
    "Total external API calls",
    ["service", "endpoint", "status_code"],
)

EXTERNAL_API_LATENCY = Histogram(
    "dealersync_external_api_duration_seconds",
    "External API call latency in seconds",
    ["service"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0, 120.0],
)

EXTERNAL_API_ERRORS = Counter(
    "dealersync_external_api_errors_total",
    "Total external API errors",
    ["service", "error_type"],
)

# =============================================================================
# Sync Metrics
# =============================================================================

SYNC_RUNS = Counter(
    "dealersync_sync_runs_total",
    "Finalized sync runs",
    ["status", "trigger_source"],
)

SYNC_DURATION = Histogram(
    "dealersync_sync_run_duration_seconds",
    "Wall-clock duration of a sync run",
    ["trigger_source"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0],
)

SYNC_RECORDS = Counter(
    "dealersync_sync_records_total",
    "Vehicle records processed by outcome",
    ["outcome"],
)

SYNC_PHOTOS = Counter(
    "dealersync_sync_photos_total",
    "Photo mirroring operations by outcome",
    ["outcome"],
)

SYNC_LAST_SUCCESS = Gauge(
    "dealersync_sync_last_success_timestamp_seconds",
    "Unix time of the last run that finished success or partial",
    ["dealer_id"],
)

# =============================================================================
# Tracking Helpers
# =============================================================================


@contextmanager
def track_external_api_call(
    service: str,
    endpoint: str = "",
) -> Generator[dict[str, Any], None, None]:
    """
    Context manager for tracking external API call metrics.

    Args:
        service: External service name (partner_feed, storage)
        endpoint: API endpoint, without query string
    """
    start_time = time.time()
    context: dict[str, Any] = {"status_code": 0}

    try:
        yield context
    except Exception as e:
        EXTERNAL_API_ERRORS.labels(service=service, error_type=type(e).__name__).inc()
        raise
    finally:
        duration = time.time() - start_time
        EXTERNAL_API_CALLS.labels(
            service=service,
            endpoint=endpoint,
            status_code=str(context.get("status_code", 0)),
        ).inc()
        EXTERNAL_API_LATENCY.labels(service=service).observe(duration)


def track_sync_run(
    status: str,
    trigger_source: str,
    duration_seconds: float,
    dealer_id: str,
    created: int = 0,
    updated: int = 0,
    unchanged: int = 0,
    disabled: int = 0,
    errors: int = 0,
    photos_copied: int = 0,
    photos_cleaned_up: int = 0,
) -> None:
    """Record the outcome of a finalized run."""
    SYNC_RUNS.labels(status=status, trigger_source=trigger_source).inc()
    SYNC_DURATION.labels(trigger_source=trigger_source).observe(duration_seconds)

    for outcome, count in (
        ("created", created),
        ("updated", updated),
        ("unchanged", unchanged),
        ("disabled", disabled),
        ("error", errors),
    ):
        if count:
            SYNC_RECORDS.labels(outcome=outcome).inc(count)

    if photos_copied:
        SYNC_PHOTOS.labels(outcome="copied").inc(photos_copied)
    if photos_cleaned_up:
        SYNC_PHOTOS.labels(outcome="cleaned_up").inc(photos_cleaned_up)

    if status in ("success", "partial"):
        SYNC_LAST_SUCCESS.labels(dealer_id=dealer_id).set(time.time())


def track_photo_failure() -> None:
    SYNC_PHOTOS.labels(outcome="failed").inc()


# =============================================================================
# Metrics Middleware
# =============================================================================


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic request metrics collection.

    Tracks request count, latency and in-flight requests.
    """

    EXCLUDED_ENDPOINTS = {"/health", "/metrics"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = self._normalize_endpoint(request.url.path)
        if endpoint in self.EXCLUDED_ENDPOINTS:
            return await call_next(request)

        method = request.method
        REQUEST_IN_PROGRESS.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            REQUEST_IN_PROGRESS.labels(method=method, endpoint=endpoint).dec()
            REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)

    def _normalize_endpoint(self, path: str) -> str:
        """Replace run IDs with a placeholder to keep label cardinality bounded."""
        parts = []
        for part in path.split("/"):
            if not part:
                continue
            parts.append("{id}" if self._is_uuid(part) or part.isdigit() else part)
        return "/" + "/".join(parts) if parts else "/"

    @staticmethod
    def _is_uuid(value: str) -> bool:
        try:
            uuid.UUID(value)
            return True
        except (ValueError, AttributeError):
            return False


# =============================================================================
# Summary
# =============================================================================


def _counter_totals(counter: Counter, label: str) -> dict[str, float]:
    totals: dict[str, float] = {}
    for metric in counter.collect():
        for sample in metric.samples:
            if sample.name.endswith("_total"):
                key = sample.labels.get(label, "")
                totals[key] = totals.get(key, 0) + sample.value
    return totals


def get_sync_summary() -> dict[str, Any]:
    """
    Get human-readable sync metrics since process start.

    Returns:
        Dictionary with run and record counts
    """
    return {
        "service": settings.PROJECT_NAME,
        "environment": settings.ENVIRONMENT,
        "runs_by_status": _counter_totals(SYNC_RUNS, "status"),
        "runs_by_trigger": _counter_totals(SYNC_RUNS, "trigger_source"),
        "records_by_outcome": _counter_totals(SYNC_RECORDS, "outcome"),
        "photos_by_outcome": _counter_totals(SYNC_PHOTOS, "outcome"),
        "endpoints": {
            "metrics": "/metrics",
            "health": "/health",
            "health_ready": "/health/ready",
        },
    }
