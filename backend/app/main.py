"""
DealerSync - Partner inventory synchronization service
Main FastAPI Application Entry Point
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse

from app.api.v1.endpoints import health, metrics
from app.api.v1.router import api_router
from app.core.config import settings
from app.core.error_handlers import setup_exception_handlers
from app.core.logging import RequestLoggingMiddleware, get_logger, setup_logging
from app.core.metrics import MetricsMiddleware
from app.db.postgres.session import dispose_engine
from app.services.object_storage import close_object_storage

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    setup_logging()
    logger.info(
        "Starting DealerSync backend service",
        extra={"environment": settings.ENVIRONMENT, "version": settings.VERSION},
    )

    yield

    # Shutdown
    logger.info("Shutting down DealerSync backend service")
    await close_object_storage()
    await dispose_engine()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""

    tags_metadata = [
        {
            "name": "Inventory Sync",
            "description": "Trigger partner feed synchronization, inspect run history and manage the feed configuration. "
            "Triggers authenticate with X-Cron-Secret (scheduler) or a bearer session token (admin).",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and readiness probes.",
        },
        {
            "name": "Metrics",
            "description": "Prometheus metrics for sync runs, partner feed calls and HTTP requests.",
        },
    ]

    application = FastAPI(
        title=settings.PROJECT_NAME,
        description="""
# DealerSync API

Mirrors a partner's vehicle inventory feed into the dealership database.

## Triggers

```
X-Cron-Secret: <shared secret>          # scheduler
Authorization: Bearer <session token>   # admin
```

Every failure returns `{success, step, error, message, details}` so the
failing pipeline step is visible without parsing text.
        """,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
        openapi_tags=tags_metadata,
    )

    # GZip compression middleware - compress responses > 1KB
    application.add_middleware(GZipMiddleware, minimum_size=1000)

    # Metrics collection middleware (collects request metrics for Prometheus)
    application.add_middleware(MetricsMiddleware)

    # Request logging middleware (must be added before CORS)
    application.add_middleware(RequestLoggingMiddleware)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Requested-With",
            "X-Request-ID",
            "X-Cron-Secret",
        ],
        expose_headers=["X-Request-ID"],
    )

    @application.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not settings.DEBUG:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    setup_exception_handlers(application)

    application.include_router(api_router, prefix=settings.API_V1_PREFIX)

    # Root-level probes and scrape target for container orchestration
    application.include_router(health.router, prefix="/health", tags=["Health"])
    application.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
