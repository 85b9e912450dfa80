"""
Structured logging for the inventory sync service.

Provides:
- JSON log output compatible with ELK / Loki
- Request ID correlation across the request lifecycle
- Sync run correlation, so every line written during a run carries
  its dealer_id and sync_run_id
- Performance timing helpers for feed pages and photo mirroring
"""

from __future__ import annotations

import inspect
import logging
import os
import sys
import time
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import UTC, datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Optional, TypeVar

from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

# Context variables for request and run correlation
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
dealer_id_var: ContextVar[Optional[str]] = ContextVar("dealer_id", default=None)
sync_run_id_var: ContextVar[Optional[str]] = ContextVar("sync_run_id", default=None)
trigger_source_var: ContextVar[Optional[str]] = ContextVar("trigger_source", default=None)

F = TypeVar("F", bound=Callable[..., Any])


class StructuredJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding service metadata and correlation fields.

    Adds:
    - Timestamp in ISO format
    - Log level and logger name
    - Service name, version and environment
    - request_id, dealer_id, sync_run_id and trigger_source from context
    - Exception info when present
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._hostname = os.uname().nodename if hasattr(os, "uname") else "unknown"
        self._pid = os.getpid()

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(UTC).isoformat()
        log_record["@timestamp"] = log_record["timestamp"]
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        log_record["service"] = {
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
        }
        log_record["host"] = {"name": self._hostname, "pid": self._pid}
        log_record["source"] = {
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in (
            ("request_id", request_id_var),
            ("dealer_id", dealer_id_var),
            ("sync_run_id", sync_run_id_var),
            ("trigger_source", trigger_source_var),
        ):
            value = var.get()
            if value:
                log_record[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            log_record["error"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "stack_trace": self.formatException(record.exc_info),
            }
            if exc_value.__cause__:
                log_record["error"]["cause"] = {
                    "type": type(exc_value.__cause__).__name__,
                    "message": str(exc_value.__cause__),
                }

        self._remove_none_values(log_record)

    def _remove_none_values(self, d: dict[str, Any]) -> None:
        """Recursively remove None values from dictionary."""
        keys_to_remove = []
        for key, value in d.items():
            if value is None:
                keys_to_remove.append(key)
            elif isinstance(value, dict):
                self._remove_none_values(value)
        for key in keys_to_remove:
            del d[key]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request logging and correlation.

    Generates a request ID (or honours X-Request-ID), logs start and
    completion with timing, and echoes the ID in the response headers.
    """

    # High-frequency probes are not logged in detail
    EXCLUDED_PATHS = {"/health", "/metrics"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_token = request_id_var.set(request_id)
        request.state.request_id = request_id

        logger = get_logger("request")
        should_log_detailed = request.url.path not in self.EXCLUDED_PATHS
        start_time = time.time()

        if should_log_detailed:
            logger.info(
                "Request started",
                extra={
                    "event": "request_start",
                    "http": {
                        "method": request.method,
                        "path": request.url.path,
                        "query": str(request.query_params) if request.query_params else None,
                    },
                    "client": {
                        "ip": request.client.host if request.client else "unknown",
                        "user_agent": request.headers.get("User-Agent"),
                    },
                },
            )

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            if response.status_code >= 500:
                log_level = logging.ERROR
            elif response.status_code >= 400 or duration_ms > 30000:
                log_level = logging.WARNING
            else:
                log_level = logging.INFO

            if should_log_detailed:
                logger.log(
                    log_level,
                    f"Request completed: {request.method} {request.url.path} - {response.status_code} ({duration_ms:.2f}ms)",
                    extra={
                        "event": "request_complete",
                        "http": {
                            "method": request.method,
                            "path": request.url.path,
                            "status_code": response.status_code,
                        },
                        "timing": {"duration_ms": round(duration_ms, 2)},
                    },
                )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={
                    "event": "request_error",
                    "http": {"method": request.method, "path": request.url.path},
                    "timing": {"duration_ms": round(duration_ms, 2)},
                },
                exc_info=True,
            )
            raise

        finally:
            request_id_var.reset(request_id_token)


class PerformanceLogger:
    """
    Context manager and decorator for logging performance metrics.

    Usage as context manager:
        with PerformanceLogger("feed_page", page=3):
            page = await client.fetch_page(3)

    Usage as decorator:
        @PerformanceLogger.track("photo_mirror")
        async def mirror(vin, urls):
            ...
    """

    def __init__(
        self,
        operation_name: str,
        logger_name: str = "performance",
        warn_threshold_ms: float = 5000.0,
        error_threshold_ms: float = 30000.0,
        **extra_fields: Any,
    ):
        self.operation_name = operation_name
        self.logger = get_logger(logger_name)
        self.warn_threshold_ms = warn_threshold_ms
        self.error_threshold_ms = error_threshold_ms
        self.extra_fields = extra_fields
        self.start_time: float | None = None
        self.duration_ms: float = 0.0

    def __enter__(self) -> PerformanceLogger:
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_ms = (time.time() - self.start_time) * 1000 if self.start_time else 0

        log_data = {
            "event": "performance_metric",
            "operation": self.operation_name,
            "duration_ms": round(self.duration_ms, 2),
            "success": exc_type is None,
            **self.extra_fields,
        }

        if exc_type:
            log_data["error_type"] = exc_type.__name__
            self.logger.warning(f"Operation failed: {self.operation_name}", extra=log_data)
        elif self.duration_ms >= self.error_threshold_ms:
            self.logger.error(f"Operation critically slow: {self.operation_name}", extra=log_data)
        elif self.duration_ms >= self.warn_threshold_ms:
            self.logger.warning(f"Operation slow: {self.operation_name}", extra=log_data)
        else:
            self.logger.debug(f"Operation completed: {self.operation_name}", extra=log_data)

    @classmethod
    def track(
        cls,
        operation_name: str,
        warn_threshold_ms: float = 5000.0,
        error_threshold_ms: float = 30000.0,
    ) -> Callable[[F], F]:
        """Decorator for tracking function performance."""
        def decorator(func: F) -> F:
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with cls(operation_name, warn_threshold_ms=warn_threshold_ms, error_threshold_ms=error_threshold_ms):
                    return await func(*args, **kwargs)

            @wraps(func)
            def sync_wrapper(*args, **kwargs):
                with cls(operation_name, warn_threshold_ms=warn_threshold_ms, error_threshold_ms=error_threshold_ms):
                    return func(*args, **kwargs)

            if inspect.iscoroutinefunction(func):
                return async_wrapper  # type: ignore
            return sync_wrapper  # type: ignore

        return decorator


# Logger configuration by module
LOGGER_CONFIG: dict[str, int] = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.ERROR,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


def setup_logging() -> None:
    """
    Configure application logging.

    JSON output when LOG_FORMAT is "json", human-readable otherwise.
    Initializes Sentry when SENTRY_DSN is set.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper()))
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)

    if settings.LOG_FORMAT == "json":
        formatter = StructuredJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for logger_name, level in LOGGER_CONFIG.items():
        logging.getLogger(logger_name).setLevel(level)

    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            release=f"dealer-sync@{settings.VERSION}",
            integrations=[
                FastApiIntegration(),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.1 if settings.ENVIRONMENT == "production" else 1.0,
            send_default_pii=False,
        )
        logging.info("Sentry SDK initialized successfully")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def bind_sync_context(
    dealer_id: str | None = None,
    sync_run_id: str | None = None,
    trigger_source: str | None = None,
) -> None:
    """Attach run identifiers to every log line emitted in this context."""
    if dealer_id is not None:
        dealer_id_var.set(dealer_id)
    if sync_run_id is not None:
        sync_run_id_var.set(sync_run_id)
    if trigger_source is not None:
        trigger_source_var.set(trigger_source)


def log_external_api_call(
    service: str,
    endpoint: str,
    method: str,
    status_code: int,
    duration_ms: float,
    success: bool = True,
    error: str | None = None,
) -> None:
    """
    Log an external API call with standard fields.

    Args:
        service: Name of external service ("partner_feed", "storage")
        endpoint: API endpoint called, with credentials redacted
        method: HTTP method
        status_code: Response status code (0 when no response arrived)
        duration_ms: Call duration in milliseconds
        success: Whether call succeeded
        error: Error message if failed
    """
    logger = get_logger("external_api")

    extra = {
        "event": "external_api_call",
        "service": service,
        "endpoint": endpoint,
        "method": method,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
        "success": success,
    }

    if error:
        extra["error"] = error
        logger.error(f"External API call to {service} failed", extra=extra)
    elif status_code >= 400:
        logger.warning(f"External API call to {service} returned {status_code}", extra=extra)
    else:
        logger.info(f"External API call to {service} completed", extra=extra)
