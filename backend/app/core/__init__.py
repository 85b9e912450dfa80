# Core module
"""
Core module for the DealerSync backend.

This module provides:
- Configuration management (config.py)
- Exception taxonomy with pipeline steps (exceptions.py)
- Global error handlers (error_handlers.py)
- Structured logging (logging.py)
- Session tokens, cron secret check and credential encryption (security.py)
- Prometheus metrics (metrics.py)
"""

from app.core.config import settings, get_settings
from app.core.exceptions import (
    # Base exception
    DealerSyncException,
    ErrorCode,
    # Fatal pipeline errors
    AuthError,
    ForbiddenException,
    ConfigError,
    CredentialDecryptError,
    UpstreamError,
    UpstreamHttpError,
    UpstreamTimeoutError,
    UpstreamNetworkError,
    UpstreamMalformedResponseError,
    DatabaseException,
    RunTrackingError,
    NotFoundException,
    # Non-fatal, per record
    VehicleRecordError,
    PhotoMirrorFailure,
)
from app.core.logging import (
    setup_logging,
    get_logger,
    bind_sync_context,
    log_external_api_call,
    PerformanceLogger,
)

__all__ = [
    # Config
    "settings",
    "get_settings",
    # Exceptions
    "DealerSyncException",
    "ErrorCode",
    "AuthError",
    "ForbiddenException",
    "ConfigError",
    "CredentialDecryptError",
    "UpstreamError",
    "UpstreamHttpError",
    "UpstreamTimeoutError",
    "UpstreamNetworkError",
    "UpstreamMalformedResponseError",
    "DatabaseException",
    "RunTrackingError",
    "NotFoundException",
    "VehicleRecordError",
    "PhotoMirrorFailure",
    # Logging
    "setup_logging",
    "get_logger",
    "bind_sync_context",
    "log_external_api_call",
    "PerformanceLogger",
]
