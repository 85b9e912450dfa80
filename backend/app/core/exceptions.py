"""
Custom exception classes for the inventory sync service.

This module defines a hierarchy of exceptions with:
- Structured error responses
- The pipeline step that failed, so operators can tell a bad config
  from an upstream outage from a rotated encryption key
- Proper HTTP status codes
- Error codes for client-side handling
"""

from enum import StrEnum
from typing import Any

from fastapi import status

# =============================================================================
# Error Codes Enum
# =============================================================================


class ErrorCode(StrEnum):
    """Standardized error codes for client-side handling."""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    FORBIDDEN = "ERR_1004"

    # Database errors (2xxx)
    DATABASE_ERROR = "ERR_2000"
    DATABASE_CONNECTION = "ERR_2001"
    RUN_TRACKING_ERROR = "ERR_2010"

    # Upstream feed errors (3xxx)
    UPSTREAM_ERROR = "ERR_3000"
    UPSTREAM_HTTP_ERROR = "ERR_3001"
    UPSTREAM_TIMEOUT = "ERR_3002"
    UPSTREAM_NETWORK_ERROR = "ERR_3003"
    UPSTREAM_MALFORMED_RESPONSE = "ERR_3004"

    # Configuration errors (4xxx)
    CONFIG_ERROR = "ERR_4001"
    CONFIG_INVALID_URL = "ERR_4002"
    CREDENTIAL_DECRYPT_ERROR = "ERR_4003"

    # Authentication errors (5xxx)
    AUTH_ERROR = "ERR_5000"
    INVALID_CRON_SECRET = "ERR_5001"
    INVALID_SESSION_TOKEN = "ERR_5002"
    NOT_AN_ADMIN = "ERR_5003"


# =============================================================================
# Base Exception Classes
# =============================================================================


class DealerSyncException(Exception):
    """
    Base exception class for all sync service exceptions.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        step: Pipeline step that failed (auth, load_config, fetch_feed, ...)
        details: Additional error context
        status_code: HTTP status code
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        step: str = "finalize",
        details: dict[str, Any] | None = None,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    ):
        self.message = message
        self.code = code
        self.step = step
        self.details = details or {}
        self.status_code = status_code
        self.sync_run_id: str | None = None
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        body: dict[str, Any] = {
            "success": False,
            "step": self.step,
            "error": self.code.value,
            "message": self.message,
            "details": self.details,
        }
        if self.sync_run_id:
            body["sync_run_id"] = self.sync_run_id
        return body


# =============================================================================
# Authentication Exceptions
# =============================================================================


class AuthError(DealerSyncException):
    """Bad or missing credential presented to the sync engine itself."""

    def __init__(
        self,
        message: str = "Authentication failed",
        code: ErrorCode = ErrorCode.AUTH_ERROR,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            code=code,
            step="auth",
            details=details,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class ForbiddenException(DealerSyncException):
    """Authenticated caller lacks access to the requested resource."""

    def __init__(self, message: str = "Admin access required", code: ErrorCode = ErrorCode.FORBIDDEN):
        super().__init__(
            message=message,
            code=code,
            step="auth",
            status_code=status.HTTP_403_FORBIDDEN,
        )


# =============================================================================
# Configuration Exceptions
# =============================================================================


class ConfigError(DealerSyncException):
    """Missing or incomplete dealer feed configuration."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIG_ERROR,
        step: str = "load_config",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            code=code,
            step=step,
            details=details,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class CredentialDecryptError(DealerSyncException):
    """The stored partner credential could not be decrypted.

    Distinct from AuthError: this points at key rotation on our side,
    not at a bad caller.
    """

    def __init__(
        self,
        message: str = "API key decrypt failed; re-save the key after resetting API_ENCRYPTION_KEY",
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        error_details = details or {}
        if original_error:
            error_details["original_error"] = type(original_error).__name__
        super().__init__(
            message=message,
            code=ErrorCode.CREDENTIAL_DECRYPT_ERROR,
            step="decrypt_key",
            details=error_details,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


# =============================================================================
# Upstream Feed Exceptions
# =============================================================================


class UpstreamError(DealerSyncException):
    """Base exception for partner feed failures. Always fatal to the run."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UPSTREAM_ERROR,
        url: str | None = None,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        error_details = details or {}
        if url:
            error_details["url"] = url
        if original_error:
            error_details["original_error"] = str(original_error)

        super().__init__(
            message=message,
            code=code,
            step="fetch_feed",
            details=error_details,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
        self.url = url
        self.original_error = original_error


class UpstreamHttpError(UpstreamError):
    """Non-2xx response from the partner feed."""

    def __init__(
        self,
        status_code: int,
        body_preview: str,
        url: str,
        elapsed_ms: float | None = None,
    ):
        details: dict[str, Any] = {
            "upstream_status": status_code,
            "body_preview": body_preview,
        }
        if elapsed_ms is not None:
            details["elapsed_ms"] = round(elapsed_ms, 2)
        super().__init__(
            message=f"Partner feed responded with status {status_code}. Check the API key and its permissions.",
            code=ErrorCode.UPSTREAM_HTTP_ERROR,
            url=url,
            details=details,
        )
        self.upstream_status = status_code
        self.body_preview = body_preview


class UpstreamTimeoutError(UpstreamError):
    """The partner feed did not answer within the request timeout."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float,
        elapsed_ms: float,
        original_error: Exception | None = None,
    ):
        super().__init__(
            message=f"Request to partner feed timed out after {elapsed_ms:.0f}ms (timeout: {timeout_seconds:g}s)",
            code=ErrorCode.UPSTREAM_TIMEOUT,
            url=url,
            details={"timeout_seconds": timeout_seconds, "elapsed_ms": round(elapsed_ms, 2)},
            original_error=original_error,
        )


class UpstreamNetworkError(UpstreamError):
    """Connection, DNS or protocol failure talking to the partner feed."""

    def __init__(self, url: str, original_error: Exception):
        super().__init__(
            message="Unable to reach the partner feed. Check the base URL and network connectivity.",
            code=ErrorCode.UPSTREAM_NETWORK_ERROR,
            url=url,
            details={"error_name": type(original_error).__name__},
            original_error=original_error,
        )


class UpstreamMalformedResponseError(UpstreamError):
    """A 2xx response whose body breaks the feed contract."""

    def __init__(self, url: str, reason: str, body_preview: str = ""):
        super().__init__(
            message="Partner feed returned a malformed response",
            code=ErrorCode.UPSTREAM_MALFORMED_RESPONSE,
            url=url,
            details={"reason": reason, "body_preview": body_preview},
        )


# =============================================================================
# Database / Run Tracking Exceptions
# =============================================================================


class DatabaseException(DealerSyncException):
    """Base exception for database errors."""

    def __init__(
        self,
        message: str = "Database error",
        code: ErrorCode = ErrorCode.DATABASE_ERROR,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        error_details = details or {}
        if original_error:
            error_details["original_error"] = str(original_error)

        super().__init__(
            message=message,
            code=code,
            details=error_details,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
        self.original_error = original_error


class RunTrackingError(DealerSyncException):
    """The audit record for a run could not be created."""

    def __init__(self, original_error: Exception | None = None):
        super().__init__(
            message="Unable to initialize sync tracking in database",
            code=ErrorCode.RUN_TRACKING_ERROR,
            step="open_run",
            details={"original_error": str(original_error)} if original_error else None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class NotFoundException(DealerSyncException):
    """Exception for resource not found errors."""

    def __init__(self, message: str, resource_type: str | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND,
            step="lookup",
            details={"resource_type": resource_type} if resource_type else None,
            status_code=status.HTTP_404_NOT_FOUND,
        )


# =============================================================================
# Non-fatal Exceptions
# =============================================================================


class VehicleRecordError(Exception):
    """A single feed row could not be reconciled. The run continues."""

    VALIDATION = "validation_error"
    DATABASE = "database_error"

    def __init__(self, message: str, category: str = VALIDATION, vin: str | None = None):
        self.message = message
        self.category = category
        self.vin = vin
        super().__init__(message)


class PhotoMirrorFailure(Exception):
    """A photo could not be copied into local storage."""

    def __init__(self, message: str, source_url: str):
        self.message = message
        self.source_url = source_url
        super().__init__(message)
