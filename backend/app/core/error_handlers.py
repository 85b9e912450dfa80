"""
Global exception handlers for FastAPI application.

Every failure leaves the API as the same JSON shape:

    {"success": false, "step": ..., "error": ..., "message": ...,
     "details": {...}, "request_id": ...}

so the admin UI can show which pipeline step broke without parsing text.
"""

import traceback
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from app.core.config import settings
from app.core.exceptions import DealerSyncException, ErrorCode
from app.core.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Error Response Builder
# =============================================================================


def build_error_response(
    request_id: str,
    code: ErrorCode,
    message: str,
    step: str = "finalize",
    details: Optional[Dict[str, Any]] = None,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    sync_run_id: Optional[str] = None,
) -> JSONResponse:
    """
    Build a standardized error response.

    Args:
        request_id: Unique request identifier
        code: Error code enum
        message: Human-readable message
        step: Pipeline step that failed
        details: Additional error details
        status_code: HTTP status code
        sync_run_id: Run identifier, when a run had already been opened

    Returns:
        JSONResponse with structured error body
    """
    content: Dict[str, Any] = {
        "success": False,
        "step": step,
        "error": code.value,
        "message": message,
        "details": details or {},
        "request_id": request_id,
    }
    if sync_run_id:
        content["sync_run_id"] = sync_run_id

    return JSONResponse(status_code=status_code, content=content)


def get_request_id(request: Request) -> str:
    """Extract request ID from request state."""
    return getattr(request.state, "request_id", str(uuid.uuid4()))


# =============================================================================
# Exception Handlers
# =============================================================================


async def dealer_sync_exception_handler(
    request: Request,
    exc: DealerSyncException,
) -> JSONResponse:
    """Handle service exceptions carrying a step and status code."""
    request_id = get_request_id(request)

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Sync request failed at step {exc.step}: {exc.message}",
        extra={
            "request_id": request_id,
            "error_code": exc.code.value,
            "step": exc.step,
            "details": exc.details,
            "path": request.url.path,
        },
    )

    return build_error_response(
        request_id=request_id,
        code=exc.code,
        message=exc.message,
        step=exc.step,
        details=exc.details,
        status_code=exc.status_code,
        sync_run_id=exc.sync_run_id,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle request body and query validation errors."""
    request_id = get_request_id(request)

    errors = []
    for error in exc.errors():
        field_path = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field_path,
            "message": error["msg"],
            "type": error["type"],
        })

    logger.warning(
        "Validation error",
        extra={"request_id": request_id, "errors": errors, "path": request.url.path},
    )

    return build_error_response(
        request_id=request_id,
        code=ErrorCode.VALIDATION_ERROR,
        message="Validation error",
        step="validate_request",
        details={"validation_errors": errors},
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
    )


async def sqlalchemy_exception_handler(
    request: Request,
    exc: SQLAlchemyError,
) -> JSONResponse:
    """Handle SQLAlchemy errors that escaped the service layer."""
    request_id = get_request_id(request)

    if isinstance(exc, OperationalError):
        code = ErrorCode.DATABASE_CONNECTION
        message = "Database connection error"
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = ErrorCode.DATABASE_ERROR
        message = "Database error"
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    logger.error(
        f"Database error: {type(exc).__name__}",
        extra={"request_id": request_id, "error_type": type(exc).__name__, "path": request.url.path},
    )

    details = {}
    if settings.DEBUG:
        details["error_type"] = type(exc).__name__
        details["error_message"] = str(exc)[:200]

    return build_error_response(
        request_id=request_id,
        code=code,
        message=message,
        details=details,
        status_code=status_code,
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle all unhandled exceptions."""
    request_id = get_request_id(request)

    log_details = {
        "request_id": request_id,
        "error_type": type(exc).__name__,
        "path": request.url.path,
        "method": request.method,
    }
    if settings.DEBUG:
        log_details["traceback"] = traceback.format_exc()

    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        extra=log_details,
        exc_info=True,
    )

    details = {}
    if settings.DEBUG:
        details["error_type"] = type(exc).__name__
        details["error_message"] = str(exc)[:200]

    return build_error_response(
        request_id=request_id,
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred",
        details=details,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


# =============================================================================
# Setup Function
# =============================================================================


def setup_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI application.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(DealerSyncException, dealer_sync_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)

    # Generic handler for unhandled exceptions (must be last)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("Exception handlers registered")
