"""Exception handlers for the FastAPI application.

Orchestration operations return structured results for expected failures;
an ``OrchestrationError`` that still reaches the HTTP layer is converted to
the standard error body here:

    {"error": {"code": "...", "message": "...", "details": {...}, "timestamp": "..."}}

Usage:
    from clarafleet.api.exception_handlers import register_exception_handlers
    app = FastAPI()
    register_exception_handlers(app)
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clarafleet.core.exceptions import OrchestrationError
from clarafleet.core.logging import get_logger, sanitize_error

logger = get_logger(__name__)


def build_error_response(
    error_code: str,
    message: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build a standardized error response.

    Args:
        error_code: Machine-readable error code
        message: Human-readable error message
        status_code: HTTP status code
        details: Optional additional error details

    Returns:
        JSONResponse with standardized error format
    """
    error_body: dict[str, Any] = {
        "code": error_code,
        "message": message,
    }
    if details:
        error_body["details"] = details
    error_body["timestamp"] = datetime.now(UTC).isoformat()

    return JSONResponse(status_code=status_code, content={"error": error_body})


async def orchestration_exception_handler(
    request: Request,
    exc: OrchestrationError,
) -> JSONResponse:
    """Handle OrchestrationError and its subclasses."""
    log_context = {
        "error_code": exc.error_code,
        "status_code": exc.status_code,
        "path": str(request.url.path),
        "method": request.method,
    }

    if exc.status_code >= 500:
        logger.error(f"Orchestration error: {sanitize_error(exc.message)}", extra=log_context)
    else:
        logger.info(f"Client error: {exc.message}", extra=log_context)

    return build_error_response(
        error_code=exc.error_code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details or None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register the orchestration exception handler with the application."""
    app.add_exception_handler(
        OrchestrationError,
        orchestration_exception_handler,  # type: ignore[arg-type]
    )
