"""Global exception handlers for consistent error responses.

Design:
- RateLimitExceededError -> policy status (429) with the ``{success, message}``
  body and rate limit headers; an expected outcome, logged at info level
- AppError subclasses -> appropriate HTTP status (400, 500, 503)
- Unexpected Exception -> generic 500 (safety net)
- Error envelopes include request_id for distributed tracing
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from freelance_throttle.core.errors import (
    AppError,
    CacheError,
    ConfigurationAppError,
    RateLimitExceededError,
)
from freelance_throttle.core.logging import get_request_id

logger = logging.getLogger(__name__)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Render a quota rejection.

    The gate already logged the violation with policy and requester, so
    this handler only shapes the response.
    """

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message},
        headers=exc.headers or None,
    )


def _status_for(exc: AppError) -> int:
    if isinstance(exc, CacheError):
        return 503
    if isinstance(exc, ConfigurationAppError):
        return 500
    return 400


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    Routes domain errors to appropriate HTTP status codes:
    - CacheError -> 503 Service Unavailable (backend fault)
    - ConfigurationAppError -> 500 Internal Server Error (server fault)
    - anything else -> 400 Bad Request

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details.
    """
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error_content},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic
    message; no stack traces reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
        exc_info=exc,
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            },
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with FastAPI app.

    Specific handlers are registered before the general fallback.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(RateLimitExceededError)(rate_limit_exceeded_handler)
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
