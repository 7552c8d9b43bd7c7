"""Global exception handlers for consistent error responses.

Design:
- RateLimitExceededError → 429 with {success, error, retryAfter} and hint headers
- BackendUnavailableError → 503 (normally recovered before reaching here)
- Other AppError subclasses → 400
- Unexpected Exception → generic 500 (safety net)
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from serviplay.core.config import settings
from serviplay.core.errors import AppError, BackendUnavailableError, RateLimitExceededError
from serviplay.core.logging import get_request_id
from serviplay.schemas.rate_limit import RateLimitRejection

logger = logging.getLogger(__name__)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Answer a throttled request.

    The body keeps the shape clients already parse:
    ``{"success": false, "error": <message>, "retryAfter": <seconds>}``.
    """

    headers: dict[str, str] = {}
    if settings.rate_limit.include_headers:
        headers["Retry-After"] = str(exc.retry_after)
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = "0"

    body = RateLimitRejection(error=exc.message, retry_after=exc.retry_after)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=body.model_dump(by_alias=True),
        headers=headers or None,
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    All responses include:
    - error.code: Machine-readable error code
    - error.message: Human-readable message
    - error.request_id: For distributed tracing
    - error.details: Optional structured context
    """

    status_code = status.HTTP_400_BAD_REQUEST
    if isinstance(exc, BackendUnavailableError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE

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

    return JSONResponse(status_code=status_code, content={"error": error_content})


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors; never leaks internals."""

    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers; the most specific type wins."""

    app.exception_handler(RateLimitExceededError)(rate_limit_exceeded_handler)
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
