from typing import Any

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse, Response

from irgateway.errors import (
    AuthenticationError,
    SessionRejectedError,
    UpstreamAuthError,
    UpstreamAuthExpiredError,
    UpstreamError,
    ValidationError,
)

logger = structlog.get_logger(__name__)


def create_json_error_response(status_code: int, message: str, error_type: str | None = None, **extra: Any) -> JSONResponse:
    """Create JSON error response with optional type for machine parsing."""
    content: dict[str, Any] = {"message": message}
    if error_type:
        content["type"] = error_type
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def user_error_handler(_: Request, exc: Exception) -> Response:
    """Handle all UserError subclasses with appropriate status codes."""
    if isinstance(exc, AuthenticationError):
        status_code = 401
        error_type = "authentication_error"
    elif isinstance(exc, ValidationError):
        status_code = 400
        error_type = "validation_error"
    else:
        status_code = 400
        error_type = "bad_request"

    return create_json_error_response(status_code=status_code, message=str(exc), error_type=error_type)


async def upstream_error_handler(_: Request, exc: Exception) -> Response:
    """Map upstream failures onto gateway responses.

    Auth failures are the gateway's problem, not the caller's, so they are 502.
    Other upstream statuses pass through when they are errors, 502 otherwise.
    """
    if not isinstance(exc, UpstreamError):
        return await general_exception_handler(_, exc)

    if isinstance(exc, SessionRejectedError):
        status_code = 502
        error_type = "session_rejected"
    elif isinstance(exc, UpstreamAuthError):
        status_code = 502
        error_type = "upstream_auth_error"
    elif isinstance(exc, UpstreamAuthExpiredError):
        status_code = 502
        error_type = "upstream_auth_expired"
    elif exc.status is not None and exc.status >= 400:  # noqa: PLR2004
        status_code = exc.status
        error_type = "upstream_request_error"
    else:
        status_code = 502
        error_type = "upstream_request_error"

    logger.warning("upstream_error_returned", error_type=error_type, status=exc.status, stage=exc.stage, message=str(exc))
    return create_json_error_response(
        status_code=status_code,
        message=str(exc),
        error_type=error_type,
        upstream_status=exc.status,
        stage=exc.stage,
    )


async def general_exception_handler(_: Request, exc: Exception) -> Response:
    """Handle unexpected errors (500)."""
    logger.exception("unexpected_error", error=str(exc))
    return create_json_error_response(
        status_code=500, message="An unexpected error occurred.", error_type="internal_server_error"
    )
