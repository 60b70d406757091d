"""Error handling for consistent JSON error responses.

Every error leaving the API has the same shape:

    {"success": false, "error": <code>, "message": <text>, "request_id": <id>}

plus an optional "detail" object. Webhook providers only look at the status
code, but operators replaying deliveries rely on the body.
"""

import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from hookrelay.api.middleware.request_id import get_request_id

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors with structured details.

    Subclass for specific error categories.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        detail: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            error: Machine-readable error code (e.g., "invalid_signature").
            message: Human-readable error description.
            status_code: HTTP status code to return.
            detail: Optional additional details for debugging.
            headers: Optional extra response headers.
        """
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.headers = headers
        super().__init__(message)


class WebhookValidationError(APIError):
    """Malformed webhook delivery (400): missing headers, bad JSON, missing fields."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            error="validation_error",
            message=message,
            status_code=400,
            detail=detail,
        )


class InvalidSignatureError(APIError):
    """Webhook signature missing or wrong (401)."""

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(error="invalid_signature", message=message, status_code=401)


class RateLimitedError(APIError):
    """Too many deliveries from one client (429)."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            error="rate_limited",
            message="Too many requests, please try again later",
            status_code=429,
            detail={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )


class ServiceUnavailableError(APIError):
    """Queue backing unreachable (503). Providers redeliver on 5xx."""

    def __init__(self, message: str = "Job queue unavailable") -> None:
        super().__init__(error="service_unavailable", message=message, status_code=503)


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build a standardized error response.

    Args:
        error: Machine-readable error code.
        message: Human-readable description.
        status_code: HTTP status code.
        detail: Optional additional details.
        headers: Optional extra response headers.

    Returns:
        JSONResponse with consistent error structure.
    """
    body: dict[str, Any] = {
        "success": False,
        "error": error,
        "message": message,
    }

    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    if detail:
        body["detail"] = detail

    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Exception handler registered on the app for APIError."""
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s (%s)", request.method, request.url.path, exc.error, exc.message
        )
    else:
        logger.info(
            "%s %s rejected: %s (%s)", request.method, request.url.path, exc.error, exc.message
        )
    return build_error_response(
        error=exc.error,
        message=exc.message,
        status_code=exc.status_code,
        detail=exc.detail,
        headers=exc.headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Reshape framework HTTP errors (404, 405, ...) into the standard body."""
    return build_error_response(
        error="http_error",
        message=str(exc.detail),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return build_error_response(
        error="validation_error",
        message="Request validation failed",
        status_code=422,
        detail={"errors": exc.errors()},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catches exceptions that escaped the route handlers.

    Handles:
    - APIError and subclasses: Custom application errors
    - HTTPException: FastAPI's built-in HTTP errors
    - ValidationError: Pydantic validation failures
    - Generic exceptions: Unexpected errors (logged, returns 500)
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        try:
            return await call_next(request)
        except APIError as exc:
            return build_error_response(
                error=exc.error,
                message=exc.message,
                status_code=exc.status_code,
                detail=exc.detail,
                headers=exc.headers,
            )
        except HTTPException as exc:
            return build_error_response(
                error="http_error",
                message=str(exc.detail),
                status_code=exc.status_code,
            )
        except ValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors()},
            )
        except Exception:
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
