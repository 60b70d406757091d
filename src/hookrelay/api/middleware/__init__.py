"""hookrelay API middleware components.

- Request ID tracking for log correlation
- Consistent error response formatting
"""

from hookrelay.api.middleware.errors import (
    APIError,
    ErrorHandlerMiddleware,
    InvalidSignatureError,
    RateLimitedError,
    ServiceUnavailableError,
    WebhookValidationError,
    api_error_handler,
    build_error_response,
    http_exception_handler,
    request_validation_handler,
)
from hookrelay.api.middleware.request_id import (
    REQUEST_ID_HEADER,
    RequestIDMiddleware,
    get_request_id,
)

__all__ = [
    "REQUEST_ID_HEADER",
    "APIError",
    "ErrorHandlerMiddleware",
    "InvalidSignatureError",
    "RateLimitedError",
    "RequestIDMiddleware",
    "ServiceUnavailableError",
    "WebhookValidationError",
    "api_error_handler",
    "build_error_response",
    "get_request_id",
    "http_exception_handler",
    "request_validation_handler",
]
