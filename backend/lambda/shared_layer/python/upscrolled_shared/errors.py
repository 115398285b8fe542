"""upscrolled_shared.errors — Error taxonomy for upscrolled-lite API Lambdas.

Handlers raise these; each Lambda's entry point turns them into the standard
error envelope via `http_utils._api_error_response`. Messages are returned to
callers verbatim, so they must never carry secrets.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ApiError(Exception):
    """Base class for errors that map onto an HTTP error response."""

    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details


class ValidationError(ApiError, ValueError):
    """Missing or malformed fields, invalid media type, bad file size."""

    status_code = 400
    code = "INVALID_INPUT"


class AuthorizationError(ApiError, PermissionError):
    """Failed capability-token check, expired session or foreign object key."""

    status_code = 403
    code = "PERMISSION_DENIED"


class NotFoundError(ApiError):
    status_code = 404
    code = "NOT_FOUND"


class UpstreamError(ApiError, RuntimeError):
    """A managed-service call failed; safe for the caller to retry."""

    status_code = 502
    code = "UPSTREAM_ERROR"
    retryable = True


class RateLimitedError(ApiError):
    status_code = 429
    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, message: str, retry_after: Optional[int] = None, **details: Any):
        super().__init__(message, **details)
        self.retry_after = retry_after
