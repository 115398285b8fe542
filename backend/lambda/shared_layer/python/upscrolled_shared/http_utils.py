"""upscrolled_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope and error formatting used by all upscrolled-lite
API Lambda functions (API Gateway HTTP API, payload format 2.0).
"""

from __future__ import annotations

import base64
import json
import logging
import os
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from upscrolled_shared.errors import ApiError, RateLimitedError

logger = logging.getLogger(__name__)

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": CORS_ORIGIN,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Accept, Authorization, Content-Type",
    }


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _response(
    status_code: int,
    body: Any,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {
            **_cors_headers(),
            "Content-Type": "application/json",
            **(headers or {}),
        },
        "body": json.dumps(body, default=_json_default),
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        **extra: ``code``, ``retryable`` and ``headers`` are consumed; any
            other field is reported under ``error_envelope.details``.
    """
    headers = extra.pop("headers", None)
    code = str(extra.pop("code", "") or "").strip().upper()
    if not code:
        if status_code == 400:
            code = "INVALID_INPUT"
        elif status_code == 401:
            code = "UNAUTHENTICATED"
        elif status_code == 403:
            code = "PERMISSION_DENIED"
        elif status_code == 404:
            code = "NOT_FOUND"
        elif status_code == 429:
            code = "RATE_LIMITED"
        else:
            code = "INTERNAL_ERROR"
    retryable = bool(extra.pop("retryable", status_code >= 500 or status_code == 429))
    details = dict(extra)
    payload: Dict[str, Any] = {
        "success": False,
        "error": message,
        "error_envelope": {
            "code": code,
            "message": message,
            "retryable": retryable,
            "details": details,
        },
    }
    return _response(status_code, payload, headers=headers)


def _api_error_response(exc: ApiError) -> Dict[str, Any]:
    """Map a raised ApiError onto the error envelope."""
    extra: Dict[str, Any] = dict(exc.details)
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        extra["headers"] = {"Retry-After": str(exc.retry_after)}
        extra["retry_after"] = exc.retry_after
    return _error(
        exc.status_code,
        exc.message,
        code=exc.code,
        retryable=exc.retryable,
        **extra,
    )


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parse the JSON object body of an API Gateway event (handles base64).

    Raises:
        ValueError: body is not valid JSON or not an object.
    """
    raw = event.get("body")
    if raw in (None, ""):
        return {}

    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ValueError("JSON body must be an object")
    return parsed


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from API Gateway v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = event.get("rawPath") or http.get("path") or event.get("path") or "/"
    return method, path


def _header(event: Dict[str, Any], name: str) -> str:
    """Case-insensitive header lookup."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return str(value or "")
    return ""


def _client_ip(event: Dict[str, Any]) -> str:
    forwarded_for = _header(event, "x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    rc = event.get("requestContext") or {}
    return (
        (rc.get("http") or {}).get("sourceIp")
        or (rc.get("identity") or {}).get("sourceIp")
        or "unknown"
    )


def _preflight() -> Dict[str, Any]:
    return {"statusCode": 204, "headers": _cors_headers(), "body": ""}
