"""upload_api/lambda_function.py

Lambda API for media uploads on upscrolled-lite. Issues presigned S3 upload
plans (single PUT or multipart with one URL per 5 MiB chunk) and finalizes
multipart sessions with an HMAC capability token returned at plan time.

Routes (via API Gateway HTTP API):
    POST    /api/v1/uploads/request    — plan an upload
    POST    /api/v1/uploads/complete   — assemble a multipart upload
    POST    /api/v1/uploads/abort      — discard a multipart upload
    OPTIONS /api/v1/uploads[/*]        — CORS preflight

Auth:
    Cognito JWT authorizer claims (or a Bearer id token) identify the
    uploader. Completion and abort additionally require the capability token.

Environment variables:
    STAGE                   default: dev
    STORAGE_BUCKET_NAME     upload bucket
    UPLOAD_TOKEN_SECRET     HMAC secret (or UPLOAD_TOKEN_SECRET_ID)
    RATE_LIMIT_TABLE        fixed-window counters; empty disables the gate
    COGNITO_USER_POOL_ID / COGNITO_CLIENT_ID
"""

from __future__ import annotations

from typing import Any, Callable, Dict

import media_policy
import upload_finalizer
import upload_planner
from config import logger
from upscrolled_shared.auth import _authenticate, _subject
from upscrolled_shared.errors import ApiError, ValidationError
from upscrolled_shared.http_utils import (
    _api_error_response,
    _error,
    _json_body,
    _path_method,
    _preflight,
    _response,
)
from upscrolled_shared.rate_limit import RATE_LIMIT_POLICIES, enforce_rate_limit

_SINGLE_STEPS = [
    "Upload the file directly to the uploadUrl using PUT request",
    "Include Content-Type header matching the contentType",
    "Include Content-Length header matching the file size",
    "Use the fileId when creating the post to reference this upload",
]

_CHUNKED_STEPS = [
    "Upload each chunk to its corresponding uploadUrl using PUT request",
    "Include the Content-Length header matching the chunk size",
    "Save the ETag from each successful chunk response",
    "Call /api/v1/uploads/complete with all ETags to finalize",
    "If upload fails, call /api/v1/uploads/abort to clean up",
]


def _body(event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return _json_body(event)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _plan_response(plan: upload_planner.UploadPlan) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "success": True,
        "ok": True,
        "uploadType": plan.strategy,
        "fileId": plan.file_id,
        "key": plan.object_key,
        "expiresAt": plan.expires_at_iso,
        "contentType": plan.content_type,
        "mediaType": plan.media_kind,
        "maxSize": plan.max_size,
        "securityToken": plan.security_token,
    }
    if plan.strategy == upload_planner.STRATEGY_SINGLE:
        payload["uploadUrl"] = plan.upload_url
        payload["instructions"] = {"type": "direct", "steps": _SINGLE_STEPS}
        return payload

    payload["uploadId"] = plan.upload_session_id
    payload["instructions"] = {
        "type": "chunked",
        "chunkSize": plan.chunk_size,
        "totalChunks": plan.total_chunks,
        "steps": _CHUNKED_STEPS,
    }
    payload["chunks"] = [
        {
            "partNumber": chunk.part_number,
            "uploadUrl": chunk.upload_url,
            "startByte": chunk.start_byte,
            "endByte": chunk.end_byte,
        }
        for chunk in plan.chunks
    ]
    return payload


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_request_upload(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    """POST /uploads/request — classify, then plan single or multipart."""
    enforce_rate_limit(event, claims, RATE_LIMIT_POLICIES["upload"])
    request = upload_planner.UploadRequest.from_body(_body(event), _subject(claims))
    classification = media_policy.require_media(request.content_type, request.file_size)
    plan = upload_planner.plan(request, classification)
    logger.info(
        "Upload plan issued: file_id=%s strategy=%s size=%d user=%s",
        plan.file_id, plan.strategy, request.file_size, request.uploader_id,
    )
    return _response(200, _plan_response(plan))


def _handle_complete_upload(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    """POST /uploads/complete — authorize, then assemble the parts."""
    enforce_rate_limit(event, claims, RATE_LIMIT_POLICIES["write"])
    result = upload_finalizer.complete(_subject(claims), _body(event))
    return _response(200, {
        "success": True,
        "ok": True,
        "message": "Upload completed successfully",
        **result,
    })


def _handle_abort_upload(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    """POST /uploads/abort — authorize, then discard the session."""
    enforce_rate_limit(event, claims, RATE_LIMIT_POLICIES["write"])
    result = upload_finalizer.abort(_subject(claims), _body(event))
    return _response(200, {
        "success": True,
        "ok": True,
        "message": "Upload aborted successfully",
        **result,
    })


_ROUTES: Dict[str, tuple[Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]], str]] = {
    "/uploads/request": (_handle_request_upload, "Failed to generate upload URL"),
    "/uploads/complete": (_handle_complete_upload, "Failed to complete upload"),
    "/uploads/abort": (_handle_abort_upload, "Failed to abort upload"),
}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _preflight()

    claims, auth_err = _authenticate(event)
    if auth_err:
        return auth_err

    route = next(
        (suffix for suffix in _ROUTES if path.rstrip("/").endswith(suffix)),
        None,
    )
    if method != "POST" or route is None:
        return _error(404, f"Route not found: {method} {path}")

    handler, fallback_message = _ROUTES[route]
    try:
        return handler(event, claims)
    except ApiError as exc:
        if exc.status_code >= 500:
            logger.warning("%s %s failed upstream: %s", method, path, exc.message)
        return _api_error_response(exc)
    except Exception:
        logger.exception("Unhandled error on %s %s", method, path)
        return _error(500, fallback_message)
