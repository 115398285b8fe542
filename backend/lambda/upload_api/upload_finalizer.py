"""upload_finalizer.py — Completion and abort of multipart upload sessions.

The finalizer keeps no state of its own. Each call is authorized from what the
client echoes back (file id, key, session id, expiry, capability token) and
then forwarded to S3, which owns the session state:

    planned -> parts-uploading -> completed
                               -> aborted

Part-number gaps are left to S3, which fails the completion when parts are
missing. No retries happen here; the caller retries completion or aborts.

Part of the upload_api Lambda.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import capability_token
import object_store
from config import UPLOAD_KEY_PREFIX
from upscrolled_shared.errors import AuthorizationError, ValidationError
from upscrolled_shared.serialization import _emit_structured_observability

__all__ = [
    "FinalizeRequest",
    "abort",
    "complete",
    "normalize_parts",
]

_SESSION_FIELDS = ("fileId", "key", "uploadId", "securityToken", "expiresAt")


@dataclass(frozen=True)
class FinalizeRequest:
    file_id: str
    object_key: str
    upload_session_id: str
    security_token: str
    expires_at: str

    @classmethod
    def from_body(cls, body: Dict[str, Any], *, with_parts: bool = False) -> "FinalizeRequest":
        """Session fields are always required; `parts` only for completion."""
        required = _SESSION_FIELDS + ("parts",) if with_parts else _SESSION_FIELDS
        missing = [name for name in required if body.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                missing=missing,
            )
        wrong_type = [name for name in _SESSION_FIELDS if not isinstance(body.get(name), str)]
        if wrong_type:
            raise ValidationError(f"Fields must be strings: {', '.join(wrong_type)}")
        return cls(
            file_id=body["fileId"],
            object_key=body["key"],
            upload_session_id=body["uploadId"],
            security_token=body["securityToken"],
            expires_at=body["expiresAt"],
        )


def _check_key_namespace(uploader_id: str, request: FinalizeRequest) -> None:
    prefix = f"{UPLOAD_KEY_PREFIX}/{uploader_id}/{request.file_id}."
    suffix = request.object_key[len(prefix):]
    if not request.object_key.startswith(prefix) or "/" in suffix:
        raise AuthorizationError("Object key does not belong to this upload")


def _authorize(uploader_id: str, request: FinalizeRequest, now: Optional[dt.datetime]) -> None:
    capability_token.authorize(
        request.file_id,
        uploader_id,
        request.expires_at,
        request.security_token,
        now=now,
    )
    _check_key_namespace(uploader_id, request)


def normalize_parts(parts: Any) -> List[Dict[str, Any]]:
    """Validate client-reported parts and sort them by part number.

    Accepts S3 casing (`PartNumber`/`ETag`) or camel case
    (`partNumber`/`etag`) and returns S3 casing.
    """
    if not isinstance(parts, list) or not parts:
        raise ValidationError("Parts array must not be empty")

    normalized: List[Dict[str, Any]] = []
    seen: set[int] = set()
    for part in parts:
        if not isinstance(part, dict):
            raise ValidationError("Each part must have PartNumber and ETag")
        number = part.get("PartNumber", part.get("partNumber"))
        etag = part.get("ETag", part.get("etag"))
        if isinstance(number, bool) or not isinstance(number, int) or number < 1:
            raise ValidationError("Each part must have PartNumber and ETag")
        if not isinstance(etag, str) or not etag.strip():
            raise ValidationError("Each part must have PartNumber and ETag")
        if number in seen:
            raise ValidationError(f"Duplicate PartNumber: {number}")
        seen.add(number)
        normalized.append({"PartNumber": number, "ETag": etag.strip()})

    normalized.sort(key=lambda p: p["PartNumber"])
    return normalized


def complete(uploader_id: str, body: Dict[str, Any], now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    """Close a multipart session by assembling its parts.

    Raises:
        ValidationError: missing fields or malformed parts.
        AuthorizationError: bad token, expired session or foreign key.
        UpstreamError: S3 refused the completion.
    """
    request = FinalizeRequest.from_body(body, with_parts=True)
    _authorize(uploader_id, request, now)
    parts = normalize_parts(body.get("parts"))

    result = object_store.complete_multipart_session(
        request.object_key,
        request.upload_session_id,
        parts,
    )
    _emit_structured_observability(
        component="upload_api",
        event="upload_completed",
        request_id=request.file_id,
        extra={"part_count": len(parts)},
    )
    return {
        "fileId": request.file_id,
        "key": request.object_key,
        "location": result.get("location", ""),
        "etag": result.get("etag", ""),
    }


def abort(uploader_id: str, body: Dict[str, Any], now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    """Discard a multipart session. Safe to call again for the same session."""
    request = FinalizeRequest.from_body(body)
    _authorize(uploader_id, request, now)

    aborted = object_store.abort_multipart_session(request.object_key, request.upload_session_id)
    _emit_structured_observability(
        component="upload_api",
        event="upload_aborted",
        request_id=request.file_id,
        extra={"session_found": aborted},
    )
    return {
        "fileId": request.file_id,
        "key": request.object_key,
        "alreadyClosed": not aborted,
    }
