"""object_store.py — S3 operations behind the upload planner and finalizer.

Every boto3 failure is re-raised as UpstreamError so callers see one retryable
error kind. Presigning is local to the SDK but still goes through the same
mapping since it can fail on bad parameters or missing credentials.

Part of the upload_api Lambda.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from config import STORAGE_BUCKET_NAME, logger
from upscrolled_shared.aws_clients import _get_s3
from upscrolled_shared.errors import UpstreamError

__all__ = [
    "abort_multipart_session",
    "complete_multipart_session",
    "create_multipart_session",
    "create_part_write_capability",
    "create_write_capability",
]


def _bucket() -> str:
    if not STORAGE_BUCKET_NAME:
        raise UpstreamError("Storage bucket is not configured")
    return STORAGE_BUCKET_NAME


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return ""


def create_write_capability(
    key: str,
    content_type: str,
    size: Optional[int],
    metadata: Dict[str, str],
    ttl: int,
) -> str:
    """Presigned PUT URL for a single-shot upload straight to `key`."""
    params: Dict[str, Any] = {
        "Bucket": _bucket(),
        "Key": key,
        "ContentType": content_type,
        "Metadata": metadata,
    }
    if size is not None:
        params["ContentLength"] = size
    try:
        return _get_s3().generate_presigned_url(
            "put_object",
            Params=params,
            ExpiresIn=ttl,
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("Presigning put_object failed for %s: %s", key, exc)
        raise UpstreamError("Failed to generate upload URL") from exc


def create_multipart_session(key: str, content_type: str, metadata: Dict[str, str]) -> str:
    """Open a multipart upload and return its UploadId."""
    try:
        resp = _get_s3().create_multipart_upload(
            Bucket=_bucket(),
            Key=key,
            ContentType=content_type,
            Metadata=metadata,
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("create_multipart_upload failed for %s: %s", key, exc)
        raise UpstreamError("Failed to initiate multipart upload") from exc

    upload_id = resp.get("UploadId")
    if not upload_id:
        logger.error("create_multipart_upload returned no UploadId for %s", key)
        raise UpstreamError("Failed to initiate multipart upload")
    return upload_id


def create_part_write_capability(key: str, session_id: str, part_number: int, ttl: int) -> str:
    """Presigned URL scoped to one part number of one multipart session."""
    try:
        return _get_s3().generate_presigned_url(
            "upload_part",
            Params={
                "Bucket": _bucket(),
                "Key": key,
                "UploadId": session_id,
                "PartNumber": part_number,
            },
            ExpiresIn=ttl,
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("Presigning upload_part %d failed for %s: %s", part_number, key, exc)
        raise UpstreamError("Failed to generate chunk upload URL") from exc


def complete_multipart_session(key: str, session_id: str, parts: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Assemble the object from `parts` (already sorted by PartNumber)."""
    try:
        resp = _get_s3().complete_multipart_upload(
            Bucket=_bucket(),
            Key=key,
            UploadId=session_id,
            MultipartUpload={"Parts": parts},
        )
    except (BotoCoreError, ClientError) as exc:
        code = _error_code(exc)
        logger.error("complete_multipart_upload failed for %s (%s): %s", key, code or "unknown", exc)
        raise UpstreamError("Failed to complete multipart upload", s3_error=code) from exc
    return {
        "location": resp.get("Location", ""),
        "etag": resp.get("ETag", ""),
    }


def abort_multipart_session(key: str, session_id: str) -> bool:
    """Discard the session and its stored parts.

    Returns False when S3 no longer knows the session (already aborted or
    completed); that outcome is not an error so aborts can be retried.
    """
    try:
        _get_s3().abort_multipart_upload(
            Bucket=_bucket(),
            Key=key,
            UploadId=session_id,
        )
    except ClientError as exc:
        if _error_code(exc) == "NoSuchUpload":
            logger.info("[INFO] abort_multipart_upload: session already gone for %s", key)
            return False
        logger.error("abort_multipart_upload failed for %s: %s", key, exc)
        raise UpstreamError("Failed to abort multipart upload") from exc
    except BotoCoreError as exc:
        logger.error("abort_multipart_upload failed for %s: %s", key, exc)
        raise UpstreamError("Failed to abort multipart upload") from exc
    return True
