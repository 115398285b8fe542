"""upload_planner.py — Single-shot vs. multipart upload plans.

A plan is never persisted. Everything the finalizer later needs to check is
carried by the capability token and by S3's own multipart-session state.

Part of the upload_api Lambda.
"""
from __future__ import annotations

import datetime as dt
import re
import urllib.parse
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import capability_token
import object_store
from config import (
    CHUNK_SIZE,
    MULTIPART_THRESHOLD,
    MULTIPART_UPLOAD_TTL_SECONDS,
    PART_URL_TTL_SECONDS,
    SINGLE_UPLOAD_TTL_SECONDS,
    UPLOAD_KEY_PREFIX,
    logger,
)
from media_policy import MediaClassification
from upscrolled_shared.errors import UpstreamError, ValidationError
from upscrolled_shared.serialization import _emit_structured_observability

__all__ = [
    "ChunkPlan",
    "STRATEGY_MULTIPART",
    "STRATEGY_SINGLE",
    "UploadPlan",
    "UploadRequest",
    "choose_strategy",
    "compute_chunks",
    "file_extension",
    "object_key",
    "plan",
]

STRATEGY_SINGLE = "single"
STRATEGY_MULTIPART = "multipart"

_EXTENSION_RE = re.compile(r"[A-Za-z0-9]{1,16}")


@dataclass(frozen=True)
class UploadRequest:
    file_name: str
    content_type: str
    file_size: int
    uploader_id: str

    @classmethod
    def from_body(cls, body: Dict[str, Any], uploader_id: str) -> "UploadRequest":
        """Build a request from the JSON body of POST /uploads/request.

        Raises:
            ValidationError: a field is missing or has the wrong type.
        """
        file_name = body.get("fileName")
        content_type = body.get("contentType")
        file_size = body.get("fileSize")
        if not file_name or not content_type or file_size in (None, ""):
            raise ValidationError(
                "Missing required fields: fileName, contentType, and fileSize are required"
            )
        if not isinstance(file_name, str) or not isinstance(content_type, str):
            raise ValidationError("fileName and contentType must be strings")
        if isinstance(file_size, float) and file_size.is_integer():
            file_size = int(file_size)
        if isinstance(file_size, bool) or not isinstance(file_size, int):
            raise ValidationError("fileSize must be an integer number of bytes")
        return cls(
            file_name=file_name.strip(),
            content_type=content_type.strip().lower(),
            file_size=file_size,
            uploader_id=uploader_id,
        )


@dataclass(frozen=True)
class ChunkPlan:
    part_number: int
    upload_url: str
    start_byte: int
    end_byte: int


@dataclass
class UploadPlan:
    file_id: str
    object_key: str
    content_type: str
    media_kind: str
    expires_at: dt.datetime
    security_token: str
    max_size: int
    strategy: str
    upload_url: Optional[str] = None
    upload_session_id: Optional[str] = None
    chunk_size: Optional[int] = None
    total_chunks: Optional[int] = None
    chunks: List[ChunkPlan] = field(default_factory=list)

    @property
    def expires_at_iso(self) -> str:
        return capability_token.format_expires_at(self.expires_at)


def file_extension(file_name: str) -> str:
    """Best-effort suffix of `file_name`; empty when absent or unusable."""
    base = file_name.rsplit("/", 1)[-1]
    _, dot, ext = base.rpartition(".")
    if not dot or not _EXTENSION_RE.fullmatch(ext):
        return ""
    return ext


def object_key(uploader_id: str, file_id: str, file_name: str) -> str:
    return f"{UPLOAD_KEY_PREFIX}/{uploader_id}/{file_id}.{file_extension(file_name)}"


def choose_strategy(file_size: int, media_kind: str) -> str:
    if file_size > MULTIPART_THRESHOLD or media_kind == "video":
        return STRATEGY_MULTIPART
    return STRATEGY_SINGLE


def compute_chunks(file_size: int, chunk_size: int = CHUNK_SIZE) -> List[Tuple[int, int, int]]:
    """Tile [0, file_size) into (part_number, start_byte, end_byte) triples.

    Part numbers are 1-based and contiguous; end bytes are inclusive and the
    last chunk ends at file_size - 1.
    """
    if file_size <= 0:
        raise ValueError("file_size must be positive")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    total_chunks = -(-file_size // chunk_size)
    chunks = []
    for index in range(total_chunks):
        start_byte = index * chunk_size
        end_byte = min(start_byte + chunk_size, file_size) - 1
        chunks.append((index + 1, start_byte, end_byte))
    return chunks


def _millis(value: dt.datetime) -> dt.datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def _object_metadata(request: UploadRequest, file_id: str) -> Dict[str, str]:
    # S3 user metadata travels as HTTP headers, so keep it ASCII.
    return {
        "userId": request.uploader_id,
        "fileId": file_id,
        "originalFileName": urllib.parse.quote(request.file_name, safe=" ._-()"),
    }


def _plan_multipart_chunks(key: str, session_id: str, file_size: int) -> List[ChunkPlan]:
    chunks: List[ChunkPlan] = []
    for part_number, start_byte, end_byte in compute_chunks(file_size, CHUNK_SIZE):
        url = object_store.create_part_write_capability(key, session_id, part_number, PART_URL_TTL_SECONDS)
        chunks.append(ChunkPlan(part_number, url, start_byte, end_byte))
    return chunks


def plan(
    request: UploadRequest,
    classification: MediaClassification,
    now: Optional[dt.datetime] = None,
) -> UploadPlan:
    """Produce the write capabilities for an already-classified request.

    Raises:
        UpstreamError: S3 rejected session creation or URL signing. No
            capabilities are returned in that case.
    """
    now = _millis(now or dt.datetime.now(dt.timezone.utc))
    file_id = str(uuid.uuid4())
    key = object_key(request.uploader_id, file_id, request.file_name)
    metadata = _object_metadata(request, file_id)
    strategy = choose_strategy(request.file_size, classification.media_kind)

    if strategy == STRATEGY_SINGLE:
        expires_at = now + dt.timedelta(seconds=SINGLE_UPLOAD_TTL_SECONDS)
        security_token = capability_token.issue(file_id, request.uploader_id, expires_at)
        upload_url = object_store.create_write_capability(
            key,
            request.content_type,
            request.file_size,
            metadata,
            SINGLE_UPLOAD_TTL_SECONDS,
        )
        result = UploadPlan(
            file_id=file_id,
            object_key=key,
            content_type=request.content_type,
            media_kind=classification.media_kind,
            expires_at=expires_at,
            security_token=security_token,
            max_size=classification.max_size,
            strategy=strategy,
            upload_url=upload_url,
        )
    else:
        expires_at = now + dt.timedelta(seconds=MULTIPART_UPLOAD_TTL_SECONDS)
        security_token = capability_token.issue(file_id, request.uploader_id, expires_at)
        session_id = object_store.create_multipart_session(key, request.content_type, metadata)
        try:
            chunks = _plan_multipart_chunks(key, session_id, request.file_size)
        except UpstreamError:
            # The session exists but its URLs could not be signed; close it.
            try:
                object_store.abort_multipart_session(key, session_id)
            except UpstreamError as abort_exc:
                logger.warning("Could not abort unsigned multipart session %s: %s", session_id, abort_exc)
            raise
        result = UploadPlan(
            file_id=file_id,
            object_key=key,
            content_type=request.content_type,
            media_kind=classification.media_kind,
            expires_at=expires_at,
            security_token=security_token,
            max_size=classification.max_size,
            strategy=strategy,
            upload_session_id=session_id,
            chunk_size=CHUNK_SIZE,
            total_chunks=len(chunks),
            chunks=chunks,
        )

    _emit_structured_observability(
        component="upload_api",
        event="plan_issued",
        request_id=file_id,
        extra={
            "strategy": strategy,
            "media_kind": classification.media_kind,
            "file_size": request.file_size,
            "total_chunks": result.total_chunks or 1,
        },
    )
    return result
