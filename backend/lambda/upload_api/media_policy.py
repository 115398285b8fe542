"""media_policy.py — Content-type allow-list and per-kind size ceilings.

Part of the upload_api Lambda.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from config import ALLOWED_MEDIA_TYPES, MAX_FILE_SIZES
from upscrolled_shared.errors import ValidationError

__all__ = [
    "MediaClassification",
    "allowed_content_types",
    "classify",
    "media_kind",
    "require_media",
]


@dataclass(frozen=True)
class MediaClassification:
    media_kind: str
    max_size: int


def allowed_content_types() -> Tuple[str, ...]:
    return tuple(ct for kind in ("image", "video") for ct in ALLOWED_MEDIA_TYPES[kind])


def media_kind(content_type: str) -> Optional[str]:
    for kind, content_types in ALLOWED_MEDIA_TYPES.items():
        if content_type in content_types:
            return kind
    return None


def classify(content_type: str, file_size: int) -> Tuple[Optional[MediaClassification], Optional[str]]:
    """Classify an upload request.

    Returns (classification, None) when the request is acceptable, otherwise
    (None, reason). The size check runs first so a non-positive size is
    rejected whatever the content type.
    """
    if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size <= 0:
        return None, "File size must be greater than 0"

    kind = media_kind(content_type)
    if kind is None:
        return None, (
            f"Invalid content type: {content_type}. "
            f"Allowed types: {', '.join(allowed_content_types())}"
        )

    max_size = MAX_FILE_SIZES[kind]
    if file_size > max_size:
        return None, (
            f"File size {file_size} exceeds maximum allowed size of "
            f"{max_size} bytes for {kind}"
        )

    return MediaClassification(media_kind=kind, max_size=max_size), None


def require_media(content_type: str, file_size: int) -> MediaClassification:
    """Like `classify`, but raises ValidationError with the rejection reason."""
    classification, reason = classify(content_type, file_size)
    if classification is None:
        raise ValidationError(reason or "Invalid upload request", content_type=content_type)
    return classification
