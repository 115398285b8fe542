"""config.py — Environment variables, upload limits and logging for upload_api.

Part of the upload_api Lambda.
"""
from __future__ import annotations

import logging
import os

__all__ = [
    "ALLOWED_MEDIA_TYPES",
    "CHUNK_SIZE",
    "MAX_FILE_SIZES",
    "MULTIPART_THRESHOLD",
    "MULTIPART_UPLOAD_TTL_SECONDS",
    "PART_URL_TTL_SECONDS",
    "PRODUCTION_STAGES",
    "SINGLE_UPLOAD_TTL_SECONDS",
    "STAGE",
    "STORAGE_BUCKET_NAME",
    "UPLOAD_KEY_PREFIX",
    "UPLOAD_TOKEN_SECRET",
    "UPLOAD_TOKEN_SECRET_ID",
    "logger",
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

STAGE = os.environ.get("STAGE", "dev").strip().lower()
PRODUCTION_STAGES = frozenset({"prod", "production"})
STORAGE_BUCKET_NAME = os.environ.get("STORAGE_BUCKET_NAME", "")
UPLOAD_KEY_PREFIX = "uploads"

# HMAC secret for upload capability tokens. UPLOAD_TOKEN_SECRET_ID names a
# Secrets Manager secret and is used when the plain value is not set.
UPLOAD_TOKEN_SECRET = os.environ.get("UPLOAD_TOKEN_SECRET", "")
UPLOAD_TOKEN_SECRET_ID = os.environ.get("UPLOAD_TOKEN_SECRET_ID", "")

# ---------------------------------------------------------------------------
# Media policy
# ---------------------------------------------------------------------------

_MIB = 1024 * 1024

ALLOWED_MEDIA_TYPES = {
    "image": ("image/jpeg", "image/png", "image/gif", "image/webp"),
    "video": ("video/mp4", "video/quicktime", "video/webm", "video/mpeg"),
}

MAX_FILE_SIZES = {
    "image": 10 * _MIB,
    "video": 500 * _MIB,
}

# ---------------------------------------------------------------------------
# Upload strategy
# ---------------------------------------------------------------------------

MULTIPART_THRESHOLD = 10 * _MIB
CHUNK_SIZE = 5 * _MIB  # S3 minimum part size for every part but the last
SINGLE_UPLOAD_TTL_SECONDS = 15 * 60
MULTIPART_UPLOAD_TTL_SECONDS = 60 * 60
PART_URL_TTL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)
