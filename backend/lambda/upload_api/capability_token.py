"""capability_token.py — HMAC capability tokens for upload completion/abort.

A token binds (file_id, uploader_id, expires_at) under a server-held secret:

    token = hex(HMAC-SHA256(secret, f"{file_id}:{uploader_id}:{expires_at}"))

where expires_at is the canonical ISO-8601 UTC form with millisecond precision
(`2026-01-01T12:00:00.000Z`). Tokens are never stored; they are recomputed on
every check and compared in constant time.

`verify` is a pure MAC check and does not look at the clock. The finalizer
goes through `authorize`, which adds the expiry check.

Part of the upload_api Lambda.
"""
from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import time
from typing import Optional, Union

from botocore.exceptions import BotoCoreError, ClientError

from config import (
    PRODUCTION_STAGES,
    STAGE,
    UPLOAD_TOKEN_SECRET,
    UPLOAD_TOKEN_SECRET_ID,
    logger,
)
from upscrolled_shared.aws_clients import _get_secretsmanager
from upscrolled_shared.errors import AuthorizationError, UpstreamError
from upscrolled_shared.serialization import _emit_structured_observability, iso_millis

__all__ = [
    "authorize",
    "format_expires_at",
    "issue",
    "parse_expires_at",
    "verify",
]

Timestamp = Union[dt.datetime, str]

# ---------------------------------------------------------------------------
# Secret resolution
# ---------------------------------------------------------------------------

_DEV_FALLBACK_SECRET = "upscrolled-dev-upload-token-secret"
_secret_cache: Optional[str] = None
_secret_fetched_at: float = 0.0
_SECRET_TTL: float = 3600.0
_fallback_warned = False


def _token_secret() -> str:
    """Return the HMAC secret: env value, then Secrets Manager, then dev fallback."""
    global _secret_cache, _secret_fetched_at, _fallback_warned
    if UPLOAD_TOKEN_SECRET:
        return UPLOAD_TOKEN_SECRET

    if UPLOAD_TOKEN_SECRET_ID:
        now = time.time()
        if _secret_cache and (now - _secret_fetched_at) < _SECRET_TTL:
            return _secret_cache
        try:
            resp = _get_secretsmanager().get_secret_value(SecretId=UPLOAD_TOKEN_SECRET_ID)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to load upload token secret %s: %s", UPLOAD_TOKEN_SECRET_ID, exc)
            raise UpstreamError("Upload signing is temporarily unavailable") from exc
        _secret_cache = resp["SecretString"]
        _secret_fetched_at = now
        return _secret_cache

    if STAGE in PRODUCTION_STAGES:
        raise RuntimeError("UPLOAD_TOKEN_SECRET or UPLOAD_TOKEN_SECRET_ID must be set in production")
    if not _fallback_warned:
        logger.warning("Upload token secret not configured; using development fallback (stage=%s)", STAGE)
        _fallback_warned = True
    return _DEV_FALLBACK_SECRET


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def format_expires_at(value: dt.datetime) -> str:
    """Canonical wire form of an expiry instant."""
    return iso_millis(value)


def parse_expires_at(value: str) -> dt.datetime:
    """Parse an ISO-8601 expiry; naive values are taken as UTC.

    Raises:
        ValueError: not an ISO-8601 timestamp.
    """
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def _canonical(expires_at: Timestamp) -> str:
    if isinstance(expires_at, dt.datetime):
        return format_expires_at(expires_at)
    return format_expires_at(parse_expires_at(expires_at))


# ---------------------------------------------------------------------------
# Issue / verify
# ---------------------------------------------------------------------------


def issue(file_id: str, uploader_id: str, expires_at: Timestamp) -> str:
    payload = f"{file_id}:{uploader_id}:{_canonical(expires_at)}"
    return hmac.new(
        _token_secret().encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify(file_id: str, uploader_id: str, expires_at: Timestamp, token: str) -> bool:
    """True when `token` was issued for exactly these three values."""
    if not file_id or not uploader_id or not expires_at or not token:
        return False
    if not isinstance(token, str):
        return False
    try:
        expected = issue(file_id, uploader_id, expires_at)
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), token.encode("utf-8"))


def authorize(
    file_id: str,
    uploader_id: str,
    expires_at: str,
    token: str,
    now: Optional[dt.datetime] = None,
) -> dt.datetime:
    """Verify the token and that its session has not expired.

    Returns the parsed expiry.

    Raises:
        AuthorizationError: token mismatch or expiry in the past.
    """
    if not verify(file_id, uploader_id, expires_at, token):
        _emit_structured_observability(
            component="upload_api",
            event="token_rejected",
            request_id=file_id,
            error_code="invalid_token",
        )
        raise AuthorizationError("Invalid security token")

    expiry = parse_expires_at(expires_at)
    now = now or dt.datetime.now(dt.timezone.utc)
    if expiry < now:
        _emit_structured_observability(
            component="upload_api",
            event="token_rejected",
            request_id=file_id,
            error_code="session_expired",
        )
        raise AuthorizationError("Upload session has expired")
    return expiry
