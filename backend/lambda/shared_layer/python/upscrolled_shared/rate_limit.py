"""upscrolled_shared.rate_limit — Fixed-window request gate.

Counts requests per identifier inside synchronized windows of fixed width.
Each (identifier, window) pair is one DynamoDB item incremented atomically;
items carry a TTL attribute so the table cleans itself up.

The gate fails open: if the counter table cannot be reached the request is
allowed and the failure is logged.

Requires environment variables:
    RATE_LIMIT_TABLE   — DynamoDB table, hash key `limit_key` (S), TTL on
                         `expires_at`. Empty disables the gate.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from upscrolled_shared.aws_clients import _get_ddb
from upscrolled_shared.errors import RateLimitedError
from upscrolled_shared.http_utils import _client_ip

logger = logging.getLogger(__name__)

RATE_LIMIT_TABLE: str = os.environ.get("RATE_LIMIT_TABLE", "")


@dataclass(frozen=True)
class RateLimitPolicy:
    window_seconds: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # epoch seconds of the window boundary


RATE_LIMIT_POLICIES: Dict[str, RateLimitPolicy] = {
    "standard": RateLimitPolicy(window_seconds=60, max_requests=60),
    "write": RateLimitPolicy(window_seconds=60, max_requests=20),
    "upload": RateLimitPolicy(window_seconds=60, max_requests=10),
    "auth": RateLimitPolicy(window_seconds=15 * 60, max_requests=10),
}

_VALID_IDENTIFY_BY = {"user", "ip", "both"}


def _window_bounds(now: float, policy: RateLimitPolicy) -> tuple[int, int]:
    window_start = int(now // policy.window_seconds) * policy.window_seconds
    return window_start, window_start + policy.window_seconds


def check_rate_limit(
    identifier: str,
    policy: RateLimitPolicy = RATE_LIMIT_POLICIES["standard"],
    now: Optional[float] = None,
) -> RateLimitResult:
    """Count one request for `identifier` in the current window."""
    now = time.time() if now is None else now
    window_start, reset_at = _window_bounds(now, policy)

    if not RATE_LIMIT_TABLE:
        return RateLimitResult(allowed=True, remaining=policy.max_requests, reset_at=reset_at)

    limit_key = f"ratelimit:{identifier}:{window_start}"
    try:
        resp = _get_ddb().update_item(
            TableName=RATE_LIMIT_TABLE,
            Key={"limit_key": {"S": limit_key}},
            UpdateExpression="SET expires_at = if_not_exists(expires_at, :exp) ADD request_count :one",
            ExpressionAttributeValues={
                ":one": {"N": "1"},
                ":exp": {"N": str(reset_at + 1)},
            },
            ReturnValues="UPDATED_NEW",
        )
        count = int(resp["Attributes"]["request_count"]["N"])
    except (BotoCoreError, ClientError, KeyError, ValueError) as exc:
        logger.warning("Rate limit check failed for %s, allowing request: %s", identifier, exc)
        return RateLimitResult(allowed=True, remaining=policy.max_requests, reset_at=reset_at)

    return RateLimitResult(
        allowed=count <= policy.max_requests,
        remaining=max(0, policy.max_requests - count),
        reset_at=reset_at,
    )


def _raise_if_limited(identifier: str, policy: RateLimitPolicy, now: float) -> None:
    result = check_rate_limit(identifier, policy, now=now)
    if not result.allowed:
        retry_after = max(1, result.reset_at - int(now))
        logger.info("Rate limit exceeded for %s; retry after %ss", identifier, retry_after)
        raise RateLimitedError("Too many requests. Please slow down.", retry_after=retry_after)


def enforce_rate_limit(
    event: Dict[str, Any],
    claims: Optional[Dict[str, Any]],
    policy: RateLimitPolicy,
    identify_by: str = "user",
    now: Optional[float] = None,
) -> None:
    """Gate a request by caller identity, client IP, or both.

    Raises:
        RateLimitedError: a counter for this request is over its limit.
    """
    if identify_by not in _VALID_IDENTIFY_BY:
        raise ValueError(f"identify_by must be one of {sorted(_VALID_IDENTIFY_BY)}")
    now = time.time() if now is None else now
    client_ip = _client_ip(event)

    if identify_by in {"ip", "both"}:
        _raise_if_limited(f"ip:{client_ip}", policy, now)

    if identify_by in {"user", "both"}:
        subject = str((claims or {}).get("sub") or "").strip()
        if subject:
            _raise_if_limited(f"user:{subject}", policy, now)
        elif identify_by == "user":
            # No identity on the request; fall back to the IP counter.
            _raise_if_limited(f"ip:{client_ip}", policy, now)
