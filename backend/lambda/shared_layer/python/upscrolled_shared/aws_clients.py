"""upscrolled_shared.aws_clients — Lazy-singleton AWS service clients.

Each getter builds its boto3 client on first use and keeps it for the life of
the Lambda container, so a function only pays for the clients it touches.
`reset_clients()` drops every cached client (teardown / tests).
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config

AWS_REGION: str = os.environ.get("AWS_REGION", "us-east-1")
S3_REGION: str = os.environ.get("S3_REGION", AWS_REGION)
SECRETS_REGION: str = os.environ.get("SECRETS_REGION", AWS_REGION)

_clients: Dict[Tuple[str, str], Any] = {}


def _client(service: str, region: str, **config_kwargs: Any):
    cache_key = (service, region)
    client = _clients.get(cache_key)
    if client is None:
        config_kwargs.setdefault("retries", {"max_attempts": 3, "mode": "standard"})
        client = boto3.client(service, region_name=region, config=Config(**config_kwargs))
        _clients[cache_key] = client
    return client


def _get_ddb(region: Optional[str] = None):
    """DynamoDB (posts, likes, rate-limit counters)."""
    return _client(
        "dynamodb",
        region or AWS_REGION,
        retries={"max_attempts": 5, "mode": "standard"},
    )


def _get_s3(region: Optional[str] = None):
    """S3 client for the upload bucket.

    SigV4 is pinned so presigned URLs carry the X-Amz-* query signature
    that multipart part uploads require.
    """
    return _client("s3", region or S3_REGION, signature_version="s3v4")


def _get_eb(region: Optional[str] = None):
    return _client("events", region or AWS_REGION)


def _get_secretsmanager(region: Optional[str] = None):
    return _client("secretsmanager", region or SECRETS_REGION)


def reset_clients() -> None:
    """Drop all cached clients; the next getter call builds a fresh one."""
    _clients.clear()
