"""upscrolled_shared.serialization — DynamoDB attribute values, timestamps, observability.

Wire timestamps across upscrolled-lite are ISO-8601 UTC with millisecond
precision and a `Z` suffix (`2026-01-01T12:00:00.000Z`).
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

_SER = TypeSerializer()
_DESER = TypeDeserializer()

logger = logging.getLogger(__name__)


def _serialize(value: Any) -> Any:
    # TypeSerializer rejects float; route it through Decimal.
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Attribute-value map for put_item. None values are left out of the item."""
    return {name: _serialize(value) for name, value in item.items() if value is not None}


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """DynamoDB item -> JSON-ready dict (numbers become int/float, nested too)."""
    return {name: _plain(_DESER.deserialize(raw)) for name, raw in item.items()}


def iso_millis(value: Optional[dt.datetime] = None) -> str:
    """Canonical UTC timestamp; `value` defaults to now, naive values are UTC."""
    if value is None:
        value = dt.datetime.now(dt.timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    value = value.astimezone(dt.timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    request_id: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """One JSON log line per significant event, greppable by the prefix."""
    payload: Dict[str, Any] = dict(extra or {})
    payload.update(
        timestamp=iso_millis(),
        component=component,
        event=event,
        request_id=str(request_id or ""),
        error_code=str(error_code or ""),
    )
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
