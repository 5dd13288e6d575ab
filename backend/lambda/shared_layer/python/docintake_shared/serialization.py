"""docintake_shared.serialization — DynamoDB serialization/deserialization.

Provides TypeSerializer/TypeDeserializer wrappers, timestamp helpers and the
structured observability log line shared by the intake Lambdas.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

logger = logging.getLogger(__name__)

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _serialize(value: Any) -> Any:
    """Serialize a Python value for DynamoDB."""
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a plain dict, dropping ``None`` values."""
    return {k: _serialize(v) for k, v in item.items() if v is not None}


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    out: Dict[str, Any] = {}
    for k, v in item.items():
        val = _DESER.deserialize(v)
        if isinstance(val, Decimal):
            val = int(val) if val == int(val) else float(val)
        out[k] = val
    return out


def _now_z() -> str:
    """Current UTC timestamp in ISO 8601 format with Z suffix."""
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
