"""docintake_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope and error formatting used by all intake
API Lambda functions.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from decimal import Decimal
from typing import Any, Dict, Tuple

from docintake_shared.errors import IntakeError

logger = logging.getLogger(__name__)

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "http://localhost:3000")


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": CORS_ORIGIN,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Cookie, X-Docintake-Internal-Key",
        "Access-Control-Allow-Credentials": "true",
    }


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    if isinstance(obj, set):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {**_cors_headers(), "Content-Type": "application/json"},
        "body": json.dumps(body, default=_json_default),
    }


def _preflight() -> Dict[str, Any]:
    return {"statusCode": 204, "headers": _cors_headers(), "body": ""}


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        **extra: ``code`` / ``retryable`` override the envelope defaults; any
            other field is reported under ``details`` and merged top-level.
    """
    code = str(extra.pop("code", "") or "").strip().upper()
    if not code:
        if status_code == 400:
            code = "INVALID_INPUT"
        elif status_code == 401:
            code = "PERMISSION_DENIED"
        elif status_code == 403:
            code = "FORBIDDEN"
        elif status_code == 404:
            code = "NOT_FOUND"
        elif status_code == 405:
            code = "METHOD_NOT_ALLOWED"
        else:
            code = "INTERNAL_ERROR"
    retryable = bool(extra.pop("retryable", status_code >= 500))
    details = dict(extra)
    payload: Dict[str, Any] = {
        "success": False,
        "error": message,
        "error_envelope": {
            "code": code,
            "message": message,
            "retryable": retryable,
            "details": details,
        },
    }
    payload.update(details)
    return _response(status_code, payload)


def _intake_error(exc: IntakeError) -> Dict[str, Any]:
    """Render an IntakeError into the error envelope."""
    return _error(
        exc.status_code,
        exc.message,
        code=exc.code,
        retryable=exc.retryable,
        **exc.to_details(),
    )


def _parse_body(event: Dict[str, Any]) -> Any:
    """Parse JSON body from API Gateway event (handles base64)."""
    raw = event.get("body") or "{}"
    try:
        if event.get("isBase64Encoded"):
            raw = base64.b64decode(raw).decode("utf-8")
        return json.loads(raw)
    except (ValueError, TypeError):
        return None


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from API Gateway v2 (or v1) event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = event.get("rawPath") or http.get("path") or event.get("path") or "/"
    return method, path
