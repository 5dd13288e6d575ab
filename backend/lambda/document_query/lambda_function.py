"""document_query/lambda_function.py

Lambda API for browsing indexed intake documents: filtered search, filter
option lists for the search form, type/tenant pickers for the upload form and
short-lived download links.

Routes (via API Gateway proxy):
    GET     /api/v1/documents/search?<params>        — search documents (50 per page)
    GET     /api/v1/documents/options?field=<f>      — distinct asset/spv/fund/tenant values
    GET     /api/v1/types?scope=<asset|spv|fund>     — type options {code, display_name}
    GET     /api/v1/tenants?asset=<asset>            — tenants of an asset
    POST    /api/v1/documents/sign-download          — presigned GET for bucket/key
    OPTIONS /api/v1/...                              — CORS preflight

Search parameters:
    type    case-insensitive type code prefix (``1.7`` matches ``1.7.12``)
    asset, spv, fund, tenant   exact match
    date    ``YYYY`` (year), ``YYYY-MM`` (month) or ``YYYY-MM-DD`` (exact day)
    page    1-based page number

Environment variables:
    DOCUMENTS_TABLE         default: documents
    TYPE_RULES_TABLE        default: type_paths
    ASSETS_TABLE            default: tenant_asset_bridge
    DOWNLOAD_BUCKETS        default: docs,inbox,other
    DOWNLOAD_URL_TTL_SECONDS default: 3600
    DYNAMODB_REGION         default: eu-west-1
"""

from __future__ import annotations

import datetime as dt
import logging
import heapq
import math
import os
import re
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from docintake_shared import tag_codec
from docintake_shared.auth import _authenticate as _shared_authenticate
from docintake_shared.aws_clients import _get_ddb, _get_s3, _store_error_message
from docintake_shared.errors import DelegateFailure, InvalidFormat, MissingField
from docintake_shared.http_utils import (
    _error,
    _intake_error,
    _parse_body,
    _path_method,
    _preflight,
    _response,
)
from docintake_shared.sanitize import normalize_asset, uniq_case_insensitive
from docintake_shared.serialization import _deserialize, _emit_structured_observability

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DOCUMENTS_TABLE = os.environ.get("DOCUMENTS_TABLE", "documents")
TYPE_RULES_TABLE = os.environ.get("TYPE_RULES_TABLE", "type_paths")
ASSETS_TABLE = os.environ.get("ASSETS_TABLE", "tenant_asset_bridge")
DOWNLOAD_BUCKETS = tuple(
    b.strip() for b in os.environ.get("DOWNLOAD_BUCKETS", "docs,inbox,other").split(",") if b.strip()
)
DOWNLOAD_URL_TTL_SECONDS = int(os.environ.get("DOWNLOAD_URL_TTL_SECONDS", "3600"))
MAX_DOWNLOAD_TTL_SECONDS = 7 * 24 * 3600  # SigV4 presign ceiling

PAGE_SIZE = 50
MAX_SCAN_ITEMS = int(os.environ.get("MAX_SCAN_ITEMS", "100000"))
DOCS_PREFIX = "docs/"

DOCUMENT_FIELDS = ("id", "type", "storage_path", "name", "asset", "spv", "fund", "tenant", "doc_date", "created_at")
OPTION_FIELDS = ("asset", "spv", "fund", "tenant")

_DATE_FLEX_RE = re.compile(r"^(\d{4})(?:-(\d{2})(?:-(\d{2}))?)?$")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _authenticate(event: Dict[str, Any]):
    return _shared_authenticate(event, error_fn=_error)


def build_date_filter(value: str) -> Optional[Dict[str, str]]:
    """Translate a flexible date into ``{"from", "to"}`` (half-open) or ``{"exact"}``.

    ``2024`` -> 2024-01-01..2025-01-01, ``2024-12`` -> 2024-12-01..2025-01-01,
    ``2024-09-30`` -> exact. Empty input means no filter.
    """
    text = (value or "").strip()
    if not text:
        return None
    match = _DATE_FLEX_RE.match(text)
    if not match:
        raise InvalidFormat("Invalid date. Example: 2024 or 2024-09 or 2024-09-30", field="date")
    y, m, d = match.groups()
    year = int(y)
    if m is None:
        return {"from": f"{year:04d}-01-01", "to": f"{year + 1:04d}-01-01"}
    month = int(m)
    if not 1 <= month <= 12:
        raise InvalidFormat(f"Invalid month in date '{text}'.", field="date")
    if d is None:
        ny, nm = (year + 1, 1) if month == 12 else (year, month + 1)
        return {"from": f"{year:04d}-{month:02d}-01", "to": f"{ny:04d}-{nm:02d}-01"}
    try:
        day = dt.date(year, month, int(d))
    except ValueError:
        raise InvalidFormat(f"Invalid date '{text}'.", field="date")
    return {"exact": day.isoformat()}


def filename_from_path(path: str) -> str:
    """Display name: last segment of a storage path (bare keys live under ``docs/``)."""
    full = path if path.startswith(DOCS_PREFIX) else f"{DOCS_PREFIX}{path}"
    return full.split("/")[-1] or full


class _TableScan:
    """Paginated DynamoDB scan yielding deserialized items.

    Stops after ``MAX_SCAN_ITEMS`` items and sets ``truncated`` so callers can
    tell a partial result from a complete one.
    """

    def __init__(self, table: str, projection: Optional[List[str]] = None) -> None:
        self.table = table
        self.projection = projection
        self.scanned = 0
        self.truncated = False

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        ddb = _get_ddb()
        params: Dict[str, Any] = {"TableName": self.table}
        if self.projection:
            names = {f"#f{i}": name for i, name in enumerate(self.projection)}
            params["ProjectionExpression"] = ", ".join(names)
            params["ExpressionAttributeNames"] = names
        while True:
            resp = ddb.scan(**params)
            items = resp.get("Items", [])
            self.scanned += len(items)
            for item in items:
                yield _deserialize(item)
            last = resp.get("LastEvaluatedKey")
            if not last:
                return
            if self.scanned >= MAX_SCAN_ITEMS:
                self.truncated = True
                logger.warning("scan of %s truncated at %d items", self.table, self.scanned)
                return
            params["ExclusiveStartKey"] = last


def _scan_all(table: str, projection: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    return list(_TableScan(table, projection))


def _qs(event: Dict[str, Any]) -> Dict[str, str]:
    qs = event.get("queryStringParameters") or {}
    return {k: str(v).strip() for k, v in qs.items() if v is not None}


def _parse_page(raw: str) -> int:
    if not raw:
        return 1
    if not raw.isdigit() or int(raw) < 1:
        raise InvalidFormat("Query parameter 'page' must be a positive integer.", field="page")
    return int(raw)


def _document_row(item: Dict[str, Any]) -> Dict[str, Any]:
    row = {k: item.get(k) for k in DOCUMENT_FIELDS}
    storage_path = str(item.get("storage_path") or "")
    key = storage_path.split("/")[-1] if storage_path else str(item.get("name") or "")
    row["tags"] = tag_codec.decode_filename(key) if key else None
    row["file_name"] = item.get("name") or (filename_from_path(storage_path) if storage_path else None)
    return row


def _matches(item: Dict[str, Any], filters: Dict[str, str], date_filter: Optional[Dict[str, str]]) -> bool:
    type_prefix = filters.get("type", "").lower()
    if type_prefix and not str(item.get("type") or "").lower().startswith(type_prefix):
        return False
    for field in OPTION_FIELDS:
        wanted = filters.get(field)
        if wanted and str(item.get(field) or "") != wanted:
            return False
    if date_filter:
        doc_date = str(item.get("doc_date") or "")
        if not doc_date:
            return False
        if "exact" in date_filter:
            return doc_date == date_filter["exact"]
        return date_filter["from"] <= doc_date < date_filter["to"]
    return True


def _order_key(doc: Dict[str, Any]) -> Tuple[str, str]:
    # Descending on this key puts documents without a doc_date last.
    return str(doc.get("doc_date") or ""), str(doc.get("created_at") or "")


def search_documents(filters: Dict[str, str], page: int) -> Dict[str, Any]:
    """Filter, order (doc_date desc nulls last, created_at desc) and page the index.

    Only the top ``page * PAGE_SIZE`` matches are held in memory; every match
    is counted. ``truncated`` is true when the scan stopped at
    ``MAX_SCAN_ITEMS`` and ordering and counts cover only the scanned part.
    """
    date_filter = build_date_filter(filters.get("date", ""))
    scan = _TableScan(DOCUMENTS_TABLE)
    total = 0

    def matching() -> Iterator[Dict[str, Any]]:
        nonlocal total
        for doc in scan:
            if _matches(doc, filters, date_filter):
                total += 1
                yield doc

    window = heapq.nlargest(page * PAGE_SIZE, matching(), key=_order_key)
    rows = [_document_row(d) for d in window[(page - 1) * PAGE_SIZE:]]
    return {
        "success": True,
        "documents": rows,
        "count": len(rows),
        "total_matches": total,
        "truncated": scan.truncated,
        "page": page,
        "page_size": PAGE_SIZE,
        "total_pages": max(1, math.ceil(total / PAGE_SIZE)),
    }


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_search(event: Dict[str, Any]) -> Dict:
    qs = _qs(event)
    filters = {k: qs.get(k, "") for k in ("type", "date") + OPTION_FIELDS}
    try:
        page = _parse_page(qs.get("page", ""))
        return _response(200, search_documents(filters, page))
    except InvalidFormat as exc:
        return _intake_error(exc)
    except (BotoCoreError, ClientError) as exc:
        logger.error("search scan failed: %s", exc)
        return _error(500, "Search failed.")


def _handle_options(event: Dict[str, Any]) -> Dict:
    qs = _qs(event)
    field = qs.get("field", "").lower()
    if field not in OPTION_FIELDS:
        return _error(400, f"Query parameter 'field' must be one of: {', '.join(OPTION_FIELDS)}.", field="field")
    asset = qs.get("asset", "")
    try:
        items = _scan_all(DOCUMENTS_TABLE, [field, "asset"])
    except (BotoCoreError, ClientError) as exc:
        logger.error("options scan failed (field=%s): %s", field, exc)
        return _error(500, "Could not load options.")
    if asset and field != "asset":
        items = [i for i in items if str(i.get("asset") or "") == asset]
    values = uniq_case_insensitive(str(i.get(field) or "") for i in items)
    return _response(200, {"success": True, "field": field, "options": values})


def _handle_types(event: Dict[str, Any]) -> Dict:
    scope = _qs(event).get("scope", "").lower()
    try:
        items = _scan_all(TYPE_RULES_TABLE, ["code", "display_name", "type_f"])
    except (BotoCoreError, ClientError) as exc:
        logger.error("type scan failed: %s", exc)
        return _error(500, "Could not load document types.")

    seen = set()
    types: List[Dict[str, str]] = []
    for item in sorted(items, key=lambda i: str(i.get("code") or "")):
        code = str(item.get("code") or "").strip()
        display = str(item.get("display_name") or "").strip()
        if not code or not display:
            continue
        if scope and str(item.get("type_f") or "").strip().lower() != scope:
            continue
        if display.lower() in seen:
            continue
        seen.add(display.lower())
        types.append({"code": code, "display_name": display})
    return _response(200, {"success": True, "types": types, "count": len(types)})


def _tenant_sort_key(row: Dict[str, str]) -> Tuple[int, int, str]:
    no = row["tenant_no"]
    return (0, int(no), no) if no.isdigit() else (1, 0, no)


def _handle_tenants(event: Dict[str, Any]) -> Dict:
    asset = normalize_asset(_qs(event).get("asset", ""))
    if not asset:
        return _intake_error(MissingField("Query parameter 'asset' is required.", field="asset"))
    try:
        resp = _get_ddb().query(
            TableName=ASSETS_TABLE,
            KeyConditionExpression="asset = :a",
            ExpressionAttributeValues={":a": {"S": asset}},
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("tenant query failed (asset=%s): %s", asset, exc)
        return _error(500, "Could not load tenants.")

    rows: List[Dict[str, str]] = []
    for item in (_deserialize(i) for i in resp.get("Items", [])):
        no = str(item.get("tenant_no") or "").strip()
        if not no:
            continue
        name = str(item.get("tenant_name") or "").strip()
        rows.append({
            "tenant_no": no,
            "tenant_name": name,
            "label": f"{no} — {name}" if name else no,
        })
    rows.sort(key=_tenant_sort_key)
    return _response(200, {"success": True, "asset": asset, "tenants": rows})


def _handle_sign_download(event: Dict[str, Any]) -> Dict:
    started = time.time()
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object.")
    storage_path = str(body.get("storage_path") or "").strip()
    if not storage_path:
        return _error(400, "Missing storage_path", field="storage_path")
    bucket, _, key = storage_path.partition("/")
    if not bucket or not key:
        return _error(400, "Invalid storage_path", field="storage_path")
    if bucket not in DOWNLOAD_BUCKETS:
        return _error(403, f"Bucket '{bucket}' is not downloadable.")

    expires_in = body.get("expiresIn", DOWNLOAD_URL_TTL_SECONDS)
    if isinstance(expires_in, bool) or not isinstance(expires_in, int) or expires_in <= 0:
        return _error(400, "expiresIn must be a positive integer.", field="expiresIn")
    expires_in = min(expires_in, MAX_DOWNLOAD_TTL_SECONDS)

    try:
        url = _get_s3().generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )
    except (BotoCoreError, ClientError) as exc:
        store_error = _store_error_message(exc)
        logger.error("download presign failed for %s: %s", storage_path, store_error)
        return _intake_error(
            DelegateFailure(f"Failed to sign download: {store_error}", bucket=bucket, store_error=store_error)
        )
    if not url:
        return _intake_error(DelegateFailure("Failed to sign download.", bucket=bucket))

    _emit_structured_observability(
        component="document_query",
        event="download_signed",
        latency_ms=int((time.time() - started) * 1000),
        extra={"bucket": bucket},
    )
    return _response(200, {"success": True, "signedUrl": url, "expiresIn": expires_in})


_ROUTES = (
    ("GET", re.compile(r"/documents/search/?$"), _handle_search),
    ("GET", re.compile(r"/documents/options/?$"), _handle_options),
    ("GET", re.compile(r"/types/?$"), _handle_types),
    ("GET", re.compile(r"/tenants/?$"), _handle_tenants),
    ("POST", re.compile(r"/sign-download/?$"), _handle_sign_download),
)


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, path = _path_method(event)
    logger.info("request parse: method=%s raw_path=%s", method, path)

    # CORS preflight
    if method == "OPTIONS":
        return _preflight()

    _caller, auth_err = _authenticate(event)
    if auth_err:
        return auth_err

    for route_method, pattern, handler in _ROUTES:
        if pattern.search(path):
            if method != route_method:
                return _error(405, f"Method {method} not allowed.")
            try:
                return handler(event)
            except Exception:
                logger.exception("unhandled error in document_query (%s)", path)
                return _error(500, "Internal server error.")
    return _error(404, f"No route for {path}.")
