"""upload_api/lambda_function.py

Lambda API that validates document uploads against the type rules, composes
the canonical object name and hands the browser a presigned PUT URL for the
intake bucket. The file itself never passes through this function.

Routes (via API Gateway proxy):
    POST    /api/v1/uploads/sign       — validate, compose, route, mint upload URL
    POST    /api/v1/uploads/preview    — validate + compose only (no URL)
    OPTIONS /api/v1/uploads[/*]        — CORS preflight

Auth:
    Reads `docintake_id_token` cookie from Cookie header.
    Validates JWT using Cognito JWKS (RS256, cached module-level).
    Optional service-to-service auth via X-Docintake-Internal-Key when
    DOCINTAKE_INTERNAL_API_KEYS is set; the body's `uploader` is then tagged.

Environment variables:
    COGNITO_USER_POOL_ID    eu-west-1_AbCdEf123
    COGNITO_CLIENT_ID       app client id
    COMPOSITION_SCHEME      default: tag_codec (tag_codec | concat)
    DATE_GRAMMAR            default: YYYY,YYYY-MM,YYYY-MM-DD
    ALLOWED_EXTENSIONS      default: pdf,png,jpg,jpeg,docx,xlsx
    TENANT_CASE_PREFIXES    default: 1.7,1.9.5.1
    INTAKE_BUCKET           default: inbox
    MISC_BUCKET             default: other
    UPLOAD_URL_TTL_SECONDS  default: 7200
    TYPE_RULES_TABLE        default: type_paths
    DYNAMODB_REGION         default: eu-west-1
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from docintake_shared.auth import Caller
from docintake_shared.auth import _authenticate as _shared_authenticate
from docintake_shared.errors import ComposeFailure, IntakeError, MissingField
from docintake_shared.http_utils import (
    _error,
    _intake_error,
    _parse_body,
    _path_method,
    _preflight,
    _response,
)
from docintake_shared.serialization import _emit_structured_observability

from config import load_engine_config
from filename_rules import (
    STAGE_COMPOSED,
    PreparedUpload,
    UploadRequest,
    issue_upload_target,
    prepare_upload,
)
from rule_index import get_type_rule, identifier_exists

logger = logging.getLogger()
logger.setLevel(logging.INFO)

ENGINE_CONFIG = load_engine_config()

_SIGN_RE = re.compile(r"/(?:uploads/sign|sign-upload)/?$")
_PREVIEW_RE = re.compile(r"/uploads/preview/?$")


def _authenticate(event: Dict[str, Any]):
    return _shared_authenticate(event, error_fn=_error)


def _describe(prepared: PreparedUpload) -> Dict[str, Any]:
    upload = prepared.upload
    out: Dict[str, Any] = {
        "success": True,
        "path": prepared.name.name,
        "bucket": prepared.bucket,
        "baseName": prepared.name.base_name,
        "type": upload.type_code,
        "type_source": upload.type_source.kind,
        "scheme": ENGINE_CONFIG.composition_scheme,
    }
    if prepared.name.person_tag:
        out["personTag"] = prepared.name.person_tag
    if prepared.name.tags:
        out["tags"] = prepared.name.tags
    if upload.type_source.extracted:
        out["extracted_type"] = upload.type_source.code
    return out


def _handle_upload(event: Dict[str, Any], caller: Caller, *, mint: bool) -> Dict[str, Any]:
    started = time.time()
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object.")

    request = UploadRequest.from_payload(body, uploader=caller.uploader_for(body))
    event_name = "upload_signed" if mint else "upload_previewed"
    try:
        prepared = prepare_upload(
            request,
            ENGINE_CONFIG,
            type_lookup=get_type_rule,
            identifier_exists=identifier_exists,
        )
        source = prepared.upload.type_source
        if mint and source.extracted and request.confirmed_type != source.code:
            raise MissingField(
                "Confirm the document type read from the filename before uploading.",
                field="confirmed_type",
                extracted_type=source.code,
                stage=STAGE_COMPOSED,
            )
        target = issue_upload_target(prepared.name.name, prepared.bucket, ENGINE_CONFIG) if mint else None
    except (BotoCoreError, ClientError) as exc:
        logger.error("type index lookup failed: %s", exc)
        return _error(500, "Type index lookup failed.")
    except IntakeError as exc:
        if isinstance(exc, ComposeFailure):
            logger.error("compose failure for %r: %s", request.original_filename, exc.message)
        else:
            logger.info("upload rejected (%s): %s", exc.code, exc.message)
        _emit_structured_observability(
            component="upload_api",
            event="upload_rejected",
            latency_ms=int((time.time() - started) * 1000),
            error_code=exc.code,
            extra={"stage": exc.details.get("stage"), "field": exc.field},
        )
        return _intake_error(exc)

    payload = _describe(prepared)
    if target is not None:
        payload["signedUrl"] = target.signed_url
        payload["expiresIn"] = target.expires_in
    else:
        payload["needs_confirmation"] = prepared.upload.type_source.extracted

    _emit_structured_observability(
        component="upload_api",
        event=event_name,
        latency_ms=int((time.time() - started) * 1000),
        extra={
            "bucket": prepared.bucket,
            "type": prepared.upload.type_code,
            "type_source": prepared.upload.type_source.kind,
        },
    )
    return _response(200, payload)


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, path = _path_method(event)
    logger.info("request parse: method=%s raw_path=%s", method, path)

    # CORS preflight
    if method == "OPTIONS":
        return _preflight()

    caller, auth_err = _authenticate(event)
    if auth_err:
        return auth_err

    mint: Optional[bool] = None
    if _SIGN_RE.search(path):
        mint = True
    elif _PREVIEW_RE.search(path):
        mint = False
    if mint is None:
        return _error(404, f"No route for {path}.")
    if method != "POST":
        return _error(405, f"Method {method} not allowed.")

    try:
        return _handle_upload(event, caller, mint=mint)
    except Exception:
        logger.exception("unhandled error in upload_api")
        return _error(500, "Internal server error.")
